"""Issue tracker clients.

The synchronizer talks to the tracker through the ``IssueTracker``
interface. Two GitHub backends are provided: one driving the ``gh`` CLI,
one calling the REST API with httpx. Both raise ``TrackerUnavailableError``
when the tracker cannot be reached at all (CLI missing, network down) and
``TrackerError`` when a reachable tracker rejects an operation.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from agentplan.config import AgentPlanConfig
from agentplan.errors import AgentPlanError, TrackerError, TrackerUnavailableError
from agentplan.models import Issue

logger = logging.getLogger(__name__)

IN_PROGRESS_LABEL = "in-progress"
ISSUE_JSON_FIELDS = "number,title,body,labels,url,state"
LIST_LIMIT = 100


def issue_number(issue_id: str) -> str:
    """Normalize "#12" / "12" to "12"."""
    return str(issue_id).strip().lstrip("#")


class IssueTracker(ABC):
    """Capabilities the synchronizer needs from an issue tracker."""

    name: str = "tracker"

    @abstractmethod
    async def list_open_issues(self, label: str | None = None) -> list[Issue]:
        """List open issues, optionally restricted to one label."""

    @abstractmethod
    async def create_issue(
        self, title: str, body: str = "", labels: list[str] | None = None
    ) -> Issue:
        """Create an issue and return it."""

    @abstractmethod
    async def close_issue(self, issue_id: str, comment: str | None = None) -> None:
        """Close an issue, optionally leaving a comment."""

    @abstractmethod
    async def comment_issue(self, issue_id: str, body: str) -> None:
        """Add a comment to an issue."""

    @abstractmethod
    async def mark_in_progress(self, issue_id: str) -> None:
        """Flag an issue as being worked on."""

    @abstractmethod
    async def clear_in_progress(self, issue_id: str) -> None:
        """Remove the in-progress flag from an issue."""


# =============================================================================
# gh CLI backend
# =============================================================================


class GitHubCLITracker(IssueTracker):
    """GitHub issues through the ``gh`` command-line tool."""

    name = "gh"

    def __init__(
        self,
        binary: str = "gh",
        repo: str | None = None,
        in_progress_label: str = IN_PROGRESS_LABEL,
        timeout: float = 30.0,
    ) -> None:
        self.binary = binary
        self.repo = repo
        self.in_progress_label = in_progress_label
        self.timeout = timeout

    async def _run(self, args: list[str], operation: str) -> str:
        """Run a gh command and return its stdout.

        Raises:
            TrackerUnavailableError: If gh is not installed or times out
            TrackerError: If gh exits with non-zero status
        """
        cmd = [self.binary, *args]
        if self.repo:
            cmd.extend(["--repo", self.repo])

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TrackerUnavailableError(
                f"{self.binary} CLI not found. Install GitHub CLI and run 'gh auth login'.",
                operation=operation,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise TrackerUnavailableError(
                f"{self.binary} {operation} timed out after {self.timeout:.0f}s",
                operation=operation,
            ) from e

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise TrackerError(
                f"{self.binary} {operation} failed: {message}", operation=operation
            )

        return stdout.decode("utf-8", errors="replace")

    @staticmethod
    def _to_issue(item: dict[str, Any]) -> Issue:
        return Issue(
            id=str(item["number"]),
            title=item.get("title", ""),
            body=item.get("body") or "",
            labels=[label.get("name", "") for label in item.get("labels") or []],
            url=item.get("url"),
            state=str(item.get("state", "open")).lower(),
        )

    async def list_open_issues(self, label: str | None = None) -> list[Issue]:
        args = [
            "issue",
            "list",
            "--state",
            "open",
            "--json",
            ISSUE_JSON_FIELDS,
            "--limit",
            str(LIST_LIMIT),
        ]
        if label:
            args.extend(["--label", label])

        output = await self._run(args, "list")
        try:
            items = json.loads(output or "[]")
        except json.JSONDecodeError as e:
            raise TrackerError(f"Unparseable gh output: {e}", operation="list") from e
        return [self._to_issue(item) for item in items]

    async def create_issue(
        self, title: str, body: str = "", labels: list[str] | None = None
    ) -> Issue:
        args = ["issue", "create", "--title", title, "--body", body]
        for label in labels or []:
            args.extend(["--label", label])

        # gh prints the new issue URL, ending in the issue number
        output = (await self._run(args, "create")).strip()
        url = output.splitlines()[-1] if output else ""
        number = url.rstrip("/").rsplit("/", 1)[-1]
        return Issue(id=number, title=title, body=body, labels=list(labels or []), url=url)

    async def close_issue(self, issue_id: str, comment: str | None = None) -> None:
        args = ["issue", "close", issue_number(issue_id)]
        if comment:
            args.extend(["--comment", comment])
        await self._run(args, "close")

    async def comment_issue(self, issue_id: str, body: str) -> None:
        await self._run(["issue", "comment", issue_number(issue_id), "--body", body], "comment")

    async def mark_in_progress(self, issue_id: str) -> None:
        await self._run(
            ["issue", "edit", issue_number(issue_id), "--add-label", self.in_progress_label],
            "edit",
        )

    async def clear_in_progress(self, issue_id: str) -> None:
        await self._run(
            [
                "issue",
                "edit",
                issue_number(issue_id),
                "--remove-label",
                self.in_progress_label,
            ],
            "edit",
        )


# =============================================================================
# REST backend
# =============================================================================


class GitHubRESTTracker(IssueTracker):
    """GitHub issues through the REST API."""

    name = "rest"

    def __init__(
        self,
        repo: str,
        token: str | None = None,
        base_url: str = "https://api.github.com",
        in_progress_label: str = IN_PROGRESS_LABEL,
        timeout: float = 10.0,
    ) -> None:
        self.repo = repo
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.in_progress_label = in_progress_label
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        allow_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request to the API.

        Raises:
            TrackerUnavailableError: On timeouts and transport failures
            TrackerError: On HTTP error statuses not in ``allow_statuses``
        """
        url = f"{self.base_url}/repos/{self.repo}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method, url, headers=self._headers(), **kwargs
                )
        except httpx.TimeoutException as e:
            raise TrackerUnavailableError(
                f"GitHub API {operation} timed out", operation=operation
            ) from e
        except httpx.TransportError as e:
            raise TrackerUnavailableError(
                f"Failed to connect to GitHub API: {e}", operation=operation
            ) from e

        if response.status_code >= 400 and response.status_code not in allow_statuses:
            raise TrackerError(
                f"GitHub API {operation} returned {response.status_code}: "
                f"{response.text[:200]}",
                operation=operation,
            )
        return response

    @staticmethod
    def _to_issue(item: dict[str, Any]) -> Issue:
        return Issue(
            id=str(item["number"]),
            title=item.get("title", ""),
            body=item.get("body") or "",
            labels=[label.get("name", "") for label in item.get("labels") or []],
            url=item.get("html_url"),
            state=item.get("state", "open"),
        )

    async def list_open_issues(self, label: str | None = None) -> list[Issue]:
        params: dict[str, Any] = {"state": "open", "per_page": LIST_LIMIT}
        if label:
            params["labels"] = label
        response = await self._request("GET", "/issues", "list", params=params)
        # The issues endpoint also returns pull requests
        return [
            self._to_issue(item)
            for item in response.json()
            if "pull_request" not in item
        ]

    async def create_issue(
        self, title: str, body: str = "", labels: list[str] | None = None
    ) -> Issue:
        response = await self._request(
            "POST",
            "/issues",
            "create",
            json={"title": title, "body": body, "labels": list(labels or [])},
        )
        return self._to_issue(response.json())

    async def close_issue(self, issue_id: str, comment: str | None = None) -> None:
        if comment:
            await self.comment_issue(issue_id, comment)
        await self._request(
            "PATCH",
            f"/issues/{issue_number(issue_id)}",
            "close",
            json={"state": "closed", "state_reason": "completed"},
        )

    async def comment_issue(self, issue_id: str, body: str) -> None:
        await self._request(
            "POST",
            f"/issues/{issue_number(issue_id)}/comments",
            "comment",
            json={"body": body},
        )

    async def mark_in_progress(self, issue_id: str) -> None:
        await self._request(
            "POST",
            f"/issues/{issue_number(issue_id)}/labels",
            "edit",
            json={"labels": [self.in_progress_label]},
        )

    async def clear_in_progress(self, issue_id: str) -> None:
        # 404 means the label was not set
        await self._request(
            "DELETE",
            f"/issues/{issue_number(issue_id)}/labels/{self.in_progress_label}",
            "edit",
            allow_statuses=(404,),
        )


def create_tracker(config: AgentPlanConfig) -> IssueTracker:
    """Build the tracker backend selected by the configuration.

    Raises:
        AgentPlanError: If the REST backend is selected without a repository
    """
    if config.tracker_backend == "rest":
        if not config.github_repo:
            raise AgentPlanError(
                "The REST tracker needs a repository. Set GITHUB_REPOSITORY=owner/name."
            )
        return GitHubRESTTracker(repo=config.github_repo, token=config.github_token)
    return GitHubCLITracker(repo=config.github_repo)
