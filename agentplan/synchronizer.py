"""Issue synchronizer between the tracker, the plan store and the agent pool.

Single coordination point for task lifecycle transitions:

- open issues are pulled in periodically and imported as plan tasks
- an issue handed to an agent is marked in progress in the tracker and
  recorded as a pending entry keyed by issue id
- agent completion closes the issue and completes the plan task
- agent failure comments on the issue and returns the plan task to pending
- pending entries left over from a previous run are released on start

Tracker failures never propagate out of the synchronizer; they are logged
and surfaced through ``status`` and ``last_error``.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from opentelemetry import trace

from agentplan import telemetry
from agentplan.agent_pool import AgentPool, AgentSlot
from agentplan.errors import (
    AgentPlanError,
    SlotBusyError,
    TaskNotFoundError,
    TrackerError,
    TrackerUnavailableError,
)
from agentplan.models import Issue, Task
from agentplan.plan_store import MAX_TITLE_LENGTH, PlanStore
from agentplan.state import PendingTask, SyncState
from agentplan.tracker import IN_PROGRESS_LABEL, IssueTracker, issue_number

logger = logging.getLogger(__name__)

SyncStatus = Literal["idle", "ok", "degraded", "error", "unavailable"]

COMPLETION_COMMENT = "Completed by agent: the task reported completion."
FAILURE_COMMENT_TAIL = 1500
ORPHAN_COMMENT = "Agent run was interrupted; the issue is open for assignment again."


class IssueSynchronizer:
    """Keeps tracker issues, plan tasks and agent slots converged.

    Attributes:
        issues: Last successfully fetched open issues
        status: Tracker health as seen by the last operation
        last_error: Message of the last tracker failure, if any
    """

    def __init__(
        self,
        tracker: IssueTracker | None,
        store: PlanStore,
        pool: AgentPool,
        label: str | None = "agent",
        poll_interval_seconds: float = 60.0,
        state: SyncState | None = None,
        state_dir: Path | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        """Initialize the synchronizer and bind it to the pool's callbacks.

        Args:
            tracker: Issue tracker client; None means no tracker is available
            store: Plan store tasks are imported into
            pool: Agent pool whose completion events are reflected back
            label: Label selecting issues meant for agents
            poll_interval_seconds: Delay between refreshes in run()
            state: Initial sync state (loaded from state_dir when omitted)
            state_dir: Directory to persist state in; None keeps it in memory
            tracer: OpenTelemetry tracer (uses the global one if None)
        """
        self.tracker = tracker
        self.store = store
        self.pool = pool
        self.label = label
        self.poll_interval_seconds = poll_interval_seconds
        self.state_dir = state_dir
        if state is None:
            state = SyncState.load(state_dir) if state_dir else SyncState()
        self.state = state
        self.tracer = tracer or trace.get_tracer("agentplan.synchronizer")

        self.issues: list[Issue] = []
        self.status: SyncStatus = "idle" if tracker is not None else "unavailable"
        self.last_error: str | None = None if tracker is not None else (
            "No issue tracker configured"
        )
        self.last_refresh: datetime | None = None

        pool.on_complete = self.handle_completion
        pool.on_failure = self.handle_failure

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _save(self) -> None:
        if self.state_dir is None:
            return
        try:
            self.state.save(self.state_dir)
        except OSError as e:
            logger.warning(f"Could not save sync state: {e}")

    def _tracker_failed(self, operation: str, error: TrackerError) -> None:
        telemetry.tracker_errors_counter.add(1, {"operation": operation})
        logger.warning(f"Issue tracker {operation} failed: {error}")
        self.last_error = str(error)
        if isinstance(error, TrackerUnavailableError):
            self.status = "unavailable"
        elif self.status in ("idle", "ok"):
            self.status = "degraded"

    @property
    def pending(self) -> dict[str, PendingTask]:
        return self.state.pending

    def report(self) -> dict[str, Any]:
        """Serialized synchronizer state for display consumers."""
        return {
            "status": self.status,
            "last_error": self.last_error,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "open_issues": len(self.issues),
            "pending": {
                issue_id: {
                    "task_id": p.task_id,
                    "slot_id": p.slot_id,
                    "started_at": p.started_at.isoformat(),
                }
                for issue_id, p in self.state.pending.items()
            },
        }

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def refresh_issues(self) -> list[Issue]:
        """Re-fetch open issues from the tracker.

        Falls back to an unfiltered query when the labelled one fails. When
        both fail, the previous issue list is kept and the status reports
        ``unavailable`` or ``error``. Never raises.

        Returns:
            The current issue list
        """
        with self.tracer.start_as_current_span("agentplan.sync.refresh") as span:
            if self.tracker is None:
                self.status = "unavailable"
                self.last_error = "No issue tracker configured"
                span.set_attribute("sync.status", self.status)
                return self.issues

            status: SyncStatus = "ok"
            try:
                issues = await self.tracker.list_open_issues(self.label)
            except TrackerError as e:
                self._tracker_failed("list", e)
                try:
                    issues = await self.tracker.list_open_issues(None)
                    status = "degraded"
                except TrackerError as fallback_error:
                    self._tracker_failed("list", fallback_error)
                    self.status = (
                        "unavailable"
                        if isinstance(fallback_error, TrackerUnavailableError)
                        else "error"
                    )
                    span.set_attribute("sync.status", self.status)
                    return self.issues

            self.issues = issues
            self.status = status
            if status == "ok":
                self.last_error = None
            self.last_refresh = datetime.now()
            span.set_attribute("sync.status", status)
            span.set_attribute("sync.issues", len(issues))
            return issues

    # -------------------------------------------------------------------------
    # Assignment
    # -------------------------------------------------------------------------

    async def assign_issue(
        self, issue_id: str, task_id: str | None = None, slot_id: int | None = None
    ) -> PendingTask:
        """Mark an issue in progress and record it as pending.

        The caller is expected to start the agent with ``pool.assign(...,
        external_ref=issue_id)``. A tracker failure only degrades status.
        """
        issue_id = issue_number(issue_id)
        with self.tracer.start_as_current_span("agentplan.sync.assign") as span:
            span.set_attribute("issue.id", issue_id)
            if self.tracker is not None:
                try:
                    await self.tracker.mark_in_progress(issue_id)
                except TrackerError as e:
                    self._tracker_failed("mark_in_progress", e)

            entry = self.state.add_pending(issue_id, task_id=task_id, slot_id=slot_id)
            self._save()
            return entry

    async def import_issue(self, issue: Issue) -> Task:
        """Create a candidate plan task from an issue, once per issue.

        Raises:
            NoActivePhaseError: If the roadmap has no active phase
            PlanLockedError: If another process is writing the plan
        """
        task_id = self.state.imported.get(issue.id)
        if task_id is not None:
            try:
                return self.store.get_task(task_id)
            except TaskNotFoundError:
                logger.info(f"Task {task_id} for issue #{issue.id} is gone; re-importing")

        suffix = f" (#{issue.id})"
        title = issue.title.strip()[: MAX_TITLE_LENGTH - len(suffix)].rstrip() + suffix
        description = " ".join(issue.body.split())[:500] or None

        task = self.store.create_task(title, description)
        self.state.imported[issue.id] = task.id
        self._save()
        logger.info(f"Imported issue #{issue.id} as task {task.id}")
        return task

    async def dispatch(self, issue: Issue) -> AgentSlot | None:
        """Hand an issue to an available agent slot.

        Imports the issue as a plan task, marks the task in progress with the
        agent as owner, records the pending entry and starts the agent.

        Returns:
            The slot now working on the issue, or None if nothing was started
        """
        if issue.id in self.state.pending:
            return None
        slot = self.pool.available_slot()
        if slot is None:
            return None

        try:
            task = await self.import_issue(issue)
            task = self.store.update_task(
                task.id, status="in_progress", owner=f"agent{slot.id}"
            )
        except AgentPlanError as e:
            logger.warning(f"Cannot dispatch issue #{issue.id}: {e}")
            return None

        await self.assign_issue(issue.id, task_id=task.id, slot_id=slot.id)
        try:
            await self.pool.assign(slot.id, task, external_ref=issue.id)
        except SlotBusyError as e:
            logger.warning(f"Cannot dispatch issue #{issue.id}: {e}")
            await self._release(issue.id)
            return None
        return slot

    async def dispatch_available(self) -> list[AgentSlot]:
        """Dispatch labelled, unassigned open issues while slots are free."""
        started: list[AgentSlot] = []
        for issue in list(self.issues):
            if self.pool.available_slot() is None:
                break
            if self.label and self.label not in issue.labels:
                continue
            if issue.id in self.state.pending or IN_PROGRESS_LABEL in issue.labels:
                continue
            slot = await self.dispatch(issue)
            if slot is not None:
                started.append(slot)
        return started

    # -------------------------------------------------------------------------
    # Agent events
    # -------------------------------------------------------------------------

    async def handle_completion(self, external_ref: str | None, slot: AgentSlot) -> None:
        """Close the issue and complete the plan task of a finished agent."""
        if external_ref is None:
            return
        issue_id = issue_number(external_ref)

        with self.tracer.start_as_current_span("agentplan.sync.complete") as span:
            span.set_attribute("issue.id", issue_id)
            span.set_attribute("agent.slot", slot.id)

            if self.tracker is not None:
                try:
                    await self.tracker.close_issue(issue_id, COMPLETION_COMMENT)
                    telemetry.issues_closed_counter.add(1)
                except TrackerError as e:
                    self._tracker_failed("close", e)

            entry = self.state.remove_pending(issue_id)
            task_id = entry.task_id if entry and entry.task_id else (
                slot.task.id if slot.task else None
            )
            if task_id is not None:
                try:
                    self.store.update_task(task_id, status="completed")
                except AgentPlanError as e:
                    logger.warning(f"Could not complete task {task_id}: {e}")
            self._save()
            logger.info(f"Issue #{issue_id} completed by agent {slot.id}")

    async def handle_failure(self, external_ref: str | None, slot: AgentSlot) -> None:
        """Report a failed agent run on the issue and release the plan task."""
        if external_ref is None:
            return
        issue_id = issue_number(external_ref)

        with self.tracer.start_as_current_span("agentplan.sync.fail") as span:
            span.set_attribute("issue.id", issue_id)
            span.set_attribute("agent.slot", slot.id)

            tail = slot.text[-FAILURE_COMMENT_TAIL:].strip()
            body = f"Agent {slot.id} failed (exit code {slot.exit_code})."
            if tail:
                body += f"\n\n```\n{tail}\n```"
            await self._release(issue_id, comment=body)

    async def reconcile(self) -> list[str]:
        """Release pending issues that no working slot is running.

        Pending entries survive restarts but agent processes do not, so an
        entry whose slot is not working on that issue is returned to the
        tracker and the plan the same way a failed run is.

        Returns:
            Ids of the released issues
        """
        orphans = [
            issue_id
            for issue_id, entry in self.state.pending.items()
            if not self._is_running(issue_id, entry)
        ]
        for issue_id in orphans:
            logger.info(f"Issue #{issue_id} has no running agent; releasing it")
            await self._release(issue_id, comment=ORPHAN_COMMENT)
        return orphans

    def _is_running(self, issue_id: str, entry: PendingTask) -> bool:
        if entry.slot_id is None:
            return False
        try:
            slot = self.pool.slot(entry.slot_id)
        except AgentPlanError:
            return False
        return slot.status == "working" and slot.external_ref == issue_id

    async def _release(self, issue_id: str, comment: str | None = None) -> None:
        """Return an issue to the tracker and its plan task to pending."""
        if self.tracker is not None:
            try:
                if comment:
                    await self.tracker.comment_issue(issue_id, comment)
                await self.tracker.clear_in_progress(issue_id)
            except TrackerError as e:
                self._tracker_failed("release", e)

        entry = self.state.remove_pending(issue_id)
        if entry is not None and entry.task_id is not None:
            try:
                self.store.update_task(entry.task_id, status="pending", owner=None)
            except AgentPlanError as e:
                logger.warning(f"Could not release task {entry.task_id}: {e}")
        self._save()

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(
        self, stop_event: asyncio.Event | None = None, auto_assign: bool = True
    ) -> None:
        """Refresh (and optionally dispatch) every poll interval until stopped."""
        stop_event = stop_event or asyncio.Event()
        await self.reconcile()
        while not stop_event.is_set():
            await self.refresh_issues()
            if auto_assign:
                await self.dispatch_available()
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
