"""Configuration for agentplan.

Provides centralized configuration with sensible defaults and environment
variable overrides for the project layout, agent pool, issue tracker and
telemetry.
"""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

TrackerBackend = Literal["gh", "rest"]


@dataclass
class AgentPlanConfig:
    """Configuration for plan, pool and tracker.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Project layout
    project_root: Path = field(default_factory=Path.cwd)

    # Agent pool settings
    pool_size: int = 3
    agent_command: list[str] = field(default_factory=lambda: ["claude", "-p"])
    sentinel: str = "TASK_COMPLETE"

    # Issue tracker settings
    tracker_backend: TrackerBackend = "gh"
    github_repo: str | None = None
    github_token: str | None = None
    issue_label: str = "agent"
    poll_interval_seconds: float = 60.0

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "agentplan"

    # State persistence
    state_dir: Path = field(default_factory=lambda: Path(".agentplan"))

    @classmethod
    def from_env(cls) -> "AgentPlanConfig":
        """Load config with environment variable overrides.

        Environment variables:
            AGENTPLAN_ROOT: Project root (default: current directory)
            AGENTPLAN_POOL_SIZE: Number of agent slots (default: 3)
            AGENTPLAN_AGENT_COMMAND: Worker command, shell-split (default: claude -p)
            AGENTPLAN_TRACKER: Tracker backend, "gh" or "rest" (default: gh)
            GITHUB_REPOSITORY: owner/name of the tracked repository
            GITHUB_TOKEN / GH_TOKEN: Token for the REST backend
            AGENTPLAN_ISSUE_LABEL: Label selecting agent issues (default: agent)
            AGENTPLAN_POLL_INTERVAL: Seconds between issue refreshes (default: 60)
            AGENTPLAN_STATE_DIR: Sync state directory (default: .agentplan)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        command = os.getenv("AGENTPLAN_AGENT_COMMAND")
        tracker = os.getenv("AGENTPLAN_TRACKER", "gh")
        if tracker not in ("gh", "rest"):
            raise ValueError(f"AGENTPLAN_TRACKER must be 'gh' or 'rest', got {tracker!r}")

        return cls(
            project_root=Path(os.getenv("AGENTPLAN_ROOT", ".")).resolve(),
            pool_size=int(os.getenv("AGENTPLAN_POOL_SIZE", "3")),
            agent_command=shlex.split(command) if command else ["claude", "-p"],
            tracker_backend=tracker,  # type: ignore[arg-type]
            github_repo=os.getenv("GITHUB_REPOSITORY"),
            github_token=os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN"),
            issue_label=os.getenv("AGENTPLAN_ISSUE_LABEL", "agent"),
            poll_interval_seconds=float(os.getenv("AGENTPLAN_POLL_INTERVAL", "60")),
            state_dir=Path(os.getenv("AGENTPLAN_STATE_DIR", ".agentplan")),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
