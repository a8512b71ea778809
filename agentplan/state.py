"""State management for issue synchronization.

Provides SyncState, the store of issues currently handed to agents and of
issues already imported as plan tasks. It is owned by one synchronizer and
saved after each change so a restarted process does not re-import issues.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STATE_FILE = "sync_state.json"


@dataclass
class PendingTask:
    """An issue handed to an agent and not yet completed.

    Attributes:
        issue_id: Tracker issue id (the agent's external reference)
        task_id: Plan task id the issue maps to, if any
        slot_id: Agent slot working on it, once assigned
        started_at: When the issue was marked in progress
    """

    issue_id: str
    task_id: str | None = None
    slot_id: int | None = None
    started_at: datetime = field(default_factory=datetime.now)


@dataclass
class SyncState:
    """Persistent synchronizer state.

    Attributes:
        pending: Map of issue id to PendingTask
        imported: Map of issue id to the plan task id created from it
    """

    pending: dict[str, PendingTask] = field(default_factory=dict)
    imported: dict[str, str] = field(default_factory=dict)

    def save(self, state_dir: Path) -> None:
        """Persist state to JSON file.

        Creates state directory if it doesn't exist.

        Args:
            state_dir: Directory to save state file in
        """
        state_dir.mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = {
            "pending": {
                issue_id: {**asdict(p), "started_at": p.started_at.isoformat()}
                for issue_id, p in self.pending.items()
            },
            "imported": dict(self.imported),
        }
        with open(state_dir / STATE_FILE, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load(cls, state_dir: Path) -> "SyncState":
        """Load state from JSON file.

        Returns an empty state when the file is missing or unreadable.

        Args:
            state_dir: Directory containing the state file
        """
        path = state_dir / STATE_FILE
        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                data = json.load(f)
            pending = {
                issue_id: PendingTask(
                    issue_id=entry["issue_id"],
                    task_id=entry.get("task_id"),
                    slot_id=entry.get("slot_id"),
                    started_at=datetime.fromisoformat(entry["started_at"]),
                )
                for issue_id, entry in data.get("pending", {}).items()
            }
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable sync state {path}: {e}")
            return cls()

        return cls(pending=pending, imported=dict(data.get("imported", {})))

    def add_pending(
        self, issue_id: str, task_id: str | None = None, slot_id: int | None = None
    ) -> PendingTask:
        """Record an issue as handed to an agent (replacing any older entry)."""
        entry = PendingTask(issue_id=issue_id, task_id=task_id, slot_id=slot_id)
        self.pending[issue_id] = entry
        return entry

    def remove_pending(self, issue_id: str) -> PendingTask | None:
        """Drop and return the pending entry for an issue, if any."""
        return self.pending.pop(issue_id, None)
