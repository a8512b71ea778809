"""Lock manager for plan document writes.

Provides PID-based locking so that only one process at a time rewrites a
given plan document. Within one process, writes are already serialized by
the single event-loop thread.
"""

import os
from pathlib import Path
from types import TracebackType

from agentplan.errors import PlanLockedError


class PlanLock:
    """PID-based lock guarding one plan document.

    The lock file sits next to the document (``01-PLAN.md.lock``) and
    contains the holder's PID.

    Usage:
        with PlanLock(plan_path):
            plan_path.write_text(new_content)

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, plan_path: Path) -> None:
        """Initialize lock manager.

        Args:
            plan_path: Plan document the lock protects
        """
        self.lock_path = plan_path.with_name(plan_path.name + ".lock")

    def acquire(self) -> bool:
        """Try to acquire the lock.

        The lock file is created exclusively, so two processes racing for a
        free lock cannot both win. Stale locks (from dead processes, or left
        behind by this process) are removed and the create is retried once.

        Returns:
            True if lock acquired, False if held by another running process
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        if self._create():
            return True

        try:
            content = self.lock_path.read_text().strip()
        except FileNotFoundError:
            # Released between the create attempt and the read
            return self._create()
        if not content:
            # Just created by another process that has not written its PID yet
            return False

        holder_pid = int(content) if content.isdigit() else None
        if (
            holder_pid is not None
            and holder_pid != os.getpid()
            and self._is_process_running(holder_pid)
        ):
            return False

        self.lock_path.unlink(missing_ok=True)
        return self._create()

    def _create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock.

        Safe to call even if lock doesn't exist.
        """
        if self.lock_path.exists():
            self.lock_path.unlink()

    def get_holder_pid(self) -> int | None:
        """Get PID of lock holder.

        Returns:
            PID as int if lock exists and contains valid PID, None otherwise
        """
        if not self.lock_path.exists():
            return None

        try:
            return int(self.lock_path.read_text().strip())
        except ValueError:
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 only checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, but owned by another user
            return True

    def __enter__(self) -> "PlanLock":
        """Acquire lock on context entry.

        Raises:
            PlanLockedError: If lock is already held by another running process
        """
        if not self.acquire():
            holder_pid = self.get_holder_pid()
            raise PlanLockedError(
                f"Plan document is being written by another process (PID: {holder_pid})"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release lock on context exit."""
        self.release()
