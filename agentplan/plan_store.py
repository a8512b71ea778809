"""Plan store: filesystem access for the roadmap and phase plan documents.

Layout under a project root:

    ROADMAP.md
    phases/
        01-setup/01-PLAN.md
        02-phase2/02-PLAN.md

Read paths never raise on missing or unreadable files; they return empty
results so consumers can render partial filesystem state. Write paths
create missing directories and documents on demand.
"""

import logging
import re
from pathlib import Path

from agentplan import plan_parser, telemetry
from agentplan.errors import (
    NoActivePhaseError,
    TaskNotFoundError,
    ValidationError,
)
from agentplan.lock import PlanLock
from agentplan.models import Milestone, Phase, Task, TaskStatus

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
ROADMAP_FILE = "ROADMAP.md"
PHASES_DIR = "phases"

PHASE_DIR_RE = re.compile(r"^(\d+)-")
TASK_ID_RE = re.compile(r"^(\d+)-(\d+)$")
OWNER_RE = re.compile(r"^[\w.-]+$")

_UNSET = object()


class PlanStore:
    """Owns the on-disk plan state of one project.

    Attributes:
        project_root: Directory holding ROADMAP.md and phases/
    """

    def __init__(self, project_root: str | Path) -> None:
        self.project_root = Path(project_root)

    @property
    def roadmap_path(self) -> Path:
        return self.project_root / ROADMAP_FILE

    @property
    def phases_dir(self) -> Path:
        return self.project_root / PHASES_DIR

    # -------------------------------------------------------------------------
    # Filesystem helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _read(path: Path) -> str | None:
        """Read a file, returning None when it is missing or unreadable."""
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    def phase_dirs(self) -> dict[int, Path]:
        """Map phase number to its directory (first match by name wins)."""
        try:
            entries = sorted(self.phases_dir.iterdir())
        except OSError:
            return {}

        dirs: dict[int, Path] = {}
        for entry in entries:
            match = PHASE_DIR_RE.match(entry.name)
            if match and entry.is_dir():
                dirs.setdefault(int(match.group(1)), entry)
        return dirs

    @staticmethod
    def plan_path_in(phase_dir: Path) -> Path:
        """Plan document path for a phase directory (``NN-slug/NN-PLAN.md``)."""
        prefix = phase_dir.name.split("-", 1)[0]
        return phase_dir / f"{prefix}-PLAN.md"

    def plan_path(self, phase: int) -> Path | None:
        """Plan document path of an existing phase directory."""
        phase_dir = self.phase_dirs().get(phase)
        return self.plan_path_in(phase_dir) if phase_dir else None

    def _ensure_plan_path(self, phase: Phase) -> Path:
        phase_dir = self.phase_dirs().get(phase.number)
        if phase_dir is None:
            phase_dir = self.phases_dir / f"{phase.number:02d}-phase{phase.number}"
            phase_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created phase directory {phase_dir}")
        return self.plan_path_in(phase_dir)

    def _roadmap_phases(self) -> tuple[list[Milestone], list[Phase]] | None:
        content = self._read(self.roadmap_path)
        if content is None:
            return None
        return plan_parser.parse_roadmap(content)

    def _phase_tasks(self, phase: int) -> list[Task]:
        path = self.plan_path(phase)
        if path is None:
            return []
        content = self._read(path)
        if content is None:
            return []
        return plan_parser.parse_tasks(content, phase)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_tasks(self) -> list[Task]:
        """Aggregate the tasks of every phase plan document.

        Returns:
            Tasks sorted by (phase, number); empty when the roadmap or the
            phases directory is missing
        """
        if not self.roadmap_path.is_file():
            return []

        tasks: list[Task] = []
        for number in self.phase_dirs():
            tasks.extend(self._phase_tasks(number))

        return sorted(tasks, key=lambda t: (t.phase, t.number))

    def get_task(self, task_id: str) -> Task:
        """Look up one task by id.

        Raises:
            TaskNotFoundError: If the id is malformed or unknown
        """
        phase, number = self._split_task_id(task_id)
        for task in self._phase_tasks(phase):
            if task.number == number:
                return task
        raise TaskNotFoundError(f"Task {task_id} not found")

    def get_phases(self) -> list[Phase]:
        """Roadmap phases with their plan tasks and derived statuses."""
        parsed = self._roadmap_phases()
        if parsed is None:
            return []
        _, phases = parsed
        for phase in phases:
            phase.tasks = self._phase_tasks(phase.number)
            phase.derive()
        return phases

    def get_milestones(self) -> list[Milestone]:
        """Roadmap milestones with statuses derived from their phases."""
        parsed = self._roadmap_phases()
        if parsed is None:
            return []
        milestones, phases = parsed
        for phase in phases:
            phase.tasks = self._phase_tasks(phase.number)
            phase.derive()
        plan_parser.normalize_milestones(milestones, phases)
        return milestones

    def active_phase(self) -> Phase | None:
        """First roadmap phase marked in progress, else first marked pending."""
        parsed = self._roadmap_phases()
        if parsed is None:
            return None
        _, phases = parsed
        for wanted in ("in_progress", "pending"):
            for phase in phases:
                if phase.status == wanted:
                    return phase
        return None

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create_task(self, title: str, description: str | None = None) -> Task:
        """Append a new pending task to the active phase's plan document.

        Args:
            title: Task title, 1-200 characters
            description: Optional goal text

        Returns:
            The created Task with its assigned id

        Raises:
            ValidationError: If the title is empty or too long
            NoActivePhaseError: If no roadmap phase is pending or in progress
            PlanLockedError: If another process is writing the plan document
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("Task title is required")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(
                f"Task title must be at most {MAX_TITLE_LENGTH} characters "
                f"(got {len(title)})"
            )

        phase = self.active_phase()
        if phase is None:
            raise NoActivePhaseError(
                f"No active phase in {self.roadmap_path}. "
                "Mark a phase '[>]' or leave one pending."
            )

        plan_path = self._ensure_plan_path(phase)
        with PlanLock(plan_path):
            content = self._read(plan_path)
            if content is None:
                content = f"# Phase {phase.number}: {phase.name} Plan\n"
            new_content, task = plan_parser.append_task(
                content, phase.number, title, description
            )
            plan_path.write_text(new_content, encoding="utf-8")

        logger.info(f"Created task {task.id}: {task.title}")
        telemetry.tasks_created_counter.add(1, {"phase": phase.number})
        return task

    def update_task(
        self,
        task_id: str,
        status: TaskStatus | None = None,
        owner: str | None | object = _UNSET,
    ) -> Task:
        """Rewrite a task's marker.

        Args:
            task_id: Task id ("<phase>-<number>")
            status: New status, or None to keep the current one
            owner: New owner handle, None to clear it, omitted to keep it

        Returns:
            The task as re-read from the rewritten document

        Raises:
            TaskNotFoundError: If the task does not exist
            ValidationError: If the owner handle is malformed
        """
        task = self.get_task(task_id)
        new_status = status or task.status
        new_owner = task.owner if owner is _UNSET else owner
        if new_owner is not None and not (
            isinstance(new_owner, str) and OWNER_RE.match(new_owner)
        ):
            raise ValidationError(f"Invalid owner handle: {new_owner!r}")

        plan_path = self.plan_path(task.phase)
        if plan_path is None:
            raise TaskNotFoundError(f"Plan document for task {task_id} not found")
        with PlanLock(plan_path):
            content = self._read(plan_path) or ""
            plan_path.write_text(
                plan_parser.set_task_marker(content, task.number, new_status, new_owner),
                encoding="utf-8",
            )

        logger.debug(f"Task {task_id} marked {new_status} (owner: {new_owner})")
        return self.get_task(task_id)

    def set_criterion(self, task_id: str, index: int, done: bool) -> Task:
        """Check or uncheck one acceptance criterion of a task.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = self.get_task(task_id)
        plan_path = self.plan_path(task.phase)
        if plan_path is None:
            raise TaskNotFoundError(f"Plan document for task {task_id} not found")
        with PlanLock(plan_path):
            content = self._read(plan_path) or ""
            plan_path.write_text(
                plan_parser.set_criterion(content, task.number, index, done),
                encoding="utf-8",
            )
        return self.get_task(task_id)

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------

    def is_approved(self, plan_path: str | Path) -> bool:
        """Check the approval stamp; False for a missing document."""
        content = self._read(Path(plan_path))
        return content is not None and plan_parser.is_approved(content)

    def approve_plan(self, plan_path: str | Path) -> None:
        """Stamp a plan document as approved; no-op for a missing document."""
        plan_path = Path(plan_path)
        content = self._read(plan_path)
        if content is None:
            return
        stamped = plan_parser.approve(content)
        if stamped == content:
            return
        with PlanLock(plan_path):
            plan_path.write_text(stamped, encoding="utf-8")
        logger.info(f"Approved {plan_path}")

    @staticmethod
    def _split_task_id(task_id: str) -> tuple[int, int]:
        match = TASK_ID_RE.match(task_id.strip())
        if not match:
            raise TaskNotFoundError(f"Task {task_id} not found (expected '<phase>-<n>')")
        return int(match.group(1)), int(match.group(2))
