"""Data models for agentplan.

Defines dataclasses for plan tasks, phases, milestones and tracker issues.
All models are JSON serializable via dataclasses.asdict() for consumers
that render derived state.
"""

from dataclasses import dataclass, field
from typing import Iterable, Literal

TaskStatus = Literal["pending", "in_progress", "completed"]


def derive_status(
    statuses: Iterable[TaskStatus], default: TaskStatus = "pending"
) -> TaskStatus:
    """Derive a parent status from its children's statuses.

    completed iff every child is completed, in_progress iff any child is
    in progress, pending otherwise. An empty sequence yields ``default``.
    """
    statuses = list(statuses)
    if not statuses:
        return default
    if all(s == "completed" for s in statuses):
        return "completed"
    if any(s == "in_progress" for s in statuses):
        return "in_progress"
    return "pending"


@dataclass
class Task:
    """A task parsed from a phase plan document.

    Identity is (phase, number); ``id`` is the rendered "<phase>-<number>".
    """

    id: str
    title: str
    status: TaskStatus
    owner: str | None
    phase: int
    number: int
    criteria_done: int = 0
    criteria_total: int = 0
    goal: str | None = None


@dataclass
class Phase:
    """A roadmap phase and the tasks of its plan document."""

    number: int
    name: str
    status: TaskStatus = "pending"
    tasks: list[Task] = field(default_factory=list)

    def derive(self) -> "Phase":
        """Normalize status from tasks, keeping the marker when there are none."""
        self.status = derive_status((t.status for t in self.tasks), self.status)
        return self


@dataclass
class Milestone:
    """Optional grouping of phases parsed from the roadmap."""

    name: str
    status: TaskStatus = "pending"
    phase_numbers: list[int] = field(default_factory=list)


@dataclass
class Issue:
    """An open issue fetched from the external tracker."""

    id: str
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    url: str | None = None
    state: str = "open"
