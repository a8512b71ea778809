"""Shared error types for the agentplan package."""


class AgentPlanError(Exception):
    """Base exception for agentplan errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ValidationError(AgentPlanError):
    """Raised when caller-supplied task data is invalid."""

    pass


class NoActivePhaseError(AgentPlanError):
    """Raised when the roadmap has no pending or in-progress phase."""

    pass


class TaskNotFoundError(AgentPlanError):
    """Raised when a task id does not resolve to a task in any plan."""

    pass


class PlanLockedError(AgentPlanError):
    """Raised when another live process holds a plan document lock."""

    pass


class SlotBusyError(AgentPlanError):
    """Raised when assigning work to a slot that is already working."""

    pass


class UnknownSlotError(AgentPlanError):
    """Raised for slot ids outside the pool."""

    pass


class TrackerError(AgentPlanError):
    """Raised when an issue tracker operation fails."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class TrackerUnavailableError(TrackerError):
    """Raised when the issue tracker cannot be reached at all.

    Covers a missing CLI binary as well as network-level failures.
    """

    pass
