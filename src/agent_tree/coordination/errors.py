"""Exceptions raised by the coordination layer."""

from __future__ import annotations


class CoordinationError(RuntimeError):
    """Base class for task graph and coordination failures."""


class TaskNotFoundError(CoordinationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(CoordinationError):
    """A lifecycle transition was requested from a state that does not allow it."""

    def __init__(self, *, task_id: str, transition: str, state: str) -> None:
        super().__init__(f"Cannot {transition} task {task_id} from state={state}")
        self.task_id = task_id
        self.transition = transition
        self.state = state


class DependencyCycleError(CoordinationError):
    def __init__(self, *, task_id: str, depends_on_id: str) -> None:
        super().__init__(
            f"Linking {task_id} -> {depends_on_id} would create a dependency cycle",
        )
        self.task_id = task_id
        self.depends_on_id = depends_on_id


class InteractionStateError(CoordinationError):
    """Operator action is not allowed for the interaction's kind or status."""


class PlannerError(CoordinationError):
    """Planner backend failed to produce a completion."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient
