"""Pure helpers for eligibility, batching and progress of sibling subtasks."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from agent_tree.coordination.models import SubtaskStatusReport, TaskState, TaskView


def is_eligible(task: TaskView, states: Mapping[str, TaskState]) -> bool:
    """Pending and every dependency completed.

    ``states`` maps task id to state for the task's siblings; an unknown
    dependency never counts as completed.
    """

    if task.state != TaskState.PENDING:
        return False
    return all(states.get(dependency) == TaskState.COMPLETED for dependency in task.depends_on)


def select_eligible(subtasks: Sequence[TaskView]) -> list[TaskView]:
    """Eligible subtasks in a deterministic order for identical input."""

    states = {task.task_id: task.state for task in subtasks}
    eligible = [task for task in subtasks if is_eligible(task, states)]
    return sorted(
        eligible,
        key=lambda task: (task.priority.rank, task.created_at, task.position, task.task_id),
    )


def next_batch(eligible: Sequence[TaskView], batch_size: int) -> list[TaskView]:
    """Priority first, then simpler work first; creation order breaks ties."""

    ordered = sorted(eligible, key=lambda task: (task.priority.rank, task.complexity.rank))
    return ordered[:batch_size]


def live_subtasks(subtasks: Iterable[TaskView]) -> list[TaskView]:
    """Subtasks not replaced by a redefinition."""

    return [task for task in subtasks if task.superseded_by is None]


def stragglers(subtasks: Iterable[TaskView]) -> list[TaskView]:
    return [task for task in live_subtasks(subtasks) if task.state != TaskState.COMPLETED]


def status_report(subtasks: Sequence[TaskView]) -> SubtaskStatusReport:
    """Counts by state and priority plus completion percentage of live subtasks."""

    live = live_subtasks(subtasks)
    by_state: dict[str, int] = {}
    by_priority: dict[str, int] = {}
    for task in live:
        by_state[task.state.value] = by_state.get(task.state.value, 0) + 1
        by_priority[task.priority.value] = by_priority.get(task.priority.value, 0) + 1
    completed = by_state.get(TaskState.COMPLETED.value, 0)
    percent = round(completed * 100.0 / len(live), 1) if live else 0.0
    return SubtaskStatusReport(
        total=len(live),
        by_state=by_state,
        by_priority=by_priority,
        completion_percent=percent,
    )
