from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure

from agent_tree.coordination.models import TaskPriority, TaskState, TaskView
from agent_tree.coordination.scheduling import (
    is_eligible,
    next_batch,
    select_eligible,
    status_report,
    stragglers,
)

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Scheduling"),
]

_BASE = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def _task(  # noqa: PLR0913
    task_id: str,
    *,
    state: TaskState = TaskState.PENDING,
    priority: TaskPriority = TaskPriority.NORMAL,
    depends_on: tuple[str, ...] = (),
    complexity: str = "simple",
    position: int = 0,
    minutes: int = 0,
    superseded_by: str | None = None,
) -> TaskView:
    metadata: dict[str, object] = {"complexity": complexity}
    if superseded_by is not None:
        metadata["superseded_by"] = superseded_by
    created = _BASE + timedelta(minutes=minutes)
    return TaskView(
        task_id=task_id,
        title=task_id,
        description="",
        state=state,
        priority=priority,
        task_type="general",
        parent_id="root",
        project_id=None,
        position=position,
        depends_on=depends_on,
        metadata=metadata,
        result=None,
        error_message=None,
        notes=(),
        created_at=created,
        updated_at=created,
    )


def test_pending_task_with_completed_dependencies_is_eligible() -> None:
    states = {"a": TaskState.COMPLETED, "b": TaskState.COMPLETED}

    assert is_eligible(_task("c", depends_on=("a", "b")), states)


def test_unfinished_or_unknown_dependency_blocks_eligibility() -> None:
    states = {"a": TaskState.COMPLETED, "b": TaskState.ACTIVE}

    assert not is_eligible(_task("c", depends_on=("a", "b")), states)
    assert not is_eligible(_task("d", depends_on=("missing",)), states)


def test_only_pending_tasks_are_eligible() -> None:
    assert not is_eligible(_task("a", state=TaskState.ACTIVE), {})
    assert not is_eligible(_task("a", state=TaskState.FAILED), {})


def test_select_eligible_is_deterministic() -> None:
    subtasks = [
        _task("late", minutes=5),
        _task("urgent", priority=TaskPriority.HIGH, minutes=9),
        _task("early", minutes=1),
        _task("blocked", depends_on=("early",)),
        _task("running", state=TaskState.ACTIVE),
    ]

    first = [task.task_id for task in select_eligible(subtasks)]
    second = [task.task_id for task in select_eligible(list(reversed(subtasks)))]

    assert first == ["urgent", "early", "late"]
    assert second == first


def test_next_batch_prefers_priority_then_simplicity() -> None:
    eligible = [
        _task("normal-complex", complexity="complex"),
        _task("low-simple", priority=TaskPriority.LOW),
        _task("normal-simple"),
        _task("high-moderate", priority=TaskPriority.HIGH, complexity="moderate"),
    ]

    batch = next_batch(eligible, 3)

    assert [task.task_id for task in batch] == [
        "high-moderate",
        "normal-simple",
        "normal-complex",
    ]


def test_superseded_subtasks_do_not_hold_back_completion() -> None:
    subtasks = [
        _task("old", state=TaskState.FAILED, superseded_by="new"),
        _task("new", state=TaskState.COMPLETED),
    ]

    assert stragglers(subtasks) == []


def test_status_report_counts_live_subtasks() -> None:
    report = status_report(
        [
            _task("a", state=TaskState.COMPLETED, priority=TaskPriority.HIGH),
            _task("b", state=TaskState.ACTIVE),
            _task("c", state=TaskState.FAILED, superseded_by="d"),
            _task("d", state=TaskState.COMPLETED),
        ],
    )

    assert report.total == 3
    assert report.by_state == {"completed": 2, "active": 1}
    assert report.by_priority == {"high": 1, "normal": 2}
    assert report.completion_percent == 66.7
