from __future__ import annotations

import allure
from conftest import ScriptedPlanner

from agent_tree.coordination.coordinator import SUMMARY_FALLBACK
from agent_tree.coordination.errors import PlannerError
from agent_tree.coordination.models import (
    EventType,
    TaskCreate,
    TaskState,
    TaskTransition,
    TaskView,
)
from agent_tree.coordination.runtime import CoordinationRuntime

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Finalization"),
]


def _parent_with_children(
    runtime: CoordinationRuntime,
    *titles: str,
) -> tuple[TaskView, list[TaskView]]:
    parent = runtime.repository.create_task(TaskCreate(title="Quarterly report"))
    runtime.lifecycle.transition(parent.task_id, TaskTransition.ACTIVATE)
    children = []
    for position, title in enumerate(titles, start=1):
        child = runtime.repository.create_task(
            TaskCreate(title=title, parent_id=parent.task_id, position=position),
        )
        runtime.lifecycle.transition(child.task_id, TaskTransition.ACTIVATE)
        children.append(child)
    return parent, children


def test_completion_is_rejected_while_subtasks_are_open(runtime: CoordinationRuntime) -> None:
    parent, (done, open_child) = _parent_with_children(runtime, "Gather", "Write")
    runtime.lifecycle.complete(done.task_id, result="numbers")

    result = runtime.coordinator.mark_complete(parent.task_id)

    assert result.completed is False
    assert result.stragglers == (open_child.task_id,)
    assert runtime.repository.require_task(parent.task_id).state == TaskState.ACTIVE


def test_completion_summarizes_live_subtasks_once(
    runtime: CoordinationRuntime,
    planner: ScriptedPlanner,
) -> None:
    parent, children = _parent_with_children(runtime, "Gather", "Write")
    for child in children:
        runtime.lifecycle.complete(child.task_id, result=f"{child.title} output")

    first = runtime.coordinator.mark_complete(parent.task_id)
    second = runtime.coordinator.mark_complete(parent.task_id)

    assert first.completed is True
    assert first.summary == "Combined summary of all subtasks."
    assert second.completed is True
    assert second.summary == first.summary
    assert planner.count("summary") == 1
    prompt = planner.prompts["summary"][0]
    assert "## Subtask: Gather\nGather output" in prompt
    assert "## Subtask: Write\nWrite output" in prompt
    completed_events = runtime.repository.list_events(
        event_type=EventType.TASK_COMPLETED.value,
        task_id=parent.task_id,
    )
    assert len(completed_events) == 1
    finished = runtime.repository.require_task(parent.task_id)
    assert "Task completed" in finished.notes


def test_explicit_summary_skips_the_planner(
    runtime: CoordinationRuntime,
    planner: ScriptedPlanner,
) -> None:
    parent, (child,) = _parent_with_children(runtime, "Gather")
    runtime.lifecycle.complete(child.task_id, result="numbers")

    result = runtime.coordinator.mark_complete(parent.task_id, summary="Operator summary")

    assert result.summary == "Operator summary"
    assert planner.count("summary") == 0
    assert runtime.repository.require_task(parent.task_id).result == "Operator summary"


def test_summary_outage_falls_back_to_fixed_text(
    runtime: CoordinationRuntime,
    planner: ScriptedPlanner,
) -> None:
    planner.script("summary", PlannerError("planner down", transient=True))
    parent, (child,) = _parent_with_children(runtime, "Gather")
    runtime.lifecycle.complete(child.task_id, result="numbers")

    result = runtime.coordinator.mark_complete(parent.task_id)

    assert result.completed is True
    assert result.summary == SUMMARY_FALLBACK


def test_superseded_subtask_does_not_block_completion(runtime: CoordinationRuntime) -> None:
    parent, (old, replacement) = _parent_with_children(runtime, "Fetch", "Redefined: Fetch")
    runtime.lifecycle.fail(old.task_id, error="HTTP 503")
    runtime.repository.update_task(
        old.task_id,
        metadata_updates={"superseded_by": replacement.task_id},
    )
    runtime.lifecycle.complete(replacement.task_id, result="rows")

    result = runtime.coordinator.mark_complete(parent.task_id)

    assert result.completed is True
    assert runtime.repository.require_task(parent.task_id).state == TaskState.COMPLETED
