from __future__ import annotations

import dataclasses

import allure
import pytest

from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.errors import InvalidTransitionError
from agent_tree.coordination.lifecycle import RECOVERY_PENDING
from agent_tree.coordination.models import (
    EventType,
    EventView,
    ProjectCreate,
    ProjectStatus,
    TaskCreate,
    TaskState,
    TaskTransition,
)
from agent_tree.coordination.runtime import CoordinationRuntime

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Lifecycle"),
]


def _task(runtime: CoordinationRuntime, **kwargs) -> str:
    return runtime.repository.create_task(TaskCreate(title="t", **kwargs)).task_id


def test_task_view_is_read_only(runtime: CoordinationRuntime) -> None:
    task = runtime.repository.require_task(_task(runtime))

    with pytest.raises(dataclasses.FrozenInstanceError):
        task.state = TaskState.COMPLETED  # type: ignore[misc]


def test_guard_rejection_raises_and_leaves_state(runtime: CoordinationRuntime) -> None:
    task_id = _task(runtime)

    with pytest.raises(InvalidTransitionError, match="Cannot complete task"):
        runtime.lifecycle.complete(task_id, result="done")

    assert runtime.repository.require_task(task_id).state == TaskState.PENDING
    assert runtime.repository.list_events(event_type=EventType.TASK_COMPLETED.value) == []


def test_try_transition_returns_none_on_rejection(runtime: CoordinationRuntime) -> None:
    task_id = _task(runtime)

    assert runtime.lifecycle.try_transition(task_id, TaskTransition.RESUME) is None


def test_event_is_published_after_the_state_is_committed(
    runtime: CoordinationRuntime,
) -> None:
    task_id = _task(runtime)
    seen: list[tuple[str, TaskState]] = []

    def _observe(event: EventView) -> None:
        assert event.task_id is not None
        stored = runtime.repository.require_task(event.task_id)
        seen.append((event.event_type, stored.state))

    runtime.bus.subscribe(EventType.TASK_ACTIVATED, _observe)
    runtime.lifecycle.transition(task_id, TaskTransition.ACTIVATE)

    assert seen == [(EventType.TASK_ACTIVATED.value, TaskState.ACTIVE)]


def test_fail_marks_recovery_pending(runtime: CoordinationRuntime) -> None:
    task_id = _task(runtime)
    runtime.lifecycle.transition(task_id, TaskTransition.ACTIVATE)

    failed = runtime.lifecycle.fail(task_id, error="worker crashed")

    assert failed.state == TaskState.FAILED
    assert failed.error_message == "worker crashed"
    assert failed.metadata[RECOVERY_PENDING] is True
    [event] = runtime.repository.list_events(event_type=EventType.TASK_FAILED.value)
    assert event.payload["error"] == "worker crashed"


def test_resume_requires_the_recorded_blocking_cause(runtime: CoordinationRuntime) -> None:
    task_id = _task(runtime)
    runtime.lifecycle.transition(task_id, TaskTransition.ACTIVATE)
    runtime.lifecycle.wait_on_human(task_id, interaction_id="i-1")

    assert runtime.lifecycle.resume(task_id, interaction_id="i-2") is None
    assert runtime.repository.require_task(task_id).state == TaskState.WAITING_ON_HUMAN

    resumed = runtime.lifecycle.resume(task_id, interaction_id="i-1", response="use 2025")

    assert resumed is not None
    assert resumed.state == TaskState.ACTIVE
    assert resumed.waiting_for_interaction_id is None
    assert resumed.metadata["human_response"] == "use 2025"


def test_requeue_and_skip_only_leave_failed(runtime: CoordinationRuntime) -> None:
    task_id = _task(runtime)

    with pytest.raises(InvalidTransitionError):
        runtime.lifecycle.requeue(task_id)

    runtime.lifecycle.fail(task_id, error="x")
    skipped = runtime.lifecycle.skip(task_id, result="not needed")

    assert skipped.state == TaskState.COMPLETED
    assert runtime.repository.list_events(event_type=EventType.TASK_SKIPPED.value)


def test_activate_enqueues_a_coordinator(runtime: CoordinationRuntime) -> None:
    task_id = _task(runtime)

    activated = runtime.lifecycle.activate(task_id)

    assert activated is not None
    assert activated.state == TaskState.ACTIVE
    assert "coordinator_spawned_at" in activated.metadata
    assert runtime.repository.has_active_job(task_id=task_id, agent_type=AgentType.COORDINATOR)


def test_activation_is_deferred_while_project_paused(runtime: CoordinationRuntime) -> None:
    project = runtime.repository.create_project(ProjectCreate(name="Atlas"))
    runtime.repository.set_project_status(
        project.project_id,
        status=ProjectStatus.PAUSED,
        expected=(ProjectStatus.PENDING,),
    )
    task_id = _task(runtime, project_id=project.project_id)

    assert runtime.lifecycle.activate(task_id) is None
    assert runtime.repository.require_task(task_id).state == TaskState.PENDING
    assert runtime.repository.list_jobs() == []


def test_completing_the_last_root_closes_the_project(runtime: CoordinationRuntime) -> None:
    project = runtime.repository.create_project(ProjectCreate(name="Atlas"))
    runtime.repository.set_project_status(
        project.project_id,
        status=ProjectStatus.ACTIVE,
        expected=(ProjectStatus.PENDING,),
    )
    first = _task(runtime, project_id=project.project_id)
    second = _task(runtime, project_id=project.project_id)
    for task_id in (first, second):
        runtime.lifecycle.transition(task_id, TaskTransition.ACTIVATE)

    runtime.lifecycle.complete(first, result="one")
    assert runtime.repository.get_project(project.project_id).status == ProjectStatus.ACTIVE

    runtime.lifecycle.complete(second, result="two")
    assert runtime.repository.get_project(project.project_id).status == ProjectStatus.COMPLETED
