from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from agent_tree.coordination.errors import InteractionStateError
from agent_tree.coordination.models import (
    EventType,
    InteractionKind,
    InteractionStatus,
    TaskCreate,
    TaskState,
    TaskTransition,
    Urgency,
)
from agent_tree.coordination.runtime import CoordinationRuntime
from agent_tree.storage.common import utc_now

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Human Interactions"),
]


def _active_task(runtime: CoordinationRuntime, title: str = "Draft memo") -> str:
    task = runtime.repository.create_task(TaskCreate(title=title))
    runtime.lifecycle.transition(task.task_id, TaskTransition.ACTIVATE)
    return task.task_id


def test_input_request_parks_the_task(runtime: CoordinationRuntime) -> None:
    task_id = _active_task(runtime)

    request = runtime.human.request_input(task_id, "Which audience?", context="memo")

    assert request.kind == InteractionKind.INPUT_REQUEST
    assert request.status == InteractionStatus.PENDING
    assert request.expires_at is not None
    assert request.expires_at > utc_now() + timedelta(hours=23)
    task = runtime.repository.require_task(task_id)
    assert task.state == TaskState.WAITING_ON_HUMAN
    assert task.waiting_for_interaction_id == request.interaction_id
    [event] = runtime.repository.list_events(event_type=EventType.HUMAN_INPUT_REQUESTED.value)
    assert event.payload["question"] == "Which audience?"


def test_non_blocking_request_leaves_the_task_active(runtime: CoordinationRuntime) -> None:
    task_id = _active_task(runtime)

    runtime.human.request_input(task_id, "Any preferences?", required=False, block_task=False)

    assert runtime.repository.require_task(task_id).state == TaskState.ACTIVE


def test_answer_resumes_the_task_with_the_response(runtime: CoordinationRuntime) -> None:
    task_id = _active_task(runtime)
    request = runtime.human.request_input(task_id, "Which audience?")

    answered = runtime.human.answer(request.interaction_id, "Engineering", responded_by="ops")

    assert answered.status == InteractionStatus.ANSWERED
    assert answered.response == "Engineering"
    assert answered.responded_by == "ops"
    task = runtime.repository.require_task(task_id)
    assert task.state == TaskState.ACTIVE
    assert task.metadata["human_response"] == "Engineering"


def test_answering_twice_is_rejected(runtime: CoordinationRuntime) -> None:
    request = runtime.human.request_input(_active_task(runtime), "Which audience?")
    runtime.human.answer(request.interaction_id, "Engineering")

    with pytest.raises(InteractionStateError, match="from answered"):
        runtime.human.answer(request.interaction_id, "Sales")


def test_optional_request_can_be_ignored(runtime: CoordinationRuntime) -> None:
    task_id = _active_task(runtime)
    request = runtime.human.request_input(task_id, "Any preferences?", required=False)

    ignored = runtime.human.ignore(request.interaction_id)

    assert ignored.status == InteractionStatus.IGNORED
    task = runtime.repository.require_task(task_id)
    assert task.state == TaskState.ACTIVE
    assert "human_response" not in task.metadata


def test_required_request_cannot_be_ignored(runtime: CoordinationRuntime) -> None:
    task_id = _active_task(runtime)
    request = runtime.human.request_input(task_id, "Which audience?")

    with pytest.raises(InteractionStateError, match="cannot be ignored"):
        runtime.human.ignore(request.interaction_id)

    assert runtime.repository.require_task(task_id).state == TaskState.WAITING_ON_HUMAN


def test_answer_rejects_an_intervention(runtime: CoordinationRuntime) -> None:
    intervention = runtime.human.raise_intervention("Disk almost full")

    with pytest.raises(InteractionStateError, match="expected input_request"):
        runtime.human.answer(intervention.interaction_id, "ok")


def test_intervention_acknowledge_then_resolve(runtime: CoordinationRuntime) -> None:
    intervention = runtime.human.raise_intervention("Disk almost full", urgency=Urgency.HIGH)
    assert intervention.kind == InteractionKind.INTERVENTION
    assert intervention.required is True

    acknowledged = runtime.human.acknowledge(intervention.interaction_id)
    resolved = runtime.human.resolve(intervention.interaction_id, "Rotated the logs")

    assert acknowledged.status == InteractionStatus.ACKNOWLEDGED
    assert resolved.status == InteractionStatus.RESOLVED
    assert resolved.response == "Rotated the logs"
    assert runtime.repository.list_events(event_type=EventType.INTERVENTION_CLOSED.value)


def test_dismissed_intervention_cannot_be_acknowledged(runtime: CoordinationRuntime) -> None:
    intervention = runtime.human.raise_intervention("Spurious alert")
    runtime.human.dismiss(intervention.interaction_id)

    with pytest.raises(InteractionStateError):
        runtime.human.acknowledge(intervention.interaction_id)

    stored = runtime.repository.get_interaction(intervention.interaction_id)
    assert stored is not None
    assert stored.status == InteractionStatus.DISMISSED


def test_expired_required_request_escalates(runtime: CoordinationRuntime) -> None:
    task_id = _active_task(runtime)
    request = runtime.human.request_input(task_id, "Which audience?")

    expired = runtime.human.expire_overdue(now=utc_now() + timedelta(hours=25))

    assert [item.interaction_id for item in expired] == [request.interaction_id]
    [escalation] = runtime.repository.list_interactions(kind=InteractionKind.INTERVENTION)
    assert escalation.urgency == Urgency.HIGH
    assert escalation.task_id == task_id
    assert "Which audience?" in escalation.question
    task = runtime.repository.require_task(task_id)
    assert task.state == TaskState.WAITING_ON_HUMAN
    assert task.waiting_for_interaction_id == escalation.interaction_id

    runtime.human.resolve(escalation.interaction_id, "Use engineering")

    assert runtime.repository.require_task(task_id).state == TaskState.ACTIVE


def test_expired_optional_request_resumes_the_task(runtime: CoordinationRuntime) -> None:
    task_id = _active_task(runtime)
    runtime.human.request_input(task_id, "Any preferences?", required=False)

    runtime.human.expire_overdue(now=utc_now() + timedelta(hours=25))

    assert runtime.repository.require_task(task_id).state == TaskState.ACTIVE
    assert runtime.repository.list_interactions(kind=InteractionKind.INTERVENTION) == []


def test_nothing_expires_before_the_deadline(runtime: CoordinationRuntime) -> None:
    runtime.human.request_input(_active_task(runtime), "Which audience?")

    assert runtime.human.expire_overdue() == []
