from __future__ import annotations

import allure
import pytest

from agent_tree.coordination.errors import CoordinationError
from agent_tree.coordination.events import WILDCARD, EventBus
from agent_tree.coordination.models import EventType, EventView
from agent_tree.coordination.repository import TaskGraphRepository

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Event Bus"),
]


def test_published_event_is_persisted_and_delivered(repository: TaskGraphRepository) -> None:
    bus = EventBus(repository)
    received: list[EventView] = []
    bus.subscribe(EventType.TASK_CREATED, received.append)

    event = bus.publish(EventType.TASK_CREATED, {"title": "x"}, priority="high")

    assert [item.event_id for item in received] == [event.event_id]
    stored = repository.get_event(event.event_id)
    assert stored is not None
    assert stored.event_type == "task.created"
    assert stored.payload == {"title": "x"}
    assert stored.priority == "high"


def test_wildcard_subscribers_see_every_event(repository: TaskGraphRepository) -> None:
    bus = EventBus(repository)
    everything: list[str] = []
    only_failures: list[str] = []
    bus.subscribe(WILDCARD, lambda event: everything.append(event.event_type))
    bus.subscribe(EventType.TASK_FAILED, lambda event: only_failures.append(event.event_type))

    bus.publish(EventType.TASK_CREATED)
    bus.publish(EventType.TASK_FAILED)
    bus.publish("custom.signal")

    assert everything == ["task.created", "task.failed", "custom.signal"]
    assert only_failures == ["task.failed"]


def test_failing_handler_does_not_stop_the_others(repository: TaskGraphRepository) -> None:
    bus = EventBus(repository)
    delivered: list[str] = []

    def _broken(event: EventView) -> None:
        raise RuntimeError("handler bug")

    bus.subscribe(EventType.TASK_COMPLETED, _broken)
    bus.subscribe(EventType.TASK_COMPLETED, lambda event: delivered.append(event.event_id))

    event = bus.publish(EventType.TASK_COMPLETED)

    assert delivered == [event.event_id]


def test_events_published_by_handlers_are_queued(repository: TaskGraphRepository) -> None:
    bus = EventBus(repository)
    order: list[str] = []

    def _first(event: EventView) -> None:
        order.append("first:start")
        bus.publish(EventType.TASK_ACTIVATED)
        order.append("first:end")

    bus.subscribe(EventType.TASK_CREATED, _first)
    bus.subscribe(EventType.TASK_CREATED, lambda event: order.append("second"))
    bus.subscribe(EventType.TASK_ACTIVATED, lambda event: order.append("nested"))

    bus.publish(EventType.TASK_CREATED)

    assert order == ["first:start", "first:end", "second", "nested"]


def test_replay_redelivers_a_persisted_event(repository: TaskGraphRepository) -> None:
    bus = EventBus(repository)
    event = bus.publish(EventType.TASK_FAILED, {"error": "boom"}, task_id=None)
    replayed: list[EventView] = []
    bus.subscribe(EventType.TASK_FAILED, replayed.append)

    bus.replay(event.event_id)

    assert [item.event_id for item in replayed] == [event.event_id]
    assert replayed[0].payload == {"error": "boom"}


def test_replay_of_unknown_event_fails(repository: TaskGraphRepository) -> None:
    with pytest.raises(CoordinationError, match="Event not found"):
        EventBus(repository).replay("missing")
