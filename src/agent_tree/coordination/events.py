"""Typed pub/sub over the persisted event log."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from agent_tree.coordination.errors import CoordinationError
from agent_tree.coordination.models import EventType, EventView
from agent_tree.coordination.repository import TaskGraphRepository

logger = logging.getLogger(__name__)

WILDCARD = "*"

EventHandler = Callable[[EventView], None]


class EventBus:
    """Persist each event, then deliver it synchronously to subscribers.

    Events published from inside a handler are queued and delivered after the
    current event finishes, so handlers never run re-entrantly.
    """

    def __init__(self, repository: TaskGraphRepository) -> None:
        self.repository = repository
        self._handlers: dict[str, list[EventHandler]] = {}
        self._pending: deque[EventView] = deque()
        self._delivering = False

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        self._handlers.setdefault(_event_key(event_type), []).append(handler)

    def subscribers(self, event_type: EventType | str) -> list[EventHandler]:
        return list(self._handlers.get(_event_key(event_type), []))

    def publish(  # noqa: PLR0913
        self,
        event_type: EventType | str,
        payload: dict[str, Any] | None = None,
        *,
        task_id: str | None = None,
        parent_task_id: str | None = None,
        project_id: str | None = None,
        job_id: str | None = None,
        priority: str | None = None,
    ) -> EventView:
        event = self.repository.record_event(
            event_type=_event_key(event_type),
            payload=payload,
            task_id=task_id,
            parent_task_id=parent_task_id,
            project_id=project_id,
            job_id=job_id,
            priority=priority,
        )
        logger.debug("Published %s (task=%s)", event.event_type, task_id)
        self.deliver(event)
        return event

    def replay(self, event_id: str) -> EventView:
        """Re-deliver a persisted event to the current subscribers."""

        event = self.repository.get_event(event_id)
        if event is None:
            raise CoordinationError(f"Event not found: {event_id}")
        logger.info("Replaying event %s (%s)", event_id, event.event_type)
        self.deliver(event)
        return event

    def deliver(self, event: EventView) -> None:
        self._pending.append(event)
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._pending:
                self._dispatch(self._pending.popleft())
        finally:
            self._delivering = False

    def _dispatch(self, event: EventView) -> None:
        handlers = self._handlers.get(event.event_type, []) + self._handlers.get(WILDCARD, [])
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s (event=%s)",
                    handler,
                    event.event_type,
                    event.event_id,
                )


def _event_key(event_type: EventType | str) -> str:
    if isinstance(event_type, Enum):
        return str(event_type.value)
    return event_type
