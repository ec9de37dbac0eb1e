"""Default bus subscriptions: turn task events into follow-up jobs.

Handlers never change task state themselves. Each one enqueues a fresh
Coordinator (or Orchestrator) invocation scoped to the right task, so the
next step runs as its own job after the publishing transaction committed.
"""

from __future__ import annotations

import logging

from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.assignment import SubtaskAssigner
from agent_tree.coordination.dispatch import WorkerDispatcher
from agent_tree.coordination.events import EventBus
from agent_tree.coordination.lifecycle import NOTIFICATION_DEFERRED, coordinator_payload
from agent_tree.coordination.models import (
    EventType,
    EventView,
    OrchestratorTrigger,
    TaskState,
    TriggerContext,
    TriggerKind,
)
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.storage.common import utc_now

logger = logging.getLogger(__name__)


class DefaultSubscriptions:
    """Route lifecycle events to the coordinator that owns the affected task."""

    def __init__(
        self,
        *,
        repository: TaskGraphRepository,
        dispatcher: WorkerDispatcher,
        assigner: SubtaskAssigner,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.assigner = assigner

    def register(self, bus: EventBus) -> None:
        bus.subscribe(EventType.TASK_COMPLETED, self.on_subtask_completed)
        bus.subscribe(EventType.TASK_FAILED, self.on_subtask_failed)
        bus.subscribe(EventType.TASK_WAITING_ON_HUMAN, self.on_subtask_waiting)
        bus.subscribe(EventType.TASK_RESUMED, self.on_task_resumed)
        bus.subscribe(EventType.TASK_CREATED, self.on_root_created)
        bus.subscribe(EventType.PROJECT_CREATED, self.on_project_created)
        bus.subscribe(EventType.PROJECT_RESUMED, self.on_project_resumed)

    def on_subtask_completed(self, event: EventView) -> None:
        if event.parent_task_id is None:
            return
        self._notify_parent(
            event,
            TriggerContext(
                kind=TriggerKind.SUBTASK_COMPLETED,
                subtask_id=event.task_id,
                result=event.payload.get("result"),
                event_id=event.event_id,
            ),
        )

    def on_subtask_failed(self, event: EventView) -> None:
        if event.parent_task_id is None:
            return
        self._notify_parent(
            event,
            TriggerContext(
                kind=TriggerKind.SUBTASK_FAILED,
                subtask_id=event.task_id,
                error=event.payload.get("error"),
                event_id=event.event_id,
            ),
        )

    def on_subtask_waiting(self, event: EventView) -> None:
        if event.parent_task_id is None:
            return
        self._notify_parent(
            event,
            TriggerContext(
                kind=TriggerKind.HUMAN_INPUT_REQUIRED,
                subtask_id=event.task_id,
                event_id=event.event_id,
            ),
        )

    def on_task_resumed(self, event: EventView) -> None:
        """Hand a resumed task back to whoever processes it.

        A leaf task goes straight back to its worker with the operator's
        response; a coordinated task gets a coordinator re-evaluation.
        """

        if event.task_id is None:
            return
        task = self.repository.get_task(event.task_id)
        if task is None or task.state != TaskState.ACTIVE:
            return
        leaf = task.assigned_agent
        if leaf is not None and leaf.is_leaf and not task.needs_coordinator:
            job = self.assigner.dispatch_active_leaf(
                task,
                human_response=event.payload.get("response"),
            )
            if job is None:
                logger.info("Resumed task %s not re-dispatched yet", task.task_id)
            return
        self._enqueue_coordinator(
            task.task_id,
            TriggerContext(kind=TriggerKind.TASK_RESUMED, event_id=event.event_id),
            priority=task.priority.value,
        )

    def on_root_created(self, event: EventView) -> None:
        if event.task_id is None or event.parent_task_id is not None:
            return
        self._enqueue_orchestrator(OrchestratorTrigger.TASK_CREATED, event)

    def on_project_created(self, event: EventView) -> None:
        self._enqueue_orchestrator(OrchestratorTrigger.PROJECT_CREATED, event)

    def on_project_resumed(self, event: EventView) -> None:
        """Pick up work the pause held back.

        Roots whose activation was deferred get an orchestrator pass, which
        spawns their coordinators; coordinated tasks get a re-evaluation.
        """

        if event.project_id is None:
            return
        self._enqueue_orchestrator(OrchestratorTrigger.PROJECT_RESUMED, event)
        for task in self.repository.list_tasks(
            state=TaskState.ACTIVE,
            project_id=event.project_id,
            limit=500,
        ):
            if "coordinator_spawned_at" not in task.metadata:
                continue
            self._enqueue_coordinator(
                task.task_id,
                TriggerContext(kind=TriggerKind.RECHECK, event_id=event.event_id),
                priority=task.priority.value,
            )

    def _notify_parent(self, event: EventView, context: TriggerContext) -> None:
        parent_id = event.parent_task_id
        if parent_id is None:
            return
        parent = self.repository.get_task(parent_id)
        if parent is None or parent.is_terminal:
            logger.debug("Parent %s of %s is gone or finished", parent_id, event.task_id)
            return
        self._enqueue_coordinator(parent_id, context, priority=parent.priority.value)

    def _enqueue_coordinator(
        self,
        task_id: str,
        context: TriggerContext,
        *,
        priority: str,
    ) -> None:
        job = self.dispatcher.enqueue(
            AgentType.COORDINATOR,
            coordinator_payload(task_id, context),
            priority=priority,
            task_id=task_id,
        )
        if job is None:
            self.repository.update_task(
                task_id,
                metadata_updates={NOTIFICATION_DEFERRED: utc_now().isoformat()},
            )
            logger.info(
                "Coordinator job for %s (%s) deferred by ceiling",
                task_id,
                context.kind.value,
            )

    def _enqueue_orchestrator(self, trigger: OrchestratorTrigger, event: EventView) -> None:
        job = self.dispatcher.enqueue(
            AgentType.ORCHESTRATOR,
            {"trigger": trigger.value, "event_id": event.event_id},
            priority=event.priority,
        )
        if job is None:
            logger.debug("Orchestrator already queued or running; %s absorbed", trigger.value)


def wire_default_subscriptions(
    bus: EventBus,
    *,
    repository: TaskGraphRepository,
    dispatcher: WorkerDispatcher,
    assigner: SubtaskAssigner,
) -> DefaultSubscriptions:
    subscriptions = DefaultSubscriptions(
        repository=repository,
        dispatcher=dispatcher,
        assigner=assigner,
    )
    subscriptions.register(bus)
    return subscriptions
