"""Guarded task state transitions with post-commit events."""

from __future__ import annotations

import logging
from typing import Any

from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.dispatch import WorkerDispatcher
from agent_tree.coordination.errors import InvalidTransitionError
from agent_tree.coordination.events import EventBus
from agent_tree.coordination.models import (
    TRANSITION_RULES,
    ProjectStatus,
    TaskState,
    TaskTransition,
    TaskView,
    TriggerContext,
    TriggerKind,
)
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.storage.common import utc_now

logger = logging.getLogger(__name__)

# Set on failure, cleared once Failure Recovery has handled that failure.
RECOVERY_PENDING = "recovery_pending"
# Set when a coordinator notification was denied by the ceiling; the next
# orchestrator pass re-checks the task and clears it.
NOTIFICATION_DEFERRED = "notification_deferred_at"


class TaskLifecycle:
    """The only path through which task state changes.

    Every method runs one conditional update in the repository and, once it
    has committed, publishes the transition's event on the bus.
    """

    def __init__(
        self,
        *,
        repository: TaskGraphRepository,
        bus: EventBus,
        dispatcher: WorkerDispatcher,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.dispatcher = dispatcher

    def transition(  # noqa: PLR0913
        self,
        task_id: str,
        transition: TaskTransition,
        *,
        result: str | None = None,
        error_message: str | None = None,
        metadata_updates: dict[str, Any] | None = None,
        clear_metadata: tuple[str, ...] = (),
        event_payload: dict[str, Any] | None = None,
    ) -> TaskView:
        """Apply ``transition`` or raise InvalidTransitionError."""

        task = self.try_transition(
            task_id,
            transition,
            result=result,
            error_message=error_message,
            metadata_updates=metadata_updates,
            clear_metadata=clear_metadata,
            event_payload=event_payload,
        )
        if task is None:
            current = self.repository.require_task(task_id)
            raise InvalidTransitionError(
                task_id=task_id,
                transition=transition.value,
                state=current.state.value,
            )
        return task

    def try_transition(  # noqa: PLR0913
        self,
        task_id: str,
        transition: TaskTransition,
        *,
        result: str | None = None,
        error_message: str | None = None,
        metadata_updates: dict[str, Any] | None = None,
        clear_metadata: tuple[str, ...] = (),
        event_payload: dict[str, Any] | None = None,
    ) -> TaskView | None:
        """Apply ``transition``; None when the guard does not hold."""

        task = self.repository.transition_task(
            task_id,
            transition,
            result=result,
            error_message=error_message,
            metadata_updates=metadata_updates,
            clear_metadata=clear_metadata,
            details=event_payload,
        )
        if task is None:
            logger.debug("Transition %s rejected for task %s", transition.value, task_id)
            return None

        payload: dict[str, Any] = {"transition": transition.value, "state": task.state.value}
        if result is not None:
            payload["result"] = result
        if error_message is not None:
            payload["error"] = error_message
        payload.update(event_payload or {})
        self.bus.publish(
            TRANSITION_RULES[transition].event_type,
            payload,
            task_id=task.task_id,
            parent_task_id=task.parent_id,
            project_id=task.project_id,
            priority=task.priority.value,
        )
        if transition == TaskTransition.COMPLETE and task.parent_id is None:
            self._close_project_if_done(task)
        return task

    def project_paused(self, task: TaskView) -> bool:
        if task.project_id is None:
            return False
        project = self.repository.get_project(task.project_id)
        return project is not None and project.status == ProjectStatus.PAUSED

    def activate(self, task_id: str) -> TaskView | None:
        """Activate a pending or paused task and hand it to its processing agent.

        The agent is a Coordinator job, or the assigned leaf worker for a leaf
        task. Returns None without changing state when the project is paused or
        the agent type is at its ceiling.
        """

        task = self.repository.require_task(task_id)
        if self.project_paused(task):
            logger.info("Project %s is paused; activation of %s deferred", task.project_id, task_id)
            return None
        agent_type, payload = processing_job(task, TriggerKind.INITIAL)
        job = self.dispatcher.enqueue(
            agent_type,
            payload,
            priority=task.priority,
            task_id=task_id,
        )
        if job is None:
            logger.info("Activation of %s deferred: %s at ceiling", task_id, agent_type.value)
            return None
        activated = self.try_transition(
            task_id,
            TaskTransition.ACTIVATE,
            metadata_updates=_dispatch_metadata(agent_type),
            event_payload={"job_id": job.job_id, "agent_type": agent_type.value},
        )
        if activated is None:
            self.dispatcher.cancel(job.job_id)
            current = self.repository.require_task(task_id)
            raise InvalidTransitionError(
                task_id=task_id,
                transition=TaskTransition.ACTIVATE.value,
                state=current.state.value,
            )
        return activated

    def pause(self, task_id: str) -> TaskView:
        return self.transition(task_id, TaskTransition.PAUSE)

    def wait_on_human(self, task_id: str, *, interaction_id: str) -> TaskView:
        return self.transition(
            task_id,
            TaskTransition.WAIT_ON_HUMAN,
            metadata_updates={"waiting_for_interaction_id": interaction_id},
            event_payload={"interaction_id": interaction_id},
        )

    def hold_for_human(self, task_id: str, *, interaction_id: str) -> TaskView:
        """Park a failed task until a human answers ``interaction_id``."""

        return self.transition(
            task_id,
            TaskTransition.HOLD_FOR_HUMAN,
            metadata_updates={"waiting_for_interaction_id": interaction_id},
            event_payload={"interaction_id": interaction_id},
        )

    def resume(
        self,
        task_id: str,
        *,
        interaction_id: str,
        response: str | None = None,
    ) -> TaskView | None:
        """Resume a waiting task, but only if ``interaction_id`` is what blocks it."""

        task = self.repository.require_task(task_id)
        if task.waiting_for_interaction_id != interaction_id:
            logger.info(
                "Not resuming %s: blocked by %s, not %s",
                task_id,
                task.waiting_for_interaction_id,
                interaction_id,
            )
            return None
        updates: dict[str, Any] = {"last_interaction_id": interaction_id}
        if response is not None:
            updates["human_response"] = response
        return self.try_transition(
            task_id,
            TaskTransition.RESUME,
            metadata_updates=updates,
            clear_metadata=("waiting_for_interaction_id",),
            event_payload={"interaction_id": interaction_id, "response": response},
        )

    def complete(self, task_id: str, *, result: str) -> TaskView:
        return self.transition(task_id, TaskTransition.COMPLETE, result=result)

    def fail(self, task_id: str, *, error: str) -> TaskView:
        return self.transition(
            task_id,
            TaskTransition.FAIL,
            error_message=error,
            metadata_updates={RECOVERY_PENDING: True},
        )

    def try_fail(self, task_id: str, *, error: str) -> TaskView | None:
        return self.try_transition(
            task_id,
            TaskTransition.FAIL,
            error_message=error,
            metadata_updates={RECOVERY_PENDING: True},
        )

    def requeue(self, task_id: str, *, metadata_updates: dict[str, Any] | None = None) -> TaskView:
        return self.transition(
            task_id,
            TaskTransition.REQUEUE,
            metadata_updates=metadata_updates,
        )

    def skip(self, task_id: str, *, result: str) -> TaskView:
        return self.transition(task_id, TaskTransition.SKIP, result=result)

    def _close_project_if_done(self, root: TaskView) -> None:
        if root.project_id is None:
            return
        roots = self.repository.list_tasks(project_id=root.project_id, roots_only=True, limit=500)
        if any(task.state != TaskState.COMPLETED for task in roots):
            return
        project = self.repository.set_project_status(
            root.project_id,
            status=ProjectStatus.COMPLETED,
            expected=(ProjectStatus.ACTIVE, ProjectStatus.PENDING),
        )
        if project is not None:
            logger.info("Project %s completed with root task %s", project.project_id, root.task_id)


def processing_job(task: TaskView, trigger: TriggerKind) -> tuple[AgentType, dict[str, Any]]:
    """Agent type and payload that picks up ``task`` next."""

    leaf = task.assigned_agent
    if leaf is not None and leaf.is_leaf and not task.needs_coordinator:
        return leaf, leaf_payload(task)
    return AgentType.COORDINATOR, coordinator_payload(task.task_id, TriggerContext(kind=trigger))


def coordinator_payload(task_id: str, context: TriggerContext) -> dict[str, Any]:
    return {"task_id": task_id, **context.to_payload()}


def leaf_payload(task: TaskView, *, human_response: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "task_id": task.task_id,
        "title": task.title,
        "instructions": task.description,
    }
    if human_response is not None:
        payload["human_response"] = human_response
    return payload


def _dispatch_metadata(agent_type: AgentType) -> dict[str, Any]:
    if agent_type.is_leaf:
        return {"assigned_agent": agent_type.value, "assigned_at": utc_now().isoformat()}
    return {"coordinator_spawned_at": utc_now().isoformat()}
