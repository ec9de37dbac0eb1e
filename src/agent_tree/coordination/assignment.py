"""Hand one subtask to a leaf worker or a nested Coordinator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agent_tree.config import CoordinationSettings
from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.dispatch import WorkerDispatcher
from agent_tree.coordination.errors import PlannerError
from agent_tree.coordination.lifecycle import TaskLifecycle, coordinator_payload, leaf_payload
from agent_tree.coordination.models import (
    JobView,
    TaskTransition,
    TaskView,
    TriggerContext,
    TriggerKind,
)
from agent_tree.coordination.parser import parse_recommended_agent
from agent_tree.coordination.planner import Planner
from agent_tree.coordination.prompts import build_agent_selection_prompt
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.storage.common import utc_now

logger = logging.getLogger(__name__)


class AssignmentStatus(str, Enum):
    DISPATCHED = "dispatched"
    DEFERRED = "deferred"
    BLOCKED = "blocked"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class Assignment:
    task_id: str
    status: AssignmentStatus
    agent_type: AgentType | None = None
    job_id: str | None = None


class SubtaskAssigner:
    """Pick the agent for a pending subtask, enqueue it and activate the subtask.

    The job is enqueued before activation; if activation then loses a race the
    job is canceled. A ceiling denial leaves the subtask pending for the next
    progress evaluation.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskGraphRepository,
        lifecycle: TaskLifecycle,
        dispatcher: WorkerDispatcher,
        planner: Planner,
        settings: CoordinationSettings,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.planner = planner
        self.settings = settings

    def can_nest(self, subtask: TaskView) -> bool:
        return subtask.nesting_level <= self.settings.max_nesting_level

    def assign(self, subtask: TaskView) -> Assignment:
        if self.lifecycle.project_paused(subtask):
            logger.info(
                "Project %s paused; not dispatching %s",
                subtask.project_id,
                subtask.task_id,
            )
            return Assignment(task_id=subtask.task_id, status=AssignmentStatus.BLOCKED)

        forced_leaf = False
        if subtask.needs_coordinator:
            if self.can_nest(subtask):
                return self._launch(
                    subtask,
                    AgentType.COORDINATOR,
                    coordinator_payload(subtask.task_id, TriggerContext(kind=TriggerKind.INITIAL)),
                    {"coordinator_spawned_at": utc_now().isoformat()},
                )
            forced_leaf = True
            self.repository.append_note(
                subtask.task_id,
                f"Nesting cap {self.settings.max_nesting_level} reached; "
                "dispatching to a leaf worker instead of a nested coordinator",
            )
            logger.info(
                "Nesting cap reached for %s (level %d); forcing leaf dispatch",
                subtask.task_id,
                subtask.nesting_level,
            )

        agent_type = self.resolve_agent(subtask)
        metadata: dict[str, Any] = {
            "assigned_agent": agent_type.value,
            "assigned_at": utc_now().isoformat(),
        }
        if forced_leaf:
            metadata["forced_leaf"] = True
        return self._launch(subtask, agent_type, leaf_payload(subtask), metadata)

    def dispatch_active_leaf(
        self,
        task: TaskView,
        *,
        human_response: str | None = None,
    ) -> JobView | None:
        """Enqueue a leaf job for a task that is already active."""

        if self.lifecycle.project_paused(task):
            logger.info("Project %s paused; not dispatching %s", task.project_id, task.task_id)
            return None
        agent_type = self.resolve_agent(task)
        job = self.dispatcher.enqueue(
            agent_type,
            leaf_payload(task, human_response=human_response),
            priority=task.priority,
            task_id=task.task_id,
        )
        if job is not None:
            self.repository.update_task(
                task.task_id,
                metadata_updates={
                    "assigned_agent": agent_type.value,
                    "assigned_at": utc_now().isoformat(),
                },
            )
        return job

    def resolve_agent(self, task: TaskView) -> AgentType:
        """Assigned agent, then planner suggestion, then classification, then default."""

        for candidate in (task.assigned_agent, task.suggested_agent):
            if candidate is not None and candidate.is_leaf:
                return candidate
        try:
            text = self.planner.complete(
                build_agent_selection_prompt(task),
                purpose="agent_selection",
                task_id=task.task_id,
            )
        except PlannerError as error:
            logger.warning("Agent selection failed for %s: %s", task.task_id, error)
            return self.settings.default_agent
        return parse_recommended_agent(text) or self.settings.default_agent

    def _launch(
        self,
        subtask: TaskView,
        agent_type: AgentType,
        payload: dict[str, Any],
        metadata: dict[str, Any],
    ) -> Assignment:
        job = self.dispatcher.enqueue(
            agent_type,
            payload,
            priority=subtask.priority,
            task_id=subtask.task_id,
        )
        if job is None:
            return Assignment(
                task_id=subtask.task_id,
                status=AssignmentStatus.DEFERRED,
                agent_type=agent_type,
            )
        activated = self.lifecycle.try_transition(
            subtask.task_id,
            TaskTransition.ACTIVATE,
            metadata_updates=metadata,
            event_payload={"job_id": job.job_id, "agent_type": agent_type.value},
        )
        if activated is None:
            self.dispatcher.cancel(job.job_id)
            logger.info("Subtask %s changed state before activation; job canceled", subtask.task_id)
            return Assignment(
                task_id=subtask.task_id,
                status=AssignmentStatus.STALE,
                agent_type=agent_type,
            )
        return Assignment(
            task_id=subtask.task_id,
            status=AssignmentStatus.DISPATCHED,
            agent_type=agent_type,
            job_id=job.job_id,
        )
