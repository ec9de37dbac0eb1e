"""Per-agent-type concurrency ceilings in front of the job queue."""

from __future__ import annotations

import logging
from typing import Any

from agent_tree.config import CoordinationSettings
from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.models import JobCreate, JobStatus, JobView, TaskPriority
from agent_tree.coordination.repository import TaskGraphRepository

logger = logging.getLogger(__name__)

DEFAULT_JOB_WEIGHT = 100
PRIORITY_WEIGHTS = {
    TaskPriority.HIGH: 0,
    TaskPriority.NORMAL: 10,
    TaskPriority.LOW: 20,
}


def priority_weight(priority: TaskPriority | str | None) -> int:
    """Map a symbolic priority to a queue weight; lower is served first."""

    if priority is None:
        return DEFAULT_JOB_WEIGHT
    if not isinstance(priority, TaskPriority):
        try:
            priority = TaskPriority(str(priority).strip().lower())
        except ValueError:
            return DEFAULT_JOB_WEIGHT
    return PRIORITY_WEIGHTS[priority]


class WorkerDispatcher:
    """Enqueue agent invocations unless the agent type is at its ceiling."""

    def __init__(self, *, repository: TaskGraphRepository, settings: CoordinationSettings) -> None:
        self.repository = repository
        self.settings = settings

    def enqueue(
        self,
        agent_type: AgentType,
        payload: dict[str, Any],
        *,
        priority: TaskPriority | str | None = None,
        task_id: str | None = None,
    ) -> JobView | None:
        """Return the queued job, or None when the ceiling denies it.

        Denial creates nothing and raises nothing; callers defer to the next
        progress evaluation.
        """

        ceiling = self.settings.ceiling_for(agent_type)
        active = self.repository.count_active_jobs(agent_type)
        if active >= ceiling:
            logger.info(
                "Dispatch denied for %s: %d active jobs at ceiling %d (task=%s)",
                agent_type.value,
                active,
                ceiling,
                task_id,
            )
            return None
        job = self.repository.enqueue_job(
            JobCreate(
                agent_type=agent_type,
                payload=payload,
                priority=priority_weight(priority),
                task_id=task_id,
                max_attempts=self.settings.job_max_attempts,
            ),
        )
        logger.debug(
            "Enqueued %s job %s (task=%s, weight=%d)",
            agent_type.value,
            job.job_id,
            task_id,
            job.priority,
        )
        return job

    def cancel(self, job_id: str) -> bool:
        return self.repository.cancel_job(job_id)

    def active_counts(self) -> dict[AgentType, int]:
        """Queued plus running jobs per agent type."""

        queued = self.repository.job_counts_by_agent(status=JobStatus.QUEUED)
        running = self.repository.job_counts_by_agent(status=JobStatus.RUNNING)
        return {
            agent_type: queued.get(agent_type, 0) + running.get(agent_type, 0)
            for agent_type in AgentType
        }

    def queue_depths(self) -> dict[AgentType, int]:
        return self.repository.job_counts_by_agent(status=JobStatus.QUEUED)
