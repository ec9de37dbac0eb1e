from __future__ import annotations

import allure

from agent_tree.config import CoordinationSettings
from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.dispatch import DEFAULT_JOB_WEIGHT, WorkerDispatcher, priority_weight
from agent_tree.coordination.models import JobStatus, TaskPriority
from agent_tree.coordination.repository import TaskGraphRepository

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Worker Dispatch"),
]


def _dispatcher(repository: TaskGraphRepository, **limits: int) -> WorkerDispatcher:
    settings = CoordinationSettings(
        concurrency_limits={AgentType(name): limit for name, limit in limits.items()},
    )
    return WorkerDispatcher(repository=repository, settings=settings)


def test_ceiling_denies_without_creating_a_job(repository: TaskGraphRepository) -> None:
    dispatcher = _dispatcher(repository, writer=2)

    first = dispatcher.enqueue(AgentType.WRITER, {"n": 1})
    second = dispatcher.enqueue(AgentType.WRITER, {"n": 2})
    third = dispatcher.enqueue(AgentType.WRITER, {"n": 3})

    assert first is not None
    assert second is not None
    assert third is None
    assert len(repository.list_jobs()) == 2


def test_running_jobs_count_against_the_ceiling(repository: TaskGraphRepository) -> None:
    dispatcher = _dispatcher(repository, writer=1)
    job = dispatcher.enqueue(AgentType.WRITER, {})
    assert job is not None
    repository.claim_next_job(worker_id="w")

    assert dispatcher.enqueue(AgentType.WRITER, {}) is None

    repository.complete_job(job.job_id)
    assert dispatcher.enqueue(AgentType.WRITER, {}) is not None


def test_ceilings_are_per_agent_type(repository: TaskGraphRepository) -> None:
    dispatcher = _dispatcher(repository, writer=1, analyzer=1)

    assert dispatcher.enqueue(AgentType.WRITER, {}) is not None
    assert dispatcher.enqueue(AgentType.ANALYZER, {}) is not None
    assert dispatcher.active_counts()[AgentType.WRITER] == 1
    assert dispatcher.queue_depths() == {AgentType.WRITER: 1, AgentType.ANALYZER: 1}


def test_unlisted_agent_type_uses_default_ceiling(repository: TaskGraphRepository) -> None:
    settings = CoordinationSettings(concurrency_limits={}, default_concurrency_limit=1)
    dispatcher = WorkerDispatcher(repository=repository, settings=settings)

    assert dispatcher.enqueue(AgentType.CODE_RESEARCHER, {}) is not None
    assert dispatcher.enqueue(AgentType.CODE_RESEARCHER, {}) is None


def test_priority_weights() -> None:
    assert priority_weight(TaskPriority.HIGH) < priority_weight(TaskPriority.NORMAL)
    assert priority_weight("normal") < priority_weight("LOW")
    assert priority_weight(None) == DEFAULT_JOB_WEIGHT
    assert priority_weight("urgent") == DEFAULT_JOB_WEIGHT


def test_job_carries_weight_and_attempt_limit(repository: TaskGraphRepository) -> None:
    settings = CoordinationSettings(job_max_attempts=5)
    dispatcher = WorkerDispatcher(repository=repository, settings=settings)

    job = dispatcher.enqueue(AgentType.ANALYZER, {"x": 1}, priority=TaskPriority.HIGH)

    assert job is not None
    assert job.priority == priority_weight(TaskPriority.HIGH)
    assert job.max_attempts == 5
    assert job.status == JobStatus.QUEUED
    assert dict(job.payload) == {"x": 1}


def test_cancel_releases_the_slot(repository: TaskGraphRepository) -> None:
    dispatcher = _dispatcher(repository, writer=1)
    job = dispatcher.enqueue(AgentType.WRITER, {})
    assert job is not None

    assert dispatcher.cancel(job.job_id)
    assert dispatcher.enqueue(AgentType.WRITER, {}) is not None
