"""Job runner: claim queued agent invocations and execute them."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from agent_tree.config import CoordinationSettings
from agent_tree.coordination.agents import AgentRegistry
from agent_tree.coordination.assignment import SubtaskAssigner
from agent_tree.coordination.coordinator import Coordinator
from agent_tree.coordination.errors import InvalidTransitionError, PlannerError
from agent_tree.coordination.human import HumanInteractionService
from agent_tree.coordination.lifecycle import TaskLifecycle
from agent_tree.coordination.models import (
    JobStatus,
    JobView,
    OrchestratorTrigger,
    OutcomeKind,
    TaskState,
    TaskTransition,
    TriggerContext,
)
from agent_tree.coordination.orchestrator import Orchestrator
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.coordination.workers import WorkerAgent, WorkItem, WorkStatus

logger = logging.getLogger(__name__)

ERROR_SUMMARY_CHARS = 1_000


class JobHandler(Protocol):
    """Executes one claimed job; raising marks the job attempt failed."""

    def handle(self, job: JobView) -> str:
        """Return a short outcome label for logging."""


@dataclass(slots=True)
class RunnerSummary:
    """Aggregate runner counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0


class CoordinatorJobHandler:
    def __init__(
        self,
        *,
        coordinator: Coordinator,
        assigner: SubtaskAssigner,
        repository: TaskGraphRepository,
        settings: CoordinationSettings,
    ) -> None:
        self.coordinator = coordinator
        self.assigner = assigner
        self.repository = repository
        self.settings = settings

    def handle(self, job: JobView) -> str:
        task_id = _require_task_id(job)
        outcome = self.coordinator.run(task_id, TriggerContext.from_payload(job.payload))
        if outcome.kind != OutcomeKind.NO_DECOMPOSITION:
            return outcome.kind.value

        if not self.settings.treat_undecomposed_as_atomic:
            self.coordinator.mark_complete(task_id)
            return outcome.kind.value
        task = self.repository.require_task(task_id)
        if task.state != TaskState.ACTIVE:
            return outcome.kind.value
        dispatched = self.assigner.dispatch_active_leaf(task)
        if dispatched is None:
            logger.info("Atomic task %s waits for a leaf slot", task_id)
            return outcome.kind.value
        logger.info(
            "Task %s treated as atomic and sent to %s",
            task_id,
            dispatched.agent_type.value,
        )
        return "atomic_dispatched"


class OrchestratorJobHandler:
    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator

    def handle(self, job: JobView) -> str:
        raw = job.payload.get("trigger", OrchestratorTrigger.PERIODIC.value)
        try:
            trigger = OrchestratorTrigger(raw)
        except ValueError:
            trigger = OrchestratorTrigger.PERIODIC
        report = self.orchestrator.run(trigger)
        return f"assessed bottleneck={report.bottleneck} critical={report.critical}"


class LeafJobHandler:
    """Run a leaf worker and apply its outcome through the lifecycle."""

    def __init__(
        self,
        *,
        worker: WorkerAgent,
        repository: TaskGraphRepository,
        lifecycle: TaskLifecycle,
        human: HumanInteractionService,
    ) -> None:
        self.worker = worker
        self.repository = repository
        self.lifecycle = lifecycle
        self.human = human

    def handle(self, job: JobView) -> str:
        task = self.repository.require_task(_require_task_id(job))
        if task.state == TaskState.PENDING:
            task = self.lifecycle.transition(task.task_id, TaskTransition.ACTIVATE)
        if task.state != TaskState.ACTIVE:
            logger.info(
                "Skipping %s job for task %s in state %s",
                job.agent_type.value,
                task.task_id,
                task.state.value,
            )
            return "skipped"

        item = WorkItem(
            task_id=task.task_id,
            agent_type=job.agent_type,
            title=str(job.payload.get("title", task.title)),
            instructions=str(job.payload.get("instructions", task.description)),
            human_response=job.payload.get("human_response"),
            attempt=job.attempt,
        )
        outcome = self.worker.execute(item)

        if outcome.status == WorkStatus.COMPLETED:
            self.lifecycle.complete(task.task_id, result=outcome.result or "")
        elif outcome.status == WorkStatus.FAILED:
            self.lifecycle.fail(task.task_id, error=outcome.error or "worker failed")
        else:
            self.human.request_input(
                task.task_id,
                outcome.question or "The worker needs operator input to continue.",
                required=outcome.required,
            )
        return outcome.status.value


class JobRunner:
    """Consumes queued jobs and executes them via the agent registry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskGraphRepository,
        registry: AgentRegistry[JobHandler],
        lifecycle: TaskLifecycle,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.lifecycle = lifecycle
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def run_once(self) -> RunnerSummary:
        """Process at most one job from the queue."""

        summary = RunnerSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.repository.claim_next_job(
            worker_id=self.worker_id,
            agent_types=self.registry.handled_types(),
        )
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            label = self.registry.handler_for(job.agent_type).handle(job)
        except Exception as error:
            logger.exception(
                "Job %s (%s, task=%s) failed on attempt %d",
                job.job_id,
                job.agent_type.value,
                job.task_id,
                job.attempt,
            )
            self._handle_job_error(job, error, summary)
            return summary

        self.repository.complete_job(job.job_id)
        summary.succeeded = 1
        logger.info(
            "Job %s (%s, task=%s) finished: %s",
            job.job_id,
            job.agent_type.value,
            job.task_id,
            label,
        )
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> RunnerSummary:
        """Run until the queue is idle or ``max_jobs`` were processed.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = RunnerSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.processed += summary.processed
                aggregate.succeeded += summary.succeeded
                aggregate.failed += summary.failed
                aggregate.retried += summary.retried
                aggregate.idle_polls += summary.idle_polls

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _handle_job_error(self, job: JobView, error: Exception, summary: RunnerSummary) -> None:
        message = f"{type(error).__name__}: {error}"[:ERROR_SUMMARY_CHARS]
        status = self.repository.fail_job(
            job.job_id,
            error_summary=message,
            retry=_is_retryable(error),
        )
        if status == JobStatus.QUEUED:
            summary.retried = 1
            return
        summary.failed = 1
        if job.task_id is None:
            return
        task = self.repository.get_task(job.task_id)
        if task is not None and not task.is_terminal:
            self.lifecycle.try_fail(job.task_id, error=message)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Stop requested by signal %s", signum)
            self._stop_requested = True

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, PlannerError):
        return error.transient
    return not isinstance(error, InvalidTransitionError)


def _require_task_id(job: JobView) -> str:
    task_id = job.task_id or job.payload.get("task_id")
    if not task_id:
        raise ValueError(f"Job {job.job_id} has no task id")
    return str(task_id)
