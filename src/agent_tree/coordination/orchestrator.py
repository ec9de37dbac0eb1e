"""System-wide monitor: health snapshot, rebalancing, escalation, root spawning."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from agent_tree.config import CoordinationSettings, OrchestratorSettings
from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.dispatch import WorkerDispatcher
from agent_tree.coordination.errors import InvalidTransitionError, PlannerError
from agent_tree.coordination.events import EventBus
from agent_tree.coordination.human import HumanInteractionService
from agent_tree.coordination.lifecycle import NOTIFICATION_DEFERRED, TaskLifecycle, processing_job
from agent_tree.coordination.models import (
    EventType,
    InteractionKind,
    InteractionStatus,
    InteractionView,
    JobStatus,
    OrchestratorTrigger,
    TaskPriority,
    TaskState,
    TriggerKind,
    Urgency,
)
from agent_tree.coordination.parser import PlannerAssessment, parse_assessment
from agent_tree.coordination.planner import Planner
from agent_tree.coordination.prompts import build_assessment_prompt
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.storage.common import utc_now

logger = logging.getLogger(__name__)

ROOT_SCAN_LIMIT = 200


@dataclass(frozen=True, slots=True)
class SystemSnapshot:
    """Aggregate health figures gathered at the start of an orchestrator pass."""

    tasks_by_state: Mapping[str, int]
    running_jobs: Mapping[str, int]
    queued_jobs: Mapping[str, int]
    planner_calls_24h: int
    planner_call_limit: int
    pending_interactions: int
    load_percent: float | None = None
    disk_percent: float | None = None

    @property
    def queued_total(self) -> int:
        return sum(self.queued_jobs.values())

    @property
    def planner_quota_percent(self) -> float:
        return self.planner_calls_24h * 100.0 / self.planner_call_limit

    def as_metrics(self) -> dict[str, Any]:
        return {
            "tasks_by_state": dict(self.tasks_by_state),
            "running_jobs": dict(self.running_jobs),
            "queued_jobs": dict(self.queued_jobs),
            "planner_calls_24h": self.planner_calls_24h,
            "planner_call_limit": self.planner_call_limit,
            "pending_interactions": self.pending_interactions,
            "load_percent": self.load_percent,
            "disk_percent": self.disk_percent,
        }


@dataclass(slots=True)
class OrchestratorReport:
    """What one orchestrator pass observed and did."""

    trigger: OrchestratorTrigger
    snapshot: SystemSnapshot
    assessment: PlannerAssessment | None = None
    bottleneck: bool = False
    critical: bool = False
    adjusted: list[str] = field(default_factory=list)
    escalation_id: str | None = None
    spawned: list[str] = field(default_factory=list)
    rechecked: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)


class Orchestrator:
    """Singleton system actor; the orchestrator ceiling of 1 keeps it unique."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskGraphRepository,
        lifecycle: TaskLifecycle,
        dispatcher: WorkerDispatcher,
        human: HumanInteractionService,
        planner: Planner,
        bus: EventBus,
        settings: OrchestratorSettings,
        coordination: CoordinationSettings,
        disk_path: Path | None = None,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.human = human
        self.planner = planner
        self.bus = bus
        self.settings = settings
        self.coordination = coordination
        self.disk_path = disk_path or repository.db_path.resolve().parent

    def run(
        self,
        trigger: OrchestratorTrigger = OrchestratorTrigger.PERIODIC,
    ) -> OrchestratorReport:
        snapshot = self.snapshot()
        report = OrchestratorReport(trigger=trigger, snapshot=snapshot)
        report.assessment = self._assess(snapshot, trigger)

        report.bottleneck = snapshot.queued_total > self.settings.queue_bottleneck_threshold or (
            report.assessment is not None and report.assessment.bottleneck
        )
        report.critical = (
            trigger == OrchestratorTrigger.RESOURCES_CRITICAL
            or self._metrics_critical(snapshot)
            or (report.assessment is not None and report.assessment.resources_critical)
        )
        if report.bottleneck:
            report.adjusted = self.rebalance()
        if report.critical:
            report.escalation_id = self.escalate(snapshot, report.assessment)

        report.spawned = self.spawn_root_coordinators()
        report.rechecked = self.recheck_stuck()
        report.expired = [item.interaction_id for item in self.human.expire_overdue()]

        self.bus.publish(
            EventType.SYSTEM_ASSESSED,
            {
                "trigger": trigger.value,
                "summary": report.assessment.summary if report.assessment else None,
                "bottleneck": report.bottleneck,
                "critical": report.critical,
                "adjusted": report.adjusted,
                "spawned": report.spawned,
                "rechecked": report.rechecked,
            },
        )
        logger.info(
            "Orchestrator pass (%s): bottleneck=%s critical=%s adjusted=%d spawned=%d rechecked=%d",
            trigger.value,
            report.bottleneck,
            report.critical,
            len(report.adjusted),
            len(report.spawned),
            len(report.rechecked),
        )
        return report

    def snapshot(self) -> SystemSnapshot:
        since = utc_now() - timedelta(hours=24)
        return SystemSnapshot(
            tasks_by_state=self.repository.count_tasks_by_state(),
            running_jobs=_by_value(self.repository.job_counts_by_agent(status=JobStatus.RUNNING)),
            queued_jobs=_by_value(self.repository.job_counts_by_agent(status=JobStatus.QUEUED)),
            planner_calls_24h=self.repository.count_planner_calls(since=since),
            planner_call_limit=self.settings.daily_planner_call_limit,
            pending_interactions=len(
                self.repository.list_interactions(
                    status=InteractionStatus.PENDING,
                    limit=ROOT_SCAN_LIMIT,
                ),
            ),
            load_percent=_load_percent(),
            disk_percent=_disk_percent(self.disk_path),
        )

    def rebalance(self) -> list[str]:
        """Raise the oldest pending root tasks to high priority."""

        candidates = [
            task
            for task in self.repository.list_tasks(
                state=TaskState.PENDING,
                roots_only=True,
                limit=ROOT_SCAN_LIMIT,
            )
            if task.priority != TaskPriority.HIGH
        ]
        candidates.sort(key=lambda task: task.created_at)
        adjusted: list[str] = []
        for task in candidates[: self.settings.rebalance_limit]:
            self.repository.update_task(task.task_id, priority=TaskPriority.HIGH)
            self.bus.publish(
                EventType.PRIORITY_ADJUSTED,
                {"from": task.priority.value, "to": TaskPriority.HIGH.value},
                task_id=task.task_id,
                project_id=task.project_id,
                priority=TaskPriority.HIGH.value,
            )
            adjusted.append(task.task_id)
        return adjusted

    def escalate(self, snapshot: SystemSnapshot, assessment: PlannerAssessment | None) -> str:
        """Raise one critical system intervention; reuse it while it is still open."""

        open_alert = self._open_system_alert()
        if open_alert is not None:
            logger.info(
                "Resources still critical; intervention %s is open",
                open_alert.interaction_id,
            )
            return open_alert.interaction_id
        summary = assessment.summary if assessment else "no planner assessment"
        intervention = self.human.raise_intervention(
            "System resources are critical: "
            f"load={snapshot.load_percent}% disk={snapshot.disk_percent}% "
            f"planner calls={snapshot.planner_calls_24h}/{snapshot.planner_call_limit}. "
            f"Assessment: {summary}",
            urgency=Urgency.CRITICAL,
        )
        return intervention.interaction_id

    def spawn_root_coordinators(self) -> list[str]:
        """Start a Coordinator for root tasks that do not have one yet."""

        spawned: list[str] = []
        pending = self.repository.list_tasks(
            state=TaskState.PENDING,
            roots_only=True,
            limit=ROOT_SCAN_LIMIT,
        )
        for task in sorted(pending, key=lambda item: (item.priority.rank, item.created_at)):
            try:
                if self.lifecycle.activate(task.task_id) is not None:
                    spawned.append(task.task_id)
            except InvalidTransitionError:
                logger.debug("Root task %s changed state before spawn", task.task_id)

        active = self.repository.list_tasks(
            state=TaskState.ACTIVE,
            roots_only=True,
            limit=ROOT_SCAN_LIMIT,
        )
        for task in active:
            if "coordinator_spawned_at" in task.metadata or task.assigned_agent is not None:
                continue
            if self.lifecycle.project_paused(task):
                continue
            agent_type, payload = processing_job(task, TriggerKind.INITIAL)
            job = self.dispatcher.enqueue(
                agent_type,
                payload,
                priority=task.priority,
                task_id=task.task_id,
            )
            if job is not None:
                self.repository.update_task(
                    task.task_id,
                    metadata_updates={"coordinator_spawned_at": utc_now().isoformat()},
                )
                spawned.append(task.task_id)
        return spawned

    def recheck_stuck(self) -> list[str]:
        """Re-dispatch active tasks that went quiet with nothing queued for them.

        Tasks whose coordinator notification was denied by the ceiling are
        re-checked right away instead of waiting out the stuck window.
        """

        cutoff = utc_now() - timedelta(seconds=self.settings.stuck_after_seconds)
        stale = self.repository.list_stale_tasks(
            states=(TaskState.ACTIVE,),
            updated_before=cutoff,
        )
        stale_ids = {task.task_id for task in stale}
        deferred = [
            task
            for task in self.repository.list_tasks(state=TaskState.ACTIVE, limit=ROOT_SCAN_LIMIT)
            if task.metadata.get(NOTIFICATION_DEFERRED) and task.task_id not in stale_ids
        ]
        rechecked: list[str] = []
        for task in [*deferred, *stale]:
            was_deferred = bool(task.metadata.get(NOTIFICATION_DEFERRED))
            agent_type, payload = processing_job(task, TriggerKind.RECHECK)
            if self.repository.has_active_job(task_id=task.task_id, agent_type=agent_type):
                if was_deferred:
                    self.repository.update_task(
                        task.task_id,
                        clear_metadata=(NOTIFICATION_DEFERRED,),
                    )
                continue
            spawned = "coordinator_spawned_at" in task.metadata
            if agent_type == AgentType.COORDINATOR and not spawned:
                continue
            if task.task_id in stale_ids:
                self.bus.publish(
                    EventType.TASK_STUCK,
                    {"agent_type": agent_type.value, "updated_at": task.updated_at.isoformat()},
                    task_id=task.task_id,
                    parent_task_id=task.parent_id,
                    project_id=task.project_id,
                    priority=task.priority.value,
                )
            if self.lifecycle.project_paused(task):
                continue
            job = self.dispatcher.enqueue(
                agent_type,
                payload,
                priority=task.priority,
                task_id=task.task_id,
            )
            if job is None:
                continue
            self.repository.update_task(
                task.task_id,
                metadata_updates={"last_recheck_at": utc_now().isoformat()},
                clear_metadata=(NOTIFICATION_DEFERRED,) if was_deferred else (),
            )
            rechecked.append(task.task_id)
        return rechecked

    def _assess(
        self,
        snapshot: SystemSnapshot,
        trigger: OrchestratorTrigger,
    ) -> PlannerAssessment | None:
        if snapshot.planner_calls_24h >= snapshot.planner_call_limit:
            logger.warning(
                "Planner call quota exhausted (%d/%d); skipping assessment",
                snapshot.planner_calls_24h,
                snapshot.planner_call_limit,
            )
            return None
        try:
            text = self.planner.complete(
                build_assessment_prompt(snapshot.as_metrics(), trigger=trigger.value),
                purpose="system_assessment",
            )
        except PlannerError as error:
            logger.warning("System assessment failed: %s", error)
            return None
        return parse_assessment(text)

    def _open_system_alert(self) -> InteractionView | None:
        for status in (InteractionStatus.PENDING, InteractionStatus.ACKNOWLEDGED):
            for item in self.repository.list_interactions(
                status=status,
                kind=InteractionKind.INTERVENTION,
                limit=ROOT_SCAN_LIMIT,
            ):
                if (
                    item.task_id is None
                    and item.project_id is None
                    and item.urgency == Urgency.CRITICAL
                ):
                    return item
        return None

    def _metrics_critical(self, snapshot: SystemSnapshot) -> bool:
        threshold = self.settings.resource_critical_percent
        readings = (snapshot.load_percent, snapshot.disk_percent, snapshot.planner_quota_percent)
        return any(value is not None and value >= threshold for value in readings)


def _by_value(counts: Mapping[AgentType, int]) -> dict[str, int]:
    return {agent_type.value: count for agent_type, count in counts.items()}


def _load_percent() -> float | None:
    try:
        load_1m = os.getloadavg()[0]
    except (AttributeError, OSError):
        return None
    return round(load_1m * 100.0 / (os.cpu_count() or 1), 1)


def _disk_percent(path: Path) -> float | None:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return None
    if usage.total == 0:
        return None
    return round(usage.used * 100.0 / usage.total, 1)
