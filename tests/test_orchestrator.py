from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import allure
import pytest
from conftest import ScriptedPlanner, ScriptedWorker

from agent_tree.config import OrchestratorSettings, Settings
from agent_tree.coordination import orchestrator as orchestrator_module
from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.lifecycle import NOTIFICATION_DEFERRED
from agent_tree.coordination.models import (
    EventType,
    InteractionKind,
    JobStatus,
    OrchestratorTrigger,
    TaskCreate,
    TaskPriority,
    TaskState,
    TaskTransition,
    Urgency,
)
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.coordination.runtime import CoordinationRuntime, build_runtime
from agent_tree.coordination.services import SubmitTask
from agent_tree.storage.common import utc_now

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Orchestrator"),
]

BOTTLENECK_ASSESSMENT = (
    "SYSTEM STATE: Writers are backed up.\nBOTTLENECK: yes\nRESOURCES CRITICAL: no"
)
CRITICAL_ASSESSMENT = (
    "SYSTEM STATE: Disk nearly full.\nBOTTLENECK: no\nRESOURCES CRITICAL: yes"
)


def _with_orchestrator(
    settings: Settings,
    repository: TaskGraphRepository,
    planner: ScriptedPlanner,
    worker: ScriptedWorker,
    **overrides,
) -> CoordinationRuntime:
    tuned = replace(settings, orchestrator=OrchestratorSettings(**overrides))
    return build_runtime(tuned, repository=repository, planner=planner, worker=worker)


def test_pass_spawns_coordinators_for_pending_roots(runtime: CoordinationRuntime) -> None:
    root = runtime.service.submit_task(SubmitTask(title="Market report"))

    report = runtime.orchestrator.run(OrchestratorTrigger.TASK_CREATED)

    assert report.spawned == [root.task_id]
    assert report.bottleneck is False
    assert report.critical is False
    assert report.assessment is not None
    assert report.assessment.summary.startswith("All queues are moving.")
    spawned = runtime.repository.require_task(root.task_id)
    assert spawned.state == TaskState.ACTIVE
    assert runtime.repository.has_active_job(
        task_id=root.task_id,
        agent_type=AgentType.COORDINATOR,
    )
    [assessed] = runtime.repository.list_events(event_type=EventType.SYSTEM_ASSESSED.value)
    assert assessed.payload["trigger"] == "task_created"
    assert assessed.payload["spawned"] == [root.task_id]


def test_second_pass_does_not_spawn_again(runtime: CoordinationRuntime) -> None:
    root = runtime.service.submit_task(SubmitTask(title="Market report"))
    runtime.orchestrator.run()

    report = runtime.orchestrator.run()

    assert report.spawned == []
    assert runtime.repository.require_task(root.task_id).state == TaskState.ACTIVE


def test_assessed_bottleneck_raises_oldest_pending_roots(
    runtime: CoordinationRuntime,
    planner: ScriptedPlanner,
) -> None:
    planner.script("system_assessment", BOTTLENECK_ASSESSMENT)
    first = runtime.repository.create_task(TaskCreate(title="First"))
    second = runtime.repository.create_task(TaskCreate(title="Second"))
    already_high = runtime.repository.create_task(
        TaskCreate(title="Urgent", priority=TaskPriority.HIGH),
    )

    report = runtime.orchestrator.run()

    assert report.bottleneck is True
    assert report.adjusted == [first.task_id, second.task_id]
    assert runtime.repository.require_task(first.task_id).priority == TaskPriority.HIGH
    adjusted_events = runtime.repository.list_events(
        event_type=EventType.PRIORITY_ADJUSTED.value,
    )
    assert {event.task_id for event in adjusted_events} == {first.task_id, second.task_id}
    assert already_high.task_id not in report.adjusted


def test_queue_depth_over_threshold_is_a_bottleneck(
    settings: Settings,
    repository: TaskGraphRepository,
    planner: ScriptedPlanner,
    worker: ScriptedWorker,
) -> None:
    runtime = _with_orchestrator(
        settings,
        repository,
        planner,
        worker,
        queue_bottleneck_threshold=1,
        rebalance_limit=1,
    )
    runtime.dispatcher.enqueue(AgentType.WRITER, {})
    runtime.dispatcher.enqueue(AgentType.WRITER, {})
    oldest = repository.create_task(TaskCreate(title="Oldest"))
    repository.create_task(TaskCreate(title="Newer"))

    report = runtime.orchestrator.run()

    assert report.snapshot.queued_jobs == {"writer": 2}
    assert report.bottleneck is True
    assert report.adjusted == [oldest.task_id]


def test_critical_trigger_raises_a_critical_intervention(runtime: CoordinationRuntime) -> None:
    report = runtime.orchestrator.run(OrchestratorTrigger.RESOURCES_CRITICAL)

    assert report.critical is True
    assert report.escalation_id is not None
    [intervention] = runtime.repository.list_interactions(kind=InteractionKind.INTERVENTION)
    assert intervention.interaction_id == report.escalation_id
    assert intervention.urgency == Urgency.CRITICAL
    assert intervention.question.startswith("System resources are critical")
    assert "Assessment: All queues are moving." in intervention.question


def test_assessment_can_flag_critical_resources(
    runtime: CoordinationRuntime,
    planner: ScriptedPlanner,
) -> None:
    planner.script("system_assessment", CRITICAL_ASSESSMENT)

    report = runtime.orchestrator.run()

    assert report.critical is True
    assert report.escalation_id is not None


def test_host_readings_over_threshold_are_critical(
    runtime: CoordinationRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(orchestrator_module, "_disk_percent", lambda path: 97.5)

    report = runtime.orchestrator.run()

    assert report.snapshot.disk_percent == 97.5
    assert report.critical is True


def test_exhausted_planner_quota_skips_the_assessment(
    settings: Settings,
    repository: TaskGraphRepository,
    planner: ScriptedPlanner,
    worker: ScriptedWorker,
) -> None:
    runtime = _with_orchestrator(settings, repository, planner, worker, daily_planner_call_limit=2)
    for _ in range(2):
        repository.record_planner_call(
            purpose="decomposition",
            task_id=None,
            prompt_chars=10,
            response_chars=10,
            succeeded=True,
        )

    report = runtime.orchestrator.run()

    assert report.assessment is None
    assert planner.count("system_assessment") == 0
    assert report.snapshot.planner_quota_percent == 100.0
    assert report.critical is True


def test_stuck_leaf_is_redispatched(
    runtime: CoordinationRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    stuck = runtime.repository.create_task(
        TaskCreate(title="Write intro", metadata={"assigned_agent": "writer"}),
    )
    runtime.lifecycle.transition(stuck.task_id, TaskTransition.ACTIVATE)
    never_spawned = runtime.repository.create_task(TaskCreate(title="Plan"))
    runtime.lifecycle.transition(never_spawned.task_id, TaskTransition.ACTIVATE)
    later = utc_now() + timedelta(hours=1)
    monkeypatch.setattr(orchestrator_module, "utc_now", lambda: later)

    rechecked = runtime.orchestrator.recheck_stuck()

    assert rechecked == [stuck.task_id]
    assert runtime.repository.has_active_job(task_id=stuck.task_id, agent_type=AgentType.WRITER)
    [event] = runtime.repository.list_events(event_type=EventType.TASK_STUCK.value)
    assert event.task_id == stuck.task_id
    assert event.payload["agent_type"] == "writer"
    assert "last_recheck_at" in runtime.repository.require_task(stuck.task_id).metadata


def test_task_with_a_queued_job_is_not_stuck(
    runtime: CoordinationRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = runtime.repository.create_task(
        TaskCreate(title="Write intro", metadata={"assigned_agent": "writer"}),
    )
    runtime.lifecycle.activate(task.task_id)
    later = utc_now() + timedelta(hours=1)
    monkeypatch.setattr(orchestrator_module, "utc_now", lambda: later)

    assert runtime.orchestrator.recheck_stuck() == []
    assert runtime.repository.list_events(event_type=EventType.TASK_STUCK.value) == []


def test_repeated_critical_passes_share_one_intervention(
    runtime: CoordinationRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(orchestrator_module, "_disk_percent", lambda path: 95.0)

    reports = [runtime.orchestrator.run() for _ in range(3)]

    assert all(report.critical for report in reports)
    assert {report.escalation_id for report in reports} == {reports[0].escalation_id}
    [intervention] = runtime.repository.list_interactions(kind=InteractionKind.INTERVENTION)
    assert intervention.interaction_id == reports[0].escalation_id


def test_acknowledged_critical_intervention_is_still_reused(
    runtime: CoordinationRuntime,
) -> None:
    first = runtime.orchestrator.run(OrchestratorTrigger.RESOURCES_CRITICAL)
    runtime.human.acknowledge(first.escalation_id)

    second = runtime.orchestrator.run(OrchestratorTrigger.RESOURCES_CRITICAL)

    assert second.escalation_id == first.escalation_id


def test_resolved_critical_intervention_allows_a_new_one(runtime: CoordinationRuntime) -> None:
    first = runtime.orchestrator.run(OrchestratorTrigger.RESOURCES_CRITICAL)
    runtime.human.resolve(first.escalation_id, "Freed disk space")

    second = runtime.orchestrator.run(OrchestratorTrigger.RESOURCES_CRITICAL)

    assert second.escalation_id is not None
    assert second.escalation_id != first.escalation_id
    assert len(runtime.repository.list_interactions(kind=InteractionKind.INTERVENTION)) == 2


def test_denied_parent_notification_is_rechecked_on_the_next_pass(
    runtime: CoordinationRuntime,
) -> None:
    parent = runtime.repository.create_task(TaskCreate(title="Quarterly report"))
    runtime.lifecycle.activate(parent.task_id)
    [spawn_job] = runtime.repository.list_jobs()
    runtime.dispatcher.cancel(spawn_job.job_id)
    child = runtime.repository.create_task(
        TaskCreate(title="Gather", parent_id=parent.task_id, position=1),
    )
    runtime.lifecycle.transition(child.task_id, TaskTransition.ACTIVATE)
    fillers = [runtime.dispatcher.enqueue(AgentType.COORDINATOR, {}) for _ in range(3)]
    assert all(job is not None for job in fillers)

    runtime.lifecycle.complete(child.task_id, result="numbers")

    assert NOTIFICATION_DEFERRED in runtime.repository.require_task(parent.task_id).metadata
    for job in fillers:
        runtime.dispatcher.cancel(job.job_id)

    assert runtime.orchestrator.recheck_stuck() == [parent.task_id]
    refreshed = runtime.repository.require_task(parent.task_id)
    assert NOTIFICATION_DEFERRED not in refreshed.metadata
    assert runtime.repository.list_events(event_type=EventType.TASK_STUCK.value) == []
    [recheck] = [
        job
        for job in runtime.repository.list_jobs(status=JobStatus.QUEUED)
        if job.task_id == parent.task_id
    ]
    assert recheck.payload["trigger"] == "recheck"
