"""Wire the coordination components for one process."""

from __future__ import annotations

from dataclasses import dataclass

from agent_tree.config import Settings
from agent_tree.coordination.agents import AgentRegistry, AgentType
from agent_tree.coordination.assignment import SubtaskAssigner
from agent_tree.coordination.coordinator import Coordinator
from agent_tree.coordination.dispatch import WorkerDispatcher
from agent_tree.coordination.events import EventBus
from agent_tree.coordination.human import HumanInteractionService
from agent_tree.coordination.lifecycle import TaskLifecycle
from agent_tree.coordination.orchestrator import Orchestrator
from agent_tree.coordination.planner import Planner, build_planner
from agent_tree.coordination.recovery import FailureRecovery
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.coordination.runner import (
    CoordinatorJobHandler,
    JobHandler,
    JobRunner,
    LeafJobHandler,
    OrchestratorJobHandler,
)
from agent_tree.coordination.services import TaskGraphService
from agent_tree.coordination.subscriptions import DefaultSubscriptions, wire_default_subscriptions
from agent_tree.coordination.workers import PlannerWorker, WorkerAgent


@dataclass(slots=True)
class CoordinationRuntime:
    """Every collaborator the CLI and the job runner need, built once."""

    settings: Settings
    repository: TaskGraphRepository
    bus: EventBus
    dispatcher: WorkerDispatcher
    lifecycle: TaskLifecycle
    planner: Planner
    human: HumanInteractionService
    assigner: SubtaskAssigner
    recovery: FailureRecovery
    coordinator: Coordinator
    orchestrator: Orchestrator
    service: TaskGraphService
    subscriptions: DefaultSubscriptions
    registry: AgentRegistry[JobHandler]

    def runner(self, *, worker_id: str | None = None) -> JobRunner:
        return JobRunner(
            repository=self.repository,
            registry=self.registry,
            lifecycle=self.lifecycle,
            worker_id=worker_id or self.settings.worker.worker_id,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
        )

    def close(self) -> None:
        close = getattr(self.planner, "close", None)
        if close is not None:
            close()


def build_runtime(
    settings: Settings,
    *,
    repository: TaskGraphRepository,
    planner: Planner | None = None,
    worker: WorkerAgent | None = None,
) -> CoordinationRuntime:
    """Build the component graph; the planner defaults to the configured backend."""

    coordination = settings.coordination
    bus = EventBus(repository)
    dispatcher = WorkerDispatcher(repository=repository, settings=coordination)
    lifecycle = TaskLifecycle(repository=repository, bus=bus, dispatcher=dispatcher)
    planner = planner or build_planner(settings.planner, repository=repository)
    leaf_worker = worker or PlannerWorker(planner)
    human = HumanInteractionService(
        repository=repository,
        lifecycle=lifecycle,
        bus=bus,
        settings=coordination,
    )
    assigner = SubtaskAssigner(
        repository=repository,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        planner=planner,
        settings=coordination,
    )
    recovery = FailureRecovery(
        repository=repository,
        lifecycle=lifecycle,
        assigner=assigner,
        human=human,
        planner=planner,
        bus=bus,
        settings=coordination,
    )
    coordinator = Coordinator(
        repository=repository,
        lifecycle=lifecycle,
        assigner=assigner,
        recovery=recovery,
        planner=planner,
        settings=coordination,
    )
    orchestrator = Orchestrator(
        repository=repository,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        human=human,
        planner=planner,
        bus=bus,
        settings=settings.orchestrator,
        coordination=coordination,
    )
    subscriptions = wire_default_subscriptions(
        bus,
        repository=repository,
        dispatcher=dispatcher,
        assigner=assigner,
    )

    registry: AgentRegistry[JobHandler] = AgentRegistry()
    registry.register(
        AgentType.COORDINATOR,
        lambda: CoordinatorJobHandler(
            coordinator=coordinator,
            assigner=assigner,
            repository=repository,
            settings=coordination,
        ),
    )
    registry.register(AgentType.ORCHESTRATOR, lambda: OrchestratorJobHandler(orchestrator))
    registry.register_leaves(
        lambda: LeafJobHandler(
            worker=leaf_worker,
            repository=repository,
            lifecycle=lifecycle,
            human=human,
        ),
    )

    return CoordinationRuntime(
        settings=settings,
        repository=repository,
        bus=bus,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        planner=planner,
        human=human,
        assigner=assigner,
        recovery=recovery,
        coordinator=coordinator,
        orchestrator=orchestrator,
        service=TaskGraphService(repository=repository, bus=bus),
        subscriptions=subscriptions,
        registry=registry,
    )
