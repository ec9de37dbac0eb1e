"""Controllers for the agent-tree CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_tree.config import Settings
from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.models import (
    InteractionKind,
    InteractionStatus,
    OrchestratorTrigger,
    ProjectStatus,
    TaskPriority,
    TaskState,
    TaskView,
)
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.coordination.runtime import CoordinationRuntime, build_runtime
from agent_tree.coordination.scheduling import status_report
from agent_tree.coordination.services import KickoffProject, SubmitTask
from agent_tree.coordination.workers import EchoWorker

RESULT_PREVIEW_CHARS = 200


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for submitting a root task."""

    db_path: Path | None
    title: str
    description: str
    priority: str
    task_type: str
    project_id: str | None
    complex_task: bool


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    state: str | None
    roots_only: bool
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for operator fail/complete."""

    db_path: Path | None
    task_id: str
    message: str


@dataclass(slots=True)
class ProjectCreateCommand:
    db_path: Path | None
    name: str
    description: str
    priority: str


@dataclass(slots=True)
class ProjectMutateCommand:
    db_path: Path | None
    project_id: str


@dataclass(slots=True)
class ProjectListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class RunCommand:
    """CLI input for the job runner."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int
    echo_workers: bool


@dataclass(slots=True)
class OrchestrateCommand:
    db_path: Path | None
    trigger: str
    inline: bool


@dataclass(slots=True)
class HumanListCommand:
    db_path: Path | None
    status: str | None
    kind: str | None
    limit: int


@dataclass(slots=True)
class HumanActionCommand:
    """CLI input for one operator action on an interaction."""

    db_path: Path | None
    interaction_id: str
    text: str | None = None
    responded_by: str = "operator"


@dataclass(slots=True)
class EventsCommand:
    db_path: Path | None
    event_type: str | None
    task_id: str | None
    limit: int
    output_format: str = "table"


@dataclass(slots=True)
class EventReplayCommand:
    db_path: Path | None
    event_id: str


class AgentTreeCliController:
    """Coordinates task graph, runner and operator CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.service.submit_task(
                SubmitTask(
                    title=command.title,
                    description=command.description,
                    priority=TaskPriority.parse(command.priority),
                    task_type=command.task_type,
                    project_id=command.project_id,
                    complex_task=command.complex_task,
                ),
            )
        return [
            f"Task created: task_id={task.task_id} state={task.state.value} "
            f"priority={task.priority.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        state = TaskState(command.state.strip().lower()) if command.state else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                state=state,
                roots_only=command.roots_only,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"State: {task.state.value}",
            f"Priority: {task.priority.value}",
            f"Type: {task.task_type}",
            f"Parent: {task.parent_id or '-'}",
            f"Project: {task.project_id or '-'}",
            f"Depends on: {', '.join(task.depends_on) or '-'}",
            f"Result: {_preview(task.result)}",
            f"Error: {task.error_message or '-'}",
            f"Metadata: {json.dumps(dict(task.metadata), sort_keys=True, default=str)}",
        ]
        if details.children:
            report = status_report(details.children)
            lines.append(
                f"Subtasks: {report.total} "
                f"({report.completion_percent:.0f}% complete, "
                + ", ".join(f"{state}={count}" for state, count in sorted(report.by_state.items()))
                + ")",
            )
            lines.extend(f"  {_task_line(child)}" for child in details.children)
        if task.notes:
            lines.append("Notes:")
            lines.extend(f"  - {note}" for note in task.notes)
        lines.append(f"Transitions: {len(details.transitions)}")
        for entry in details.transitions:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.transition} "
                f"{entry.state_from.value if entry.state_from else '-'} -> "
                f"{entry.state_to.value if entry.state_to else '-'}",
            )
        return lines

    def fail_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.lifecycle.fail(command.task_id, error=command.message)
        return [f"Task failed: {task.task_id} state={task.state.value}"]

    def complete_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            completion = runtime.coordinator.mark_complete(
                command.task_id,
                summary=command.message or None,
            )
        if not completion.completed:
            return [
                f"Task not completed: {command.task_id} has "
                f"{len(completion.stragglers)} unfinished subtasks",
                *(f"  {task_id}" for task_id in completion.stragglers),
            ]
        return [f"Task completed: {command.task_id}"]

    def create_project(self, command: ProjectCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            project, root = runtime.service.kickoff_project(
                KickoffProject(
                    name=command.name,
                    description=command.description,
                    priority=TaskPriority.parse(command.priority),
                ),
            )
        return [
            f"Project created: project_id={project.project_id} status={project.status.value}",
            f"Root task: {root.task_id}",
        ]

    def pause_project(self, command: ProjectMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            project = runtime.service.pause_project(command.project_id)
        return [f"Project paused: {project.project_id}"]

    def resume_project(self, command: ProjectMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            project = runtime.service.resume_project(command.project_id)
        return [f"Project resumed: {project.project_id}"]

    def list_projects(self, command: ProjectListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = ProjectStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            projects = repository.list_projects(status=status, limit=command.limit)
        lines = [f"Projects: {len(projects)}"]
        for project in projects:
            lines.append(
                f"  {project.project_id} status={project.status.value} "
                f"priority={project.priority.value} name={project.name}",
            )
        return lines

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        worker = EchoWorker() if command.echo_workers else None
        with _runtime(settings, worker=worker) as runtime:
            runner = runtime.runner()
            summary = (
                runner.run_once()
                if command.once
                else runner.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Runner summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls}",
        ]

    def orchestrate(self, command: OrchestrateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        trigger = OrchestratorTrigger(command.trigger)
        with _runtime(settings) as runtime:
            if not command.inline:
                job = runtime.dispatcher.enqueue(
                    AgentType.ORCHESTRATOR,
                    {"trigger": trigger.value},
                )
                if job is None:
                    return ["Orchestrator already queued or running"]
                return [f"Orchestrator job enqueued: {job.job_id}"]
            report = runtime.orchestrator.run(trigger)
        snapshot = report.snapshot
        return [
            f"Orchestrator pass ({trigger.value}): bottleneck={report.bottleneck} "
            f"critical={report.critical}",
            "Tasks: "
            + (
                ", ".join(f"{k}={v}" for k, v in sorted(snapshot.tasks_by_state.items()))
                or "-"
            ),
            f"Queued jobs: {snapshot.queued_total} "
            f"planner calls 24h: {snapshot.planner_calls_24h}/{snapshot.planner_call_limit}",
            f"Adjusted: {len(report.adjusted)} spawned: {len(report.spawned)} "
            f"rechecked: {len(report.rechecked)} expired: {len(report.expired)}",
            f"Assessment: {report.assessment.summary if report.assessment else '-'}",
        ]

    def list_interactions(self, command: HumanListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = InteractionStatus(command.status) if command.status else None
        kind = InteractionKind(command.kind) if command.kind else None
        with _repository(settings) as repository:
            interactions = repository.list_interactions(
                status=status,
                kind=kind,
                limit=command.limit,
            )
        lines = [f"Interactions: {len(interactions)}"]
        for item in interactions:
            flag = "required" if item.required else "optional"
            lines.append(
                f"  {item.interaction_id} {item.kind.value} {item.status.value} "
                f"urgency={item.urgency.value} {flag} task={item.task_id or '-'}",
            )
            lines.append(f"    {item.question}")
        return lines

    def answer(self, command: HumanActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            item = runtime.human.answer(
                command.interaction_id,
                command.text or "",
                responded_by=command.responded_by,
            )
        return [f"Interaction {item.interaction_id}: {item.status.value}"]

    def ignore(self, command: HumanActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            item = runtime.human.ignore(command.interaction_id, responded_by=command.responded_by)
        return [f"Interaction {item.interaction_id}: {item.status.value}"]

    def acknowledge(self, command: HumanActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            item = runtime.human.acknowledge(
                command.interaction_id,
                responded_by=command.responded_by,
            )
        return [f"Interaction {item.interaction_id}: {item.status.value}"]

    def resolve(self, command: HumanActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            item = runtime.human.resolve(
                command.interaction_id,
                command.text or "",
                responded_by=command.responded_by,
            )
        return [f"Interaction {item.interaction_id}: {item.status.value}"]

    def dismiss(self, command: HumanActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            item = runtime.human.dismiss(command.interaction_id, responded_by=command.responded_by)
        return [f"Interaction {item.interaction_id}: {item.status.value}"]

    def expire(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _runtime(settings) as runtime:
            expired = runtime.human.expire_overdue()
        return [f"Expired interactions: {len(expired)}"]

    def events(self, command: EventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            events = repository.list_events(
                event_type=command.event_type,
                task_id=command.task_id,
                limit=command.limit,
            )
        if command.output_format == "json":
            entries = [
                {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "task_id": event.task_id,
                    "parent_task_id": event.parent_task_id,
                    "project_id": event.project_id,
                    "priority": event.priority,
                    "payload": dict(event.payload),
                    "created_at": event.created_at.isoformat(),
                }
                for event in events
            ]
            return [json.dumps(entries, indent=2, default=str)]
        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"task={event.task_id or '-'} id={event.event_id}",
            )
        return lines

    def replay_event(self, command: EventReplayCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            event = runtime.bus.replay(command.event_id)
        return [f"Replayed {event.event_type} ({event.event_id})"]


def _task_line(task: TaskView) -> str:
    agent = task.assigned_agent.value if task.assigned_agent else "-"
    return (
        f"{task.task_id} state={task.state.value} priority={task.priority.value} "
        f"agent={agent} title={task.title}"
    )


def _preview(text: str | None) -> str:
    if not text:
        return "-"
    if len(text) <= RESULT_PREVIEW_CHARS:
        return text
    return text[:RESULT_PREVIEW_CHARS] + "..."


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskGraphRepository]:
    repository = TaskGraphRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(
    settings: Settings,
    *,
    worker: EchoWorker | None = None,
) -> Iterator[CoordinationRuntime]:
    with _repository(settings) as repository:
        runtime = build_runtime(settings, repository=repository, worker=worker)
        try:
            yield runtime
        finally:
            runtime.close()
