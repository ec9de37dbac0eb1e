"""Use-case services behind the operator CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from agent_tree.coordination.errors import CoordinationError
from agent_tree.coordination.events import EventBus
from agent_tree.coordination.models import (
    EventType,
    ProjectCreate,
    ProjectStatus,
    ProjectView,
    TaskCreate,
    TaskPriority,
    TaskType,
    TaskView,
)
from agent_tree.coordination.repository import TaskGraphRepository

logger = logging.getLogger(__name__)

KICKOFF_TITLE = "Project kickoff: {name}"


@dataclass(slots=True)
class SubmitTask:
    """High-level command to submit a root task."""

    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    task_type: str = TaskType.GENERAL.value
    project_id: str | None = None
    complex_task: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class KickoffProject:
    name: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL


class TaskGraphService:
    """Creates root work and toggles projects; the bus takes it from there."""

    def __init__(self, *, repository: TaskGraphRepository, bus: EventBus) -> None:
        self.repository = repository
        self.bus = bus

    def submit_task(self, command: SubmitTask) -> TaskView:
        project_id = command.project_id
        if project_id is not None and self.repository.get_project(project_id) is None:
            raise CoordinationError(f"Project not found: {project_id}")
        metadata: dict[str, Any] = {"nesting_level": 0, **command.metadata}
        if command.complex_task:
            metadata["complexity"] = "complex"
        task = self.repository.create_task(
            TaskCreate(
                title=command.title,
                description=command.description,
                priority=command.priority,
                task_type=command.task_type,
                project_id=command.project_id,
                metadata=metadata,
            ),
        )
        self.bus.publish(
            EventType.TASK_CREATED,
            {"title": task.title, "task_type": task.task_type},
            task_id=task.task_id,
            project_id=task.project_id,
            priority=task.priority.value,
        )
        logger.info("Submitted root task %s: %s", task.task_id, task.title)
        return task

    def kickoff_project(self, command: KickoffProject) -> tuple[ProjectView, TaskView]:
        """Create an active project plus its root orchestration task."""

        project = self.repository.create_project(
            ProjectCreate(
                name=command.name,
                description=command.description,
                priority=command.priority,
            ),
        )
        activated = self.repository.set_project_status(
            project.project_id,
            status=ProjectStatus.ACTIVE,
            expected=(ProjectStatus.PENDING,),
        )
        project = activated or project
        root = self.repository.create_task(
            TaskCreate(
                title=KICKOFF_TITLE.format(name=command.name),
                description=command.description or command.name,
                priority=command.priority,
                task_type=TaskType.ORCHESTRATION.value,
                project_id=project.project_id,
                metadata={"nesting_level": 0, "complexity": "complex", "kickoff": True},
            ),
        )
        self.bus.publish(
            EventType.PROJECT_CREATED,
            {"name": project.name, "root_task_id": root.task_id},
            project_id=project.project_id,
            priority=project.priority.value,
        )
        self.bus.publish(
            EventType.TASK_CREATED,
            {"title": root.title, "task_type": root.task_type},
            task_id=root.task_id,
            project_id=project.project_id,
            priority=root.priority.value,
        )
        logger.info("Project %s kicked off with root task %s", project.project_id, root.task_id)
        return project, root

    def pause_project(self, project_id: str) -> ProjectView:
        return self._set_status(
            project_id,
            status=ProjectStatus.PAUSED,
            expected=(ProjectStatus.PENDING, ProjectStatus.ACTIVE),
            event_type=EventType.PROJECT_PAUSED,
        )

    def resume_project(self, project_id: str) -> ProjectView:
        return self._set_status(
            project_id,
            status=ProjectStatus.ACTIVE,
            expected=(ProjectStatus.PAUSED,),
            event_type=EventType.PROJECT_RESUMED,
        )

    def _set_status(
        self,
        project_id: str,
        *,
        status: ProjectStatus,
        expected: tuple[ProjectStatus, ...],
        event_type: EventType,
    ) -> ProjectView:
        project = self.repository.set_project_status(project_id, status=status, expected=expected)
        if project is None:
            current = self.repository.get_project(project_id)
            if current is None:
                raise CoordinationError(f"Project not found: {project_id}")
            raise CoordinationError(
                f"Cannot move project {project_id} from {current.status.value} to {status.value}",
            )
        self.bus.publish(
            event_type,
            {"status": project.status.value},
            project_id=project_id,
            priority=project.priority.value,
        )
        return project
