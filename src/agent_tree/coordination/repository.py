"""Persistent task graph, job queue and event log."""

from __future__ import annotations

import json
from collections.abc import Collection, Iterable
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.errors import DependencyCycleError, TaskNotFoundError
from agent_tree.coordination.models import (
    ACTIVE_JOB_STATUSES,
    TRANSITION_RULES,
    EventView,
    InteractionCreate,
    InteractionKind,
    InteractionStatus,
    InteractionView,
    JobCreate,
    JobStatus,
    JobView,
    ProjectCreate,
    ProjectStatus,
    ProjectView,
    TaskCreate,
    TaskDetails,
    TaskPriority,
    TaskState,
    TaskTransition,
    TaskView,
    TransitionLogView,
    Urgency,
)
from agent_tree.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_tree.storage.migrations import upgrade_head
from agent_tree.storage.sqlmodel_models import (
    EventRecord,
    HumanInteraction,
    Job,
    PlannerCall,
    Project,
    Task,
    TaskDependency,
    TaskTransitionLog,
)


class TaskGraphRepository:
    """Persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Projects

    def create_project(self, payload: ProjectCreate) -> ProjectView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Project(
                project_id=payload.project_id or str(uuid4()),
                name=payload.name,
                description=payload.description,
                status=ProjectStatus.PENDING.value,
                priority=payload.priority.value,
                metadata_json=dump_json(payload.metadata),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            return _to_project_view(row) if row is not None else None

    def list_projects(
        self,
        *,
        status: ProjectStatus | None = None,
        limit: int = 50,
    ) -> list[ProjectView]:
        with Session(self.engine) as session:
            statement = select(Project).order_by(col(Project.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Project.status == status.value)
            rows = session.exec(statement).all()
        return [_to_project_view(row) for row in rows]

    def set_project_status(
        self,
        project_id: str,
        *,
        status: ProjectStatus,
        expected: Collection[ProjectStatus],
    ) -> ProjectView | None:
        """Conditionally move a project to ``status``; None when the guard fails."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Project)
                .where(
                    col(Project.project_id) == project_id,
                    col(Project.status).in_([item.value for item in expected]),
                )
                .values(status=status.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(Project, project_id)
            return _to_project_view(row) if row is not None else None

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task; subtasks inherit the parent's project."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            project_id = payload.project_id
            if payload.parent_id is not None:
                parent = session.get(Task, payload.parent_id)
                if parent is None:
                    raise TaskNotFoundError(payload.parent_id)
                if project_id is None:
                    project_id = parent.project_id
            row = Task(
                task_id=task_id,
                project_id=project_id,
                parent_id=payload.parent_id,
                title=payload.title,
                description=payload.description,
                state=TaskState.PENDING.value,
                priority=payload.priority.value,
                task_type=payload.task_type,
                position=payload.position,
                metadata_json=dump_json(payload.metadata),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_transition(
                session=session,
                task_id=task_id,
                transition="created",
                state_from=None,
                state_to=TaskState.PENDING,
                details={"parent_id": payload.parent_id, "priority": payload.priority.value},
            )
            session.commit()
            session.refresh(row)
            return self._to_task_view(session, row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return self._to_task_view(session, row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_children(self, parent_id: str) -> list[TaskView]:
        """Children in decomposition order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.parent_id == parent_id)
                .order_by(col(Task.position).asc(), col(Task.created_at).asc()),
            ).all()
            return self._to_task_views(session, rows)

    def list_tasks(  # noqa: PLR0913
        self,
        *,
        state: TaskState | None = None,
        parent_id: str | None = None,
        project_id: str | None = None,
        roots_only: bool = False,
        limit: int = 100,
    ) -> list[TaskView]:
        """List recent tasks, newest first."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if state is not None:
                statement = statement.where(Task.state == state.value)
            if parent_id is not None:
                statement = statement.where(Task.parent_id == parent_id)
            if project_id is not None:
                statement = statement.where(Task.project_id == project_id)
            if roots_only:
                statement = statement.where(col(Task.parent_id).is_(None))
            rows = session.exec(statement).all()
            return self._to_task_views(session, rows)

    def list_stale_tasks(
        self,
        *,
        states: Collection[TaskState],
        updated_before: datetime,
        limit: int = 100,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    col(Task.state).in_([state.value for state in states]),
                    col(Task.updated_at) < to_db_datetime(updated_before),
                )
                .order_by(col(Task.updated_at).asc())
                .limit(limit),
            ).all()
            return self._to_task_views(session, rows)

    def count_tasks_by_state(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(select(Task.state, func.count()).group_by(Task.state)).all()
        return {state: count for state, count in rows}

    def transition_task(  # noqa: PLR0913
        self,
        task_id: str,
        transition: TaskTransition,
        *,
        result: str | None = None,
        error_message: str | None = None,
        metadata_updates: dict[str, Any] | None = None,
        clear_metadata: Iterable[str] = (),
        details: dict[str, object] | None = None,
    ) -> TaskView | None:
        """Apply one guarded state change as a single-row conditional update.

        Returns the updated view, or None when the current state is not a valid
        source for ``transition`` (including losing a race to another writer).
        """

        rule = TRANSITION_RULES[transition]
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            previous = TaskState(row.state)
            if previous not in rule.sources:
                return None

            values: dict[str, Any] = {
                "state": rule.target.value,
                "updated_at": to_db_datetime(now),
            }
            if result is not None:
                values["result"] = result
            if error_message is not None:
                values["error_message"] = error_message
            clear_keys = tuple(clear_metadata)
            if metadata_updates or clear_keys:
                metadata = load_json(row.metadata_json)
                metadata.update(metadata_updates or {})
                for key in clear_keys:
                    metadata.pop(key, None)
                values["metadata_json"] = dump_json(metadata)

            update_result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.state) == previous.value,
                )
                .values(**values),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return None
            self._add_transition(
                session=session,
                task_id=task_id,
                transition=transition.value,
                state_from=previous,
                state_to=rule.target,
                details=details or {},
            )
            session.commit()
            session.refresh(row)
            return self._to_task_view(session, row)

    def update_task(
        self,
        task_id: str,
        *,
        priority: TaskPriority | None = None,
        metadata_updates: dict[str, Any] | None = None,
        clear_metadata: Iterable[str] = (),
    ) -> TaskView:
        """Update non-state fields."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            if priority is not None:
                row.priority = priority.value
            clear_keys = tuple(clear_metadata)
            if metadata_updates or clear_keys:
                metadata = load_json(row.metadata_json)
                metadata.update(metadata_updates or {})
                for key in clear_keys:
                    metadata.pop(key, None)
                row.metadata_json = dump_json(metadata)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_task_view(session, row)

    def append_note(self, task_id: str, note: str) -> None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            notes = _load_notes(row.notes)
            notes.append(note)
            row.notes = json.dumps(notes, ensure_ascii=False)
            session.add(row)
            session.commit()

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task with children and transition history."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return None
            task = self._to_task_view(session, row)
            children = self._to_task_views(
                session,
                session.exec(
                    select(Task)
                    .where(Task.parent_id == task_id)
                    .order_by(col(Task.position).asc(), col(Task.created_at).asc()),
                ).all(),
            )
            log_rows = session.exec(
                select(TaskTransitionLog)
                .where(TaskTransitionLog.task_id == task_id)
                .order_by(col(TaskTransitionLog.created_at).asc(), col(TaskTransitionLog.id)),
            ).all()

        transitions = [
            TransitionLogView(
                entry_id=entry.id or 0,
                task_id=entry.task_id,
                transition=entry.transition,
                state_from=TaskState(entry.state_from) if entry.state_from else None,
                state_to=TaskState(entry.state_to) if entry.state_to else None,
                created_at=to_utc_aware_datetime(entry.created_at),
                details=load_json(entry.details_json),
            )
            for entry in log_rows
        ]
        return TaskDetails(task=task, children=children, transitions=transitions)

    # Dependencies

    def link_dependencies(self, task_id: str, depends_on_ids: Iterable[str]) -> tuple[str, ...]:
        """Persist ``task_id`` -> upstream links, rejecting any that close a cycle."""

        now = utc_now()
        linked: list[str] = []
        with Session(self.engine) as session:
            if session.get(Task, task_id) is None:
                raise TaskNotFoundError(task_id)
            for depends_on_id in dict.fromkeys(depends_on_ids):
                if depends_on_id == task_id or self._reaches(
                    session,
                    start=depends_on_id,
                    target=task_id,
                ):
                    raise DependencyCycleError(task_id=task_id, depends_on_id=depends_on_id)
                if session.get(Task, depends_on_id) is None:
                    raise TaskNotFoundError(depends_on_id)
                if session.get(TaskDependency, (task_id, depends_on_id)) is None:
                    session.add(
                        TaskDependency(
                            task_id=task_id,
                            depends_on_id=depends_on_id,
                            created_at=now,
                        ),
                    )
                    session.flush()
                linked.append(depends_on_id)
            session.commit()
        return tuple(linked)

    def replace_dependency(self, *, old_id: str, new_id: str) -> list[str]:
        """Point every task that waited on ``old_id`` at ``new_id`` instead."""

        now = utc_now()
        rewired: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDependency).where(TaskDependency.depends_on_id == old_id),
            ).all()
            for row in rows:
                downstream_id = row.task_id
                session.delete(row)
                if downstream_id == new_id:
                    continue
                if self._reaches(session, start=new_id, target=downstream_id):
                    raise DependencyCycleError(task_id=downstream_id, depends_on_id=new_id)
                if session.get(TaskDependency, (downstream_id, new_id)) is None:
                    session.add(
                        TaskDependency(
                            task_id=downstream_id,
                            depends_on_id=new_id,
                            created_at=now,
                        ),
                    )
                session.flush()
                rewired.append(downstream_id)
            session.commit()
        return rewired

    def _reaches(self, session: Session, *, start: str, target: str) -> bool:
        frontier = [start]
        seen = {start}
        while frontier:
            upstream_ids = session.exec(
                select(TaskDependency.depends_on_id).where(
                    col(TaskDependency.task_id).in_(frontier),
                ),
            ).all()
            frontier = []
            for upstream_id in upstream_ids:
                if upstream_id == target:
                    return True
                if upstream_id not in seen:
                    seen.add(upstream_id)
                    frontier.append(upstream_id)
        return False

    # Events

    def record_event(  # noqa: PLR0913
        self,
        *,
        event_type: str,
        payload: dict[str, Any] | None = None,
        task_id: str | None = None,
        parent_task_id: str | None = None,
        project_id: str | None = None,
        job_id: str | None = None,
        priority: str | None = None,
    ) -> EventView:
        with Session(self.engine) as session:
            row = EventRecord(
                event_id=str(uuid4()),
                event_type=event_type,
                task_id=task_id,
                parent_task_id=parent_task_id,
                project_id=project_id,
                job_id=job_id,
                priority=priority,
                payload_json=dump_json(payload),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_event_view(row)

    def get_event(self, event_id: str) -> EventView | None:
        with Session(self.engine) as session:
            row = session.get(EventRecord, event_id)
            return _to_event_view(row) if row is not None else None

    def list_events(
        self,
        *,
        event_type: str | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[EventView]:
        with Session(self.engine) as session:
            statement = (
                select(EventRecord).order_by(col(EventRecord.created_at).desc()).limit(limit)
            )
            if event_type is not None:
                statement = statement.where(EventRecord.event_type == event_type)
            if task_id is not None:
                statement = statement.where(EventRecord.task_id == task_id)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    # Jobs

    def enqueue_job(self, payload: JobCreate) -> JobView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Job(
                job_id=str(uuid4()),
                agent_type=payload.agent_type.value,
                task_id=payload.task_id,
                priority=payload.priority,
                status=JobStatus.QUEUED.value,
                attempt=0,
                max_attempts=payload.max_attempts,
                payload_json=dump_json(payload.payload),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def count_active_jobs(self, agent_type: AgentType) -> int:
        """Queued plus running jobs addressed to ``agent_type``."""

        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(Job)
                .where(
                    Job.agent_type == agent_type.value,
                    col(Job.status).in_([status.value for status in ACTIVE_JOB_STATUSES]),
                ),
            ).one()

    def job_counts_by_agent(self, *, status: JobStatus) -> dict[AgentType, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.agent_type, func.count())
                .where(Job.status == status.value)
                .group_by(Job.agent_type),
            ).all()
        return {AgentType(agent_type): count for agent_type, count in rows}

    def has_active_job(self, *, task_id: str, agent_type: AgentType) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(Job.job_id)
                .where(
                    Job.task_id == task_id,
                    Job.agent_type == agent_type.value,
                    col(Job.status).in_([status.value for status in ACTIVE_JOB_STATUSES]),
                )
                .limit(1),
            ).first()
        return row is not None

    def claim_next_job(
        self,
        *,
        worker_id: str,
        agent_types: Collection[AgentType] | None = None,
    ) -> JobView | None:
        """Atomically claim the highest-priority queued job."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = (
                    select(Job)
                    .where(Job.status == JobStatus.QUEUED.value)
                    .order_by(col(Job.priority).asc(), col(Job.created_at).asc())
                    .limit(1)
                )
                if agent_types is not None:
                    statement = statement.where(
                        col(Job.agent_type).in_([agent.value for agent in agent_types]),
                    )
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        started_at=to_db_datetime(now),
                        finished_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(Job, candidate.job_id)
                if claimed is None:
                    continue
                session.refresh(claimed)
                return _to_job_view(claimed)

    def complete_job(self, job_id: str) -> bool:
        return self._finish_job(
            job_id,
            expected=(JobStatus.RUNNING,),
            status=JobStatus.SUCCEEDED,
            error_summary=None,
        )

    def fail_job(self, job_id: str, *, error_summary: str, retry: bool) -> JobStatus | None:
        """Requeue a running job while attempts remain, otherwise mark it failed."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None or row.status != JobStatus.RUNNING.value:
                return None
            retry_allowed = retry and row.attempt < row.max_attempts
            status = JobStatus.QUEUED if retry_allowed else JobStatus.FAILED
            result = session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.status) == JobStatus.RUNNING.value)
                .values(
                    status=status.value,
                    error_summary=error_summary,
                    worker_id=None if retry_allowed else row.worker_id,
                    finished_at=None if retry_allowed else to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return status

    def cancel_job(self, job_id: str) -> bool:
        return self._finish_job(
            job_id,
            expected=(JobStatus.QUEUED, JobStatus.RUNNING),
            status=JobStatus.CANCELED,
            error_summary=None,
        )

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def _finish_job(
        self,
        job_id: str,
        *,
        expected: Collection[JobStatus],
        status: JobStatus,
        error_summary: str | None,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).in_([item.value for item in expected]),
                )
                .values(
                    status=status.value,
                    error_summary=error_summary,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Human interactions

    def create_interaction(self, payload: InteractionCreate) -> InteractionView:
        now = utc_now()
        with Session(self.engine) as session:
            row = HumanInteraction(
                interaction_id=str(uuid4()),
                kind=payload.kind.value,
                task_id=payload.task_id,
                project_id=payload.project_id,
                question=payload.question,
                context=payload.context,
                required=payload.required,
                urgency=payload.urgency.value,
                status=InteractionStatus.PENDING.value,
                expires_at=to_db_datetime(payload.expires_at) if payload.expires_at else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_interaction_view(row)

    def get_interaction(self, interaction_id: str) -> InteractionView | None:
        with Session(self.engine) as session:
            row = session.get(HumanInteraction, interaction_id)
            return _to_interaction_view(row) if row is not None else None

    def list_interactions(
        self,
        *,
        status: InteractionStatus | None = None,
        kind: InteractionKind | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[InteractionView]:
        with Session(self.engine) as session:
            statement = (
                select(HumanInteraction)
                .order_by(col(HumanInteraction.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(HumanInteraction.status == status.value)
            if kind is not None:
                statement = statement.where(HumanInteraction.kind == kind.value)
            if task_id is not None:
                statement = statement.where(HumanInteraction.task_id == task_id)
            rows = session.exec(statement).all()
        return [_to_interaction_view(row) for row in rows]

    def list_expired_interactions(self, *, now: datetime) -> list[InteractionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(HumanInteraction)
                .where(
                    HumanInteraction.status == InteractionStatus.PENDING.value,
                    col(HumanInteraction.expires_at).is_not(None),
                    col(HumanInteraction.expires_at) <= to_db_datetime(now),
                )
                .order_by(col(HumanInteraction.expires_at).asc()),
            ).all()
        return [_to_interaction_view(row) for row in rows]

    def update_interaction(
        self,
        interaction_id: str,
        *,
        expected: Collection[InteractionStatus],
        status: InteractionStatus,
        response: str | None = None,
        responded_by: str | None = None,
    ) -> InteractionView | None:
        """Conditionally move an interaction to ``status``; None when the guard fails."""

        now = utc_now()
        closing = status not in {InteractionStatus.PENDING, InteractionStatus.ACKNOWLEDGED}
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(HumanInteraction)
                .where(
                    col(HumanInteraction.interaction_id) == interaction_id,
                    col(HumanInteraction.status).in_([item.value for item in expected]),
                )
                .values(
                    status=status.value,
                    response=response,
                    responded_by=responded_by,
                    resolved_at=to_db_datetime(now) if closing else None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(HumanInteraction, interaction_id)
            return _to_interaction_view(row) if row is not None else None

    # Planner call log

    def record_planner_call(  # noqa: PLR0913
        self,
        *,
        purpose: str,
        task_id: str | None,
        prompt_chars: int,
        response_chars: int,
        succeeded: bool,
        error_summary: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                PlannerCall(
                    purpose=purpose,
                    task_id=task_id,
                    prompt_chars=prompt_chars,
                    response_chars=response_chars,
                    succeeded=succeeded,
                    error_summary=error_summary,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def count_planner_calls(self, *, since: datetime) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(PlannerCall)
                .where(col(PlannerCall.created_at) >= to_db_datetime(since)),
            ).one()

    # Helpers

    def _add_transition(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        transition: str,
        state_from: TaskState | None,
        state_to: TaskState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskTransitionLog(
                task_id=task_id,
                transition=transition,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=dump_json(details),
                created_at=utc_now(),
            ),
        )

    def _dependency_map(self, session: Session, task_ids: list[str]) -> dict[str, list[str]]:
        if not task_ids:
            return {}
        rows = session.exec(
            select(TaskDependency)
            .where(col(TaskDependency.task_id).in_(task_ids))
            .order_by(col(TaskDependency.created_at).asc(), col(TaskDependency.depends_on_id)),
        ).all()
        mapping: dict[str, list[str]] = {}
        for row in rows:
            mapping.setdefault(row.task_id, []).append(row.depends_on_id)
        return mapping

    def _to_task_views(self, session: Session, rows: Iterable[Task]) -> list[TaskView]:
        rows = list(rows)
        dependencies = self._dependency_map(session, [row.task_id for row in rows])
        return [_to_task_view(row, dependencies.get(row.task_id, [])) for row in rows]

    def _to_task_view(self, session: Session, row: Task) -> TaskView:
        dependencies = self._dependency_map(session, [row.task_id])
        return _to_task_view(row, dependencies.get(row.task_id, []))


def _load_notes(value: str | None) -> list[str]:
    if not value:
        return []
    parsed = json.loads(value)
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return []


def _to_task_view(row: Task, depends_on: list[str]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        state=TaskState(row.state),
        priority=TaskPriority.parse(row.priority),
        task_type=row.task_type,
        parent_id=row.parent_id,
        project_id=row.project_id,
        position=row.position,
        depends_on=tuple(depends_on),
        metadata=MappingProxyType(load_json(row.metadata_json)),
        result=row.result,
        error_message=row.error_message,
        notes=tuple(_load_notes(row.notes)),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        name=row.name,
        description=row.description,
        status=ProjectStatus(row.status),
        priority=TaskPriority.parse(row.priority),
        metadata=MappingProxyType(load_json(row.metadata_json)),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: EventRecord) -> EventView:
    return EventView(
        event_id=row.event_id,
        event_type=row.event_type,
        payload=MappingProxyType(load_json(row.payload_json)),
        task_id=row.task_id,
        parent_task_id=row.parent_task_id,
        project_id=row.project_id,
        job_id=row.job_id,
        priority=row.priority,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        agent_type=AgentType(row.agent_type),
        task_id=row.task_id,
        priority=row.priority,
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        payload=MappingProxyType(load_json(row.payload_json)),
        worker_id=row.worker_id,
        error_summary=row.error_summary,
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_interaction_view(row: HumanInteraction) -> InteractionView:
    return InteractionView(
        interaction_id=row.interaction_id,
        kind=InteractionKind(row.kind),
        task_id=row.task_id,
        project_id=row.project_id,
        question=row.question,
        context=row.context,
        required=row.required,
        urgency=Urgency(row.urgency),
        status=InteractionStatus(row.status),
        response=row.response,
        responded_by=row.responded_by,
        expires_at=optional_utc(row.expires_at),
        resolved_at=optional_utc(row.resolved_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
