"""SQLModel ORM tables for the task graph, job queue and event log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: str = Field(default="normal")
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_parent_state", "parent_id", "state"),
        Index("idx_tasks_state_updated", "state", "updated_at"),
    )

    task_id: str = Field(primary_key=True)
    project_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    state: str = Field(index=True)
    priority: str = Field(default="normal", index=True)
    task_type: str = Field(default="general")
    position: int = Field(default=0)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    result: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    notes: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "depends_on_id", name="pk_task_dependencies"),
        Index("idx_task_dependencies_upstream", "depends_on_id"),
    )

    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    depends_on_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskTransitionLog(SQLModel, table=True):
    __tablename__ = "task_transitions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_transitions_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    transition: str = Field(index=True)
    state_from: str | None = None
    state_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_events_type_time", "event_type", "created_at"),)

    event_id: str = Field(primary_key=True)
    event_type: str
    task_id: str | None = Field(default=None, index=True)
    parent_task_id: str | None = None
    project_id: str | None = Field(default=None, index=True)
    job_id: str | None = None
    priority: str | None = None
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_queue", "status", "priority", "created_at"),
        Index("idx_jobs_agent_status", "agent_type", "status"),
    )

    job_id: str = Field(primary_key=True)
    agent_type: str
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    priority: int = Field(default=100)
    status: str
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HumanInteraction(SQLModel, table=True):
    __tablename__ = "human_interactions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_human_interactions_status_time", "status", "created_at"),)

    interaction_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    project_id: str | None = None
    question: str = Field(sa_column=Column(Text, nullable=False))
    context: str | None = Field(default=None, sa_column=Column(Text))
    required: bool = Field(default=True)
    urgency: str = Field(default="normal")
    status: str
    response: str | None = Field(default=None, sa_column=Column(Text))
    responded_by: str | None = None
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PlannerCall(SQLModel, table=True):
    __tablename__ = "planner_calls"  # type: ignore[bad-override]

    call_id: int | None = Field(default=None, primary_key=True)
    purpose: str = Field(index=True)
    task_id: str | None = None
    prompt_chars: int = Field(default=0)
    response_chars: int = Field(default=0)
    succeeded: bool = Field(default=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
