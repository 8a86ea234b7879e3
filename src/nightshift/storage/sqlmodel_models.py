"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class ProjectRecord(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    path: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_tasks_queued_position",
            "queue_position",
            unique=True,
            sqlite_where=text("status = 'queued'"),
        ),
        Index("idx_tasks_status_position", "status", "queue_position"),
    )

    task_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    queue_position: int = Field(default=0)
    agent_id: str | None = None
    model: str | None = None
    thinking_mode: bool | None = None
    context_files_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    source: str = Field(default="manual")
    source_ref: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    runtime_ms: int = Field(default=0)
    running_session_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    exit_code: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    current_iteration: int = Field(default=1)
    session_id: str | None = None
    resume_session: bool = Field(default=False)
    is_plan_mode: bool = Field(default=False)
    plan_file_path: str | None = None
    needs_continuation: bool = Field(default=False)
    continuation_reason: str | None = None
    continuation_details: str | None = Field(default=None, sa_column=Column(Text))
    suggested_next_steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    usage_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskIterationRecord(SQLModel, table=True):
    __tablename__ = "task_iterations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "iteration", name="uq_task_iterations_task_iteration"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    iteration: int
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    exit_code: int | None = None
    runtime_ms: int = Field(default=0)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    final_status: str
    is_plan_mode: bool = Field(default=False)
    plan_file_path: str | None = None


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageLimitRecord(SQLModel, table=True):
    __tablename__ = "usage_limits"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    is_limited: bool = Field(default=False)
    reset_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_checked_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    triggered_by_task_id: str | None = None
    message: str | None = Field(default=None, sa_column=Column(Text))
