"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from nightshift.orchestrator.errors import (
    ConcurrentTaskUpdateError,
    InvalidTaskStateError,
    TaskNotFoundError,
)
from nightshift.orchestrator.models import (
    SESSION_STATUSES,
    ContinuationReason,
    Iteration,
    Project,
    Task,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    UsageSummary,
)
from nightshift.orchestrator.usage_limits import UsageLimitState
from nightshift.storage.alembic_runner import upgrade_head
from nightshift.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from nightshift.storage.sqlmodel_models import (
    ProjectRecord,
    TaskEventRecord,
    TaskIterationRecord,
    TaskRecord,
    UsageLimitRecord,
)


class TaskRepository:
    """Store interface consumed by the scheduler, services and CLI."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # -- projects -------------------------------------------------------------

    def upsert_project(self, project: Project) -> Project:
        with Session(self.engine) as session:
            row = session.get(ProjectRecord, project.project_id)
            if row is None:
                row = ProjectRecord(
                    project_id=project.project_id,
                    name=project.name,
                    path=project.path,
                    created_at=to_db_datetime(self.clock()),
                )
            else:
                row.name = project.name
                row.path = project.path
            session.add(row)
            session.commit()
        return project

    def get_project(self, project_id: str) -> Project | None:
        with Session(self.engine) as session:
            row = session.get(ProjectRecord, project_id)
        if row is None:
            return None
        return Project(project_id=row.project_id, name=row.name, path=row.path)

    def list_projects(self) -> list[Project]:
        with Session(self.engine) as session:
            rows = session.exec(select(ProjectRecord).order_by(col(ProjectRecord.name).asc())).all()
        return [Project(project_id=row.project_id, name=row.name, path=row.path) for row in rows]

    # -- tasks ----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> Task:
        """Insert a new task at the tail of the queue."""

        if payload.status not in {TaskStatus.QUEUED, TaskStatus.BACKLOG}:
            raise InvalidTaskStateError(
                f"New tasks start in queued or backlog, not {payload.status.value}.",
            )
        now = self.clock()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            if session.get(ProjectRecord, payload.project_id) is None:
                raise ValueError(f"Unknown project: {payload.project_id}")
            task = Task(
                task_id=task_id,
                project_id=payload.project_id,
                prompt=payload.prompt,
                status=payload.status,
                queue_position=self._next_queue_position(session),
                created_at=now,
                agent_id=payload.agent_id,
                model=payload.model,
                thinking_mode=payload.thinking_mode,
                context_files=list(payload.context_files),
                source=payload.source,
                source_ref=payload.source_ref,
            )
            row = TaskRecord(
                task_id=task_id,
                created_at=to_db_datetime(now),
                **_task_values(task, now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=task.status,
                details={
                    "project_id": task.project_id,
                    "agent_id": task.agent_id,
                    "source": task.source,
                },
            )
            session.commit()
        return task

    def get_task(self, task_id: str) -> Task | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            return self._to_task(session, row)

    def load_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def load_all_tasks(
        self,
        *,
        project_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        with Session(self.engine) as session:
            statement = select(TaskRecord).order_by(col(TaskRecord.created_at).desc())
            if project_id is not None:
                statement = statement.where(TaskRecord.project_id == project_id)
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [self._to_task(session, row) for row in rows]

    def list_queued(self) -> list[Task]:
        """Queued tasks in start order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(TaskRecord.status == TaskStatus.QUEUED.value)
                .order_by(col(TaskRecord.queue_position).asc()),
            ).all()
            return [self._to_task(session, row) for row in rows]

    def count_active(self, statuses: frozenset[TaskStatus] = SESSION_STATUSES) -> int:
        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(TaskRecord)
                .where(col(TaskRecord.status).in_([status.value for status in statuses])),
            ).one()
        return int(count)

    def next_queue_position(self) -> int:
        with Session(self.engine) as session:
            return self._next_queue_position(session)

    def save_task(
        self,
        task: Task,
        *,
        expected_status: TaskStatus,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> Task:
        """Persist ``task`` if the stored status still equals ``expected_status``.

        New iteration records are appended in the same transaction. Raises
        ``ConcurrentTaskUpdateError`` when another writer changed the status.
        """

        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.task_id) == task.task_id,
                    col(TaskRecord.status) == expected_status.value,
                )
                .values(**_task_values(task, now)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrentTaskUpdateError(
                    f"Task {task.task_id} is no longer {expected_status.value}.",
                )

            stored = session.exec(
                select(func.max(TaskIterationRecord.iteration)).where(
                    TaskIterationRecord.task_id == task.task_id,
                ),
            ).one()
            last_stored = int(stored or 0)
            for iteration in task.iterations:
                if iteration.iteration > last_stored:
                    session.add(_iteration_record(task.task_id, iteration))

            if event_type is not None or task.status is not expected_status:
                self._add_event(
                    session=session,
                    task_id=task.task_id,
                    event_type=event_type or "status_changed",
                    status_from=expected_status,
                    status_to=task.status,
                    details=details or {},
                )
            session.commit()
        return task

    def update_session_id(self, task_id: str, session_id: str) -> None:
        """Record a resumable session id without touching status."""

        with Session(self.engine) as session:
            session.exec(  # type: ignore[call-overload]
                sa_update(TaskRecord)
                .where(col(TaskRecord.task_id) == task_id)
                .values(session_id=session_id),
            )
            session.commit()

    def delete_task(self, task_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            if TaskStatus(row.status) in SESSION_STATUSES:
                raise InvalidTaskStateError(
                    f"Task {task_id} is {row.status}; cancel it before deleting.",
                )
            for model in (TaskEventRecord, TaskIterationRecord):
                session.exec(  # type: ignore[call-overload]
                    sa_delete(model).where(col(model.task_id) == task_id),
                )
            session.delete(row)
            session.commit()

    def reorder(self, task_ids: Sequence[str]) -> list[Task]:
        """Give the listed queued tasks their current positions in the new order."""

        if len(set(task_ids)) != len(task_ids):
            raise ValueError("Task ids must be unique.")
        with Session(self.engine) as session:
            rows = [session.get(TaskRecord, task_id) for task_id in task_ids]
            for task_id, row in zip(task_ids, rows, strict=True):
                if row is None:
                    raise TaskNotFoundError(task_id)
                if row.status != TaskStatus.QUEUED.value:
                    raise InvalidTaskStateError(f"Task {task_id} is not queued.")
            present = [row for row in rows if row is not None]
            positions = sorted(row.queue_position for row in present)
            # Park rows on negative slots first so the partial unique index never collides.
            for index, row in enumerate(present):
                session.exec(  # type: ignore[call-overload]
                    sa_update(TaskRecord)
                    .where(col(TaskRecord.task_id) == row.task_id)
                    .values(queue_position=-(index + 1)),
                )
            for row, position in zip(present, positions, strict=True):
                session.exec(  # type: ignore[call-overload]
                    sa_update(TaskRecord)
                    .where(col(TaskRecord.task_id) == row.task_id)
                    .values(queue_position=position),
                )
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="reordered",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.QUEUED,
                    details={"queue_position": position},
                )
            session.commit()
        return self.list_queued()

    def add_task_event(
        self,
        task_id: str,
        *,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details or {},
            )
            session.commit()

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task with its event stream."""

        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            task = self._to_task(session, row)
            event_rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.created_at).asc(), col(TaskEventRecord.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=event_row.id or 0,
                    task_id=event_row.task_id,
                    event_type=event_row.event_type,
                    status_from=(
                        TaskStatus(event_row.status_from) if event_row.status_from else None
                    ),
                    status_to=TaskStatus(event_row.status_to) if event_row.status_to else None,
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task, events=events)

    # -- usage limits -----------------------------------------------------------

    def load_usage_limits(self) -> list[UsageLimitState]:
        with Session(self.engine) as session:
            rows = session.exec(select(UsageLimitRecord)).all()
        return [
            UsageLimitState(
                agent_id=row.agent_id,
                is_limited=row.is_limited,
                reset_at=_aware(row.reset_at),
                last_checked_at=_aware(row.last_checked_at),
                triggered_by_task_id=row.triggered_by_task_id,
                message=row.message,
            )
            for row in rows
        ]

    def save_usage_limit(self, state: UsageLimitState) -> None:
        with Session(self.engine) as session:
            row = session.get(UsageLimitRecord, state.agent_id) or UsageLimitRecord(
                agent_id=state.agent_id,
            )
            row.is_limited = state.is_limited
            row.reset_at = _naive(state.reset_at)
            row.last_checked_at = _naive(state.last_checked_at)
            row.triggered_by_task_id = state.triggered_by_task_id
            row.message = state.message
            session.add(row)
            session.commit()

    # -- helpers ----------------------------------------------------------------

    def _next_queue_position(self, session: Session) -> int:
        current = session.exec(select(func.max(TaskRecord.queue_position))).one()
        return int(current or 0) + 1

    def _to_task(self, session: Session, row: TaskRecord) -> Task:
        iteration_rows = session.exec(
            select(TaskIterationRecord)
            .where(TaskIterationRecord.task_id == row.task_id)
            .order_by(col(TaskIterationRecord.iteration).asc()),
        ).all()
        return Task(
            task_id=row.task_id,
            project_id=row.project_id,
            prompt=row.prompt,
            status=TaskStatus(row.status),
            queue_position=row.queue_position,
            created_at=to_utc_aware_datetime(row.created_at),
            agent_id=row.agent_id,
            model=row.model,
            thinking_mode=row.thinking_mode,
            context_files=_json_list(row.context_files_json),
            source=row.source,
            source_ref=row.source_ref,
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            runtime_ms=row.runtime_ms,
            running_session_started_at=_aware(row.running_session_started_at),
            exit_code=row.exit_code,
            error_message=row.error_message,
            current_iteration=row.current_iteration,
            iterations=[_to_iteration(item) for item in iteration_rows],
            session_id=row.session_id,
            resume_session=row.resume_session,
            is_plan_mode=row.is_plan_mode,
            plan_file_path=row.plan_file_path,
            needs_continuation=row.needs_continuation,
            continuation_reason=(
                ContinuationReason(row.continuation_reason) if row.continuation_reason else None
            ),
            continuation_details=row.continuation_details,
            suggested_next_steps=_json_list(row.suggested_next_steps_json),
            usage=UsageSummary.from_dict(json.loads(row.usage_json or "{}")),
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


def _task_values(task: Task, now: datetime) -> dict[str, Any]:
    """Column values for every mutable task attribute."""

    return {
        "project_id": task.project_id,
        "prompt": task.prompt,
        "status": task.status.value,
        "queue_position": task.queue_position,
        "agent_id": task.agent_id,
        "model": task.model,
        "thinking_mode": task.thinking_mode,
        "context_files_json": json.dumps(task.context_files, ensure_ascii=False),
        "source": task.source,
        "source_ref": task.source_ref,
        "started_at": _naive(task.started_at),
        "completed_at": _naive(task.completed_at),
        "runtime_ms": task.runtime_ms,
        "running_session_started_at": _naive(task.running_session_started_at),
        "exit_code": task.exit_code,
        "error_message": task.error_message,
        "current_iteration": task.current_iteration,
        "session_id": task.session_id,
        "resume_session": task.resume_session,
        "is_plan_mode": task.is_plan_mode,
        "plan_file_path": task.plan_file_path,
        "needs_continuation": task.needs_continuation,
        "continuation_reason": (
            task.continuation_reason.value if task.continuation_reason is not None else None
        ),
        "continuation_details": task.continuation_details,
        "suggested_next_steps_json": json.dumps(task.suggested_next_steps, ensure_ascii=False),
        "usage_json": json.dumps(task.usage.to_dict(), sort_keys=True),
        "updated_at": to_db_datetime(now),
    }


def _iteration_record(task_id: str, iteration: Iteration) -> TaskIterationRecord:
    return TaskIterationRecord(
        task_id=task_id,
        iteration=iteration.iteration,
        prompt=iteration.prompt,
        started_at=_naive(iteration.started_at),
        completed_at=to_db_datetime(iteration.completed_at),
        exit_code=iteration.exit_code,
        runtime_ms=iteration.runtime_ms,
        error_message=iteration.error_message,
        final_status=iteration.final_status.value,
        is_plan_mode=iteration.is_plan_mode,
        plan_file_path=iteration.plan_file_path,
    )


def _to_iteration(row: TaskIterationRecord) -> Iteration:
    return Iteration(
        iteration=row.iteration,
        prompt=row.prompt,
        started_at=_aware(row.started_at),
        completed_at=to_utc_aware_datetime(row.completed_at),
        exit_code=row.exit_code,
        runtime_ms=row.runtime_ms,
        error_message=row.error_message,
        final_status=TaskStatus(row.final_status),
        is_plan_mode=row.is_plan_mode,
        plan_file_path=row.plan_file_path,
    )


def _naive(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    return [str(item) for item in parsed] if isinstance(parsed, list) else []
