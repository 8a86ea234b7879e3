"""Use-case services for the task queue."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from nightshift.orchestrator import state_machine
from nightshift.orchestrator.agents.registry import AgentRegistry
from nightshift.orchestrator.errors import InvalidTaskStateError
from nightshift.orchestrator.models import (
    ACTIVE_STATUSES,
    SESSION_STATUSES,
    Project,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
)
from nightshift.orchestrator.notifications import TaskNotifier
from nightshift.orchestrator.repository import TaskRepository
from nightshift.orchestrator.retry_context import RetryContext, build_retry_context
from nightshift.storage.common import utc_now
from nightshift.storage.logs import IterationLogStore

if TYPE_CHECKING:
    from nightshift.orchestrator.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class PlanAcceptance:
    """Accepted plan task and the execution task created from it."""

    plan_task: Task
    execution_task: Task | None


class TaskService:
    """Coordinates lifecycle rules, persistence, log markers and notifications.

    When a ``TaskScheduler`` runs in the same process it owns the running
    attempts, so cancel/pause/resume are delegated to it. Otherwise the new
    status is written to the store and the worker monitoring that attempt
    picks it up.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        registry: AgentRegistry,
        log_store: IterationLogStore,
        notifier: TaskNotifier | None = None,
        scheduler: TaskScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.log_store = log_store
        self.notifier = notifier or TaskNotifier()
        self.scheduler = scheduler
        self.clock = clock

    # -- projects -------------------------------------------------------------

    def add_project(self, *, name: str, path: Path, project_id: str | None = None) -> Project:
        resolved = path.expanduser().resolve()
        if not resolved.is_dir():
            raise ValueError(f"Project path is not a directory: {resolved}")
        if not name.strip():
            raise ValueError("Project name must not be empty.")
        project = Project(
            project_id=project_id or _slugify(name),
            name=name.strip(),
            path=str(resolved),
        )
        return self.repository.upsert_project(project)

    # -- tasks ----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> Task:
        if not payload.prompt.strip():
            raise ValueError("Prompt must not be empty.")
        if payload.agent_id is not None:
            self.registry.get(payload.agent_id)
        task = self.repository.create_task(payload)
        logger.info("Task %s created in project %s", task.task_id, task.project_id)
        self.notifier.status_changed(task, previous=None, at=task.created_at)
        return task

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        """Edit prompt, agent, model or context files of a task that is not executing."""

        task = self.repository.load_task(task_id)
        if task.status in SESSION_STATUSES or task.status is TaskStatus.PAUSED:
            raise InvalidTaskStateError(
                f"Task {task_id} is {task.status.value}; cannot edit while it executes.",
            )
        changed: dict[str, object] = {}
        if update.prompt is not None:
            if not update.prompt.strip():
                raise ValueError("Prompt must not be empty.")
            task.prompt = update.prompt
            changed["prompt"] = True
        if update.agent_id is not None:
            self.registry.get(update.agent_id)
            task.agent_id = update.agent_id
            changed["agent_id"] = update.agent_id
        if update.model is not None:
            task.model = update.model
            changed["model"] = update.model
        if update.thinking_mode is not None:
            task.thinking_mode = update.thinking_mode
            changed["thinking_mode"] = update.thinking_mode
        if update.context_files is not None:
            task.context_files = list(update.context_files)
            changed["context_files"] = len(update.context_files)
        if not changed:
            return task
        return self.repository.save_task(
            task,
            expected_status=task.status,
            event_type="updated",
            details=changed,
        )

    def delete_task(self, task_id: str) -> None:
        self.repository.delete_task(task_id)
        logger.info("Task %s deleted", task_id)

    def change_status(self, task_id: str, target: TaskStatus) -> Task:
        """Manual transition; scheduler-driven statuses are refused."""

        task = self.repository.load_task(task_id)
        if target is TaskStatus.CANCELLED:
            return self.cancel_task(task_id)
        previous = task.status
        state_machine.change_status(task, target, now=self.clock())
        if target is TaskStatus.QUEUED:
            task.queue_position = self.repository.next_queue_position()
        return self._save(task, previous=previous, event_type="status_changed")

    def accept(self, task_id: str) -> Task:
        task = self.repository.load_task(task_id)
        previous = task.status
        state_machine.accept(task, now=self.clock())
        return self._save(task, previous=previous, event_type="accepted")

    def accept_plan(self, task_id: str, *, execution_prompt: str | None = None) -> PlanAcceptance:
        """Accept a plan-mode task and optionally queue its execution as a new task."""

        task = self.repository.load_task(task_id)
        if execution_prompt is not None and not task.is_plan_mode:
            raise InvalidTaskStateError(f"Task {task_id} did not finish in plan mode.")
        plan_task = self.accept(task_id)
        if execution_prompt is None:
            return PlanAcceptance(plan_task=plan_task, execution_task=None)
        execution_task = self.create_task(
            TaskCreate(
                project_id=plan_task.project_id,
                prompt=execution_prompt,
                agent_id=plan_task.agent_id,
                model=plan_task.model,
                thinking_mode=plan_task.thinking_mode,
                context_files=tuple(plan_task.context_files),
                source="plan",
                source_ref=plan_task.task_id,
            ),
        )
        return PlanAcceptance(plan_task=plan_task, execution_task=execution_task)

    def reject(self, task_id: str) -> Task:
        task = self.repository.load_task(task_id)
        previous = task.status
        state_machine.reject(task, now=self.clock())
        return self._save(task, previous=previous, event_type="rejected")

    def reprompt(self, task_id: str, prompt: str) -> Task:
        task = self.repository.load_task(task_id)
        previous = task.status
        state_machine.reprompt(
            task,
            prompt=prompt,
            queue_position=self.repository.next_queue_position(),
        )
        return self._save(
            task,
            previous=previous,
            event_type="reprompted",
            details={"iteration": task.current_iteration},
        )

    def reply(self, task_id: str, message: str) -> Task:
        """Queue a follow-up iteration that resumes the previous agent session."""

        task = self.repository.load_task(task_id)
        adapter = self.registry.resolve(task.agent_id)
        previous = task.status
        state_machine.reply(
            task,
            message=message,
            queue_position=self.repository.next_queue_position(),
            supports_session_resume=adapter.get_capabilities().supports_session_resume,
        )
        return self._save(
            task,
            previous=previous,
            event_type="replied",
            details={"iteration": task.current_iteration, "session_id": task.session_id},
        )

    def retry_context(self, task_id: str, *, iteration: int | None = None) -> RetryContext:
        task = self.repository.load_task(task_id)
        state_machine.require_follow_up(task, "build retry context for")
        if iteration is None:
            iteration = task.iterations[-1].iteration if task.iterations else task.current_iteration
        log_text = self.log_store.read(task.project_id, task.task_id, iteration)
        return build_retry_context(task, log_text, self.registry.resolve(task.agent_id))

    def retry(self, task_id: str) -> tuple[Task, RetryContext]:
        """Reprompt with a prompt synthesized from the last iteration's log."""

        context = self.retry_context(task_id)
        return self.reprompt(task_id, context.prompt), context

    def reorder(self, task_ids: Sequence[str]) -> list[Task]:
        return self.repository.reorder(task_ids)

    def cancel_task(self, task_id: str) -> Task:
        if self.scheduler is not None and self.scheduler.cancel(task_id):
            return self.repository.load_task(task_id)
        task = self.repository.load_task(task_id)
        previous = task.status
        if previous not in ACTIVE_STATUSES | {TaskStatus.BACKLOG}:
            raise InvalidTaskStateError(
                f"Task {task_id} is {previous.value}; only active tasks can be cancelled.",
            )
        state_machine.cancel(task, now=self.clock())
        saved = self._save(task, previous=previous, event_type="cancelled")
        if previous in SESSION_STATUSES or previous is TaskStatus.PAUSED:
            self.log_store.append(
                task.project_id,
                task.task_id,
                task.iterations[-1].iteration,
                "=== Cancelled by user ===",
            )
        return saved

    def pause_task(self, task_id: str) -> Task:
        if self.scheduler is not None and self.scheduler.pause(task_id):
            return self.repository.load_task(task_id)
        task = self.repository.load_task(task_id)
        state_machine.pause(task, now=self.clock())
        return self._save(task, previous=TaskStatus.RUNNING, event_type="paused")

    def resume_task(self, task_id: str) -> Task:
        if self.scheduler is not None and self.scheduler.resume(task_id):
            return self.repository.load_task(task_id)
        task = self.repository.load_task(task_id)
        state_machine.resume(task, now=self.clock())
        return self._save(task, previous=TaskStatus.PAUSED, event_type="resumed")

    def _save(
        self,
        task: Task,
        *,
        previous: TaskStatus,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> Task:
        saved = self.repository.save_task(
            task,
            expected_status=previous,
            event_type=event_type,
            details=details,
        )
        logger.info(
            "Task %s %s -> %s (%s)",
            task.task_id,
            previous.value,
            task.status.value,
            event_type,
        )
        self.notifier.status_changed(saved, previous=previous, at=self.clock())
        return saved


def _slugify(name: str) -> str:
    slug = _SLUG_INVALID.sub("-", name.strip().lower()).strip("-")
    if not slug:
        raise ValueError(f"Cannot derive a project id from name {name!r}.")
    return slug
