"""Task lifecycle transitions.

Every function here validates the source status first and raises
``InvalidTaskStateError`` before touching the task, so a rejected operation
never leaves a half-mutated object behind. Callers persist the result.
"""

from __future__ import annotations

from datetime import datetime

from nightshift.orchestrator.errors import InvalidTaskStateError
from nightshift.orchestrator.models import (
    FOLLOW_UP_STATUSES,
    PENDING_ITERATION_STATUSES,
    SESSION_STATUSES,
    ContinuationReason,
    Iteration,
    Task,
    TaskStatus,
)

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.BACKLOG: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.QUEUED: frozenset(
        {TaskStatus.BACKLOG, TaskStatus.AWAITING_AGENT, TaskStatus.CANCELLED},
    ),
    TaskStatus.AWAITING_AGENT: frozenset(
        {TaskStatus.RUNNING, TaskStatus.QUEUED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.PAUSED,
            TaskStatus.QUEUED,
            TaskStatus.NEEDS_REVIEW,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        },
    ),
    TaskStatus.PAUSED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.NEEDS_REVIEW, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.NEEDS_REVIEW: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.REJECTED, TaskStatus.QUEUED},
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.QUEUED}),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.REJECTED: frozenset(),
    TaskStatus.COMPLETED: frozenset(),
}

# Targets a user may request directly; the rest are driven by the scheduler.
MANUAL_TARGETS = frozenset(
    {
        TaskStatus.BACKLOG,
        TaskStatus.QUEUED,
        TaskStatus.CANCELLED,
        TaskStatus.COMPLETED,
        TaskStatus.REJECTED,
    },
)


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS[current]


def require_transition(task: Task, target: TaskStatus) -> None:
    if not can_transition(task.status, target):
        raise InvalidTaskStateError(
            f"Task {task.task_id} cannot move from {task.status.value} to {target.value}.",
        )


def require_follow_up(task: Task, operation: str) -> None:
    if task.status not in FOLLOW_UP_STATUSES:
        raise InvalidTaskStateError(
            f"Cannot {operation} task {task.task_id} in status {task.status.value}; "
            "expected needs_review or failed.",
        )


def iteration_invariant_holds(task: Task) -> bool:
    pending = 1 if task.status in PENDING_ITERATION_STATUSES else 0
    return task.current_iteration == len(task.iterations) + pending


def fold_runtime(task: Task, *, now: datetime) -> None:
    """Add the current running session to ``runtime_ms`` and close it."""

    if task.running_session_started_at is None:
        return
    elapsed_ms = int((now - task.running_session_started_at).total_seconds() * 1000)
    task.runtime_ms += max(0, elapsed_ms)
    task.running_session_started_at = None


def begin_attempt(task: Task, *, now: datetime) -> None:
    """queued -> awaiting_agent: the slot is reserved before any probing."""

    require_transition(task, TaskStatus.AWAITING_AGENT)
    task.status = TaskStatus.AWAITING_AGENT
    if task.started_at is None:
        task.started_at = now


def mark_running(task: Task, *, now: datetime, agent_id: str, model: str | None) -> None:
    """awaiting_agent -> running once the process has spawned."""

    require_transition(task, TaskStatus.RUNNING)
    if task.status is not TaskStatus.AWAITING_AGENT:
        raise InvalidTaskStateError(f"Task {task.task_id} is not awaiting an agent.")
    task.status = TaskStatus.RUNNING
    task.agent_id = agent_id
    task.model = model
    # Probe time is not agent runtime; the session opens at spawn.
    task.running_session_started_at = now


def defer(
    task: Task,
    *,
    now: datetime,
    queue_position: int,
    message: str | None = None,
) -> None:
    """Send an awaiting or running task back to the queue tail, same iteration."""

    if task.status not in SESSION_STATUSES:
        raise InvalidTaskStateError(
            f"Cannot defer task {task.task_id} in status {task.status.value}.",
        )
    fold_runtime(task, now=now)
    task.status = TaskStatus.QUEUED
    task.queue_position = queue_position
    if message:
        task.error_message = message


def complete_iteration(  # noqa: PLR0913
    task: Task,
    *,
    exit_code: int | None,
    now: datetime,
    error_message: str | None = None,
    is_plan_mode: bool = False,
    plan_file_path: str | None = None,
) -> Iteration:
    """Finalize the attempt: exit code 0 goes to review, anything else fails."""

    status = TaskStatus.NEEDS_REVIEW if exit_code == 0 else TaskStatus.FAILED
    if status is TaskStatus.FAILED and not error_message:
        error_message = (
            f"Process exited with code {exit_code}" if exit_code is not None else "Process failed"
        )
    return _close_iteration(
        task,
        status=status,
        now=now,
        exit_code=exit_code,
        error_message=error_message if status is TaskStatus.FAILED else None,
        is_plan_mode=is_plan_mode,
        plan_file_path=plan_file_path,
    )


def fail_attempt(
    task: Task,
    *,
    error_message: str,
    now: datetime,
    exit_code: int | None = None,
) -> Iteration:
    """Fail the attempt without a clean exit (spawn error, auth, timeout)."""

    return _close_iteration(
        task,
        status=TaskStatus.FAILED,
        now=now,
        exit_code=exit_code,
        error_message=error_message,
    )


def cancel(task: Task, *, now: datetime) -> Iteration:
    return _close_iteration(
        task,
        status=TaskStatus.CANCELLED,
        now=now,
        exit_code=task.exit_code,
        error_message="Cancelled by user",
    )


def _close_iteration(  # noqa: PLR0913
    task: Task,
    *,
    status: TaskStatus,
    now: datetime,
    exit_code: int | None,
    error_message: str | None,
    is_plan_mode: bool = False,
    plan_file_path: str | None = None,
) -> Iteration:
    require_transition(task, status)
    fold_runtime(task, now=now)
    task.status = status
    task.completed_at = now
    task.exit_code = exit_code
    task.error_message = error_message
    task.is_plan_mode = is_plan_mode
    task.plan_file_path = plan_file_path if is_plan_mode else None
    iteration = Iteration(
        iteration=task.current_iteration,
        prompt=task.prompt,
        started_at=task.started_at,
        completed_at=now,
        exit_code=exit_code,
        runtime_ms=task.runtime_ms,
        error_message=error_message,
        final_status=status,
        is_plan_mode=task.is_plan_mode,
        plan_file_path=task.plan_file_path,
    )
    task.iterations.append(iteration)
    return iteration


def pause(task: Task, *, now: datetime) -> None:
    if task.status is not TaskStatus.RUNNING:
        raise InvalidTaskStateError(
            f"Only running tasks can be paused; {task.task_id} is {task.status.value}.",
        )
    fold_runtime(task, now=now)
    task.status = TaskStatus.PAUSED


def resume(task: Task, *, now: datetime) -> None:
    if task.status is not TaskStatus.PAUSED:
        raise InvalidTaskStateError(
            f"Only paused tasks can be resumed; {task.task_id} is {task.status.value}.",
        )
    task.status = TaskStatus.RUNNING
    task.running_session_started_at = now


def accept(task: Task, *, now: datetime) -> None:
    if task.status is not TaskStatus.NEEDS_REVIEW:
        raise InvalidTaskStateError(
            f"Only tasks in needs_review can be accepted; {task.task_id} is {task.status.value}.",
        )
    task.status = TaskStatus.COMPLETED
    task.completed_at = now


def reject(task: Task, *, now: datetime) -> None:
    if task.status is not TaskStatus.NEEDS_REVIEW:
        raise InvalidTaskStateError(
            f"Only tasks in needs_review can be rejected; {task.task_id} is {task.status.value}.",
        )
    task.status = TaskStatus.REJECTED
    task.completed_at = now


def reprompt(task: Task, *, prompt: str, queue_position: int) -> None:
    """Start a new iteration with a fresh prompt; history stays untouched."""

    require_follow_up(task, "reprompt")
    if not prompt.strip():
        raise ValueError("Prompt must not be empty.")
    _start_new_iteration(task, prompt=prompt, queue_position=queue_position, resume_session=False)


def reply(
    task: Task,
    *,
    message: str,
    queue_position: int,
    supports_session_resume: bool,
) -> None:
    """Start a new iteration that resumes the agent's previous session."""

    require_follow_up(task, "reply to")
    if not supports_session_resume:
        raise InvalidTaskStateError(
            f"Agent for task {task.task_id} does not support session resume.",
        )
    if not task.session_id:
        raise InvalidTaskStateError(f"Task {task.task_id} has no agent session to resume.")
    if not message.strip():
        raise ValueError("Reply message must not be empty.")
    _start_new_iteration(task, prompt=message, queue_position=queue_position, resume_session=True)


def _start_new_iteration(
    task: Task,
    *,
    prompt: str,
    queue_position: int,
    resume_session: bool,
) -> None:
    task.prompt = prompt
    task.status = TaskStatus.QUEUED
    task.queue_position = queue_position
    task.current_iteration += 1
    task.resume_session = resume_session
    reset_execution_fields(task)


def reset_execution_fields(task: Task) -> None:
    task.started_at = None
    task.completed_at = None
    task.exit_code = None
    task.error_message = None
    task.runtime_ms = 0
    task.running_session_started_at = None
    task.is_plan_mode = False
    task.plan_file_path = None
    clear_continuation(task)


def set_continuation(
    task: Task,
    *,
    reason: ContinuationReason | None,
    details: str | None,
    suggested_next_steps: list[str],
) -> None:
    task.needs_continuation = reason is not None
    task.continuation_reason = reason
    task.continuation_details = details
    task.suggested_next_steps = list(suggested_next_steps)


def clear_continuation(task: Task) -> None:
    set_continuation(task, reason=None, details=None, suggested_next_steps=[])


def change_status(task: Task, target: TaskStatus, *, now: datetime) -> Iteration | None:
    """Manual status change, limited to the targets a user may request."""

    if target not in MANUAL_TARGETS:
        raise InvalidTaskStateError(
            f"Status {target.value} is set by the scheduler and cannot be requested directly.",
        )
    if target is TaskStatus.CANCELLED:
        return cancel(task, now=now)
    if target is TaskStatus.COMPLETED:
        accept(task, now=now)
        return None
    if target is TaskStatus.REJECTED:
        reject(task, now=now)
        return None
    if task.status in FOLLOW_UP_STATUSES:
        raise InvalidTaskStateError(
            f"Use reprompt, reply or retry to requeue task {task.task_id}.",
        )
    require_transition(task, target)
    task.status = target
    return None
