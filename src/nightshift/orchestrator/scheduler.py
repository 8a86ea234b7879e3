"""Concurrency-limited scheduler that drives queued tasks through agent runs."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from nightshift.config import Settings
from nightshift.orchestrator import state_machine
from nightshift.orchestrator.agents.base import AgentAdapter, AgentInvocation
from nightshift.orchestrator.agents.registry import AgentRegistry
from nightshift.orchestrator.continuation import IncompleteWork
from nightshift.orchestrator.errors import (
    AgentSpawnError,
    ConcurrentTaskUpdateError,
    UnknownAgentError,
)
from nightshift.orchestrator.models import (
    SESSION_STATUSES,
    AgentEventType,
    AgentOutputEvent,
    Project,
    RunningTaskInfo,
    Task,
    TaskStatus,
)
from nightshift.orchestrator.notifications import TaskNotifier
from nightshift.orchestrator.parser import OutputEventParser
from nightshift.orchestrator.plan_mode import PlanDetection, detect_plan_mode
from nightshift.orchestrator.repository import TaskRepository
from nightshift.orchestrator.supervisor import ProcessSupervisor
from nightshift.orchestrator.usage_limits import UsageLimitTracker
from nightshift.storage.common import utc_now
from nightshift.storage.logs import IterationLogStore

logger = logging.getLogger(__name__)

_MONITORED_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED})
_ATTEMPT_STATUSES = SESSION_STATUSES | _MONITORED_STATUSES
_FINALIZE_RETRIES = 3
INTERRUPTED_MESSAGE = "Interrupted: worker stopped before the task finished"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    started: int = 0
    needs_review: int = 0
    failed: int = 0
    deferred: int = 0
    cancelled: int = 0
    recovered: int = 0


@dataclass(slots=True)
class _Attempt:
    task_id: str
    project_id: str
    agent_id: str
    started_at: datetime
    state: str = TaskStatus.AWAITING_AGENT.value
    supervisor: ProcessSupervisor | None = None
    thread: threading.Thread | None = None
    error: str | None = None
    stop_requested: bool = False
    outcome: str | None = None


def build_agent_prompt(project: Project, prompt: str) -> str:
    return (
        f"You are working in project: {project.name}\n"
        f"- Working directory: {project.path}\n\n"
        f"TASK:\n{prompt}"
    )


class TaskScheduler:
    """Start queued tasks while capacity is free and supervise each attempt.

    Scheduling decisions run under one lock: the capacity count and the
    ``queued -> awaiting_agent`` reservation happen together, so a slot is
    never handed out twice. Each attempt then runs on its own thread, which
    probes the agent, spawns it, and monitors the process until it exits.
    Status changes made by other processes against the same store (cancel,
    pause) are picked up by that monitor on every poll.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        registry: AgentRegistry,
        tracker: UsageLimitTracker,
        log_store: IterationLogStore,
        settings: Settings,
        notifier: TaskNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.tracker = tracker
        self.log_store = log_store
        self.settings = settings
        self.notifier = notifier or TaskNotifier()
        self.clock = clock
        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._attempts: dict[str, _Attempt] = {}
        self._summary = WorkerRunSummary()
        self._stop_requested = False

    @property
    def max_concurrent_tasks(self) -> int:
        return self.settings.scheduler.max_concurrent_tasks

    # -- scheduling -----------------------------------------------------------

    def tick(self, *, limit: int | None = None) -> list[str]:
        """Reserve free slots for the head of the queue; return started task ids."""

        started: list[str] = []
        with self._lock:
            if self._stop_requested:
                return started
            capacity = self.max_concurrent_tasks - self.repository.count_active()
            if limit is not None:
                capacity = min(capacity, limit)
            if capacity <= 0:
                return started
            for task in self.repository.list_queued():
                if capacity <= 0:
                    break
                adapter = self._resolve_adapter(task)
                if adapter is not None and self.tracker.is_limited(adapter.agent_id):
                    logger.debug(
                        "Skipping task %s: agent %s is usage-limited",
                        task.task_id,
                        adapter.agent_id,
                    )
                    continue
                if not self._reserve(task):
                    continue
                self._launch(task, adapter)
                started.append(task.task_id)
                capacity -= 1
            self._summary.started += len(started)
        return started

    def _resolve_adapter(self, task: Task) -> AgentAdapter | None:
        try:
            return self.registry.resolve(task.agent_id)
        except UnknownAgentError:
            return None

    def _reserve(self, task: Task) -> bool:
        previous = task.status
        state_machine.begin_attempt(task, now=self.clock())
        try:
            self.repository.save_task(task, expected_status=previous, event_type="reserved")
        except ConcurrentTaskUpdateError:
            logger.info("Task %s changed before it could be reserved", task.task_id)
            return False
        self.notifier.status_changed(task, previous=previous, at=self.clock())
        return True

    def _launch(self, task: Task, adapter: AgentAdapter | None) -> None:
        attempt = _Attempt(
            task_id=task.task_id,
            project_id=task.project_id,
            agent_id=adapter.agent_id if adapter else (task.agent_id or "unknown"),
            started_at=self.clock(),
        )
        attempt.thread = threading.Thread(
            target=self._run_attempt,
            args=(attempt, adapter),
            name=f"attempt-{task.task_id}",
            daemon=True,
        )
        self._attempts[task.task_id] = attempt
        attempt.thread.start()

    # -- attempt lifecycle ----------------------------------------------------

    def _run_attempt(self, attempt: _Attempt, adapter: AgentAdapter | None) -> None:
        try:
            if adapter is None:
                self._fail(attempt, error_message=f"Unknown agent: {attempt.agent_id}")
                return
            self._execute(attempt, adapter)
        except ConcurrentTaskUpdateError:
            logger.info("Task %s was changed by another writer; attempt stopped", attempt.task_id)
            if attempt.supervisor is not None:
                attempt.supervisor.kill("task changed concurrently")
            attempt.outcome = attempt.outcome or "superseded"
        except Exception as error:  # noqa: BLE001
            logger.exception("Attempt for task %s crashed", attempt.task_id)
            if attempt.supervisor is not None:
                attempt.supervisor.kill("scheduler error")
            try:
                self._fail(attempt, error_message=f"Scheduler error: {error}")
            except (ConcurrentTaskUpdateError, RuntimeError, ValueError):
                logger.exception("Could not record failure for task %s", attempt.task_id)
        finally:
            if attempt.supervisor is not None:
                attempt.supervisor.close()
            with self._lock:
                self._attempts.pop(attempt.task_id, None)
                self._count_outcome(attempt.outcome)
            self._wake.set()

    def _execute(self, attempt: _Attempt, adapter: AgentAdapter) -> None:
        task = self.repository.load_task(attempt.task_id)
        if self.tracker.is_limited(adapter.agent_id):
            state = self.tracker.get_state(adapter.agent_id)
            self._defer(
                attempt,
                reset_at=state.reset_at,
                kind="usage limit",
                message=state.message,
            )
            return
        if not adapter.is_available():
            self._fail(attempt, error_message=f"{adapter.display_name} CLI not found")
            return
        if self.settings.scheduler.validate_auth_before_start:
            auth = adapter.validate_auth()
            if not auth.is_valid:
                self._fail(attempt, error_message=auth.error or "Authentication failed")
                return
        if self.settings.scheduler.preflight_usage_check:
            check = adapter.check_usage_limits()
            if not check.can_proceed:
                reset_at = check.reset_at or self._backoff_reset()
                self.tracker.set_limited(
                    adapter.agent_id,
                    reset_at=reset_at,
                    task_id=attempt.task_id,
                    message=check.message,
                )
                self._defer(
                    attempt,
                    reset_at=reset_at,
                    kind="usage limit",
                    message=check.message,
                )
                return
            self.tracker.mark_checked(adapter.agent_id)

        project = self.repository.get_project(task.project_id)
        if project is None:
            self._fail(attempt, error_message=f"Unknown project: {task.project_id}")
            return

        # Spawn and mark running in one critical section so a cancel issued
        # during the probes above is seen before any process starts.
        with self._lock:
            task = self.repository.load_task(attempt.task_id)
            if task.status is not TaskStatus.AWAITING_AGENT:
                attempt.outcome = "cancelled"
                logger.info(
                    "Task %s became %s before spawn; agent not started",
                    task.task_id,
                    task.status.value,
                )
                return
            invocation = self._build_invocation(task, project, adapter)
            writer = self.log_store.open_writer(
                task.project_id,
                task.task_id,
                task.current_iteration,
            )
            writer.write_line(
                f"=== Iteration {task.current_iteration} started at "
                f"{self.clock().isoformat()} ===",
            )
            try:
                handle = adapter.invoke(invocation)
            except AgentSpawnError as error:
                writer.close()
                self._fail(attempt, error_message=str(error))
                return

            parser = OutputEventParser(
                adapter,
                on_session_id=lambda session_id: self.repository.update_session_id(
                    attempt.task_id,
                    session_id,
                ),
            )
            supervisor = ProcessSupervisor(
                handle,
                parser=parser,
                log_writer=writer,
                on_event=lambda event: self.notifier.output_event(attempt.task_id, event),
            )
            attempt.supervisor = supervisor
            supervisor.start()

            previous = task.status
            state_machine.mark_running(
                task,
                now=self.clock(),
                agent_id=adapter.agent_id,
                model=invocation.model,
            )
            self._save(task, previous=previous, event_type="started", details={"pid": handle.pid})
            attempt.state = TaskStatus.RUNNING.value
            attempt.started_at = self.clock()
        logger.info(
            "Task %s started on %s (pid=%s, iteration=%s)",
            task.task_id,
            adapter.agent_id,
            handle.pid,
            task.current_iteration,
        )
        self._monitor(attempt, adapter, supervisor, parser)

    def _build_invocation(
        self,
        task: Task,
        project: Project,
        adapter: AgentAdapter,
    ) -> AgentInvocation:
        resume = (
            task.session_id
            if task.resume_session and adapter.get_capabilities().supports_session_resume
            else None
        )
        return AgentInvocation(
            prompt=build_agent_prompt(project, task.prompt),
            working_directory=Path(project.path),
            context_files=tuple(task.context_files),
            model=task.model or self.settings.agents.default_model or adapter.default_model,
            thinking=(
                task.thinking_mode
                if task.thinking_mode is not None
                else self.settings.agents.thinking_mode
            ),
            resume_session_id=resume,
        )

    def _monitor(
        self,
        attempt: _Attempt,
        adapter: AgentAdapter,
        supervisor: ProcessSupervisor,
        parser: OutputEventParser,
    ) -> None:
        poll = self.settings.scheduler.poll_interval_seconds
        while True:
            exit_code = supervisor.wait(timeout=poll)
            fatal = parser.fatal_event
            if fatal is not None:
                self._handle_fatal(attempt, adapter, supervisor, parser, fatal)
                return
            if exit_code is not None:
                self._finish(attempt, adapter, parser, exit_code)
                return

            stored = self.repository.get_task(attempt.task_id)
            if stored is None or stored.status not in _MONITORED_STATUSES:
                supervisor.kill("task no longer running")
                supervisor.wait(timeout=adapter.kill_grace_seconds + 1.0)
                attempt.outcome = "cancelled"
                logger.info("Task %s stopped externally; process killed", attempt.task_id)
                return
            attempt.state = stored.status.value
            if attempt.stop_requested:
                self._interrupt(attempt, supervisor, parser)
                return
            if self._timed_out(stored):
                self._time_out(attempt, supervisor, parser)
                return

    def _timed_out(self, task: Task) -> bool:
        limit_minutes = self.settings.scheduler.max_task_duration_minutes
        if limit_minutes <= 0:
            return False
        elapsed_ms = task.runtime_ms
        if task.running_session_started_at is not None:
            elapsed = self.clock() - task.running_session_started_at
            elapsed_ms += int(elapsed.total_seconds() * 1000)
        return elapsed_ms >= limit_minutes * 60_000

    def _handle_fatal(  # noqa: PLR0913
        self,
        attempt: _Attempt,
        adapter: AgentAdapter,
        supervisor: ProcessSupervisor,
        parser: OutputEventParser,
        event: AgentOutputEvent,
    ) -> None:
        supervisor.kill(event.type.value)
        supervisor.wait(timeout=adapter.kill_grace_seconds + 1.0)
        if event.is_limit:
            kind = "rate limit" if event.type is AgentEventType.RATE_LIMIT else "usage limit"
            reset_at = event.reset_at or self._backoff_reset()
            self.tracker.set_limited(
                adapter.agent_id,
                reset_at=reset_at,
                task_id=attempt.task_id,
                message=event.message,
            )
            self._defer(
                attempt,
                reset_at=reset_at,
                kind=kind,
                parser=parser,
                message=event.message,
            )
            return
        supervisor.log_writer.write_line("=== Failed due to authentication error ===")
        self._fail(
            attempt,
            error_message=(
                f"Authentication failed for {adapter.display_name}. Please re-authenticate."
            ),
            parser=parser,
        )

    def _finalize(
        self,
        attempt: _Attempt,
        apply: Callable[[Task], None],
        *,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> Task | None:
        """Load, apply an outcome and save it as one step under the scheduler lock.

        A pause or resume saved between the load and the save only moves the
        task between running and paused, so the outcome is applied again to a
        fresh copy. Returns ``None`` when the task already left the attempt.
        """

        for _ in range(_FINALIZE_RETRIES):
            with self._lock:
                task = self.repository.load_task(attempt.task_id)
                previous = task.status
                if previous not in _ATTEMPT_STATUSES:
                    attempt.outcome = "cancelled"
                    return None
                apply(task)
                try:
                    self._save(task, previous=previous, event_type=event_type, details=details)
                except ConcurrentTaskUpdateError:
                    logger.info(
                        "Task %s changed while recording %s; retrying",
                        task.task_id,
                        event_type,
                    )
                    continue
                return task
        raise ConcurrentTaskUpdateError(
            f"Task {attempt.task_id} kept changing while recording {event_type}",
        )

    def _finish(
        self,
        attempt: _Attempt,
        adapter: AgentAdapter,
        parser: OutputEventParser,
        exit_code: int,
    ) -> None:
        snapshot = self.repository.load_task(attempt.task_id)
        detection: PlanDetection | None = None
        incomplete: IncompleteWork | None = None
        if exit_code == 0:
            detection = detect_plan_mode(
                self.log_store.read(
                    snapshot.project_id,
                    snapshot.task_id,
                    snapshot.current_iteration,
                ),
                adapter=adapter,
                plans_dir=self.settings.agents.plans_dir,
                started_after=attempt.started_at,
            )
            incomplete = adapter.detect_incomplete_work(parser.events)

        def _apply(task: Task) -> None:
            self._absorb(task, parser)
            if incomplete is not None:
                state_machine.set_continuation(
                    task,
                    reason=incomplete.reason if incomplete.is_incomplete else None,
                    details=incomplete.details,
                    suggested_next_steps=incomplete.suggested_next_steps,
                )
            state_machine.complete_iteration(
                task,
                exit_code=exit_code,
                now=self.clock(),
                error_message=parser.last_error if exit_code != 0 else None,
                is_plan_mode=detection.is_plan_mode if detection else False,
                plan_file_path=detection.plan_file_path if detection else None,
            )

        task = self._finalize(
            attempt,
            _apply,
            event_type="finished",
            details={"exit_code": exit_code},
        )
        if task is None:
            return
        self.log_store.append(
            task.project_id,
            task.task_id,
            task.current_iteration,
            f"=== Completed with exit code {exit_code} ===",
        )
        attempt.outcome = task.status.value
        logger.info(
            "Task %s finished with exit code %s -> %s",
            task.task_id,
            exit_code,
            task.status.value,
        )

    def _defer(  # noqa: PLR0913
        self,
        attempt: _Attempt,
        *,
        reset_at: datetime | None,
        kind: str,
        parser: OutputEventParser | None = None,
        message: str | None = None,
    ) -> None:
        reset_text = reset_at.isoformat() if reset_at else "unknown"
        reason = message or f"Paused due to {kind} (resets at {reset_text})"

        def _apply(task: Task) -> None:
            if parser is not None:
                self._absorb(task, parser)
            if task.status is TaskStatus.PAUSED:
                # A paused run that hit a limit still re-enters the queue.
                state_machine.resume(task, now=self.clock())
            state_machine.defer(
                task,
                now=self.clock(),
                queue_position=self.repository.next_queue_position(),
                message=reason,
            )

        task = self._finalize(
            attempt,
            _apply,
            event_type="deferred",
            details={"reason": kind, "reset_at": reset_text},
        )
        if task is None:
            return
        self.log_store.append(
            task.project_id,
            task.task_id,
            task.current_iteration,
            f"=== Paused due to {kind} (resets at {reset_text}) ===",
        )
        attempt.outcome = "deferred"
        logger.info("Task %s deferred: %s until %s", task.task_id, kind, reset_text)

    def _fail(
        self,
        attempt: _Attempt,
        *,
        error_message: str,
        parser: OutputEventParser | None = None,
        exit_code: int | None = None,
    ) -> None:
        def _apply(task: Task) -> None:
            if parser is not None:
                self._absorb(task, parser)
            state_machine.fail_attempt(
                task,
                error_message=error_message,
                now=self.clock(),
                exit_code=exit_code,
            )

        task = self._finalize(
            attempt,
            _apply,
            event_type="failed",
            details={"error": error_message},
        )
        if task is None:
            return
        attempt.outcome = "failed"
        attempt.error = error_message
        logger.info("Task %s failed: %s", task.task_id, error_message)

    def _time_out(
        self,
        attempt: _Attempt,
        supervisor: ProcessSupervisor,
        parser: OutputEventParser,
    ) -> None:
        minutes = self.settings.scheduler.max_task_duration_minutes
        supervisor.kill("timeout")
        exit_code = supervisor.wait(timeout=supervisor.handle.kill_grace_seconds + 1.0)
        supervisor.log_writer.write_line(f"=== Timed out after {minutes} minutes ===")
        self._fail(
            attempt,
            error_message=f"Task timed out after {minutes} minutes",
            parser=parser,
            exit_code=exit_code,
        )

    def _interrupt(
        self,
        attempt: _Attempt,
        supervisor: ProcessSupervisor,
        parser: OutputEventParser,
    ) -> None:
        supervisor.kill("worker shutdown")
        supervisor.wait(timeout=supervisor.handle.kill_grace_seconds + 1.0)
        supervisor.log_writer.write_line("=== Interrupted by worker shutdown ===")

        def _apply(task: Task) -> None:
            self._absorb(task, parser)
            if task.status is TaskStatus.PAUSED:
                state_machine.resume(task, now=self.clock())
            state_machine.defer(
                task,
                now=self.clock(),
                queue_position=self.repository.next_queue_position(),
                message="Interrupted by worker shutdown",
            )

        if self._finalize(attempt, _apply, event_type="interrupted") is not None:
            attempt.outcome = "deferred"

    def _absorb(self, task: Task, parser: OutputEventParser) -> None:
        task.session_id = parser.session_id or task.session_id
        task.usage = task.usage.add(parser.usage)

    def _backoff_reset(self) -> datetime:
        return self.clock() + timedelta(seconds=self.settings.scheduler.rate_limit_backoff_seconds)

    def _save(
        self,
        task: Task,
        *,
        previous: TaskStatus,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        self.repository.save_task(
            task,
            expected_status=previous,
            event_type=event_type,
            details=details,
        )
        self.notifier.status_changed(task, previous=previous, at=self.clock())

    def _count_outcome(self, outcome: str | None) -> None:
        if outcome == TaskStatus.NEEDS_REVIEW.value:
            self._summary.needs_review += 1
        elif outcome == TaskStatus.FAILED.value:
            self._summary.failed += 1
        elif outcome == "deferred":
            self._summary.deferred += 1
        elif outcome == "cancelled":
            self._summary.cancelled += 1

    # -- user actions on running attempts ---------------------------------------

    def cancel(self, task_id: str) -> bool:
        """Cancel an attempt owned by this scheduler; ``False`` if it runs elsewhere."""

        with self._lock:
            attempt = self._attempts.get(task_id)
            if attempt is None:
                return False
            task = self.repository.load_task(task_id)
            previous = task.status
            state_machine.cancel(task, now=self.clock())
            self._save(task, previous=previous, event_type="cancelled")
        # The monitor sees the stored status and stops; it never finalizes a cancel.
        if attempt.supervisor is not None:
            attempt.supervisor.kill("cancelled by user")
            attempt.supervisor.log_writer.write_line("=== Cancelled by user ===")
        logger.info("Task %s cancelled", task_id)
        return True

    def pause(self, task_id: str) -> bool:
        with self._lock:
            attempt = self._attempts.get(task_id)
            if attempt is None:
                return False
            task = self.repository.load_task(task_id)
            previous = task.status
            state_machine.pause(task, now=self.clock())
            self._save(task, previous=previous, event_type="paused")
            adapter = self.registry.resolve(task.agent_id)
            if attempt.supervisor is not None and adapter.get_capabilities().supports_pause_resume:
                attempt.supervisor.suspend()
            attempt.state = TaskStatus.PAUSED.value
        return True

    def resume(self, task_id: str) -> bool:
        with self._lock:
            attempt = self._attempts.get(task_id)
            if attempt is None:
                return False
            task = self.repository.load_task(task_id)
            previous = task.status
            state_machine.resume(task, now=self.clock())
            self._save(task, previous=previous, event_type="resumed")
            adapter = self.registry.resolve(task.agent_id)
            if attempt.supervisor is not None and adapter.get_capabilities().supports_pause_resume:
                attempt.supervisor.resume()
            attempt.state = TaskStatus.RUNNING.value
        return True

    def list_running(self) -> list[RunningTaskInfo]:
        """Attempts supervised here, plus executing tasks recorded by other workers."""

        now = self.clock()
        with self._lock:
            attempts = list(self._attempts.values())
        infos = [
            RunningTaskInfo(
                task_id=attempt.task_id,
                project_id=attempt.project_id,
                agent_id=attempt.agent_id,
                pid=attempt.supervisor.pid if attempt.supervisor else None,
                state=attempt.state,
                started_at=attempt.started_at,
                elapsed_ms=_elapsed_ms(attempt.started_at, now),
                output_lines=attempt.supervisor.output_lines if attempt.supervisor else 0,
                error=attempt.error,
            )
            for attempt in attempts
        ]
        owned = {attempt.task_id for attempt in attempts}
        for status in (*SESSION_STATUSES, TaskStatus.PAUSED):
            for task in self.repository.load_all_tasks(status=status):
                if task.task_id in owned:
                    continue
                started_at = task.started_at or task.created_at
                log_text = self.log_store.read(
                    task.project_id,
                    task.task_id,
                    task.current_iteration,
                )
                infos.append(
                    RunningTaskInfo(
                        task_id=task.task_id,
                        project_id=task.project_id,
                        agent_id=task.agent_id or self.registry.default_agent_id,
                        pid=None,
                        state=task.status.value,
                        started_at=started_at,
                        elapsed_ms=_elapsed_ms(started_at, now),
                        output_lines=len(log_text.splitlines()) if log_text else 0,
                    ),
                )
        return sorted(infos, key=lambda info: info.started_at)

    # -- loops ----------------------------------------------------------------

    def recover_interrupted(self) -> int:
        """Fail executing tasks left behind by a worker that died mid-attempt."""

        recovered = 0
        with self._lock:
            owned = set(self._attempts)
        for status in (*SESSION_STATUSES, TaskStatus.PAUSED):
            for task in self.repository.load_all_tasks(status=status):
                if task.task_id in owned:
                    continue
                previous = task.status
                state_machine.fail_attempt(
                    task,
                    error_message=INTERRUPTED_MESSAGE,
                    now=self.clock(),
                )
                try:
                    self._save(task, previous=previous, event_type="recovered")
                except ConcurrentTaskUpdateError:
                    continue
                recovered += 1
                logger.warning("Task %s was left %s; marked failed", task.task_id, previous.value)
        return recovered

    def run_until_idle(
        self,
        *,
        max_tasks: int | None = None,
        idle_exit: bool = True,
        once: bool = False,
        recover: bool = True,
    ) -> WorkerRunSummary:
        """Run the scheduling loop.

        Args:
            max_tasks: Stop starting new attempts after this many.
            idle_exit: Return once nothing runs and nothing could be started.
            once: Run a single scheduling pass and wait for what it started.
            recover: Fail tasks orphaned by a previous worker before starting.
        """

        self._stop_requested = False
        if recover:
            self._summary.recovered += self.recover_interrupted()
        poll = self.settings.scheduler.poll_interval_seconds
        with self._signal_handlers():
            while not self._stop_requested:
                if max_tasks is None or self._summary.started < max_tasks:
                    remaining = None if max_tasks is None else max_tasks - self._summary.started
                    self.tick(limit=remaining)
                    if once:
                        self.wait_for_attempts()
                        break
                with self._lock:
                    busy = bool(self._attempts)
                if not busy and (
                    idle_exit or (max_tasks is not None and self._summary.started >= max_tasks)
                ):
                    break
                self._wake.wait(timeout=poll)
                self._wake.clear()
            if self._stop_requested:
                self._interrupt_all()
            self.wait_for_attempts()
        return self._summary

    def run_forever(self) -> WorkerRunSummary:
        return self.run_until_idle(idle_exit=False)

    def wait_for_attempts(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = [attempt.thread for attempt in self._attempts.values() if attempt.thread]
        for thread in threads:
            thread.join(timeout=timeout)

    def stop(self) -> None:
        self._stop_requested = True
        self._wake.set()

    def _interrupt_all(self) -> None:
        with self._lock:
            for attempt in self._attempts.values():
                attempt.stop_requested = True

    @property
    def summary(self) -> WorkerRunSummary:
        return self._summary

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping scheduler", name)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _elapsed_ms(started_at: datetime, now: datetime) -> int:
    return max(0, int((now - started_at).total_seconds() * 1000))
