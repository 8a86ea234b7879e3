from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import allure
import pytest

from nightshift.config import Settings
from nightshift.orchestrator import state_machine
from nightshift.orchestrator.agents.registry import build_default_registry
from nightshift.orchestrator.models import (
    ContinuationReason,
    Project,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
)
from nightshift.orchestrator.repository import TaskRepository
from nightshift.orchestrator.scheduler import INTERRUPTED_MESSAGE, TaskScheduler
from nightshift.orchestrator.services import TaskService
from nightshift.orchestrator.usage_limits import UsageLimitTracker
from nightshift.storage.common import utc_now
from nightshift.storage.logs import IterationLogStore

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Scheduler"),
]

WAIT_SECONDS = 30.0


class _ShiftedClock:
    """Wall clock that a test can move forward."""

    def __init__(self) -> None:
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return utc_now() + self.offset


@dataclass(slots=True)
class _Worker:
    settings: Settings
    repository: TaskRepository
    tracker: UsageLimitTracker
    log_store: IterationLogStore
    scheduler: TaskScheduler
    service: TaskService
    project: Project

    def queue(self, prompt: str) -> Task:
        payload = TaskCreate(project_id=self.project.project_id, prompt=prompt)
        return self.service.create_task(payload)

    def load(self, task_id: str) -> Task:
        return self.repository.load_task(task_id)

    def log(self, task_id: str, iteration: int = 1) -> str:
        return self.log_store.read(self.project.project_id, task_id, iteration) or ""

    def wait_for(self, task_id: str, status: TaskStatus) -> Task:
        deadline = time.monotonic() + WAIT_SECONDS
        while time.monotonic() < deadline:
            task = self.load(task_id)
            if task.status is status:
                return task
            time.sleep(0.05)
        raise AssertionError(f"Task {task_id} never reached {status.value}")


@pytest.fixture()
def make_worker(
    echo_settings: Settings,
    tmp_path: Path,
) -> Iterator[Callable[..., _Worker]]:
    repositories: list[TaskRepository] = []

    def _build(
        settings: Settings = echo_settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> _Worker:
        repository = TaskRepository(settings.db_path)
        repository.init_schema()
        repositories.append(repository)
        workdir = tmp_path / "workspace"
        workdir.mkdir(exist_ok=True)
        project = repository.upsert_project(
            Project(project_id="demo", name="Demo", path=str(workdir)),
        )
        registry = build_default_registry(settings)
        tracker = UsageLimitTracker(store=repository, clock=clock)
        log_store = IterationLogStore(settings.logs_root)
        scheduler = TaskScheduler(
            repository=repository,
            registry=registry,
            tracker=tracker,
            log_store=log_store,
            settings=settings,
            clock=clock,
        )
        service = TaskService(
            repository=repository,
            registry=registry,
            log_store=log_store,
            notifier=scheduler.notifier,
            scheduler=scheduler,
        )
        return _Worker(
            settings=settings,
            repository=repository,
            tracker=tracker,
            log_store=log_store,
            scheduler=scheduler,
            service=service,
            project=project,
        )

    yield _build
    for repository in repositories:
        repository.close()


def test_successful_run_goes_to_review(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("Finished phase 1 of 3 for the parser rewrite")

    summary = worker.scheduler.run_until_idle()

    assert (summary.started, summary.needs_review, summary.failed) == (1, 1, 0)
    done = worker.load(task.task_id)
    assert done.status is TaskStatus.NEEDS_REVIEW
    assert done.exit_code == 0
    assert done.session_id is not None and done.session_id.startswith("echo-")
    assert done.usage.input_tokens == 12
    assert done.usage.output_tokens == 7
    assert done.agent_id == "claude-code"
    assert done.needs_continuation is True
    assert done.continuation_reason is ContinuationReason.MULTI_PHASE
    assert [iteration.final_status for iteration in done.iterations] == [TaskStatus.NEEDS_REVIEW]

    log_text = worker.log(task.task_id)
    assert log_text.startswith("=== Iteration 1 started at ")
    assert "You are working in project: Demo" in log_text
    assert log_text.rstrip().endswith("=== Completed with exit code 0 ===")


def test_nonzero_exit_fails_with_agent_error(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("[exit:1] Break things")

    summary = worker.scheduler.run_until_idle()

    failed = worker.load(task.task_id)
    assert summary.failed == 1
    assert failed.status is TaskStatus.FAILED
    assert failed.exit_code == 1
    assert failed.error_message is not None and "Break things" in failed.error_message
    assert "=== Completed with exit code 1 ===" in worker.log(task.task_id)


def test_usage_limit_defers_task_and_limits_agent(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("[usage-limit] Big refactor")
    before = utc_now()

    summary = worker.scheduler.run_until_idle()

    deferred = worker.load(task.task_id)
    assert (summary.started, summary.deferred) == (1, 1)
    assert deferred.status is TaskStatus.QUEUED
    assert deferred.current_iteration == 1
    assert deferred.iterations == []
    assert state_machine.iteration_invariant_holds(deferred)

    state = worker.tracker.get_state("claude-code")
    assert state.is_limited is True
    assert state.triggered_by_task_id == task.task_id
    assert state.reset_at is not None
    assert before + timedelta(hours=2, minutes=55) < state.reset_at
    assert state.reset_at < before + timedelta(hours=3, minutes=5)
    assert deferred.error_message is not None
    assert "usage limit reached" in deferred.error_message
    assert "=== Paused due to usage limit (resets at " in worker.log(task.task_id)

    # The limited agent is skipped until its reset time.
    assert worker.scheduler.tick() == []


def test_rate_limit_defers_with_backoff(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("[rate-limit] Burst of requests")

    worker.scheduler.run_until_idle()

    assert worker.load(task.task_id).status is TaskStatus.QUEUED
    state = worker.tracker.get_state("claude-code")
    assert state.is_limited is True
    assert state.reset_at is not None
    assert "=== Paused due to rate limit (resets at " in worker.log(task.task_id)


def test_auth_error_fails_task(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("[auth-error] Anything")

    worker.scheduler.run_until_idle()

    failed = worker.load(task.task_id)
    assert failed.status is TaskStatus.FAILED
    assert failed.error_message == (
        "Authentication failed for Claude Code. Please re-authenticate."
    )
    assert "=== Failed due to authentication error ===" in worker.log(task.task_id)
    assert worker.tracker.is_limited("claude-code") is False


def test_plan_mode_is_detected(make_worker, echo_settings: Settings) -> None:
    worker = make_worker()
    task = worker.queue("[plan] Design the cache layer")

    worker.scheduler.run_until_idle()

    planned = worker.load(task.task_id)
    assert planned.status is TaskStatus.NEEDS_REVIEW
    assert planned.is_plan_mode is True
    assert planned.plan_file_path == str(echo_settings.agents.plans_dir / "echo-plan.md")
    assert planned.iterations[-1].is_plan_mode is True


def test_preflight_limit_defers_without_spawning(make_worker, monkeypatch) -> None:
    monkeypatch.setenv("NIGHTSHIFT_ECHO_PROBE", "usage-limit")
    worker = make_worker()
    task = worker.queue("Never runs")

    summary = worker.scheduler.run_until_idle()

    assert summary.deferred == 1
    assert worker.load(task.task_id).status is TaskStatus.QUEUED
    assert worker.tracker.is_limited("claude-code") is True
    log_text = worker.log(task.task_id)
    assert "=== Iteration 1 started" not in log_text
    assert "=== Paused due to usage limit" in log_text


def test_missing_executable_fails_task(make_worker, echo_settings: Settings, tmp_path) -> None:
    echo_settings.agents.claude_command = (str(tmp_path / "bin" / "claude"),)
    worker = make_worker(echo_settings)
    task = worker.queue("Anything")

    worker.scheduler.run_until_idle()

    failed = worker.load(task.task_id)
    assert failed.status is TaskStatus.FAILED
    assert failed.error_message == "Claude Code CLI not found"
    assert len(failed.iterations) == 1


def test_capacity_limits_concurrent_attempts(make_worker) -> None:
    worker = make_worker()
    first = worker.queue("[sleep:1] first")
    second = worker.queue("[sleep:1] second")

    assert worker.scheduler.tick() == [first.task_id]
    assert worker.scheduler.tick() == []
    worker.scheduler.wait_for_attempts(timeout=WAIT_SECONDS)

    assert worker.scheduler.tick() == [second.task_id]
    worker.scheduler.wait_for_attempts(timeout=WAIT_SECONDS)
    assert worker.load(second.task_id).status is TaskStatus.NEEDS_REVIEW


def test_cancel_running_task(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("[sleep:30] slow job")
    worker.scheduler.tick()
    worker.wait_for(task.task_id, TaskStatus.RUNNING)

    [info] = worker.scheduler.list_running()
    assert info.task_id == task.task_id
    assert info.pid is not None

    cancelled = worker.service.cancel_task(task.task_id)
    worker.scheduler.wait_for_attempts(timeout=WAIT_SECONDS)

    assert cancelled.status is TaskStatus.CANCELLED
    assert worker.load(task.task_id).status is TaskStatus.CANCELLED
    assert worker.scheduler.summary.cancelled == 1
    assert "=== Cancelled by user ===" in worker.log(task.task_id)


def test_cancel_from_another_process_stops_the_agent(make_worker, echo_settings) -> None:
    worker = make_worker()
    task = worker.queue("[sleep:30] slow job")
    worker.scheduler.tick()
    worker.wait_for(task.task_id, TaskStatus.RUNNING)

    other = TaskService(
        repository=TaskRepository(echo_settings.db_path),
        registry=build_default_registry(echo_settings),
        log_store=IterationLogStore(echo_settings.logs_root),
    )
    try:
        other.cancel_task(task.task_id)
    finally:
        other.repository.close()
    worker.scheduler.wait_for_attempts(timeout=WAIT_SECONDS)

    assert worker.load(task.task_id).status is TaskStatus.CANCELLED
    assert worker.scheduler.summary.cancelled == 1
    assert worker.scheduler.list_running() == []


def test_timeout_fails_task(make_worker, echo_settings: Settings) -> None:
    echo_settings.scheduler.max_task_duration_minutes = 1
    clock = _ShiftedClock()
    worker = make_worker(echo_settings, clock=clock)
    task = worker.queue("[sleep:30] endless")
    worker.scheduler.tick()
    worker.wait_for(task.task_id, TaskStatus.RUNNING)

    clock.offset = timedelta(minutes=2)
    worker.scheduler.wait_for_attempts(timeout=WAIT_SECONDS)

    failed = worker.load(task.task_id)
    assert failed.status is TaskStatus.FAILED
    assert failed.error_message == "Task timed out after 1 minutes"
    assert "=== Timed out after 1 minutes ===" in worker.log(task.task_id)


def test_shutdown_returns_running_task_to_queue(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("[sleep:30] overnight job")
    runner = threading.Thread(
        target=worker.scheduler.run_until_idle,
        kwargs={"idle_exit": False},
        daemon=True,
    )
    runner.start()
    worker.wait_for(task.task_id, TaskStatus.RUNNING)

    worker.scheduler.stop()
    runner.join(timeout=WAIT_SECONDS)

    assert not runner.is_alive()
    interrupted = worker.load(task.task_id)
    assert interrupted.status is TaskStatus.QUEUED
    assert interrupted.current_iteration == 1
    assert worker.scheduler.summary.deferred == 1
    assert "=== Interrupted by worker shutdown ===" in worker.log(task.task_id)


def test_orphaned_attempts_are_recovered(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("Left behind")
    orphan = worker.load(task.task_id)
    now = utc_now()
    state_machine.begin_attempt(orphan, now=now)
    state_machine.mark_running(orphan, now=now, agent_id="claude-code", model=None)
    worker.repository.save_task(orphan, expected_status=TaskStatus.QUEUED)

    summary = worker.scheduler.run_until_idle()

    recovered = worker.load(task.task_id)
    assert summary.recovered == 1
    assert summary.started == 0
    assert recovered.status is TaskStatus.FAILED
    assert recovered.error_message == INTERRUPTED_MESSAGE


def test_reply_resumes_previous_session(make_worker) -> None:
    worker = make_worker()
    task = worker.queue("Add caching")
    worker.scheduler.run_until_idle()
    first = worker.load(task.task_id)
    assert first.session_id is not None

    worker.service.reply(task.task_id, "Now add an eviction test")
    worker.scheduler.run_until_idle()

    second = worker.load(task.task_id)
    assert second.status is TaskStatus.NEEDS_REVIEW
    assert second.current_iteration == 2
    assert [iteration.iteration for iteration in second.iterations] == [1, 2]
    assert second.session_id == first.session_id
    assert second.usage.input_tokens == 24
    assert worker.log_store.iterations("demo", task.task_id) == [1, 2]
    assert f'"session_id": "{first.session_id}"' in worker.log(task.task_id, iteration=2)


def test_scheduling_resumes_after_limit_reset(make_worker, echo_settings: Settings) -> None:
    clock = _ShiftedClock()
    worker = make_worker(echo_settings, clock=clock)
    task = worker.queue("[usage-limit] Big refactor")
    worker.scheduler.run_until_idle()
    assert worker.load(task.task_id).status is TaskStatus.QUEUED
    assert worker.scheduler.tick() == []

    worker.service.update_task(task.task_id, TaskUpdate(prompt="Big refactor"))
    clock.offset = timedelta(hours=3, minutes=10)

    assert worker.tracker.is_limited("claude-code") is False
    assert worker.scheduler.tick() == [task.task_id]
    worker.scheduler.wait_for_attempts(timeout=WAIT_SECONDS)

    resumed = worker.load(task.task_id)
    assert resumed.status is TaskStatus.NEEDS_REVIEW
    assert resumed.current_iteration == 1
    assert len(resumed.iterations) == 1


def test_pause_racing_completion_still_records_iteration(make_worker, monkeypatch) -> None:
    worker = make_worker()
    task = worker.queue("Quick fix")
    save_task = worker.repository.save_task
    paused: list[str] = []

    def _pause_before_finish(saved: Task, **kwargs: object) -> Task:
        if kwargs.get("event_type") == "finished" and not paused:
            paused.append(saved.task_id)
            assert worker.scheduler.pause(saved.task_id) is True
        return save_task(saved, **kwargs)

    monkeypatch.setattr(worker.repository, "save_task", _pause_before_finish)

    summary = worker.scheduler.run_until_idle()

    done = worker.load(task.task_id)
    assert paused == [task.task_id]
    assert done.status is TaskStatus.NEEDS_REVIEW
    assert [iteration.final_status for iteration in done.iterations] == [TaskStatus.NEEDS_REVIEW]
    assert state_machine.iteration_invariant_holds(done)
    assert summary.needs_review == 1
    assert worker.repository.count_active() == 0
    details = worker.repository.get_task_details(task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events][-2:] == ["paused", "finished"]


def test_cancel_during_preflight_never_spawns(make_worker, monkeypatch) -> None:
    worker = make_worker()
    task = worker.queue("Never starts")
    adapter = worker.scheduler.registry.resolve("claude-code")
    check_usage_limits = adapter.check_usage_limits
    invoke = adapter.invoke
    spawned: list[object] = []

    def _cancel_then_check():
        worker.service.cancel_task(task.task_id)
        return check_usage_limits()

    def _record_invoke(invocation):
        spawned.append(invocation)
        return invoke(invocation)

    monkeypatch.setattr(adapter, "check_usage_limits", _cancel_then_check)
    monkeypatch.setattr(adapter, "invoke", _record_invoke)

    summary = worker.scheduler.run_until_idle()

    cancelled = worker.load(task.task_id)
    assert cancelled.status is TaskStatus.CANCELLED
    assert spawned == []
    assert summary.cancelled == 1
    assert summary.failed == 0
    assert [iteration.final_status for iteration in cancelled.iterations] == [
        TaskStatus.CANCELLED,
    ]
    assert "=== Iteration 1 started" not in worker.log(task.task_id)
