from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from nightshift.orchestrator import state_machine
from nightshift.orchestrator.errors import (
    ConcurrentTaskUpdateError,
    InvalidTaskStateError,
    TaskNotFoundError,
)
from nightshift.orchestrator.models import (
    ContinuationReason,
    Project,
    TaskCreate,
    TaskStatus,
    UsageSummary,
)
from nightshift.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence"),
]

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def _finish_iteration(repository: TaskRepository, task_id: str, *, exit_code: int) -> None:
    task = repository.load_task(task_id)
    start = T0 + timedelta(minutes=task.current_iteration * 10)
    state_machine.begin_attempt(task, now=start)
    repository.save_task(task, expected_status=TaskStatus.QUEUED)
    state_machine.mark_running(task, now=start, agent_id="claude-code", model="sonnet")
    repository.save_task(task, expected_status=TaskStatus.AWAITING_AGENT, event_type="started")
    state_machine.complete_iteration(task, exit_code=exit_code, now=start + timedelta(seconds=42))
    repository.save_task(task, expected_status=TaskStatus.RUNNING, event_type="finished")


def test_create_task_assigns_queue_tail_and_event(repository: TaskRepository, project: Project):
    first = repository.create_task(TaskCreate(project_id=project.project_id, prompt="one"))
    second = repository.create_task(
        TaskCreate(
            project_id=project.project_id,
            prompt="two",
            agent_id="gemini",
            context_files=("a.py", "b.py"),
            status=TaskStatus.BACKLOG,
        ),
    )

    assert second.queue_position == first.queue_position + 1
    loaded = repository.load_task(second.task_id)
    assert loaded.status is TaskStatus.BACKLOG
    assert loaded.context_files == ["a.py", "b.py"]
    assert loaded.agent_id == "gemini"
    assert loaded.current_iteration == 1

    details = repository.get_task_details(first.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]
    assert details.events[0].status_to is TaskStatus.QUEUED


def test_create_task_rejects_unknown_project_and_bad_status(repository: TaskRepository) -> None:
    with pytest.raises(ValueError, match="Unknown project"):
        repository.create_task(TaskCreate(project_id="missing", prompt="x"))
    with pytest.raises(InvalidTaskStateError):
        repository.create_task(
            TaskCreate(project_id="missing", prompt="x", status=TaskStatus.RUNNING),
        )


def test_round_trip_preserves_iterations_session_and_usage(
    repository: TaskRepository,
    project: Project,
) -> None:
    created = repository.create_task(TaskCreate(project_id=project.project_id, prompt="v1"))
    for number, exit_code in enumerate((0, 1, 0), start=1):
        _finish_iteration(repository, created.task_id, exit_code=exit_code)
        if number < 3:
            task = repository.load_task(created.task_id)
            previous = task.status
            state_machine.reprompt(
                task,
                prompt=f"v{number + 1}",
                queue_position=repository.next_queue_position(),
            )
            repository.save_task(task, expected_status=previous, event_type="reprompted")

    repository.update_session_id(created.task_id, "sess-abc")
    task = repository.load_task(created.task_id)
    state_machine.set_continuation(
        task,
        reason=ContinuationReason.APPROVAL_NEEDED,
        details="Agent is asking for approval to continue",
        suggested_next_steps=["Review the work completed so far"],
    )
    task.usage = UsageSummary(input_tokens=10, output_tokens=5, cost_usd=0.25)
    repository.save_task(task, expected_status=TaskStatus.NEEDS_REVIEW)

    reloaded = repository.load_task(created.task_id)

    assert reloaded.session_id == "sess-abc"
    assert reloaded.current_iteration == 3
    assert [item.iteration for item in reloaded.iterations] == [1, 2, 3]
    assert [item.prompt for item in reloaded.iterations] == ["v1", "v2", "v3"]
    assert [item.final_status for item in reloaded.iterations] == [
        TaskStatus.NEEDS_REVIEW,
        TaskStatus.FAILED,
        TaskStatus.NEEDS_REVIEW,
    ]
    assert reloaded.iterations[1].error_message == "Process exited with code 1"
    assert all(item.runtime_ms == 42_000 for item in reloaded.iterations)
    assert reloaded.iterations[0].completed_at.tzinfo is not None
    assert reloaded.continuation_reason is ContinuationReason.APPROVAL_NEEDED
    assert reloaded.suggested_next_steps == ["Review the work completed so far"]
    assert reloaded.usage == UsageSummary(input_tokens=10, output_tokens=5, cost_usd=0.25)
    assert reloaded.model == "sonnet"
    assert state_machine.iteration_invariant_holds(reloaded)


def test_save_task_detects_concurrent_status_change(
    repository: TaskRepository,
    project: Project,
) -> None:
    created = repository.create_task(TaskCreate(project_id=project.project_id, prompt="race"))
    scheduler_copy = repository.load_task(created.task_id)
    user_copy = repository.load_task(created.task_id)

    state_machine.cancel(user_copy, now=T0)
    repository.save_task(user_copy, expected_status=TaskStatus.QUEUED, event_type="cancelled")

    state_machine.begin_attempt(scheduler_copy, now=T0)
    with pytest.raises(ConcurrentTaskUpdateError):
        repository.save_task(scheduler_copy, expected_status=TaskStatus.QUEUED)

    stored = repository.load_task(created.task_id)
    assert stored.status is TaskStatus.CANCELLED
    assert len(stored.iterations) == 1


def test_reorder_swaps_positions_and_lists_queue(
    repository: TaskRepository,
    project: Project,
) -> None:
    tasks = [
        repository.create_task(TaskCreate(project_id=project.project_id, prompt=f"p{index}"))
        for index in range(3)
    ]
    positions = [task.queue_position for task in tasks]

    queue = repository.reorder([tasks[2].task_id, tasks[0].task_id])

    assert [task.task_id for task in queue] == [
        tasks[2].task_id,
        tasks[1].task_id,
        tasks[0].task_id,
    ]
    assert [task.queue_position for task in queue] == [positions[0], positions[1], positions[2]]


def test_reorder_rejects_non_queued_and_duplicates(
    repository: TaskRepository,
    project: Project,
) -> None:
    queued = repository.create_task(TaskCreate(project_id=project.project_id, prompt="q"))
    parked = repository.create_task(
        TaskCreate(project_id=project.project_id, prompt="b", status=TaskStatus.BACKLOG),
    )

    with pytest.raises(InvalidTaskStateError, match="not queued"):
        repository.reorder([queued.task_id, parked.task_id])
    with pytest.raises(ValueError, match="unique"):
        repository.reorder([queued.task_id, queued.task_id])
    with pytest.raises(TaskNotFoundError):
        repository.reorder(["nope"])


def test_count_active_and_list_filters(repository: TaskRepository, project: Project) -> None:
    first = repository.create_task(TaskCreate(project_id=project.project_id, prompt="a"))
    second = repository.create_task(TaskCreate(project_id=project.project_id, prompt="b"))
    task = repository.load_task(first.task_id)
    state_machine.begin_attempt(task, now=T0)
    repository.save_task(task, expected_status=TaskStatus.QUEUED)

    assert repository.count_active() == 1
    assert [item.task_id for item in repository.list_queued()] == [second.task_id]
    assert len(repository.load_all_tasks(status=TaskStatus.QUEUED)) == 1
    assert len(repository.load_all_tasks(project_id=project.project_id, limit=1)) == 1
    assert repository.load_all_tasks(project_id="other") == []


def test_delete_task_refuses_executing_tasks(
    repository: TaskRepository,
    project: Project,
) -> None:
    created = repository.create_task(TaskCreate(project_id=project.project_id, prompt="gone"))
    task = repository.load_task(created.task_id)
    state_machine.begin_attempt(task, now=T0)
    repository.save_task(task, expected_status=TaskStatus.QUEUED)

    with pytest.raises(InvalidTaskStateError, match="cancel it before deleting"):
        repository.delete_task(created.task_id)

    state_machine.cancel(task, now=T0)
    repository.save_task(task, expected_status=TaskStatus.AWAITING_AGENT)
    repository.delete_task(created.task_id)

    assert repository.get_task(created.task_id) is None
    assert repository.get_task_details(created.task_id) is None
    with pytest.raises(TaskNotFoundError):
        repository.load_task(created.task_id)


def test_projects_upsert_and_list(tmp_path: Path, repository: TaskRepository) -> None:
    repository.upsert_project(Project(project_id="b", name="Beta", path=str(tmp_path)))
    repository.upsert_project(Project(project_id="a", name="Alpha", path=str(tmp_path)))
    repository.upsert_project(Project(project_id="b", name="Beta 2", path=str(tmp_path)))

    assert [project.name for project in repository.list_projects()] == ["Alpha", "Beta 2"]
    assert repository.get_project("missing") is None
