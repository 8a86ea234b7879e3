"""Controllers for nightshift CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from nightshift.config import Settings
from nightshift.orchestrator.agents.registry import AgentRegistry, build_default_registry
from nightshift.orchestrator.models import Task, TaskCreate, TaskStatus, TaskUpdate
from nightshift.orchestrator.repository import TaskRepository
from nightshift.orchestrator.scheduler import TaskScheduler
from nightshift.orchestrator.services import TaskService
from nightshift.orchestrator.smoke import run_agent_checks
from nightshift.orchestrator.usage_limits import UsageLimitTracker
from nightshift.storage.common import utc_now
from nightshift.storage.logs import IterationLogStore

PROMPT_PREVIEW_CHARS = 60


@dataclass(slots=True)
class ProjectAddCommand:
    db_path: Path | None
    name: str
    path: Path
    project_id: str | None


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    project_id: str
    prompt: str
    agent: str | None
    model: str | None
    thinking: bool | None
    context_files: tuple[str, ...]
    backlog: bool = False


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    project_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskLogCommand:
    db_path: Path | None
    task_id: str
    iteration: int | None


@dataclass(slots=True)
class TaskUpdateCommand:
    db_path: Path | None
    task_id: str
    prompt: str | None
    agent: str | None
    model: str | None
    thinking: bool | None
    context_files: tuple[str, ...] | None


@dataclass(slots=True)
class TaskStatusCommand:
    db_path: Path | None
    task_id: str
    status: str


@dataclass(slots=True)
class TaskTextCommand:
    """CLI input for reprompt/reply."""

    db_path: Path | None
    task_id: str
    text: str


@dataclass(slots=True)
class TaskAcceptCommand:
    db_path: Path | None
    task_id: str
    execution_prompt: str | None


@dataclass(slots=True)
class TaskReorderCommand:
    db_path: Path | None
    task_ids: tuple[str, ...]


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for scheduler execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    idle_exit: bool = True


@dataclass(slots=True)
class LimitsCommand:
    db_path: Path | None
    agent: str | None


@dataclass(slots=True)
class AgentsCommand:
    agents: tuple[str, ...]
    probe: bool = True
    project_path: Path | None = None


@dataclass(slots=True)
class AgentsCheckResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    repository: TaskRepository
    registry: AgentRegistry
    tracker: UsageLimitTracker
    log_store: IterationLogStore
    scheduler: TaskScheduler
    service: TaskService


class NightshiftCliController:
    """Coordinates project, task, worker, limit and agent CLI operations."""

    # -- projects -------------------------------------------------------------

    def add_project(self, command: ProjectAddCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            project = runtime.service.add_project(
                name=command.name,
                path=command.path,
                project_id=command.project_id,
            )
        return [f"Project saved: project_id={project.project_id} path={project.path}"]

    def list_projects(self, db_path: Path | None) -> list[str]:
        with _runtime(db_path) as runtime:
            projects = runtime.repository.list_projects()
        if not projects:
            return ["No projects."]
        return [f"{project.project_id}\t{project.name}\t{project.path}" for project in projects]

    # -- tasks ----------------------------------------------------------------

    def add_task(self, command: TaskAddCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.create_task(
                TaskCreate(
                    project_id=command.project_id,
                    prompt=command.prompt,
                    agent_id=command.agent,
                    model=command.model,
                    thinking_mode=command.thinking,
                    context_files=command.context_files,
                    status=TaskStatus.BACKLOG if command.backlog else TaskStatus.QUEUED,
                ),
            )
        return [
            "Task created: "
            f"task_id={task.task_id} status={task.status.value} position={task.queue_position}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status = TaskStatus(command.status) if command.status else None
        with _runtime(command.db_path) as runtime:
            tasks = runtime.repository.load_all_tasks(
                project_id=command.project_id,
                status=status,
                limit=command.limit,
            )
        if not tasks:
            return ["No tasks."]
        return [_task_row(task) for task in tasks]

    def show_task(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            details = runtime.repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Project: {task.project_id}",
            f"Status: {task.status.value}",
            f"Queue position: {task.queue_position}",
            f"Agent: {task.agent_id or '-'} model={task.model or '-'}",
            f"Iteration: {task.current_iteration} (recorded={len(task.iterations)})",
            f"Runtime: {task.runtime_ms} ms",
            f"Exit code: {task.exit_code if task.exit_code is not None else '-'}",
            f"Error: {task.error_message or '-'}",
            f"Session: {task.session_id or '-'}",
            f"Plan mode: {task.is_plan_mode} plan_file={task.plan_file_path or '-'}",
            f"Usage: tokens={task.usage.total_tokens} cost_usd={task.usage.cost_usd:.4f}",
            f"Source: {task.source}" + (f" ref={task.source_ref}" if task.source_ref else ""),
            "Prompt:",
            *[f"  {line}" for line in task.prompt.splitlines()],
        ]
        if task.needs_continuation:
            lines.append(
                "Warning: agent signaled unfinished work "
                f"({task.continuation_reason.value if task.continuation_reason else '-'}): "
                f"{task.continuation_details or '-'}",
            )
            lines.extend(f"  next: {step}" for step in task.suggested_next_steps)
        lines.append(f"Iterations: {len(task.iterations)}")
        for iteration in task.iterations:
            lines.append(
                f"  #{iteration.iteration} {iteration.final_status.value} "
                f"exit={iteration.exit_code if iteration.exit_code is not None else '-'} "
                f"runtime_ms={iteration.runtime_ms} "
                f"completed_at={iteration.completed_at.isoformat()}"
                + (f" error={iteration.error_message}" if iteration.error_message else ""),
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def task_log(self, command: TaskLogCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.repository.load_task(command.task_id)
            iteration = command.iteration or task.current_iteration
            text = runtime.log_store.read(task.project_id, task.task_id, iteration)
        if text is None:
            return [f"No log for task {task.task_id} iteration {iteration}."]
        return text.splitlines()

    def update_task(self, command: TaskUpdateCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.update_task(
                command.task_id,
                TaskUpdate(
                    prompt=command.prompt,
                    agent_id=command.agent,
                    model=command.model,
                    thinking_mode=command.thinking,
                    context_files=command.context_files,
                ),
            )
        return [f"Task updated: {task.task_id}"]

    def delete_task(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            runtime.service.delete_task(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def change_status(self, command: TaskStatusCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.change_status(command.task_id, TaskStatus(command.status))
        return [f"Task {task.task_id} is now {task.status.value}"]

    def accept(self, command: TaskAcceptCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            if command.execution_prompt is None:
                task = runtime.service.accept(command.task_id)
                return [f"Task accepted: {task.task_id}"]
            result = runtime.service.accept_plan(
                command.task_id,
                execution_prompt=command.execution_prompt,
            )
        lines = [f"Task accepted: {result.plan_task.task_id}"]
        if result.execution_task is not None:
            lines.append(f"Execution task created: {result.execution_task.task_id}")
        return lines

    def reject(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.reject(command.task_id)
        return [f"Task rejected: {task.task_id}"]

    def reprompt(self, command: TaskTextCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.reprompt(command.task_id, command.text)
        return [f"Task re-queued: {task.task_id} iteration={task.current_iteration}"]

    def reply(self, command: TaskTextCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.reply(command.task_id, command.text)
        return [
            f"Reply queued: {task.task_id} iteration={task.current_iteration} "
            f"session={task.session_id}",
        ]

    def retry(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task, context = runtime.service.retry(command.task_id)
        return [
            f"Task re-queued with context: {task.task_id} iteration={task.current_iteration}",
            f"Context: {context.summary}",
        ]

    def retry_context(self, command: TaskLogCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            context = runtime.service.retry_context(command.task_id, iteration=command.iteration)
        return [
            f"Summary: {context.summary}",
            f"Actions: {context.action_count}",
            "",
            *context.prompt.splitlines(),
        ]

    def reorder(self, command: TaskReorderCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            tasks = runtime.service.reorder(command.task_ids)
        return ["Queue:", *[_task_row(task) for task in tasks]]

    def cancel(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.cancel_task(command.task_id)
        return [f"Task cancelled: {task.task_id}"]

    def pause(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.pause_task(command.task_id)
        return [f"Task paused: {task.task_id}"]

    def resume(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service.resume_task(command.task_id)
        return [f"Task resumed: {task.task_id}"]

    def running(self, db_path: Path | None) -> list[str]:
        with _runtime(db_path) as runtime:
            infos = runtime.scheduler.list_running()
        if not infos:
            return ["No running tasks."]
        return [
            f"{info.task_id}\t{info.project_id}\t{info.agent_id}\t{info.state}\t"
            f"pid={info.pid or '-'}\telapsed_ms={info.elapsed_ms}\tlines={info.output_lines}"
            for info in infos
        ]

    # -- worker ---------------------------------------------------------------

    def run_worker(self, command: WorkerCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            summary = runtime.scheduler.run_until_idle(
                max_tasks=command.max_tasks,
                idle_exit=command.idle_exit,
                once=command.once,
            )
        return [
            "Worker summary: "
            f"started={summary.started} needs_review={summary.needs_review} "
            f"failed={summary.failed} deferred={summary.deferred} "
            f"cancelled={summary.cancelled} recovered={summary.recovered}",
        ]

    # -- usage limits ---------------------------------------------------------

    def limits_status(self, command: LimitsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            agent_ids = [command.agent] if command.agent else runtime.registry.ids()
            states = [runtime.tracker.get_state(agent_id) for agent_id in agent_ids]
        lines = []
        for state in states:
            reset = state.reset_at.isoformat() if state.reset_at else "-"
            flag = "limited" if state.is_limited else "ok"
            lines.append(f"{state.agent_id}\t{flag}\treset_at={reset}\t{state.message or ''}")
        return lines

    def limits_clear(self, command: LimitsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            agent_ids = [command.agent] if command.agent else runtime.registry.ids()
            for agent_id in agent_ids:
                runtime.registry.get(agent_id)
                runtime.tracker.clear(agent_id)
        return [f"Usage limit cleared: {agent_id}" for agent_id in agent_ids]

    def limits_check(self, command: LimitsCommand) -> list[str]:
        """Run the pre-flight probe now and record the result."""

        lines: list[str] = []
        with _runtime(command.db_path) as runtime:
            agent_id = command.agent or runtime.registry.default_agent_id
            adapter = runtime.registry.get(agent_id)
            check = adapter.check_usage_limits()
            if check.can_proceed:
                runtime.tracker.clear(agent_id)
                lines.append(f"{agent_id}: ok")
            else:
                runtime.tracker.set_limited(
                    agent_id,
                    reset_at=check.reset_at,
                    message=check.message,
                )
                reset = check.reset_at.isoformat() if check.reset_at else "unknown"
                lines.append(f"{agent_id}: limited until {reset}: {check.message or '-'}")
        return lines

    # -- agents ---------------------------------------------------------------

    def list_agents(self) -> list[str]:
        registry = build_default_registry(_settings(None))
        lines = []
        for agent_id in registry.ids():
            adapter = registry.get(agent_id)
            flags = adapter.get_capabilities()
            marker = "*" if agent_id == registry.default_agent_id else " "
            lines.append(
                f"{marker} {agent_id}\t{adapter.display_name}\t"
                f"available={adapter.is_available()}\t"
                f"session_resume={flags.supports_session_resume}\t"
                f"context_files={flags.supports_context_files}\t"
                f"default_model={adapter.default_model or '-'}",
            )
        return lines

    def check_agents(self, command: AgentsCommand) -> AgentsCheckResult:
        registry = build_default_registry(_settings(None))
        agent_ids = command.agents or (registry.default_agent_id,)
        results = run_agent_checks(
            [registry.get(agent_id) for agent_id in agent_ids],
            probe=command.probe,
        )
        lines: list[str] = []
        for result in results:
            lines.append(
                f"{result.agent}: available={result.available} auth_ok={result.auth_ok} "
                f"can_proceed={result.can_proceed} skipped_probe={result.skipped_probe}",
            )
            if result.executable:
                lines.append(f"  executable: {result.executable}")
            if result.reset_at:
                lines.append(f"  resets_at: {result.reset_at}")
            if result.error:
                lines.append(f"  error: {result.error}")
        return AgentsCheckResult(
            lines=lines,
            success=all(result.available and result.can_proceed for result in results),
        )

    def reauth(self, command: AgentsCommand) -> AgentsCheckResult:
        registry = build_default_registry(_settings(None))
        agent_id = command.agents[0] if command.agents else registry.default_agent_id
        result = registry.get(agent_id).trigger_reauth(command.project_path)
        if result.success:
            return AgentsCheckResult(lines=[f"{agent_id}: re-authenticated"], success=True)
        return AgentsCheckResult(lines=[f"{agent_id}: {result.error}"], success=False)

    def models(self, command: AgentsCommand) -> list[str]:
        registry = build_default_registry(_settings(None))
        agent_id = command.agents[0] if command.agents else registry.default_agent_id
        adapter = registry.get(agent_id)
        return [
            f"{'*' if model == adapter.default_model else ' '} {model}"
            for model in adapter.available_models()
        ]

    def usage(self, command: AgentsCommand) -> list[str]:
        registry = build_default_registry(_settings(None))
        agent_id = command.agents[0] if command.agents else registry.default_agent_id
        usage = registry.get(agent_id).get_usage_percentage()
        if usage.error:
            return [f"{agent_id}: usage unavailable: {usage.error}"]
        lines = []
        for label, window in (("5h", usage.five_hour), ("7d", usage.seven_day)):
            if window is None:
                lines.append(f"{agent_id} {label}: -")
                continue
            resets = window.resets_at.isoformat() if window.resets_at else "-"
            lines.append(f"{agent_id} {label}: {window.utilization:.0f}% resets_at={resets}")
        return lines


def _task_row(task: Task) -> str:
    prompt = task.prompt.splitlines()[0] if task.prompt else ""
    if len(prompt) > PROMPT_PREVIEW_CHARS:
        prompt = prompt[: PROMPT_PREVIEW_CHARS - 3] + "..."
    warning = " !" if task.needs_continuation else ""
    return (
        f"{task.task_id}\t{task.project_id}\t{task.status.value}{warning}\t"
        f"pos={task.queue_position}\titer={task.current_iteration}\t{prompt}"
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[_Runtime]:
    settings = _settings(db_path)
    repository = TaskRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        registry = build_default_registry(settings)
        tracker = UsageLimitTracker(clock=utc_now, store=repository)
        log_store = IterationLogStore(settings.logs_root)
        scheduler = TaskScheduler(
            repository=repository,
            registry=registry,
            tracker=tracker,
            log_store=log_store,
            settings=settings,
        )
        service = TaskService(
            repository=repository,
            registry=registry,
            log_store=log_store,
            notifier=scheduler.notifier,
            scheduler=scheduler,
        )
        yield _Runtime(
            settings=settings,
            repository=repository,
            registry=registry,
            tracker=tracker,
            log_store=log_store,
            scheduler=scheduler,
            service=service,
        )
    finally:
        repository.close()
