"""CLI entrypoint for nightshift."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from nightshift import __version__
from nightshift.config import SUPPORTED_AGENTS, Settings
from nightshift.orchestrator.controllers import (
    AgentsCommand,
    LimitsCommand,
    NightshiftCliController,
    ProjectAddCommand,
    TaskAcceptCommand,
    TaskAddCommand,
    TaskListCommand,
    TaskLogCommand,
    TaskRefCommand,
    TaskReorderCommand,
    TaskStatusCommand,
    TaskTextCommand,
    TaskUpdateCommand,
    WorkerCommand,
)
from nightshift.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = NightshiftCliController()
T = TypeVar("T")

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to NIGHTSHIFT_DB_PATH.",
)
AGENT_CHOICE = click.Choice(list(SUPPORTED_AGENTS), case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="nightshift")
def nightshift() -> None:
    """Queue coding tasks for CLI AI agents and review the results."""

    try:
        level = Settings.from_env().logging_level()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -- projects ------------------------------------------------------------------


@nightshift.group()
def project() -> None:
    """Project registry commands."""


@project.command("add")
@DB_PATH_OPTION
@click.argument("name")
@click.argument("path", type=click.Path(path_type=Path, file_okay=False))
@click.option("--id", "project_id", default=None, help="Explicit project id (slug of NAME).")
def project_add(db_path: Path | None, name: str, path: Path, project_id: str | None) -> None:
    """Register a project directory agents will work in."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.add_project(
                ProjectAddCommand(db_path=db_path, name=name, path=path, project_id=project_id),
            ),
        ),
    )


@project.command("list")
@DB_PATH_OPTION
def project_list(db_path: Path | None) -> None:
    """List registered projects."""

    _emit_lines(_run(lambda: CONTROLLER.list_projects(db_path)))


# -- tasks ---------------------------------------------------------------------


@nightshift.group()
def task() -> None:
    """Task queue and review commands."""


@task.command("add")
@DB_PATH_OPTION
@click.argument("prompt")
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--agent", type=AGENT_CHOICE, default=None, help="Agent override.")
@click.option("--model", default=None, help="Model override.")
@click.option("--thinking/--no-thinking", default=None, help="Extended thinking override.")
@click.option(
    "--context-file",
    "context_files",
    multiple=True,
    help="File to hand the agent as context. Can be repeated.",
)
@click.option("--backlog", is_flag=True, default=False, help="Park the task instead of queueing.")
def task_add(  # noqa: PLR0913
    db_path: Path | None,
    prompt: str,
    project_id: str,
    agent: str | None,
    model: str | None,
    thinking: bool | None,
    context_files: tuple[str, ...],
    backlog: bool,
) -> None:
    """Create a task at the tail of the queue."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.add_task(
                TaskAddCommand(
                    db_path=db_path,
                    project_id=project_id,
                    prompt=prompt,
                    agent=agent.lower() if agent else None,
                    model=model,
                    thinking=thinking,
                    context_files=context_files,
                    backlog=backlog,
                ),
            ),
        ),
    )


@task.command("list")
@DB_PATH_OPTION
@click.option("--project", "project_id", default=None, help="Optional project filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(
    db_path: Path | None,
    project_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_tasks(
                TaskListCommand(
                    db_path=db_path,
                    project_id=project_id,
                    status=status.lower() if status else None,
                    limit=limit,
                ),
            ),
        ),
    )


@task.command("show")
@DB_PATH_OPTION
@click.argument("task_id")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its iterations and event history."""

    _emit_lines(_run(lambda: CONTROLLER.show_task(TaskRefCommand(db_path, task_id))))


@task.command("log")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--iteration", type=click.IntRange(min=1), default=None, help="Iteration number.")
def task_log(db_path: Path | None, task_id: str, iteration: int | None) -> None:
    """Print the raw output log of an iteration (current one by default)."""

    _emit_lines(_run(lambda: CONTROLLER.task_log(TaskLogCommand(db_path, task_id, iteration))))


@task.command("update")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--prompt", default=None, help="New prompt.")
@click.option("--agent", type=AGENT_CHOICE, default=None, help="New agent.")
@click.option("--model", default=None, help="New model.")
@click.option("--thinking/--no-thinking", default=None, help="Extended thinking override.")
@click.option(
    "--context-file",
    "context_files",
    multiple=True,
    help="Replace context files. Can be repeated.",
)
def task_update(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    prompt: str | None,
    agent: str | None,
    model: str | None,
    thinking: bool | None,
    context_files: tuple[str, ...],
) -> None:
    """Edit a task that is not executing."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.update_task(
                TaskUpdateCommand(
                    db_path=db_path,
                    task_id=task_id,
                    prompt=prompt,
                    agent=agent.lower() if agent else None,
                    model=model,
                    thinking=thinking,
                    context_files=context_files or None,
                ),
            ),
        ),
    )


@task.command("delete")
@DB_PATH_OPTION
@click.argument("task_id")
def task_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task that is not executing."""

    _emit_lines(_run(lambda: CONTROLLER.delete_task(TaskRefCommand(db_path, task_id))))


@task.command("status")
@DB_PATH_OPTION
@click.argument("task_id")
@click.argument(
    "status",
    type=click.Choice(["backlog", "queued", "cancelled", "completed", "rejected"]),
)
def task_status(db_path: Path | None, task_id: str, status: str) -> None:
    """Move a task to a status a user may request directly."""

    _emit_lines(
        _run(lambda: CONTROLLER.change_status(TaskStatusCommand(db_path, task_id, status))),
    )


@task.command("accept")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option(
    "--execute",
    "execution_prompt",
    default=None,
    help="For plan-mode tasks: queue a follow-up task with this prompt.",
)
def task_accept(db_path: Path | None, task_id: str, execution_prompt: str | None) -> None:
    """Accept a task waiting for review."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.accept(TaskAcceptCommand(db_path, task_id, execution_prompt)),
        ),
    )


@task.command("reject")
@DB_PATH_OPTION
@click.argument("task_id")
def task_reject(db_path: Path | None, task_id: str) -> None:
    """Reject a task waiting for review."""

    _emit_lines(_run(lambda: CONTROLLER.reject(TaskRefCommand(db_path, task_id))))


@task.command("reprompt")
@DB_PATH_OPTION
@click.argument("task_id")
@click.argument("prompt")
def task_reprompt(db_path: Path | None, task_id: str, prompt: str) -> None:
    """Start a new iteration with a new prompt."""

    _emit_lines(_run(lambda: CONTROLLER.reprompt(TaskTextCommand(db_path, task_id, prompt))))


@task.command("reply")
@DB_PATH_OPTION
@click.argument("task_id")
@click.argument("message")
def task_reply(db_path: Path | None, task_id: str, message: str) -> None:
    """Continue the agent's previous session with a message."""

    _emit_lines(_run(lambda: CONTROLLER.reply(TaskTextCommand(db_path, task_id, message))))


@task.command("retry")
@DB_PATH_OPTION
@click.argument("task_id")
def task_retry(db_path: Path | None, task_id: str) -> None:
    """Re-queue a task with a prompt built from the last iteration's progress."""

    _emit_lines(_run(lambda: CONTROLLER.retry(TaskRefCommand(db_path, task_id))))


@task.command("retry-context")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--iteration", type=click.IntRange(min=1), default=None, help="Iteration number.")
def task_retry_context(db_path: Path | None, task_id: str, iteration: int | None) -> None:
    """Print the retry prompt without queueing anything."""

    _emit_lines(
        _run(lambda: CONTROLLER.retry_context(TaskLogCommand(db_path, task_id, iteration))),
    )


@task.command("reorder")
@DB_PATH_OPTION
@click.argument("task_ids", nargs=-1, required=True)
def task_reorder(db_path: Path | None, task_ids: tuple[str, ...]) -> None:
    """Reorder queued tasks: the given ids take their slots in the given order."""

    _emit_lines(_run(lambda: CONTROLLER.reorder(TaskReorderCommand(db_path, task_ids))))


@task.command("cancel")
@DB_PATH_OPTION
@click.argument("task_id")
def task_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a queued, awaiting, running or paused task."""

    _emit_lines(_run(lambda: CONTROLLER.cancel(TaskRefCommand(db_path, task_id))))


@task.command("pause")
@DB_PATH_OPTION
@click.argument("task_id")
def task_pause(db_path: Path | None, task_id: str) -> None:
    """Pause a running task."""

    _emit_lines(_run(lambda: CONTROLLER.pause(TaskRefCommand(db_path, task_id))))


@task.command("resume")
@DB_PATH_OPTION
@click.argument("task_id")
def task_resume(db_path: Path | None, task_id: str) -> None:
    """Resume a paused task."""

    _emit_lines(_run(lambda: CONTROLLER.resume(TaskRefCommand(db_path, task_id))))


@task.command("running")
@DB_PATH_OPTION
def task_running(db_path: Path | None) -> None:
    """List tasks that are awaiting an agent, running or paused."""

    _emit_lines(_run(lambda: CONTROLLER.running(db_path)))


# -- worker --------------------------------------------------------------------


@nightshift.group()
def worker() -> None:
    """Scheduler commands."""


@worker.command("run")
@DB_PATH_OPTION
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run one scheduling pass and wait for the started tasks.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after starting this many tasks.",
)
@click.option(
    "--idle-exit/--no-idle-exit",
    default=True,
    show_default=True,
    help="Exit once nothing runs and nothing can start.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    idle_exit: bool,
) -> None:
    """Run the task scheduler."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_tasks=max_tasks,
                    idle_exit=idle_exit,
                ),
            ),
        ),
    )


# -- usage limits --------------------------------------------------------------


@nightshift.group()
def limits() -> None:
    """Usage-limit state commands."""


@limits.command("status")
@DB_PATH_OPTION
@click.option("--agent", type=AGENT_CHOICE, default=None, help="Only this agent.")
def limits_status(db_path: Path | None, agent: str | None) -> None:
    """Show the recorded usage-limit state per agent."""

    _emit_lines(_run(lambda: CONTROLLER.limits_status(LimitsCommand(db_path, agent))))


@limits.command("clear")
@DB_PATH_OPTION
@click.option("--agent", type=AGENT_CHOICE, default=None, help="Only this agent.")
def limits_clear(db_path: Path | None, agent: str | None) -> None:
    """Clear recorded usage limits so the scheduler starts tasks again."""

    _emit_lines(_run(lambda: CONTROLLER.limits_clear(LimitsCommand(db_path, agent))))


@limits.command("check")
@DB_PATH_OPTION
@click.option("--agent", type=AGENT_CHOICE, default=None, help="Agent to probe.")
def limits_check(db_path: Path | None, agent: str | None) -> None:
    """Probe an agent for usage limits now and record the result."""

    _emit_lines(_run(lambda: CONTROLLER.limits_check(LimitsCommand(db_path, agent))))


# -- agents --------------------------------------------------------------------


@nightshift.group()
def agents() -> None:
    """Agent CLI diagnostics."""


@agents.command("list")
def agents_list() -> None:
    """List supported agents and their capabilities."""

    _emit_lines(_run(CONTROLLER.list_agents))


@agents.command("check")
@click.option(
    "--agent",
    "agent_ids",
    multiple=True,
    type=AGENT_CHOICE,
    help="Agent to check. Repeat to check several; defaults to NIGHTSHIFT_DEFAULT_AGENT.",
)
@click.option(
    "--probe/--no-probe",
    default=True,
    show_default=True,
    help="Run the auth and usage probes, not only the executable lookup.",
)
def agents_check(agent_ids: tuple[str, ...], probe: bool) -> None:
    """Check agent availability, authentication and usage limits."""

    result = _run(
        lambda: CONTROLLER.check_agents(
            AgentsCommand(agents=tuple(agent.lower() for agent in agent_ids), probe=probe),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent check failed.")


@agents.command("reauth")
@click.argument("agent_id", type=AGENT_CHOICE)
@click.option(
    "--project-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory to run the login flow in.",
)
def agents_reauth(agent_id: str, project_path: Path | None) -> None:
    """Run the agent's interactive login flow on this terminal."""

    result = _run(
        lambda: CONTROLLER.reauth(
            AgentsCommand(agents=(agent_id.lower(),), project_path=project_path),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Re-authentication failed.")


@agents.command("usage")
@click.option("--agent", type=AGENT_CHOICE, default=None, help="Agent to query.")
def agents_usage(agent: str | None) -> None:
    """Show provider-reported quota utilization, where available."""

    agent_ids = (agent.lower(),) if agent else ()
    _emit_lines(_run(lambda: CONTROLLER.usage(AgentsCommand(agents=agent_ids))))


@agents.command("models")
@click.option("--agent", type=AGENT_CHOICE, default=None, help="Agent to list models for.")
def agents_models(agent: str | None) -> None:
    """List the models an agent accepts for --model."""

    agent_ids = (agent.lower(),) if agent else ()
    _emit_lines(_run(lambda: CONTROLLER.models(AgentsCommand(agents=agent_ids))))

def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (RuntimeError, ValueError, KeyError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    nightshift()
