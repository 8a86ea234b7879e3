from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner, Result

from nightshift.main import nightshift

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Projects, Tasks, Worker, Limits, Agents"),
]


def _runner() -> CliRunner:
    # Wide enough that rich error panels keep each message on one line.
    return CliRunner(env={"COLUMNS": "240"})


def _invoke(runner: CliRunner, *args: str) -> Result:
    return runner.invoke(nightshift, list(args))


def _task_id(result: Result) -> str:
    match = re.search(r"task_id=(\S+)", result.output)
    assert match is not None, result.output
    return match.group(1)


def _add_project(runner: CliRunner, tmp_path: Path, name: str = "Demo App") -> str:
    workdir = tmp_path / "repo"
    workdir.mkdir(exist_ok=True)
    result = _invoke(runner, "project", "add", name, str(workdir))
    assert result.exit_code == 0, result.output
    assert f"path={workdir.resolve()}" in result.output
    return re.search(r"project_id=(\S+)", result.output).group(1)


def test_project_and_queue_management(echo_agent: Path, tmp_path: Path) -> None:
    runner = _runner()

    assert "No projects." in _invoke(runner, "project", "list").output
    project_id = _add_project(runner, tmp_path)
    assert project_id == "demo-app"
    assert "demo-app\tDemo App\t" in _invoke(runner, "project", "list").output
    assert "No tasks." in _invoke(runner, "task", "list").output

    first = _invoke(runner, "task", "add", "Write the changelog", "--project", project_id)
    assert first.exit_code == 0, first.output
    assert "status=queued position=1" in first.output
    first_id = _task_id(first)

    parked = _invoke(
        runner,
        "task",
        "add",
        "Bump the version",
        "--project",
        project_id,
        "--backlog",
        "--db-path",
        str(echo_agent),
    )
    assert "status=backlog" in parked.output
    second_id = _task_id(parked)

    requeued = _invoke(runner, "task", "status", second_id, "queued")
    assert f"Task {second_id} is now queued" in requeued.output

    reordered = _invoke(runner, "task", "reorder", second_id, first_id)
    assert reordered.exit_code == 0, reordered.output
    queue_lines = reordered.output.splitlines()
    assert queue_lines[0] == "Queue:"
    assert queue_lines[1].startswith(f"{second_id}\t{project_id}\tqueued\tpos=1\t")
    assert queue_lines[2].startswith(f"{first_id}\t{project_id}\tqueued\tpos=3\t")

    updated = _invoke(runner, "task", "update", first_id, "--prompt", "Write the full changelog")
    assert f"Task updated: {first_id}" in updated.output
    shown = _invoke(runner, "task", "show", first_id)
    assert f"Task: {first_id}" in shown.output
    assert "Status: queued" in shown.output
    assert "  Write the full changelog" in shown.output

    refused = _invoke(runner, "task", "accept", first_id)
    assert refused.exit_code == 1
    assert "Only tasks in needs_review can be accepted" in refused.output

    assert f"Task cancelled: {first_id}" in _invoke(runner, "task", "cancel", first_id).output
    assert f"Task deleted: {first_id}" in _invoke(runner, "task", "delete", first_id).output
    missing = _invoke(runner, "task", "show", first_id)
    assert f"Task not found: {first_id}" in missing.output

    unknown = _invoke(runner, "task", "add", "Orphan", "--project", "nope")
    assert unknown.exit_code == 1
    assert "Unknown project: nope" in unknown.output


def test_worker_run_review_and_reply(echo_agent: Path, tmp_path: Path) -> None:
    runner = _runner()
    project_id = _add_project(runner, tmp_path)
    added = _invoke(runner, "task", "add", "Write the changelog", "--project", project_id)
    task_id = _task_id(added)

    run = _invoke(runner, "worker", "run")
    assert run.exit_code == 0, run.output
    assert (
        "Worker summary: started=1 needs_review=1 failed=0 deferred=0 cancelled=0 recovered=0"
        in run.output
    )

    log = _invoke(runner, "task", "log", task_id)
    assert log.output.startswith("=== Iteration 1 started at ")
    assert "=== Completed with exit code 0 ===" in log.output
    listed = _invoke(runner, "task", "list", "--status", "needs_review")
    assert f"{task_id}\t{project_id}\tneeds_review\t" in listed.output

    reply = _invoke(runner, "task", "reply", task_id, "Also mention the new flag")
    assert reply.exit_code == 0, reply.output
    assert f"Reply queued: {task_id} iteration=2 session=echo-" in reply.output

    again = _invoke(runner, "worker", "run", "--once")
    assert "started=1 needs_review=1" in again.output
    shown = _invoke(runner, "task", "show", task_id)
    assert "Iterations: 2" in shown.output
    assert "Usage: tokens=38 cost_usd=0.0024" in shown.output

    assert f"Task accepted: {task_id}" in _invoke(runner, "task", "accept", task_id).output
    assert "No running tasks." in _invoke(runner, "task", "running").output


def test_failed_task_retry_with_context(echo_agent: Path, tmp_path: Path) -> None:
    runner = _runner()
    project_id = _add_project(runner, tmp_path)
    task_id = _task_id(
        _invoke(runner, "task", "add", "[exit:2] Flaky migration", "--project", project_id),
    )

    run = _invoke(runner, "worker", "run", "--max-tasks", "1")
    assert "started=1 needs_review=0 failed=1" in run.output

    context = _invoke(runner, "task", "retry-context", task_id)
    assert context.exit_code == 0, context.output
    assert "Summary: 1 actions were taken before failure" in context.output
    assert "Actions: 1" in context.output
    assert "# Retry with Context" in context.output
    assert "- Read file: README.md" in context.output

    retried = _invoke(runner, "task", "retry", task_id)
    assert f"Task re-queued with context: {task_id} iteration=2" in retried.output
    assert "Context: 1 actions were taken before failure" in retried.output

    reprompt = _invoke(runner, "task", "reprompt", task_id, "Try again")
    assert reprompt.exit_code == 1
    assert "expected needs_review or failed" in reprompt.output


def test_plan_accept_queues_execution_task(echo_agent: Path, tmp_path: Path) -> None:
    runner = _runner()
    project_id = _add_project(runner, tmp_path)
    task_id = _task_id(
        _invoke(runner, "task", "add", "[plan] Design the cache", "--project", project_id),
    )
    _invoke(runner, "worker", "run")

    shown = _invoke(runner, "task", "show", task_id)
    assert "Plan mode: True plan_file=" in shown.output

    accepted = _invoke(runner, "task", "accept", task_id, "--execute", "Implement the plan")
    assert accepted.exit_code == 0, accepted.output
    assert f"Task accepted: {task_id}" in accepted.output
    execution_id = re.search(r"Execution task created: (\S+)", accepted.output).group(1)
    follow_up = _invoke(runner, "task", "show", execution_id)
    assert "Status: queued" in follow_up.output
    assert f"Source: plan ref={task_id}" in follow_up.output


def test_limits_check_status_and_clear(echo_agent: Path, monkeypatch) -> None:
    runner = _runner()

    status = _invoke(runner, "limits", "status")
    assert "claude-code\tok\treset_at=-\t" in status.output
    assert "gemini\tok" in status.output

    monkeypatch.setenv("NIGHTSHIFT_ECHO_PROBE", "usage-limit")
    check = _invoke(runner, "limits", "check")
    assert check.exit_code == 0, check.output
    assert "claude-code: limited until " in check.output
    assert "usage limit reached" in check.output

    limited = _invoke(runner, "limits", "status", "--agent", "claude-code")
    assert limited.output.startswith("claude-code\tlimited\treset_at=")

    cleared = _invoke(runner, "limits", "clear", "--agent", "claude-code")
    assert "Usage limit cleared: claude-code" in cleared.output
    assert "claude-code\tok" in _invoke(runner, "limits", "status").output

    monkeypatch.setenv("NIGHTSHIFT_ECHO_PROBE", "ok")
    assert "claude-code: ok" in _invoke(runner, "limits", "check").output


def test_agents_list_and_check(echo_agent: Path, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("NIGHTSHIFT_CODEX_COMMAND", str(tmp_path / "bin" / "codex"))
    runner = _runner()

    listed = _invoke(runner, "agents", "list")
    assert "* claude-code\tClaude Code\tavailable=True" in listed.output
    assert "  codex\t" in listed.output
    assert "  openrouter\tOpenRouter\t" in listed.output

    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    assert "  sonnet" in _invoke(runner, "agents", "models").output
    routed = _invoke(runner, "agents", "models", "--agent", "openrouter")
    assert "* anthropic/claude-sonnet-4" in routed.output
    assert "  deepseek/deepseek-chat" in routed.output

    check = _invoke(runner, "agents", "check", "--no-probe")
    assert check.exit_code == 0, check.output
    assert (
        "claude-code: available=True auth_ok=True can_proceed=True skipped_probe=True"
        in check.output
    )
    assert "  executable: " in check.output

    probed = _invoke(runner, "agents", "check")
    assert "skipped_probe=False" in probed.output

    missing = _invoke(runner, "agents", "check", "--agent", "codex", "--no-probe")
    assert missing.exit_code == 1
    assert "codex: available=False" in missing.output
    assert "error: Executable not found" in missing.output
    assert "Agent check failed." in missing.output


def test_invalid_settings_are_reported(echo_agent: Path, monkeypatch) -> None:
    monkeypatch.setenv("NIGHTSHIFT_MAX_CONCURRENT_TASKS", "0")

    result = _invoke(_runner(), "task", "list")

    assert result.exit_code == 1
    assert "NIGHTSHIFT_MAX_CONCURRENT_TASKS must be >= 1." in result.output
