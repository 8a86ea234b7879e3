from __future__ import annotations

import json
import os
import sys
import textwrap
from pathlib import Path

import allure
import pytest

from nightshift.orchestrator.agents.claude_code import ClaudeCodeAdapter
from nightshift.orchestrator.errors import AgentSpawnError
from nightshift.orchestrator.models import AgentEventType
from nightshift.orchestrator.parser import OutputEventParser
from nightshift.orchestrator.process import ProcessHandle
from nightshift.orchestrator.supervisor import ProcessSupervisor
from nightshift.storage.logs import IterationLogStore

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Process Supervision"),
]

_SCRIPT = textwrap.dedent(
    """
    import json, sys, time
    print(json.dumps({"type": "system", "session_id": "proc-1"}), flush=True)
    print("npm warn: peer dependency", file=sys.stderr, flush=True)
    time.sleep(0.3)
    print(json.dumps({"type": "result", "result": "ok", "usage": {"input_tokens": 2}}), flush=True)
    sys.exit(3)
    """,
)


def _spawn(tmp_path: Path, script: str) -> ProcessHandle:
    return ProcessHandle.spawn(
        [sys.executable, "-c", script],
        cwd=tmp_path,
        env=dict(os.environ),
        kill_grace_seconds=1.0,
    )


def test_supervisor_logs_every_line_and_publishes_events(tmp_path: Path) -> None:
    store = IterationLogStore(tmp_path / "logs")
    writer = store.open_writer("demo", "t-1", 1)
    parser = OutputEventParser(ClaudeCodeAdapter())
    published: list[AgentEventType] = []
    supervisor = ProcessSupervisor(
        _spawn(tmp_path, _SCRIPT),
        parser=parser,
        log_writer=writer,
        on_event=lambda event: published.append(event.type),
    )

    supervisor.start()
    exit_code = supervisor.wait(timeout=30)
    supervisor.close()

    assert exit_code == 3
    assert supervisor.output_lines == 3
    assert sorted(event.value for event in published) == ["complete", "error", "log"]
    assert AgentEventType.COMPLETE in [event.type for event in supervisor.events(timeout=1)]
    assert parser.session_id == "proc-1"
    assert parser.usage.input_tokens == 2

    log_text = store.read("demo", "t-1", 1)
    assert log_text is not None
    lines = log_text.splitlines()
    assert len(lines) == 3
    assert "npm warn: peer dependency" in lines
    assert json.loads(next(line for line in lines if "proc-1" in line))["type"] == "system"
    assert store.iterations("demo", "t-1") == [1]


def test_supervisor_kill_stops_a_hanging_process(tmp_path: Path) -> None:
    writer = IterationLogStore(tmp_path / "logs").open_writer("demo", "t-2", 1)
    supervisor = ProcessSupervisor(
        _spawn(tmp_path, "import time\nprint('started', flush=True)\ntime.sleep(60)\n"),
        parser=OutputEventParser(ClaudeCodeAdapter()),
        log_writer=writer,
    )
    supervisor.start()

    assert supervisor.wait(timeout=0.2) is None
    supervisor.kill("test")
    supervisor.kill("second call is a no-op")
    exit_code = supervisor.wait(timeout=10)
    supervisor.close()

    assert exit_code is not None and exit_code != 0
    assert supervisor.handle.killed is True
    assert supervisor.kill_reason == "test"


def test_spawn_errors_are_reported(tmp_path: Path) -> None:
    with pytest.raises(AgentSpawnError, match="Working directory does not exist"):
        ProcessHandle.spawn([sys.executable], cwd=tmp_path / "missing", env={})
    with pytest.raises(AgentSpawnError, match="not found") as error:
        ProcessHandle.spawn([str(tmp_path / "no-such-agent")], cwd=tmp_path, env={})
    assert error.value.transient is False
    with pytest.raises(AgentSpawnError, match="empty"):
        ProcessHandle.spawn([], cwd=tmp_path, env={})
