from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure

from nightshift.orchestrator.agents.claude_code import ClaudeCodeAdapter
from nightshift.orchestrator.agents.codex import CodexAdapter
from nightshift.orchestrator.continuation import detect_incomplete_work
from nightshift.orchestrator.models import ContinuationReason
from nightshift.orchestrator.plan_mode import detect_plan_mode, find_recent_plan

pytestmark = [
    allure.epic("Review"),
    allure.feature("Plan Mode & Continuation"),
]


def _plan_line(path: str | None) -> str:
    tool_input = {"plan": "1. refactor"}
    if path:
        tool_input["plan_file_path"] = path
    return json.dumps(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "tool_use", "name": "ExitPlanMode", "input": tool_input}],
            },
        },
    )


def _touch(path: Path, *, at: datetime) -> Path:
    path.write_text("# plan\n", encoding="utf-8")
    os.utime(path, (at.timestamp(), at.timestamp()))
    return path


def test_reported_plan_path_wins(tmp_path: Path) -> None:
    reported = _touch(tmp_path / "reported.md", at=datetime.now(tz=UTC))
    plans_dir = tmp_path / "plans"
    plans_dir.mkdir()
    _touch(plans_dir / "newer.md", at=datetime.now(tz=UTC) + timedelta(minutes=1))

    detection = detect_plan_mode(
        "\n".join(["=== Iteration 1 started ===", _plan_line(str(reported))]),
        adapter=ClaudeCodeAdapter(),
        plans_dir=plans_dir,
        started_after=None,
    )

    assert detection.is_plan_mode is True
    assert detection.plan_file_path == str(reported)


def test_falls_back_to_newest_plan_written_during_iteration(tmp_path: Path) -> None:
    started = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
    _touch(tmp_path / "old.md", at=started - timedelta(hours=1))
    fresh = _touch(tmp_path / "fresh.md", at=started + timedelta(minutes=3))
    _touch(tmp_path / "notes.txt", at=started + timedelta(minutes=5))

    detection = detect_plan_mode(
        _plan_line("/nonexistent/plan.md"),
        adapter=ClaudeCodeAdapter(),
        plans_dir=tmp_path,
        started_after=started,
    )

    assert detection.is_plan_mode is True
    assert detection.plan_file_path == str(fresh)
    assert find_recent_plan(tmp_path, started_after=started + timedelta(hours=1)) is None


def test_plan_mode_without_any_plan_file(tmp_path: Path) -> None:
    detection = detect_plan_mode(
        _plan_line(None),
        adapter=ClaudeCodeAdapter(),
        plans_dir=tmp_path / "missing",
        started_after=None,
    )

    assert detection.is_plan_mode is True
    assert detection.plan_file_path is None


def test_no_plan_marker_or_no_plan_support(tmp_path: Path) -> None:
    assert not detect_plan_mode(
        '{"type": "result", "result": "done"}',
        adapter=ClaudeCodeAdapter(),
        plans_dir=tmp_path,
        started_after=None,
    ).is_plan_mode
    assert not detect_plan_mode(
        _plan_line(None),
        adapter=CodexAdapter(),
        plans_dir=tmp_path,
        started_after=None,
    ).is_plan_mode
    assert not detect_plan_mode(
        None,
        adapter=ClaudeCodeAdapter(),
        plans_dir=tmp_path,
        started_after=None,
    ).is_plan_mode


def test_multi_phase_outranks_todo_items() -> None:
    result = detect_incomplete_work(
        ["Finished phase 1 of 3.", "TODO: wire up the CLI"],
    )

    assert result.is_incomplete is True
    assert result.reason is ContinuationReason.MULTI_PHASE
    assert result.details == "phase 1 of 3"
    assert result.suggested_next_steps[0] == "Review the completed phase"


def test_todo_items_become_next_steps() -> None:
    result = detect_incomplete_work(
        [
            "Implemented the parser.",
            "Next steps:\n- add docs\n- publish release\nTODO: benchmark",
        ],
    )

    assert result.reason is ContinuationReason.TODO_ITEMS
    assert result.details == "Agent indicated remaining tasks or TODO items"
    assert result.suggested_next_steps == ["- add docs", "- publish release", "TODO: benchmark"]


def test_approval_needed_only_in_recent_messages() -> None:
    older = ["Would you like me to add caching?"]
    filler = [f"Edited file {index}" for index in range(25)]

    recent = detect_incomplete_work([*filler, *older])
    stale = detect_incomplete_work([*older, *filler])

    assert recent.reason is ContinuationReason.APPROVAL_NEEDED
    assert stale.is_incomplete is False


def test_token_limit_and_clean_output() -> None:
    limited = detect_incomplete_work(["Splitting into multiple responses due to output length"])
    clean = detect_incomplete_work(["All tests pass. The feature is complete."])

    assert limited.reason is ContinuationReason.TOKEN_LIMIT
    assert clean.is_incomplete is False
    assert clean.suggested_next_steps == []
