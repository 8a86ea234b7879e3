from __future__ import annotations

import json

import allure

from nightshift.orchestrator.agents.claude_code import ClaudeCodeAdapter
from nightshift.orchestrator.models import AgentEventType, UsageSummary
from nightshift.orchestrator.parser import OutputEventParser
from nightshift.orchestrator.usage import extract_usage_from_payload, extract_usage_from_text

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Output Parsing"),
]


def _result(**extra) -> str:
    return json.dumps({"type": "result", "result": "done", **extra})


def test_parser_tracks_session_usage_and_closes_on_complete() -> None:
    seen: list[str] = []
    parser = OutputEventParser(ClaudeCodeAdapter(), on_session_id=seen.append)

    parser.feed(json.dumps({"type": "system", "session_id": "s-1"}))
    parser.feed(json.dumps({"type": "system", "session_id": "s-1"}))
    parser.feed(_result(usage={"input_tokens": 5, "output_tokens": 5}, total_cost_usd=0.01))
    late = parser.feed(_result(usage={"input_tokens": 100}))

    assert seen == ["s-1"]
    assert parser.session_id == "s-1"
    assert parser.closed is True
    assert late is None
    assert parser.usage == UsageSummary(input_tokens=5, output_tokens=5, cost_usd=0.01)
    assert parser.terminal_event is not None
    assert parser.terminal_event.type is AgentEventType.COMPLETE
    assert parser.fatal_event is None


def test_parser_closes_on_auth_failure_and_remembers_last_error() -> None:
    parser = OutputEventParser(ClaudeCodeAdapter())

    parser.feed("npm warn: something odd happened", stream="stderr")
    fatal = parser.feed("401 Unauthorized", stream="stderr")

    assert parser.closed is True
    assert parser.fatal_event is fatal
    assert parser.last_error == "401 Unauthorized"
    assert parser.event_count == 2


def test_non_fatal_errors_keep_parser_open() -> None:
    parser = OutputEventParser(ClaudeCodeAdapter())

    events = list(
        parser.parse(
            [
                "warning: cache miss",
                json.dumps({"type": "result", "is_error": True, "result": "tests failed"}),
                _result(),
            ],
            stream="stdout",
        ),
    )

    assert [event.type for event in events] == [
        AgentEventType.LOG,
        AgentEventType.ERROR,
        AgentEventType.COMPLETE,
    ]
    assert parser.last_error == "tests failed"


def test_parser_marks_plan_mode() -> None:
    parser = OutputEventParser(ClaudeCodeAdapter())
    parser.feed(
        json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {
                            "type": "tool_use",
                            "name": "ExitPlanMode",
                            "input": {"plan_file_path": "/plans/p.md"},
                        },
                    ],
                },
            },
        ),
    )

    assert parser.plan_mode is True
    assert parser.plan_file_path == "/plans/p.md"


def test_session_callback_errors_do_not_break_parsing() -> None:
    def _boom(_: str) -> None:
        raise RuntimeError("db down")

    parser = OutputEventParser(ClaudeCodeAdapter(), on_session_id=_boom)

    event = parser.feed(json.dumps({"type": "system", "session_id": "s-2"}))

    assert event is not None
    assert parser.session_id == "s-2"


def test_usage_extraction_from_payloads_and_text() -> None:
    claude = extract_usage_from_payload(
        {
            "usage": {
                "input_tokens": 1200,
                "output_tokens": 300,
                "cache_read_input_tokens": 50,
                "cache_creation_input_tokens": 7,
            },
            "total_cost_usd": 0.0421,
        },
    )
    gemini = extract_usage_from_payload({"stats": {"prompt_tokens": 9, "completion_tokens": 3}})
    text = extract_usage_from_text("input_tokens: 1,024 output_tokens=12 total cost: $0.50")

    assert claude == UsageSummary(
        input_tokens=1200,
        output_tokens=300,
        cache_read_tokens=50,
        cache_creation_tokens=7,
        cost_usd=0.0421,
    )
    assert gemini is not None and gemini.total_tokens == 12
    assert text == UsageSummary(input_tokens=1024, output_tokens=12, cost_usd=0.5)
    assert extract_usage_from_payload({"type": "result"}) is None
    assert extract_usage_from_text("nothing here") is None
