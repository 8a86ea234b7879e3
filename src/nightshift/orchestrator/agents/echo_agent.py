"""Local stand-in for the claude CLI used by integration tests.

Accepts the same flags as ``claude -p`` and writes stream-json records. The
prompt may carry bracketed directives that shape the run:

``[exit:N]``        exit with code N after the result record
``[sleep:N]``       sleep N seconds before finishing
``[usage-limit]``   report a usage limit and hang until killed
``[rate-limit]``    print a 429 on stderr and hang until killed
``[auth-error]``    print an invalid API key error on stderr and exit 1
``[plan]``          call ExitPlanMode and write a plan into NIGHTSHIFT_PLANS_DIR

The probe prompt is answered according to ``NIGHTSHIFT_ECHO_PROBE``
(``ok``, ``usage-limit`` or ``auth-error``).
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import time
from pathlib import Path

PROBE_PROMPT = "Reply with only the word: ok"
HANG_SECONDS = 60.0
_DIRECTIVE = re.compile(r"\[(?P<name>[a-z-]+)(?::(?P<value>[\d.]+))?\]")


def _emit(record: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def _probe() -> int:
    mode = os.getenv("NIGHTSHIFT_ECHO_PROBE", "ok")
    if mode == "auth-error":
        sys.stderr.write("Error: Invalid API key. Please run /login\n")
        return 1
    if mode == "usage-limit":
        _emit(
            {
                "type": "result",
                "is_error": True,
                "result": "Claude AI usage limit reached. Your limit resets in 2 hours.",
            },
        )
        return 0
    _emit({"type": "result", "is_error": False, "result": "ok"})
    return 0


def _write_plan(prompt: str) -> str | None:
    plans_dir = os.getenv("NIGHTSHIFT_PLANS_DIR")
    if not plans_dir:
        return None
    directory = Path(plans_dir).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    plan_path = directory / "echo-plan.md"
    plan_path.write_text(f"# Plan\n\n1. {prompt}\n", encoding="utf-8")
    return str(plan_path)


def _run(prompt: str, *, session_id: str) -> int:
    directives = {
        match.group("name"): match.group("value") for match in _DIRECTIVE.finditer(prompt)
    }
    text = _DIRECTIVE.sub("", prompt).strip() or "done"

    _emit({"type": "system", "subtype": "init", "session_id": session_id, "cwd": os.getcwd()})

    if "auth-error" in directives:
        sys.stderr.write("Error: Invalid API key - Please run /login\n")
        sys.stderr.flush()
        return 1
    if "rate-limit" in directives:
        sys.stderr.write("API Error: 429 Too Many Requests\n")
        sys.stderr.flush()
        time.sleep(HANG_SECONDS)
        return 1
    if "usage-limit" in directives:
        _emit(
            {
                "type": "result",
                "is_error": True,
                "session_id": session_id,
                "result": "Claude AI usage limit reached. Your limit resets in 3 hours.",
            },
        )
        time.sleep(HANG_SECONDS)
        return 1

    _emit(
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {
                "role": "assistant",
                "content": [
                    {"type": "tool_use", "name": "Read", "input": {"file_path": "README.md"}},
                ],
            },
        },
    )
    if "plan" in directives:
        plan_path = _write_plan(text)
        tool_input: dict[str, object] = {"plan": text}
        if plan_path:
            tool_input["plan_file_path"] = plan_path
        _emit(
            {
                "type": "assistant",
                "session_id": session_id,
                "message": {
                    "role": "assistant",
                    "content": [{"type": "tool_use", "name": "ExitPlanMode", "input": tool_input}],
                },
            },
        )
    _emit(
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        },
    )

    if directives.get("sleep") is not None:
        time.sleep(float(directives["sleep"] or 0))

    exit_code = int(float(directives.get("exit") or 0))
    _emit(
        {
            "type": "result",
            "subtype": "success" if exit_code == 0 else "error_during_execution",
            "is_error": exit_code != 0,
            "result": text,
            "session_id": session_id,
            "total_cost_usd": 0.0012,
            "usage": {"input_tokens": 12, "output_tokens": 7},
        },
    )
    return exit_code


def main(argv: list[str] | None = None) -> int:
    """Parse claude-compatible flags and play the scripted run."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--print", dest="print_mode", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("--model")
    parser.add_argument("--thinking", action="store_true")
    parser.add_argument("--resume")
    parser.add_argument("--add-dir", action="append", default=[])
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    if args.prompt == PROBE_PROMPT:
        return _probe()
    return _run(args.prompt, session_id=args.resume or f"echo-{os.getpid()}")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
