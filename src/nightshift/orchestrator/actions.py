"""Human-readable descriptions of agent tool invocations."""

from __future__ import annotations

from typing import Any

MAX_COMMAND_PREVIEW = 60
_INPUT_KEYS = ("file_path", "command", "pattern", "query", "url")


def format_tool_input(tool_input: dict[str, Any] | None) -> str:
    """Pick the most telling argument of a tool call."""

    if not tool_input:
        return ""
    if tool_input.get("pattern") and tool_input.get("path"):
        return f"{tool_input['pattern']} in {tool_input['path']}"
    for key in _INPUT_KEYS:
        value = tool_input.get(key)
        if value:
            return str(value)
    return ""


def describe_tool_use(name: str, tool_input: dict[str, Any] | None) -> str:
    """Render one tool call as a short past-tense action line."""

    detail = format_tool_input(tool_input)
    tool = name.lower()
    if tool in {"read", "read_file"}:
        return f"Read file: {detail}"
    if tool in {"edit", "multiedit", "replace", "file_change"}:
        return f"Edited file: {detail}"
    if tool in {"write", "write_file"}:
        return f"Wrote file: {detail}"
    if tool in {"bash", "run_shell_command", "command_execution"}:
        if len(detail) > MAX_COMMAND_PREVIEW:
            detail = detail[:MAX_COMMAND_PREVIEW] + "..."
        return f"Ran command: {detail}"
    if tool in {"grep", "search_file_content"}:
        return f"Searched for: {detail}"
    if tool in {"glob", "list_directory"}:
        return f"Found files matching: {detail}"
    if tool in {"webfetch", "websearch", "web_fetch", "google_web_search", "web_search"}:
        return f"Fetched: {detail}"
    if tool == "todowrite":
        return "Updated task list"
    if tool == "task":
        return "Launched a sub-task"
    return f"Used {name}"
