"""Codex CLI adapter."""

from __future__ import annotations

from typing import Any

from nightshift.orchestrator.agents.base import AgentAdapter, AgentCapabilities, AgentInvocation
from nightshift.orchestrator.models import AgentOutputEvent

_TOOL_ITEM_TYPES = {"command_execution", "file_change", "mcp_tool_call", "web_search"}


class CodexAdapter(AgentAdapter):
    """Runs ``codex exec --json``; records are thread/turn/item envelopes."""

    agent_id = "codex"
    display_name = "Codex CLI"
    default_model = None
    models = ("gpt-5-codex", "gpt-5")
    known_paths = (
        "/usr/local/bin/codex",
        "/opt/homebrew/bin/codex",
        "~/.local/bin/codex",
        "~/.npm-global/bin/codex",
    )
    project_config_files = ("AGENTS.md", ".codex/config.toml")
    session_id_keys = ("thread_id", "session_id")
    reauth_args = ("login",)
    capabilities = AgentCapabilities(
        supports_skills=False,
        supports_project_config=True,
        supports_context_files=False,
        supports_non_interactive_mode=True,
        supports_pause_resume=False,
        supports_session_resume=True,
    )

    @classmethod
    def default_executable(cls) -> str:
        return "codex"

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        args = [
            "exec",
            "--json",
            "--skip-git-repo-check",
            "--dangerously-bypass-approvals-and-sandbox",
        ]
        if invocation.model:
            args.extend(["--model", invocation.model])
        if invocation.thinking:
            args.extend(["-c", "model_reasoning_effort=high"])
        if invocation.resume_session_id:
            args.extend(["resume", invocation.resume_session_id])
        args.append(_prompt_with_context(invocation))
        return args

    def probe_args(self) -> list[str]:
        return ["exec", "--json", "--skip-git-repo-check", "Reply with only the word: ok"]

    def is_error_payload(self, payload: dict[str, Any]) -> bool:
        return payload.get("type") in {"error", "turn.failed"} or super().is_error_payload(payload)

    def is_completion_payload(self, payload: dict[str, Any]) -> bool:
        return payload.get("type") == "turn.completed"

    def extract_tool_use(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
        if payload.get("type") != "item.started":
            return None
        item = payload.get("item")
        if not isinstance(item, dict) or item.get("type") not in _TOOL_ITEM_TYPES:
            return None
        item_type = str(item["type"])
        if item_type == "file_change":
            changes = item.get("changes")
            first = changes[0] if isinstance(changes, list) and changes else {}
            path = first.get("path") if isinstance(first, dict) else None
            return item_type, {"file_path": path} if path else {}
        if item_type == "mcp_tool_call":
            return str(item.get("tool") or item_type), {}
        return item_type, {key: item[key] for key in ("command", "query") if item.get(key)}

    def message_text(self, event: AgentOutputEvent) -> str:
        payload = event.payload
        if payload is None:
            return event.message
        item = payload.get("item")
        if payload.get("type") == "item.completed" and isinstance(item, dict):
            if item.get("type") == "agent_message":
                text = item.get("text")
                return text if isinstance(text, str) else ""
        return ""


def _prompt_with_context(invocation: AgentInvocation) -> str:
    if not invocation.context_files:
        return invocation.prompt
    listing = "\n".join(f"- {path}" for path in invocation.context_files)
    return f"{invocation.prompt}\n\nRelevant context files:\n{listing}"
