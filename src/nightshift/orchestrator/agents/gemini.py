"""Gemini CLI adapter."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from nightshift.orchestrator.agents.base import (
    AgentAdapter,
    AgentCapabilities,
    AgentInvocation,
    ReauthResult,
    UsageLimitDetection,
)
from nightshift.orchestrator.agents.matchers import (
    AUTH_FAILURE_MATCHERS,
    MatchKind,
    OutputMatcher,
)
from nightshift.orchestrator.models import AgentOutputEvent

DEFAULT_MODEL = "gemini-2.5-pro"
API_KEY_URL = "https://aistudio.google.com/apikey"

GEMINI_OUTPUT_MATCHERS: tuple[OutputMatcher, ...] = (
    *(
        OutputMatcher(pattern, MatchKind.RATE_LIMIT)
        for pattern in (
            "rate limit",
            "rate_limit",
            "429",
            "too many requests",
            "resource exhausted",
            "quota exceeded",
            "requests per minute",
            "rpm limit",
            "tpm limit",
            "rpd limit",
        )
    ),
    *(
        OutputMatcher(pattern, MatchKind.USAGE_LIMIT)
        for pattern in (
            "usage limit",
            "usage_limit",
            "quota exceeded",
            "quota_exceeded",
            "limit exceeded",
            "daily limit",
            "daily_limit",
            "exceeded your",
            "api limit",
            "request limit reached",
            "resource exhausted",
            "billing",
            "free tier",
            "upgrade your plan",
        )
    ),
    *AUTH_FAILURE_MATCHERS,
    OutputMatcher("permission denied", MatchKind.AUTH_FAILURE),
    OutputMatcher("invalid credentials", MatchKind.AUTH_FAILURE),
    OutputMatcher("api key", MatchKind.AUTH_FAILURE, requires=("invalid", "expired", "missing")),
    OutputMatcher(
        "authentication",
        MatchKind.AUTH_FAILURE,
        requires=("failed", "error", "required"),
    ),
)


class GeminiAdapter(AgentAdapter):
    """Runs ``gemini`` in yolo mode with stream-json output."""

    agent_id = "gemini"
    display_name = "Gemini CLI"
    default_model = DEFAULT_MODEL
    models = ("gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.0-flash", "gemini-2.0-flash-lite")
    known_paths = (
        "/usr/local/bin/gemini",
        "/opt/homebrew/bin/gemini",
        "~/.local/bin/gemini",
        "~/.npm-global/bin/gemini",
    )
    project_config_files = ("GEMINI.md", ".gemini/config.json", ".gemini/settings.json")
    output_matchers = GEMINI_OUTPUT_MATCHERS
    session_id_keys = ("session_id", "sessionId")
    rate_limit_before_usage_limit = True
    capabilities = AgentCapabilities(
        supports_skills=False,
        supports_project_config=True,
        supports_context_files=True,
        supports_non_interactive_mode=True,
        supports_pause_resume=False,
        supports_session_resume=False,
    )

    @classmethod
    def default_executable(cls) -> str:
        return "gemini"

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        model = invocation.model or DEFAULT_MODEL
        args = ["--model", model, "--output-format", "stream-json", "-y"]
        directories: list[str] = []
        for context_file in invocation.context_files:
            parent = str(Path(context_file).parent) if "/" in context_file else context_file
            if parent not in directories:
                directories.append(parent)
        for directory in directories:
            args.extend(["--include-directories", directory])
        args.append(invocation.prompt)
        return args

    def probe_args(self) -> list[str]:
        return ["--output-format", "json", "Reply with only the word: ok"]

    def detect_usage_limit(self, text: str) -> UsageLimitDetection:
        detection = super().detect_usage_limit(text)
        if detection.is_limited and detection.reset_at is None and "daily" in text.lower():
            # Daily quotas roll over at midnight UTC.
            now = self.clock().astimezone(UTC)
            midnight = datetime(now.year, now.month, now.day, tzinfo=UTC) + timedelta(days=1)
            return UsageLimitDetection(is_limited=True, reset_at=midnight)
        return detection

    def extract_tool_use(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
        if payload.get("type") != "tool_use":
            return None
        parameters = payload.get("parameters")
        return str(payload.get("tool_name", "")), parameters if isinstance(parameters, dict) else {}

    def message_text(self, event: AgentOutputEvent) -> str:
        payload = event.payload
        if payload is not None and payload.get("type") == "message":
            if payload.get("role") != "assistant":
                return ""
            content = payload.get("content")
            return content if isinstance(content, str) else ""
        return super().message_text(event)

    def trigger_reauth(self, project_path: Path | None = None) -> ReauthResult:
        return ReauthResult(
            success=False,
            error=(
                "Gemini CLI uses API keys. Set GEMINI_API_KEY to a new key from "
                f"{API_KEY_URL} or run gemini interactively to sign in again."
            ),
        )

