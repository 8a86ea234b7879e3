"""Claude Code CLI adapter."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from nightshift.orchestrator.agents.base import (
    AgentAdapter,
    AgentCapabilities,
    AgentInvocation,
    UsagePercentage,
    UsageWindow,
)
from nightshift.storage.common import from_iso

logger = logging.getLogger(__name__)

USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
USAGE_API_BETA = "oauth-2025-04-20"
USER_AGENT = "claude-code/2.0.32"
CREDENTIAL_PATHS = (
    Path("~/.config/claude-code/credentials.json"),
    Path("~/.claude/.credentials.json"),
)


class ClaudeCodeAdapter(AgentAdapter):
    """Runs ``claude -p`` with stream-json output."""

    agent_id = "claude-code"
    display_name = "Claude Code"
    default_model = None
    models = ("opus", "sonnet", "haiku")
    known_paths = (
        "/usr/local/bin/claude",
        "/opt/homebrew/bin/claude",
        "~/.local/bin/claude",
        "~/.npm-global/bin/claude",
        "~/.npm/bin/claude",
        "~/.yarn/bin/claude",
        "~/.volta/bin/claude",
        "~/.claude/local/claude",
    )
    project_config_files = ("CLAUDE.md", ".claude/settings.json", ".claude/commands")
    plan_mode_tools = frozenset({"ExitPlanMode"})
    session_id_keys = ("session_id",)
    capabilities = AgentCapabilities(
        supports_skills=True,
        supports_project_config=True,
        supports_context_files=True,
        supports_non_interactive_mode=True,
        supports_pause_resume=False,
        supports_session_resume=True,
    )

    def __init__(
        self,
        *,
        http_client: httpx.Client | None = None,
        credential_paths: tuple[Path, ...] = CREDENTIAL_PATHS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._http_client = http_client
        self.credential_paths = credential_paths

    @classmethod
    def default_executable(cls) -> str:
        return "claude"

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        args = [
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
        ]
        if invocation.model:
            args.extend(["--model", invocation.model])
        if invocation.thinking:
            args.append("--thinking")
        if invocation.resume_session_id:
            args.extend(["--resume", invocation.resume_session_id])
        for context_file in invocation.context_files:
            args.extend(["--add-dir", context_file])
        args.append(invocation.prompt)
        return args

    def probe_args(self) -> list[str]:
        return ["-p", "--output-format", "json", "Reply with only the word: ok"]

    def is_error_payload(self, payload: dict[str, Any]) -> bool:
        if payload.get("type") == "result" and payload.get("is_error"):
            return True
        return super().is_error_payload(payload)

    def read_oauth_token(self) -> str | None:
        for candidate in self.credential_paths:
            path = candidate.expanduser()
            if not path.exists():
                continue
            try:
                credentials = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as error:
                logger.warning("Failed to read credentials file %s: %s", path, error)
                continue
            oauth = credentials.get("claudeAiOauth") if isinstance(credentials, dict) else None
            token = oauth.get("accessToken") if isinstance(oauth, dict) else None
            if isinstance(token, str) and token:
                return token
        return None

    def get_usage_percentage(self) -> UsagePercentage:
        """Query the OAuth usage endpoint for 5-hour and 7-day utilization."""

        token = self.read_oauth_token()
        if token is None:
            return UsagePercentage(error="No OAuth token found")

        client = self._http_client or httpx.Client(timeout=httpx.Timeout(10.0, connect=5.0))
        try:
            response = client.get(
                USAGE_API_URL,
                headers={
                    "Authorization": f"Bearer {token}",
                    "anthropic-beta": USAGE_API_BETA,
                    "User-Agent": USER_AGENT,
                },
            )
        except httpx.TimeoutException:
            logger.warning("Timeout fetching usage from %s", USAGE_API_URL)
            return UsagePercentage(error="timeout")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching usage: %s", exc)
            return UsagePercentage(error=str(exc))
        finally:
            if self._http_client is None:
                client.close()

        if not response.is_success:
            return UsagePercentage(error=f"HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            return UsagePercentage(error="Invalid usage response")
        if not isinstance(data, dict):
            return UsagePercentage(error="Invalid usage response")
        return UsagePercentage(
            five_hour=_usage_window(data.get("five_hour")),
            seven_day=_usage_window(data.get("seven_day")),
        )


def _usage_window(raw: object) -> UsageWindow | None:
    if not isinstance(raw, dict) or raw.get("utilization") is None:
        return None
    resets_at = raw.get("resets_at")
    try:
        parsed = from_iso(resets_at) if isinstance(resets_at, str) and resets_at else None
    except ValueError:
        parsed = None
    return UsageWindow(utilization=float(raw["utilization"]), resets_at=parsed)
