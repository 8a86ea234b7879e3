"""OpenRouter adapter: the Claude Code CLI pointed at an OpenRouter proxy."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx

from nightshift.orchestrator.agents.base import (
    AgentCapabilities,
    AgentInvocation,
    AuthValidation,
    ReauthResult,
    UsageLimitCheck,
    UsagePercentage,
    UsageWindow,
)
from nightshift.orchestrator.agents.claude_code import ClaudeCodeAdapter
from nightshift.orchestrator.agents.matchers import MatchKind, OutputMatcher
from nightshift.orchestrator.errors import AgentSpawnError
from nightshift.orchestrator.process import ProcessHandle

logger = logging.getLogger(__name__)

API_BASE_URL = "https://openrouter.ai/api/v1"
API_KEY_ENV = "OPENROUTER_API_KEY"
DEFAULT_PROXY_URL = "http://localhost:4141/api/v1"
KEYS_URL = "https://openrouter.ai/keys"
CREDITS_URL = "https://openrouter.ai/credits"
MODELS_CACHE_TTL = timedelta(hours=24)
MODEL_FAMILIES = ("claude", "gpt-4", "gemini", "llama", "deepseek", "mistral", "codestral")

OPENROUTER_OUTPUT_MATCHERS: tuple[OutputMatcher, ...] = (
    *(
        OutputMatcher(pattern, MatchKind.USAGE_LIMIT)
        for pattern in (
            "usage limit",
            "quota exceeded",
            "insufficient credits",
            "out of credits",
            "credit balance",
            "billing",
            "payment required",
            "402",
            "exceeded your",
        )
    ),
    *(
        OutputMatcher(pattern, MatchKind.RATE_LIMIT)
        for pattern in (
            "rate limit",
            "rate_limit",
            "429",
            "too many requests",
            "overloaded",
            "requests per minute",
        )
    ),
    *(
        OutputMatcher(pattern, MatchKind.AUTH_FAILURE)
        for pattern in (
            "invalid api key",
            "api_key_invalid",
            "401",
            "403",
            "unauthorized",
            "authentication failed",
            "invalid credentials",
        )
    ),
    OutputMatcher("api key", MatchKind.AUTH_FAILURE, requires=("invalid", "expired")),
)


class OpenRouterAdapter(ClaudeCodeAdapter):
    """Claude Code routed through a local OpenRouter proxy, keyed by ``OPENROUTER_API_KEY``.

    Output framing is Claude's stream-json. Limits and auth come from the
    OpenRouter key endpoint instead of running the CLI.
    """

    agent_id = "openrouter"
    display_name = "OpenRouter"
    default_model = "anthropic/claude-sonnet-4"
    models = (
        "anthropic/claude-sonnet-4",
        "anthropic/claude-opus-4",
        "openai/gpt-4o",
        "openai/gpt-4o-mini",
        "google/gemini-2.5-pro-preview",
        "google/gemini-2.5-flash-preview",
        "meta-llama/llama-3.3-70b-instruct",
        "deepseek/deepseek-chat",
    )
    project_config_files = ("CLAUDE.md", ".claude/settings.json")
    output_matchers = OPENROUTER_OUTPUT_MATCHERS
    capabilities = AgentCapabilities(
        supports_skills=True,
        supports_project_config=True,
        supports_context_files=True,
        supports_non_interactive_mode=True,
        supports_pause_resume=False,
        supports_session_resume=False,
    )

    def __init__(
        self,
        *,
        api_key: str | None = None,
        proxy_url: str = DEFAULT_PROXY_URL,
        api_base_url: str = API_BASE_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key
        self.proxy_url = proxy_url
        self.api_base_url = api_base_url.rstrip("/")
        self._models_cache: tuple[datetime, list[str]] | None = None

    @property
    def api_key(self) -> str | None:
        return self._api_key or os.environ.get(API_KEY_ENV) or None

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        args = [
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
            "--model",
            invocation.model or self.default_model or self.models[0],
        ]
        for context_file in invocation.context_files:
            args.extend(["--add-dir", context_file])
        args.append(invocation.prompt)
        return args

    def build_env(self) -> dict[str, str]:
        env = super().build_env()
        env["ANTHROPIC_BASE_URL"] = self.proxy_url
        if self.api_key:
            env[API_KEY_ENV] = self.api_key
        return env

    def invoke(self, invocation: AgentInvocation) -> ProcessHandle:
        if not self.api_key:
            raise AgentSpawnError(
                f"OpenRouter API key not configured. Set {API_KEY_ENV}.",
                transient=False,
            )
        return super().invoke(invocation)

    # -- key endpoint ---------------------------------------------------------

    def _get(self, path: str) -> httpx.Response:
        client = self._http_client or httpx.Client(timeout=httpx.Timeout(10.0, connect=5.0))
        try:
            return client.get(
                f"{self.api_base_url}{path}",
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        finally:
            if self._http_client is None:
                client.close()

    def _key_data(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        data = payload.get("data") if isinstance(payload, dict) else None
        return data if isinstance(data, dict) else {}

    def check_usage_limits(self) -> UsageLimitCheck:
        if not self.api_key:
            return UsageLimitCheck(can_proceed=False, message="OpenRouter API key not configured")
        try:
            response = self._get("/auth/key")
        except httpx.HTTPError as exc:
            logger.warning("OpenRouter usage check failed: %s", exc)
            return UsageLimitCheck(can_proceed=True)

        if response.status_code in (401, 403):
            return UsageLimitCheck(can_proceed=False, message="Invalid OpenRouter API key")
        if not response.is_success:
            logger.warning("OpenRouter usage check got HTTP %s", response.status_code)
            return UsageLimitCheck(can_proceed=True)

        remaining = self._key_data(response).get("limit_remaining")
        if isinstance(remaining, int | float) and remaining <= 0:
            return UsageLimitCheck(
                can_proceed=False,
                message=f"OpenRouter credit limit reached. Please add credits at {CREDITS_URL}",
            )
        return UsageLimitCheck(can_proceed=True)

    def validate_auth(self) -> AuthValidation:
        if not self.api_key:
            return AuthValidation(
                is_valid=False,
                requires_reauth=True,
                error=f"No OpenRouter API key found. Set the {API_KEY_ENV} environment variable.",
            )
        try:
            response = self._get("/auth/key")
        except httpx.HTTPError as exc:
            logger.warning("OpenRouter auth validation could not complete: %s", exc)
            return AuthValidation(is_valid=True, requires_reauth=False)

        if response.status_code in (401, 403):
            return AuthValidation(
                is_valid=False,
                requires_reauth=True,
                error=f"Invalid OpenRouter API key. Please check your API key at {KEYS_URL}",
            )
        if not response.is_success:
            return AuthValidation(
                is_valid=True,
                requires_reauth=False,
                error=f"API returned {response.status_code}, but key may still be valid",
            )
        return AuthValidation(is_valid=True, requires_reauth=False)

    def trigger_reauth(self, project_path: Path | None = None) -> ReauthResult:
        return ReauthResult(
            success=False,
            error=(
                f"OpenRouter uses API keys. Create or rotate one at {KEYS_URL} "
                f"and set {API_KEY_ENV}."
            ),
        )

    def get_usage_percentage(self) -> UsagePercentage:
        """Credit usage as a share of the key's limit, reported in the 5-hour slot."""

        if not self.api_key:
            return UsagePercentage(error="OpenRouter API key not configured")
        try:
            response = self._get("/auth/key")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching OpenRouter usage: %s", exc)
            return UsagePercentage(error=str(exc))
        if not response.is_success:
            return UsagePercentage(error=f"API returned {response.status_code}")

        data = self._key_data(response)
        usage = data.get("usage")
        limit = data.get("limit")
        if not isinstance(usage, int | float) or not isinstance(limit, int | float) or limit <= 0:
            return UsagePercentage()
        return UsagePercentage(
            five_hour=UsageWindow(utilization=usage / limit * 100, resets_at=None),
        )

    def available_models(self) -> list[str]:
        """Coding-capable models offered by OpenRouter, cached for a day."""

        now = self.clock()
        if self._models_cache is not None and now - self._models_cache[0] < MODELS_CACHE_TTL:
            return list(self._models_cache[1])
        if not self.api_key:
            return list(self.models)
        try:
            response = self._get("/models")
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch OpenRouter models: %s", exc)
            return list(self.models)
        if not response.is_success:
            logger.warning("OpenRouter models request got HTTP %s", response.status_code)
            return list(self.models)

        try:
            payload = response.json()
        except ValueError:
            return list(self.models)
        entries = payload.get("data") if isinstance(payload, dict) else None
        found = [
            entry["id"]
            for entry in entries or []
            if isinstance(entry, dict)
            and isinstance(entry.get("id"), str)
            and any(family in entry["id"].lower() for family in MODEL_FAMILIES)
        ]
        if not found:
            return list(self.models)
        self._models_cache = (now, found)
        return list(found)
