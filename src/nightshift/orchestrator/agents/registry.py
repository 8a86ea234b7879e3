"""Lookup table of configured agent adapters."""

from __future__ import annotations

from nightshift.config import Settings
from nightshift.orchestrator.agents.base import AgentAdapter
from nightshift.orchestrator.agents.claude_code import ClaudeCodeAdapter
from nightshift.orchestrator.agents.codex import CodexAdapter
from nightshift.orchestrator.agents.gemini import GeminiAdapter
from nightshift.orchestrator.agents.openrouter import OpenRouterAdapter
from nightshift.orchestrator.errors import UnknownAgentError

ADAPTER_TYPES: dict[str, type[AgentAdapter]] = {
    ClaudeCodeAdapter.agent_id: ClaudeCodeAdapter,
    GeminiAdapter.agent_id: GeminiAdapter,
    CodexAdapter.agent_id: CodexAdapter,
    OpenRouterAdapter.agent_id: OpenRouterAdapter,
}


class AgentRegistry:
    """Adapters keyed by agent id, with a configured default."""

    def __init__(self, *, default_agent_id: str) -> None:
        self._adapters: dict[str, AgentAdapter] = {}
        self.default_agent_id = default_agent_id

    def register(self, adapter: AgentAdapter) -> None:
        self._adapters[adapter.agent_id] = adapter

    def get(self, agent_id: str) -> AgentAdapter:
        try:
            return self._adapters[agent_id]
        except KeyError as error:
            raise UnknownAgentError(agent_id) from error

    def get_default(self) -> AgentAdapter:
        return self.get(self.default_agent_id)

    def resolve(self, agent_id: str | None) -> AgentAdapter:
        """Adapter for a task's agent override, or the default one."""

        return self.get(agent_id) if agent_id else self.get_default()

    def ids(self) -> list[str]:
        return list(self._adapters)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._adapters


def build_default_registry(settings: Settings) -> AgentRegistry:
    registry = AgentRegistry(default_agent_id=settings.agents.default_agent)
    for agent_id, adapter_type in ADAPTER_TYPES.items():
        registry.register(
            adapter_type(
                command=settings.agents.command_for(agent_id),
                probe_timeout_seconds=settings.agents.probe_timeout_seconds,
                kill_grace_seconds=settings.scheduler.kill_grace_seconds,
            ),
        )
    return registry
