"""Agent adapters for CLI coding agents."""

from nightshift.orchestrator.agents.base import (
    AgentAdapter,
    AgentCapabilities,
    AgentInvocation,
    AuthValidation,
    ReauthResult,
    UsageLimitCheck,
    UsageLimitDetection,
    UsagePercentage,
    UsageWindow,
)
from nightshift.orchestrator.agents.claude_code import ClaudeCodeAdapter
from nightshift.orchestrator.agents.codex import CodexAdapter
from nightshift.orchestrator.agents.gemini import GeminiAdapter
from nightshift.orchestrator.agents.registry import AgentRegistry, build_default_registry

__all__ = [
    "AgentAdapter",
    "AgentCapabilities",
    "AgentInvocation",
    "AgentRegistry",
    "AuthValidation",
    "ClaudeCodeAdapter",
    "CodexAdapter",
    "GeminiAdapter",
    "ReauthResult",
    "UsageLimitCheck",
    "UsageLimitDetection",
    "UsagePercentage",
    "UsageWindow",
    "build_default_registry",
]
