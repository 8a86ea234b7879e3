"""Diagnostics for configured agent CLIs: availability, auth and usage limits."""

from __future__ import annotations

from dataclasses import dataclass

from nightshift.orchestrator.agents.base import AgentAdapter


@dataclass(slots=True)
class AgentCheckResult:
    """One agent diagnostics result."""

    agent: str
    display_name: str
    executable: str | None
    available: bool
    auth_ok: bool
    can_proceed: bool
    skipped_probe: bool
    error: str | None
    reset_at: str | None = None


def run_agent_checks(
    adapters: list[AgentAdapter],
    *,
    probe: bool = True,
) -> list[AgentCheckResult]:
    """Check availability and, optionally, run the auth and usage probes."""

    results: list[AgentCheckResult] = []
    for adapter in adapters:
        executable = adapter.get_executable_path()
        if executable is None:
            results.append(
                AgentCheckResult(
                    agent=adapter.agent_id,
                    display_name=adapter.display_name,
                    executable=None,
                    available=False,
                    auth_ok=False,
                    can_proceed=False,
                    skipped_probe=True,
                    error=f"Executable not found: {adapter.command[0]}",
                ),
            )
            continue

        if not probe:
            results.append(
                AgentCheckResult(
                    agent=adapter.agent_id,
                    display_name=adapter.display_name,
                    executable=executable,
                    available=True,
                    auth_ok=True,
                    can_proceed=True,
                    skipped_probe=True,
                    error=None,
                ),
            )
            continue

        auth = adapter.validate_auth()
        if not auth.is_valid:
            results.append(
                AgentCheckResult(
                    agent=adapter.agent_id,
                    display_name=adapter.display_name,
                    executable=executable,
                    available=True,
                    auth_ok=False,
                    can_proceed=False,
                    skipped_probe=False,
                    error=auth.error,
                ),
            )
            continue

        usage = adapter.check_usage_limits()
        results.append(
            AgentCheckResult(
                agent=adapter.agent_id,
                display_name=adapter.display_name,
                executable=executable,
                available=True,
                auth_ok=True,
                can_proceed=usage.can_proceed,
                skipped_probe=False,
                error=_truncate(usage.message) if usage.message else None,
                reset_at=usage.reset_at.isoformat() if usage.reset_at else None,
            ),
        )
    return results


def _truncate(value: str, *, limit: int = 240) -> str:
    compact = value.strip().replace("\n", " ")
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
