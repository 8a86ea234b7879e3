"""Runtime configuration for the task scheduler and agent adapters."""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AGENTS = ("claude-code", "gemini", "codex", "openrouter")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class SchedulerSettings:
    """Concurrency and supervision settings."""

    max_concurrent_tasks: int = 1
    max_task_duration_minutes: int = 15
    poll_interval_seconds: float = 1.0
    kill_grace_seconds: float = 2.0
    preflight_usage_check: bool = True
    validate_auth_before_start: bool = False
    rate_limit_backoff_seconds: int = 60


@dataclass(slots=True)
class AgentSettings:
    """Agent selection and invocation settings."""

    default_agent: str = "claude-code"
    default_model: str | None = None
    thinking_mode: bool = False
    claude_command: tuple[str, ...] = ("claude",)
    gemini_command: tuple[str, ...] = ("gemini",)
    codex_command: tuple[str, ...] = ("codex",)
    plans_dir: Path = field(default_factory=lambda: Path.home() / ".claude" / "plans")
    probe_timeout_seconds: float = 30.0

    def command_for(self, agent_id: str) -> tuple[str, ...]:
        """Return argv prefix used to launch the given agent."""

        commands = {
            "claude-code": self.claude_command,
            "gemini": self.gemini_command,
            "codex": self.codex_command,
            "openrouter": self.claude_command,
        }
        try:
            return commands[agent_id]
        except KeyError as error:
            raise ValueError(f"Unsupported agent: {agent_id!r}") from error


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".nightshift.db")
    sqlite_busy_timeout_ms: int = 5_000
    logs_root: Path = Path(".nightshift/logs")
    log_level: str = "WARNING"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        plans_dir = os.getenv("NIGHTSHIFT_PLANS_DIR")
        default_model = os.getenv("NIGHTSHIFT_DEFAULT_MODEL", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("NIGHTSHIFT_DB_PATH", ".nightshift.db")),
            sqlite_busy_timeout_ms=int(os.getenv("NIGHTSHIFT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            logs_root=Path(os.getenv("NIGHTSHIFT_LOGS_ROOT", ".nightshift/logs")),
            log_level=os.getenv("NIGHTSHIFT_LOG_LEVEL", "WARNING").strip().upper(),
            scheduler=SchedulerSettings(
                max_concurrent_tasks=int(os.getenv("NIGHTSHIFT_MAX_CONCURRENT_TASKS", "1")),
                max_task_duration_minutes=int(
                    os.getenv("NIGHTSHIFT_MAX_TASK_DURATION_MINUTES", "15"),
                ),
                poll_interval_seconds=float(os.getenv("NIGHTSHIFT_POLL_INTERVAL_SECONDS", "1.0")),
                kill_grace_seconds=float(os.getenv("NIGHTSHIFT_KILL_GRACE_SECONDS", "2.0")),
                preflight_usage_check=_env_bool(
                    "NIGHTSHIFT_PREFLIGHT_USAGE_CHECK",
                    default=True,
                ),
                validate_auth_before_start=_env_bool(
                    "NIGHTSHIFT_VALIDATE_AUTH_BEFORE_START",
                    default=False,
                ),
                rate_limit_backoff_seconds=int(
                    os.getenv("NIGHTSHIFT_RATE_LIMIT_BACKOFF_SECONDS", "60"),
                ),
            ),
            agents=AgentSettings(
                default_agent=os.getenv("NIGHTSHIFT_DEFAULT_AGENT", "claude-code").strip(),
                default_model=default_model or None,
                thinking_mode=_env_bool("NIGHTSHIFT_THINKING_MODE", default=False),
                claude_command=_env_command("NIGHTSHIFT_CLAUDE_COMMAND", default="claude"),
                gemini_command=_env_command("NIGHTSHIFT_GEMINI_COMMAND", default="gemini"),
                codex_command=_env_command("NIGHTSHIFT_CODEX_COMMAND", default="codex"),
                plans_dir=(
                    Path(plans_dir).expanduser()
                    if plans_dir
                    else Path.home() / ".claude" / "plans"
                ),
                probe_timeout_seconds=float(
                    os.getenv("NIGHTSHIFT_PROBE_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot work with."""

        if self.scheduler.max_concurrent_tasks < 1:
            raise ValueError("NIGHTSHIFT_MAX_CONCURRENT_TASKS must be >= 1.")
        if self.scheduler.max_task_duration_minutes < 0:
            raise ValueError("NIGHTSHIFT_MAX_TASK_DURATION_MINUTES must be >= 0.")
        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("NIGHTSHIFT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.kill_grace_seconds < 0:
            raise ValueError("NIGHTSHIFT_KILL_GRACE_SECONDS must be >= 0.")
        if self.scheduler.rate_limit_backoff_seconds < 0:
            raise ValueError("NIGHTSHIFT_RATE_LIMIT_BACKOFF_SECONDS must be >= 0.")
        if self.agents.default_agent not in SUPPORTED_AGENTS:
            raise ValueError(
                f"Unsupported NIGHTSHIFT_DEFAULT_AGENT={self.agents.default_agent!r}. "
                f"Expected one of: {', '.join(SUPPORTED_AGENTS)}.",
            )
        if self.agents.probe_timeout_seconds <= 0:
            raise ValueError("NIGHTSHIFT_PROBE_TIMEOUT_SECONDS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Invalid NIGHTSHIFT_LOG_LEVEL: {self.log_level!r}")

    def logging_level(self) -> int:
        """Numeric logging level for ``logging.basicConfig``."""

        return logging.getLevelName(self.log_level)


def _env_command(name: str, *, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return (default,)
    argv = tuple(shlex.split(raw))
    if not argv:
        raise ValueError(f"Empty command for {name}")
    return argv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
