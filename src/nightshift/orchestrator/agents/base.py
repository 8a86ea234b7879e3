"""Agent capability interface shared by every supported CLI agent."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

from nightshift.orchestrator.actions import describe_tool_use
from nightshift.orchestrator.agents.matchers import (
    DEFAULT_OUTPUT_MATCHERS,
    MatchKind,
    OutputMatcher,
    extract_reset_time,
    first_match,
)
from nightshift.orchestrator.continuation import IncompleteWork, detect_incomplete_work
from nightshift.orchestrator.errors import AgentSpawnError
from nightshift.orchestrator.models import AgentEventType, AgentOutputEvent
from nightshift.orchestrator.process import DEFAULT_KILL_GRACE_SECONDS, ProcessHandle
from nightshift.orchestrator.usage import extract_usage_from_payload
from nightshift.storage.common import utc_now

logger = logging.getLogger(__name__)

PROBE_PROMPT = "Reply with only the word: ok"
_PLAN_PATH_KEYS = ("plan_file_path", "planFilePath", "file_path", "path")


@dataclass(slots=True, frozen=True)
class AgentCapabilities:
    """Feature flags advertised by an agent adapter."""

    supports_skills: bool
    supports_project_config: bool
    supports_context_files: bool
    supports_non_interactive_mode: bool
    supports_pause_resume: bool
    supports_session_resume: bool


@dataclass(slots=True)
class AgentInvocation:
    """Inputs for one agent run."""

    prompt: str
    working_directory: Path
    context_files: tuple[str, ...] = ()
    model: str | None = None
    thinking: bool = False
    resume_session_id: str | None = None


@dataclass(slots=True)
class UsageLimitDetection:
    is_limited: bool
    reset_at: datetime | None = None


@dataclass(slots=True)
class UsageLimitCheck:
    """Result of the active pre-flight probe."""

    can_proceed: bool
    reset_at: datetime | None = None
    message: str | None = None


@dataclass(slots=True)
class AuthValidation:
    is_valid: bool
    requires_reauth: bool
    error: str | None = None


@dataclass(slots=True)
class ReauthResult:
    success: bool
    error: str | None = None


@dataclass(slots=True)
class UsageWindow:
    utilization: float
    resets_at: datetime | None


@dataclass(slots=True)
class UsagePercentage:
    """Provider-reported quota utilization, when the agent exposes it."""

    five_hour: UsageWindow | None = None
    seven_day: UsageWindow | None = None
    error: str | None = None


@dataclass(slots=True)
class ProbeOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    error: str | None = None


class AgentAdapter(ABC):
    """Base adapter: subclasses provide invocation syntax and output framing."""

    agent_id: ClassVar[str]
    display_name: ClassVar[str]
    capabilities: ClassVar[AgentCapabilities]
    default_model: ClassVar[str | None] = None
    models: ClassVar[tuple[str, ...]] = ()
    known_paths: ClassVar[tuple[str, ...]] = ()
    project_config_files: ClassVar[tuple[str, ...]] = ()
    output_matchers: ClassVar[tuple[OutputMatcher, ...]] = DEFAULT_OUTPUT_MATCHERS
    plan_mode_tools: ClassVar[frozenset[str]] = frozenset()
    session_id_keys: ClassVar[tuple[str, ...]] = ("session_id",)
    reauth_args: ClassVar[tuple[str, ...]] = ()
    rate_limit_before_usage_limit: ClassVar[bool] = False

    def __init__(
        self,
        *,
        command: Sequence[str] | None = None,
        probe_timeout_seconds: float = 30.0,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.command = tuple(command) if command else (self.default_executable(),)
        self.probe_timeout_seconds = probe_timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.clock = clock

    @classmethod
    @abstractmethod
    def default_executable(cls) -> str:
        """Executable name looked up in PATH when no command override is set."""

    @abstractmethod
    def build_args(self, invocation: AgentInvocation) -> list[str]:
        """Agent-specific CLI arguments for a task run."""

    @abstractmethod
    def probe_args(self) -> list[str]:
        """Arguments for the cheap availability/limit probe."""

    # -- availability and invocation -----------------------------------------

    def get_capabilities(self) -> AgentCapabilities:
        return self.capabilities

    def get_executable_path(self) -> str | None:
        head = self.command[0]
        if os.sep in head or (os.altsep and os.altsep in head):
            return head if Path(head).exists() else None
        resolved = shutil.which(head)
        if resolved is not None:
            return resolved
        for candidate in self.known_paths:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)
        return None

    def is_available(self) -> bool:
        return self.get_executable_path() is not None

    def build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["CI"] = "true"
        env["TERM"] = "dumb"
        return env

    def invoke(self, invocation: AgentInvocation) -> ProcessHandle:
        """Spawn the agent inside the working directory with stdin closed."""

        argv = self._argv(self.build_args(invocation))
        return ProcessHandle.spawn(
            argv,
            cwd=invocation.working_directory,
            env=self.build_env(),
            kill_grace_seconds=self.kill_grace_seconds,
        )

    def _argv(self, args: list[str]) -> list[str]:
        executable = self.get_executable_path()
        if executable is None:
            raise AgentSpawnError(
                f"{self.display_name} CLI not found: {self.command[0]}",
                transient=False,
            )
        return [executable, *self.command[1:], *args]

    # -- output parsing -------------------------------------------------------

    def parse_output(
        self,
        lines: Iterable[str],
        *,
        stream: str = "stdout",
    ) -> Iterator[AgentOutputEvent]:
        """Yield normalized events for a raw line stream; malformed lines become logs."""

        for line in lines:
            event = self.parse_line(line, stream=stream)
            if event is not None:
                yield event

    def parse_line(self, line: str, *, stream: str = "stdout") -> AgentOutputEvent | None:
        text = line.rstrip("\r\n")
        if not text.strip():
            return None
        now = self.clock()
        if stream == "stderr":
            return self._classify_text(text, now=now, stream=stream, default=AgentEventType.ERROR)

        payload = _load_json_object(text)
        if payload is None:
            default = AgentEventType.ERROR if "error" in text.lower() else AgentEventType.LOG
            return self._classify_text(text, now=now, stream=stream, default=default)

        event = self._classify_payload(payload, line=text, now=now)
        event.payload = payload
        event.session_id = self.extract_session_id(payload)
        if event.type is AgentEventType.ERROR:
            event.auth_failure = self.detect_auth_error(text)
        return event

    def extract_session_id(self, payload: dict[str, Any]) -> str | None:
        for key in self.session_id_keys:
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def _classify_payload(
        self,
        payload: dict[str, Any],
        *,
        line: str,
        now: datetime,
    ) -> AgentOutputEvent:
        tool = self.extract_tool_use(payload)
        if tool is not None:
            name, tool_input = tool
            return self._tool_event(name, tool_input, now=now)

        if self.is_error_payload(payload):
            message = _error_text(payload) or line
            limit_event = self._limit_event(message, line=message, now=now, stream="stdout")
            if limit_event is not None:
                return limit_event
            return AgentOutputEvent(type=AgentEventType.ERROR, message=message, timestamp=now)

        if self.is_completion_payload(payload):
            return AgentOutputEvent(
                type=AgentEventType.COMPLETE,
                message=line,
                timestamp=now,
                usage=extract_usage_from_payload(payload),
            )
        return AgentOutputEvent(type=AgentEventType.LOG, message=line, timestamp=now)

    def is_error_payload(self, payload: dict[str, Any]) -> bool:
        return payload.get("type") == "error" or bool(payload.get("error"))

    def is_completion_payload(self, payload: dict[str, Any]) -> bool:
        return payload.get("type") == "result" or bool(payload.get("done"))

    def extract_tool_use(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
        """Return the first tool invocation carried by an assistant record."""

        if payload.get("type") != "assistant":
            return None
        message = payload.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return None
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                tool_input = block.get("input")
                if not isinstance(tool_input, dict):
                    tool_input = {}
                return str(block.get("name", "")), tool_input
        return None

    def message_text(self, event: AgentOutputEvent) -> str:
        """Assistant-authored text of an event, used by continuation detection."""

        payload = event.payload
        if payload is None:
            return event.message
        if payload.get("type") == "result" and isinstance(payload.get("result"), str):
            return payload["result"]
        message = payload.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            texts = [
                str(block.get("text", ""))
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            return "\n".join(text for text in texts if text)
        return ""

    def _tool_event(
        self,
        name: str,
        tool_input: dict[str, Any],
        *,
        now: datetime,
    ) -> AgentOutputEvent:
        plan_mode = name in self.plan_mode_tools
        plan_path = None
        if plan_mode:
            for key in _PLAN_PATH_KEYS:
                value = tool_input.get(key)
                if isinstance(value, str) and value.strip():
                    plan_path = value.strip()
                    break
        return AgentOutputEvent(
            type=AgentEventType.PROGRESS,
            message=describe_tool_use(name, tool_input),
            timestamp=now,
            tool_name=name,
            plan_mode=plan_mode,
            plan_file_path=plan_path,
        )

    def _classify_text(
        self,
        text: str,
        *,
        now: datetime,
        stream: str,
        default: AgentEventType,
    ) -> AgentOutputEvent:
        limit_event = self._limit_event(text, line=text, now=now, stream=stream)
        if limit_event is not None:
            return limit_event
        event = AgentOutputEvent(type=default, message=text, timestamp=now, stream=stream)
        if default is AgentEventType.ERROR:
            event.auth_failure = self.detect_auth_error(text)
        return event

    def _limit_event(
        self,
        text: str,
        *,
        line: str,
        now: datetime,
        stream: str,
    ) -> AgentOutputEvent | None:
        if self.rate_limit_before_usage_limit and self.detect_rate_limit(text):
            return AgentOutputEvent(
                type=AgentEventType.RATE_LIMIT, message=line, timestamp=now, stream=stream
            )
        detection = self.detect_usage_limit(text)
        if detection.is_limited:
            return AgentOutputEvent(
                type=AgentEventType.USAGE_LIMIT,
                message=line,
                timestamp=now,
                reset_at=detection.reset_at,
                stream=stream,
            )
        if self.detect_rate_limit(text):
            return AgentOutputEvent(
                type=AgentEventType.RATE_LIMIT, message=line, timestamp=now, stream=stream
            )
        return None

    # -- passive detection ----------------------------------------------------

    def detect_rate_limit(self, text: str) -> bool:
        return first_match(text, self.output_matchers, MatchKind.RATE_LIMIT) is not None

    def detect_usage_limit(self, text: str) -> UsageLimitDetection:
        if first_match(text, self.output_matchers, MatchKind.USAGE_LIMIT) is None:
            return UsageLimitDetection(is_limited=False)
        return UsageLimitDetection(
            is_limited=True,
            reset_at=extract_reset_time(text, now=self.clock()),
        )

    def detect_auth_error(self, text: str) -> bool:
        return first_match(text, self.output_matchers, MatchKind.AUTH_FAILURE) is not None

    def detect_incomplete_work(self, events: Sequence[AgentOutputEvent]) -> IncompleteWork:
        messages = [text for text in (self.message_text(event) for event in events) if text]
        return detect_incomplete_work(messages)

    # -- active probes --------------------------------------------------------

    def check_usage_limits(self) -> UsageLimitCheck:
        """Run the probe prompt; any outcome other than a detected limit proceeds."""

        if not self.is_available():
            return UsageLimitCheck(can_proceed=False, message=f"{self.display_name} CLI not found")

        probe = self._run_probe()
        if probe.timed_out:
            logger.warning(
                "%s usage check timed out after %ss", self.agent_id, self.probe_timeout_seconds
            )
            return UsageLimitCheck(can_proceed=True)
        if probe.error is not None:
            logger.warning("%s usage check spawn error: %s", self.agent_id, probe.error)
            return UsageLimitCheck(can_proceed=True)

        if probe.exit_code == 0:
            result = probe.stdout or probe.stderr
            payload = _load_json_object(result.strip())
            if payload is None:
                message = result
            elif self.is_error_payload(payload) or payload.get("is_error"):
                message = _error_text(payload) or str(payload.get("result") or result)
            else:
                return UsageLimitCheck(can_proceed=True)
        else:
            message = probe.stderr or probe.stdout or f"Process exited with code {probe.exit_code}"

        detection = self.detect_usage_limit(message)
        if detection.is_limited:
            return UsageLimitCheck(
                can_proceed=False,
                reset_at=detection.reset_at,
                message=message.strip(),
            )
        if probe.exit_code != 0:
            logger.warning(
                "%s usage check hit a non-limit error: %s", self.agent_id, message.strip()[:200]
            )
        return UsageLimitCheck(can_proceed=True)

    def validate_auth(self) -> AuthValidation:
        if not self.is_available():
            return AuthValidation(
                is_valid=False,
                requires_reauth=False,
                error=f"{self.display_name} CLI not found",
            )

        probe = self._run_probe()
        if probe.timed_out or probe.error is not None:
            logger.warning(
                "%s auth validation could not complete: %s",
                self.agent_id,
                probe.error or "timed out",
            )
            return AuthValidation(is_valid=True, requires_reauth=False)

        combined = "\n".join(part for part in (probe.stdout, probe.stderr) if part)
        if self.detect_auth_error(combined):
            return AuthValidation(
                is_valid=False,
                requires_reauth=True,
                error=(
                    "Authentication required. Please run "
                    f"{self.display_name} in a terminal to authenticate."
                ),
            )
        if probe.exit_code != 0:
            logger.warning(
                "%s auth validation got exit code %s without auth error",
                self.agent_id,
                probe.exit_code,
            )
        return AuthValidation(is_valid=True, requires_reauth=False)

    def trigger_reauth(self, project_path: Path | None = None) -> ReauthResult:
        """Run the agent's login flow attached to the current terminal."""

        if not self.is_available():
            return ReauthResult(success=False, error=f"{self.display_name} CLI not found")
        if not sys.stdin.isatty():
            return ReauthResult(
                success=False,
                error=(
                    "An interactive terminal is required to re-authenticate "
                    f"{self.display_name}."
                ),
            )
        try:
            completed = subprocess.run(  # noqa: S603
                self._argv(list(self.reauth_args)),
                cwd=project_path or Path.home(),
                check=False,
            )
        except OSError as error:
            return ReauthResult(
                success=False,
                error=f"Failed to launch {self.display_name}: {error}",
            )
        if completed.returncode != 0:
            return ReauthResult(
                success=False,
                error=f"{self.display_name} exited with code {completed.returncode}",
            )
        return ReauthResult(success=True)

    def get_usage_percentage(self) -> UsagePercentage:
        return UsagePercentage()

    def available_models(self) -> list[str]:
        return list(self.models)

    def _run_probe(self) -> ProbeOutcome:
        try:
            completed = subprocess.run(  # noqa: S603
                self._argv(self.probe_args()),
                env=self.build_env(),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.probe_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            return ProbeOutcome(
                exit_code=None,
                stdout=_decode(error.stdout),
                stderr=_decode(error.stderr),
                timed_out=True,
            )
        except (OSError, AgentSpawnError) as error:
            return ProbeOutcome(exit_code=None, stdout="", stderr="", error=str(error))
        return ProbeOutcome(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


def _load_json_object(text: str) -> dict[str, Any] | None:
    if not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Treating malformed JSON line as text: %s", text[:120])
        return None
    return parsed if isinstance(parsed, dict) else None


def _error_text(payload: dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or json.dumps(error))
    if isinstance(error, str) and error:
        return error
    for key in ("message", "result"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
