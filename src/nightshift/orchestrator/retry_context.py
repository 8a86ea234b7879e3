"""Build follow-up prompts from the log of a failed or interrupted iteration."""

from __future__ import annotations

from dataclasses import dataclass

from nightshift.orchestrator.agents.base import AgentAdapter
from nightshift.orchestrator.models import AgentEventType, Task

MAX_ACTIONS = 15
MIN_CONTEXT_CHARS = 50
MAX_CONTEXT_CHARS = 500
_FILLER_PREFIXES = ("I'll use", "Let me")
_INTERRUPTION_MARKERS = (
    "timed out",
    "timeout",
    "maximum duration",
    "interrupted",
    "signal",
    "Cancelled by user",
)


@dataclass(slots=True)
class RetryContext:
    prompt: str
    summary: str
    action_count: int
    has_progress: bool


@dataclass(slots=True)
class LogDigest:
    """What an iteration log says the agent did."""

    actions: list[str]
    last_context: str | None
    last_error: str | None


def digest_log(log_text: str, adapter: AgentAdapter) -> LogDigest:
    actions: list[str] = []
    last_context: str | None = None
    last_error: str | None = None
    for line in log_text.splitlines():
        event = adapter.parse_line(line)
        if event is None or (event.payload is None and event.type is AgentEventType.LOG):
            continue
        if event.type is AgentEventType.PROGRESS and event.tool_name:
            actions.append(event.message)
            continue
        if event.type is AgentEventType.ERROR:
            last_error = event.message
            continue
        text = adapter.message_text(event).strip()
        if event.type is AgentEventType.LOG and _is_meaningful(text):
            last_context = text[:MAX_CONTEXT_CHARS]
    return LogDigest(actions=actions, last_context=last_context, last_error=last_error)


def _is_meaningful(text: str) -> bool:
    return len(text) > MIN_CONTEXT_CHARS and not text.startswith(_FILLER_PREFIXES)


def build_retry_context(task: Task, log_text: str | None, adapter: AgentAdapter) -> RetryContext:
    """Synthesize a prompt that resumes from the recorded progress."""

    if not log_text or not log_text.strip():
        return RetryContext(
            prompt=task.prompt,
            summary="No execution logs available",
            action_count=0,
            has_progress=False,
        )

    digest = digest_log(log_text, adapter)
    failure_reason = task.error_message or digest.last_error or "Unknown error"
    interrupted = any(marker in failure_reason for marker in _INTERRUPTION_MARKERS)

    parts: list[str] = []
    if interrupted:
        parts += [
            "# Continuation of Interrupted Task",
            "",
            "This task was interrupted before completion (likely due to timeout, system sleep, "
            "or network issues). Please continue from where you left off.",
        ]
    else:
        parts += [
            "# Retry with Context",
            "",
            f"This task previously failed with error: {failure_reason}",
            "",
            "Please review what was attempted and try again, addressing any issues.",
        ]

    if digest.actions:
        parts += ["", "## What Was Already Done", ""]
        if len(digest.actions) > MAX_ACTIONS:
            parts.append(f"(Showing last {MAX_ACTIONS} of {len(digest.actions)} actions)")
        parts += [f"- {action}" for action in digest.actions[-MAX_ACTIONS:]]

    if digest.last_context:
        parts += ["", "## Last Known Progress", "", digest.last_context]

    parts += ["", "## Original Task", "", task.prompt, "", "---", ""]
    if interrupted:
        parts.append(
            "Please continue this task from where it left off. Do not repeat work that was "
            "already completed successfully. Focus on completing the remaining work.",
        )
    else:
        parts.append(
            "Please attempt this task again, taking into account what was previously tried. "
            "If the same approach keeps failing, consider an alternative approach.",
        )

    if digest.actions:
        outcome = "interruption" if interrupted else "failure"
        summary = f"{len(digest.actions)} actions were taken before {outcome}"
    else:
        summary = "Task failed before any significant progress"
    return RetryContext(
        prompt="\n".join(parts),
        summary=summary,
        action_count=len(digest.actions),
        has_progress=bool(digest.actions),
    )
