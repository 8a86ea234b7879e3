"""Detect agent output that signals unfinished work after a successful exit."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from nightshift.orchestrator.models import ContinuationReason

RECENT_MESSAGE_WINDOW = 100
FINAL_MESSAGE_WINDOW = 20
MAX_SUGGESTED_STEPS = 5

_TODO_LINE = re.compile(r"TODO:|FIXME:|^\s*[-*]\s+", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class ContinuationRule:
    """Patterns for one continuation reason, checked in table order."""

    reason: ContinuationReason
    patterns: tuple[re.Pattern[str], ...]
    window: int
    details: str | None
    next_steps: tuple[str, ...] = ()


@dataclass(slots=True)
class IncompleteWork:
    """Detector verdict copied onto the task after a successful iteration."""

    is_incomplete: bool
    reason: ContinuationReason | None = None
    details: str | None = None
    suggested_next_steps: list[str] = field(default_factory=list)


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


CONTINUATION_RULES: tuple[ContinuationRule, ...] = (
    ContinuationRule(
        reason=ContinuationReason.MULTI_PHASE,
        patterns=_compile(
            r"phase\s+(\d+)\s+of\s+(\d+)",
            r"step\s+(\d+)\s+of\s+(\d+)",
            r"(\d+)\s+(?:phases?|steps?)\s+(?:remaining|left)",
            r"completed?\s+(?:phase|step)\s+(\d+)",
            r"next\s+(?:phase|step)\s+(?:will be|is)",
            r"in\s+the\s+next\s+iteration",
            r"continuing\s+in\s+next",
        ),
        window=RECENT_MESSAGE_WINDOW,
        # Multi-phase details carry the matched text itself.
        details=None,
        next_steps=(
            "Review the completed phase",
            "Continue with the next phase by re-prompting the task",
        ),
    ),
    ContinuationRule(
        reason=ContinuationReason.TODO_ITEMS,
        patterns=_compile(
            r"TODO:",
            r"FIXME:",
            r"still\s+need\s+to",
            r"next\s+steps?:",
            r"remaining\s+work:",
            r"additional\s+tasks?:",
            r"follow-?up\s+required:",
        ),
        window=FINAL_MESSAGE_WINDOW,
        details="Agent indicated remaining tasks or TODO items",
    ),
    ContinuationRule(
        reason=ContinuationReason.CONTINUATION_SIGNAL,
        patterns=_compile(
            r"(?:i'll|i will)\s+continue",
            r"let'?s\s+continue\s+with",
            r"moving\s+on\s+to",
            r"proceeding\s+to\s+(?:the\s+)?next",
            r"will\s+implement\s+next",
            r"(?:should|shall)\s+(?:we|i)\s+proceed",
        ),
        window=RECENT_MESSAGE_WINDOW,
        details="Agent indicated intention to continue work",
        next_steps=(
            "Confirm completion or re-prompt to continue",
            "Review what was completed so far",
        ),
    ),
    ContinuationRule(
        reason=ContinuationReason.APPROVAL_NEEDED,
        patterns=_compile(
            r"should\s+i\s+continue\s*\?",
            r"would\s+you\s+like\s+me\s+to",
            r"shall\s+i\s+proceed\s+with",
            r"do\s+you\s+want\s+me\s+to",
            r"waiting\s+for\s+approval",
            r"please\s+(?:confirm|approve)",
        ),
        window=FINAL_MESSAGE_WINDOW,
        details="Agent is asking for approval to continue",
        next_steps=(
            "Review the work completed so far",
            "Decide whether to approve continuation or modify the approach",
        ),
    ),
    ContinuationRule(
        reason=ContinuationReason.TOKEN_LIMIT,
        patterns=_compile(
            r"due\s+to\s+(?:response|output|token)\s+length",
            r"to\s+avoid\s+(?:token|output)\s+limits?",
            r"splitting\s+into\s+multiple",
            r"breaking\s+(?:this|it)\s+into\s+parts",
            r"reached\s+(?:output|token)\s+limit",
        ),
        window=RECENT_MESSAGE_WINDOW,
        details="Agent hit output limits and may have more to say",
        next_steps=("Re-prompt to continue the work",),
    ),
)


def detect_incomplete_work(
    messages: Sequence[str],
    *,
    rules: tuple[ContinuationRule, ...] = CONTINUATION_RULES,
) -> IncompleteWork:
    """Scan recent agent messages for the highest-priority continuation signal."""

    recent = list(messages[-RECENT_MESSAGE_WINDOW:])
    for rule in rules:
        text = "\n".join(recent[-rule.window :])
        for pattern in rule.patterns:
            match = pattern.search(text)
            if match is None:
                continue
            if rule.reason is ContinuationReason.TODO_ITEMS:
                todo_lines = [line for line in text.splitlines() if _TODO_LINE.search(line)]
                steps = todo_lines[:MAX_SUGGESTED_STEPS]
            else:
                steps = list(rule.next_steps)
            return IncompleteWork(
                is_incomplete=True,
                reason=rule.reason,
                details=rule.details or match.group(0),
                suggested_next_steps=steps,
            )
    return IncompleteWork(is_incomplete=False)
