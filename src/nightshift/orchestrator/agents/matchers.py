"""Pattern tables for throttling and authentication detection in agent output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from nightshift.storage.common import from_iso

MATCHER_TABLE_VERSION = 1


class MatchKind(str, Enum):
    """What a matched pattern means for the running task."""

    RATE_LIMIT = "rate-limit"
    USAGE_LIMIT = "usage-limit"
    AUTH_FAILURE = "auth-failure"


@dataclass(slots=True, frozen=True)
class OutputMatcher:
    """Case-insensitive substring rule, optionally requiring a companion word."""

    pattern: str
    kind: MatchKind
    requires: tuple[str, ...] = ()

    def matches(self, haystack: str) -> bool:
        """Check against already lower-cased text."""

        if self.pattern not in haystack:
            return False
        if not self.requires:
            return True
        return any(word in haystack for word in self.requires)


RATE_LIMIT_MATCHERS: tuple[OutputMatcher, ...] = tuple(
    OutputMatcher(pattern, MatchKind.RATE_LIMIT)
    for pattern in (
        "rate limit",
        "rate_limit",
        "429",
        "too many requests",
        "overloaded",
    )
)
USAGE_LIMIT_MATCHERS: tuple[OutputMatcher, ...] = tuple(
    OutputMatcher(pattern, MatchKind.USAGE_LIMIT)
    for pattern in (
        "usage limit",
        "usage_limit",
        "quota exceeded",
        "quota_exceeded",
        "limit exceeded",
        "daily limit",
        "monthly limit",
        "exceeded your",
        "api limit",
        "request limit reached",
        "token limit",
        "out of credits",
        "billing",
    )
)
AUTH_FAILURE_MATCHERS: tuple[OutputMatcher, ...] = (
    *(
        OutputMatcher(pattern, MatchKind.AUTH_FAILURE)
        for pattern in (
            "unauthorized",
            "401",
            "403",
            "authentication failed",
            "not authenticated",
            "invalid token",
            "token expired",
            "please log in",
            "please authenticate",
            "login required",
            "access denied",
            "invalid api key",
            "api_key_invalid",
        )
    ),
    OutputMatcher("oauth", MatchKind.AUTH_FAILURE, requires=("error", "failed")),
    OutputMatcher("credential", MatchKind.AUTH_FAILURE, requires=("invalid", "expired")),
)
DEFAULT_OUTPUT_MATCHERS: tuple[OutputMatcher, ...] = (
    *USAGE_LIMIT_MATCHERS,
    *RATE_LIMIT_MATCHERS,
    *AUTH_FAILURE_MATCHERS,
)

_CLOCK_RESET = re.compile(
    r"(?:resets?|available|try again)(?:\s+at)?\s+"
    r"(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::\d{2})?(?:\s*(?P<meridiem>AM|PM))?",
    re.IGNORECASE,
)
_RELATIVE_RESET = re.compile(
    r"(?:resets?|available|try again)\s+in\s+(?P<amount>\d+)\s*"
    r"(?P<unit>hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)\b",
    re.IGNORECASE,
)
_ISO_TIMESTAMP = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)",
    re.IGNORECASE,
)


def first_match(
    text: str,
    matchers: tuple[OutputMatcher, ...],
    kind: MatchKind,
) -> OutputMatcher | None:
    """Return the first matcher of ``kind`` that fires on ``text``."""

    haystack = text.lower()
    for matcher in matchers:
        if matcher.kind is kind and matcher.matches(haystack):
            return matcher
    return None


def extract_reset_time(text: str, *, now: datetime) -> datetime | None:
    """Best-effort reset time from a limit message, returned in UTC."""

    clock = _CLOCK_RESET.search(text)
    if clock is not None:
        resolved = _resolve_clock_time(
            hour=int(clock.group("hour")),
            minute=int(clock.group("minute")),
            meridiem=(clock.group("meridiem") or "").lower(),
            now=now,
        )
        if resolved is not None:
            return resolved

    relative = _RELATIVE_RESET.search(text)
    if relative is not None:
        amount = int(relative.group("amount"))
        unit = relative.group("unit").lower()
        if unit.startswith("h"):
            return now + timedelta(hours=amount)
        if unit.startswith("m"):
            return now + timedelta(minutes=amount)
        return now + timedelta(seconds=amount)

    iso = _ISO_TIMESTAMP.search(text)
    if iso is not None:
        try:
            return from_iso(iso.group(1)).astimezone(UTC)
        except ValueError:
            return None
    return None


def _resolve_clock_time(*, hour: int, minute: int, meridiem: str, now: datetime) -> datetime | None:
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None

    # Clock times in agent messages are wall-clock local time.
    local_now = now.astimezone()
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate < local_now:
        candidate += timedelta(days=1)
    return candidate.astimezone(UTC)
