"""Usage extraction helpers for CLI agent output streams."""

from __future__ import annotations

import re
from typing import Any

from nightshift.orchestrator.models import UsageSummary

USAGE_PARSER_VERSION = "v2"

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_COST_USD = re.compile(r"(?:total[_ ])?cost(?:[_ ]usd)?\s*[:=]\s*\$?([\d.]+)", re.IGNORECASE)


def extract_usage_from_payload(payload: dict[str, Any]) -> UsageSummary | None:
    """Read token/cost usage from a structured completion record.

    Understands the ``usage`` block of claude-code and codex records and the
    ``stats`` block of gemini records. Returns ``None`` when the record carries
    no usage at all.
    """

    usage = payload.get("usage")
    if not isinstance(usage, dict):
        usage = payload.get("stats")
    cost = payload.get("total_cost_usd", payload.get("cost_usd"))
    if not isinstance(usage, dict) and cost is None:
        return None

    usage = usage if isinstance(usage, dict) else {}
    return UsageSummary(
        input_tokens=_int(usage.get("input_tokens", usage.get("prompt_tokens"))),
        output_tokens=_int(usage.get("output_tokens", usage.get("completion_tokens"))),
        cache_read_tokens=_int(
            usage.get("cache_read_input_tokens", usage.get("cached_input_tokens")),
        ),
        cache_creation_tokens=_int(usage.get("cache_creation_input_tokens")),
        cost_usd=_float(cost),
    )


def extract_usage_from_text(text: str) -> UsageSummary | None:
    """Fallback for agents that print usage as plain ``key: value`` text."""

    input_tokens = _extract_int(_INPUT_TOKENS, text)
    output_tokens = _extract_int(_OUTPUT_TOKENS, text)
    cost_match = _COST_USD.search(text)
    if input_tokens is None and output_tokens is None and cost_match is None:
        return None
    return UsageSummary(
        input_tokens=input_tokens or 0,
        output_tokens=output_tokens or 0,
        cost_usd=_float(cost_match.group(1)) if cost_match else 0.0,
    )


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if not match:
        return None
    return int(match.group(1).replace(",", ""))


def _int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def _float(value: object) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
