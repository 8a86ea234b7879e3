"""Detect that a successful iteration ended in plan mode and find its plan."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from nightshift.orchestrator.agents.base import AgentAdapter

logger = logging.getLogger(__name__)

# Filesystem mtimes may be coarser than the iteration start timestamp.
MTIME_TOLERANCE = timedelta(seconds=2)


@dataclass(slots=True)
class PlanDetection:
    is_plan_mode: bool
    plan_file_path: str | None = None


def scan_log_for_plan(log_text: str, adapter: AgentAdapter) -> tuple[bool, str | None]:
    """Return (plan marker seen, last plan path reported by the agent)."""

    found = False
    reported: str | None = None
    for line in log_text.splitlines():
        event = adapter.parse_line(line)
        if event is None or not event.plan_mode:
            continue
        found = True
        reported = event.plan_file_path or reported
    return found, reported


def find_recent_plan(plans_dir: Path, *, started_after: datetime | None) -> Path | None:
    """Newest ``*.md`` in ``plans_dir`` modified since the iteration began."""

    if not plans_dir.is_dir():
        return None
    threshold = (started_after - MTIME_TOLERANCE).timestamp() if started_after else None
    newest: tuple[float, Path] | None = None
    for candidate in plans_dir.glob("*.md"):
        try:
            mtime = candidate.stat().st_mtime
        except OSError:
            continue
        if threshold is not None and mtime < threshold:
            continue
        if newest is None or mtime > newest[0]:
            newest = (mtime, candidate)
    return newest[1] if newest else None


def detect_plan_mode(
    log_text: str | None,
    *,
    adapter: AgentAdapter,
    plans_dir: Path,
    started_after: datetime | None,
) -> PlanDetection:
    """Best effort: a missing plan file leaves ``plan_file_path`` unset."""

    if not log_text or not adapter.plan_mode_tools:
        return PlanDetection(is_plan_mode=False)
    found, reported = scan_log_for_plan(log_text, adapter)
    if not found:
        return PlanDetection(is_plan_mode=False)

    if reported:
        reported_path = Path(reported).expanduser()
        if reported_path.is_file():
            return PlanDetection(is_plan_mode=True, plan_file_path=str(reported_path))
        logger.debug("Agent reported plan file %s which does not exist", reported)

    recent = find_recent_plan(plans_dir, started_after=started_after)
    if recent is None:
        logger.info("Plan mode detected but no plan file found in %s", plans_dir)
        return PlanDetection(is_plan_mode=True)
    return PlanDetection(is_plan_mode=True, plan_file_path=str(recent))
