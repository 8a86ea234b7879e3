from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure

from nightshift.orchestrator.repository import TaskRepository
from nightshift.orchestrator.usage_limits import UsageLimitTracker

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Usage Limits"),
]


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def test_limit_expires_when_clock_passes_reset_time() -> None:
    clock = _Clock(datetime(2026, 10, 18, 12, 0, tzinfo=UTC))
    tracker = UsageLimitTracker(clock=clock)

    tracker.set_limited(
        "claude-code",
        reset_at=clock.now + timedelta(hours=1),
        task_id="t-1",
        message="usage limit reached",
    )
    assert tracker.is_limited("claude-code") is True
    assert tracker.is_limited("gemini") is False

    clock.advance(minutes=59)
    assert tracker.is_limited("claude-code") is True

    clock.advance(minutes=1)
    state = tracker.get_state("claude-code")
    assert state.is_limited is False
    assert state.reset_at is None
    assert state.last_checked_at == clock.now


def test_limit_without_reset_time_stays_until_cleared() -> None:
    clock = _Clock(datetime(2026, 10, 18, 12, 0, tzinfo=UTC))
    tracker = UsageLimitTracker(clock=clock)

    tracker.set_limited("codex", reset_at=None)
    clock.advance(days=2)
    assert tracker.is_limited("codex") is True

    tracker.clear("codex")
    assert tracker.is_limited("codex") is False


def test_mark_checked_keeps_limit_and_updates_timestamp() -> None:
    clock = _Clock(datetime(2026, 10, 18, 12, 0, tzinfo=UTC))
    tracker = UsageLimitTracker(clock=clock)
    tracker.set_limited("gemini", reset_at=clock.now + timedelta(hours=2))

    clock.advance(minutes=5)
    tracker.mark_checked("gemini")

    state = tracker.get_state("gemini")
    assert state.is_limited is True
    assert state.last_checked_at == clock.now
    assert [item.agent_id for item in tracker.states()] == ["gemini"]


def test_limits_persist_across_tracker_instances(repository: TaskRepository) -> None:
    clock = _Clock(datetime(2026, 10, 18, 12, 0, tzinfo=UTC))
    reset_at = clock.now + timedelta(hours=3)
    UsageLimitTracker(clock=clock, store=repository).set_limited(
        "claude-code",
        reset_at=reset_at,
        task_id="t-9",
        message="Claude AI usage limit reached",
    )

    reloaded = UsageLimitTracker(clock=clock, store=repository).get_state("claude-code")

    assert reloaded.is_limited is True
    assert reloaded.reset_at == reset_at
    assert reloaded.triggered_by_task_id == "t-9"
    assert reloaded.message == "Claude AI usage limit reached"

    UsageLimitTracker(clock=clock, store=repository).clear("claude-code")
    assert UsageLimitTracker(clock=clock, store=repository).is_limited("claude-code") is False
