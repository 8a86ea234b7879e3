"""Per-agent usage-limit state shared by every scheduling decision."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

from nightshift.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class UsageLimitState:
    """Throttle state for one agent."""

    agent_id: str
    is_limited: bool = False
    reset_at: datetime | None = None
    last_checked_at: datetime | None = None
    triggered_by_task_id: str | None = None
    message: str | None = None


class UsageLimitStore(Protocol):
    """Optional persistence so CLI invocations see the worker's limits."""

    def load_usage_limits(self) -> list[UsageLimitState]: ...

    def save_usage_limit(self, state: UsageLimitState) -> None: ...


class UsageLimitTracker:
    """Explicit, injectable replacement for a process-wide throttle flag.

    Created once per worker process. Only the scheduler and explicit user
    actions mutate it; everything else reads. A limit clears itself once the
    clock passes ``reset_at``; a limit without a reset time stays until
    cleared by the user or by a successful pre-flight probe.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now,
        store: UsageLimitStore | None = None,
    ) -> None:
        self._clock = clock
        self._store = store
        self._lock = threading.Lock()
        self._states: dict[str, UsageLimitState] = {}
        if store is not None:
            for state in store.load_usage_limits():
                self._states[state.agent_id] = state

    def get_state(self, agent_id: str) -> UsageLimitState:
        with self._lock:
            return self._current(agent_id)

    def is_limited(self, agent_id: str) -> bool:
        return self.get_state(agent_id).is_limited

    def set_limited(
        self,
        agent_id: str,
        *,
        reset_at: datetime | None,
        task_id: str | None = None,
        message: str | None = None,
    ) -> UsageLimitState:
        """Record a limit seen in agent output or reported by a probe."""

        with self._lock:
            state = UsageLimitState(
                agent_id=agent_id,
                is_limited=True,
                reset_at=reset_at,
                last_checked_at=self._clock(),
                triggered_by_task_id=task_id,
                message=message,
            )
            self._states[agent_id] = state
        logger.info(
            "Agent %s usage-limited until %s (task=%s)",
            agent_id,
            reset_at.isoformat() if reset_at else "unknown",
            task_id,
        )
        self._persist(state)
        return state

    def clear(self, agent_id: str) -> UsageLimitState:
        with self._lock:
            state = UsageLimitState(agent_id=agent_id, last_checked_at=self._clock())
            self._states[agent_id] = state
        logger.info("Usage limit cleared for agent %s", agent_id)
        self._persist(state)
        return state

    def mark_checked(self, agent_id: str) -> None:
        with self._lock:
            state = self._current(agent_id)
            self._states[agent_id] = replace(state, last_checked_at=self._clock())

    def states(self) -> list[UsageLimitState]:
        with self._lock:
            return [self._current(agent_id) for agent_id in sorted(self._states)]

    def _current(self, agent_id: str) -> UsageLimitState:
        state = self._states.get(agent_id)
        if state is None:
            return UsageLimitState(agent_id=agent_id)
        if state.is_limited and state.reset_at is not None and self._clock() >= state.reset_at:
            state = UsageLimitState(agent_id=agent_id, last_checked_at=self._clock())
            self._states[agent_id] = state
            logger.info("Usage limit for agent %s expired", agent_id)
        return state

    def _persist(self, state: UsageLimitState) -> None:
        if self._store is None:
            return
        self._store.save_usage_limit(state)
