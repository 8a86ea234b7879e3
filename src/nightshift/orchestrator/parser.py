"""Stateful event parser for one agent run."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator

from nightshift.orchestrator.agents.base import AgentAdapter
from nightshift.orchestrator.models import AgentEventType, AgentOutputEvent, UsageSummary

logger = logging.getLogger(__name__)

# Enough assistant history for the incomplete-work detector.
EVENT_WINDOW = 200


class OutputEventParser:
    """Normalize stdout/stderr lines from one run into ``AgentOutputEvent``s.

    Both reader threads feed the same parser, so state updates are guarded by
    a lock. The first ``complete`` event or fatal event (usage limit, rate
    limit, authentication failure) closes the parser; later lines are ignored.
    """

    def __init__(
        self,
        adapter: AgentAdapter,
        *,
        on_session_id: Callable[[str], None] | None = None,
    ) -> None:
        self.adapter = adapter
        self._on_session_id = on_session_id
        self._lock = threading.Lock()
        self._events: deque[AgentOutputEvent] = deque(maxlen=EVENT_WINDOW)
        self._closed = False
        self.terminal_event: AgentOutputEvent | None = None
        self.session_id: str | None = None
        self.usage = UsageSummary()
        self.plan_mode = False
        self.plan_file_path: str | None = None
        self.last_error: str | None = None
        self.event_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events(self) -> list[AgentOutputEvent]:
        with self._lock:
            return list(self._events)

    @property
    def fatal_event(self) -> AgentOutputEvent | None:
        event = self.terminal_event
        if event is None or event.type is AgentEventType.COMPLETE:
            return None
        return event

    def feed(self, line: str, *, stream: str = "stdout") -> AgentOutputEvent | None:
        """Parse one raw line; ``None`` for blank lines or after close."""

        if self._closed:
            return None
        event = self.adapter.parse_line(line, stream=stream)
        if event is None:
            return None

        new_session: str | None = None
        with self._lock:
            if self._closed:
                return None
            self._events.append(event)
            self.event_count += 1
            if event.session_id and event.session_id != self.session_id:
                self.session_id = event.session_id
                new_session = event.session_id
            if event.usage is not None:
                self.usage = self.usage.add(event.usage)
            if event.plan_mode:
                self.plan_mode = True
                self.plan_file_path = event.plan_file_path or self.plan_file_path
            if event.type is AgentEventType.ERROR:
                self.last_error = event.message
            if _is_terminal(event):
                self._closed = True
                self.terminal_event = event

        if new_session is not None and self._on_session_id is not None:
            try:
                self._on_session_id(new_session)
            except Exception:  # noqa: BLE001
                logger.exception("Session id callback failed for %s", self.adapter.agent_id)
        return event

    def parse(self, lines: Iterable[str], *, stream: str = "stdout") -> Iterator[AgentOutputEvent]:
        """Yield events until the parser closes."""

        for line in lines:
            event = self.feed(line, stream=stream)
            if event is not None:
                yield event
            if self._closed:
                return


def _is_terminal(event: AgentOutputEvent) -> bool:
    if event.type is AgentEventType.COMPLETE or event.is_limit:
        return True
    return event.type is AgentEventType.ERROR and event.auth_failure
