"""In-process fan-out of task status changes and live agent output."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from nightshift.orchestrator.models import AgentOutputEvent, Task, TaskStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[["TaskStatusChange"], None]
OutputListener = Callable[[str, AgentOutputEvent], None]


@dataclass(slots=True, frozen=True)
class TaskStatusChange:
    task_id: str
    project_id: str
    previous: TaskStatus | None
    current: TaskStatus
    at: datetime


class TaskNotifier:
    """Subscriber lists for UI refresh, desktop notifications and log tailing.

    Listeners run synchronously on the publishing thread. A failing listener
    is logged and skipped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status_listeners: list[StatusListener] = []
        self._output_listeners: dict[str | None, list[OutputListener]] = {}

    def subscribe_status(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._status_listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._status_listeners:
                    self._status_listeners.remove(listener)

        return _unsubscribe

    def subscribe_output(
        self,
        listener: OutputListener,
        *,
        task_id: str | None = None,
    ) -> Callable[[], None]:
        """Listen to one task's output events, or to all tasks when ``task_id`` is None."""

        with self._lock:
            self._output_listeners.setdefault(task_id, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._output_listeners.get(task_id, [])
                if listener in listeners:
                    listeners.remove(listener)

        return _unsubscribe

    def status_changed(
        self,
        task: Task,
        *,
        previous: TaskStatus | None,
        at: datetime,
    ) -> None:
        if previous is task.status:
            return
        change = TaskStatusChange(
            task_id=task.task_id,
            project_id=task.project_id,
            previous=previous,
            current=task.status,
            at=at,
        )
        with self._lock:
            listeners = list(self._status_listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:  # noqa: BLE001
                logger.exception("Status listener failed for task %s", task.task_id)

    def output_event(self, task_id: str, event: AgentOutputEvent) -> None:
        with self._lock:
            listeners = [
                *self._output_listeners.get(task_id, []),
                *self._output_listeners.get(None, []),
            ]
        for listener in listeners:
            try:
                listener(task_id, event)
            except Exception:  # noqa: BLE001
                logger.exception("Output listener failed for task %s", task_id)
