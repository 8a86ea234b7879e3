"""Supervise one agent process: pump its output into the log and parser."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
from collections.abc import Callable, Iterator
from typing import IO

from nightshift.orchestrator.models import AgentOutputEvent
from nightshift.orchestrator.parser import OutputEventParser
from nightshift.orchestrator.process import ProcessHandle
from nightshift.storage.logs import IterationLogWriter

logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 1000
_END = object()


class ProcessSupervisor:
    """Own a ``ProcessHandle`` for the lifetime of one attempt.

    Two reader threads drain stdout and stderr line by line. Every raw line is
    appended to the iteration log first, then handed to the parser. Parsed
    events go to ``on_event`` and to a bounded queue read via ``events()``;
    when nobody drains that queue, new events are dropped rather than buffered.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        *,
        parser: OutputEventParser,
        log_writer: IterationLogWriter,
        on_event: Callable[[AgentOutputEvent], None] | None = None,
    ) -> None:
        self.handle = handle
        self.parser = parser
        self.log_writer = log_writer
        self._on_event = on_event
        self._queue: queue.Queue[object] = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._readers: list[threading.Thread] = []
        self._readers_done = 0
        self._readers_lock = threading.Lock()
        self.fatal = threading.Event()
        self.kill_reason: str | None = None
        self.output_lines = 0

    @property
    def pid(self) -> int:
        return self.handle.pid

    def start(self) -> None:
        for name, stream in (("stdout", self.handle.stdout), ("stderr", self.handle.stderr)):
            reader = threading.Thread(
                target=self._pump,
                args=(stream, name),
                name=f"agent-{self.handle.pid}-{name}",
                daemon=True,
            )
            reader.start()
            self._readers.append(reader)

    def _pump(self, stream: IO[str], name: str) -> None:
        try:
            for line in stream:
                self.log_writer.write_line(line.rstrip("\r\n"))
                with self._readers_lock:
                    self.output_lines += 1
                event = self.parser.feed(line, stream=name)
                if event is None:
                    continue
                self._publish(event)
                if self.parser.fatal_event is event:
                    self.fatal.set()
        except ValueError:
            # Stream closed underneath us after kill.
            logger.debug("Agent %s %s stream closed", self.handle.pid, name)
        finally:
            with self._readers_lock:
                self._readers_done += 1
                finished = self._readers_done == 2
            if finished:
                self._enqueue(_END)

    def _publish(self, event: AgentOutputEvent) -> None:
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception:  # noqa: BLE001
                logger.exception("Output event listener failed for pid %s", self.handle.pid)
        self._enqueue(event)

    def _enqueue(self, item: object) -> None:
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            if item is _END:
                # The end marker must be seen; drop the oldest event instead.
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass
                self._queue.put_nowait(item)
            else:
                logger.debug("Event queue full for pid %s; dropping event", self.handle.pid)

    def events(self, *, timeout: float | None = None) -> Iterator[AgentOutputEvent]:
        """Consume parsed events until both output streams are exhausted."""

        while True:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return
            if item is _END:
                return
            assert isinstance(item, AgentOutputEvent)
            yield item

    def poll(self) -> int | None:
        return self.handle.poll()

    def wait(self, timeout: float | None = None) -> int | None:
        """Exit code once the process ended and its output is drained, else ``None``."""

        try:
            exit_code = self.handle.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        for reader in self._readers:
            reader.join(timeout=self.handle.kill_grace_seconds + 1.0)
        return exit_code

    def kill(self, reason: str) -> None:
        if self.kill_reason is None:
            self.kill_reason = reason
        logger.debug("Killing agent pid %s: %s", self.handle.pid, reason)
        self.handle.kill()

    def suspend(self) -> bool:
        return self.handle.suspend()

    def resume(self) -> bool:
        return self.handle.resume()

    def close(self) -> None:
        self.log_writer.close()
