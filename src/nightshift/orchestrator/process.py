"""Handle around one spawned agent subprocess."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import IO

from nightshift.orchestrator.errors import AgentSpawnError

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 2.0


class ProcessHandle:
    """Cancellable handle for an agent process with piped stdout/stderr."""

    def __init__(
        self,
        process: subprocess.Popen[str],
        *,
        argv: Sequence[str],
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> None:
        self._process = process
        self.argv = tuple(argv)
        self.kill_grace_seconds = kill_grace_seconds
        self._kill_lock = threading.Lock()
        self._killed = False

    @classmethod
    def spawn(
        cls,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: dict[str, str],
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> ProcessHandle:
        """Start the process with stdin closed; raise ``AgentSpawnError`` on failure."""

        if not argv:
            raise AgentSpawnError("Agent command is empty.", transient=False)
        if not cwd.is_dir():
            raise AgentSpawnError(f"Working directory does not exist: {cwd}", transient=False)
        try:
            process = subprocess.Popen(  # noqa: S603
                list(argv),
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise AgentSpawnError(
                f"Agent executable not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentSpawnError(f"Agent failed to start: {error}", transient=True) from error
        logger.debug("Spawned agent pid=%s argv0=%s cwd=%s", process.pid, argv[0], cwd)
        return cls(process, argv=argv, kill_grace_seconds=kill_grace_seconds)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdout(self) -> IO[str]:
        assert self._process.stdout is not None
        return self._process.stdout

    @property
    def stderr(self) -> IO[str]:
        assert self._process.stderr is not None
        return self._process.stderr

    @property
    def killed(self) -> bool:
        return self._killed

    def poll(self) -> int | None:
        return self._process.poll()

    def wait(self, timeout: float | None = None) -> int:
        """Block until exit; ``subprocess.TimeoutExpired`` propagates."""

        return self._process.wait(timeout=timeout)

    def kill(self) -> None:
        """Terminate, then force-kill after the grace period. Safe to call twice."""

        with self._kill_lock:
            if self._killed:
                return
            self._killed = True
        if self._process.poll() is not None:
            return
        self.resume()
        _terminate_process(self._process, grace_seconds=self.kill_grace_seconds)

    def suspend(self) -> bool:
        """Stop the process in place where the OS supports it."""

        return self._send_signal(getattr(signal, "SIGSTOP", None))

    def resume(self) -> bool:
        return self._send_signal(getattr(signal, "SIGCONT", None))

    def _send_signal(self, signum: int | None) -> bool:
        if signum is None or self._process.poll() is not None:
            return False
        try:
            os.kill(self._process.pid, signum)
        except OSError:
            return False
        return True


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds or None)
