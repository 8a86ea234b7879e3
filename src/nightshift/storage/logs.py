"""Append-only per-iteration output logs on the local filesystem."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import TextIO


class IterationLogWriter:
    """Line writer shared by the stdout and stderr reader threads of one run."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._handle: TextIO | None = path.open("a", encoding="utf-8")
        self.lines_written = 0

    def write_line(self, line: str) -> None:
        text = line if line.endswith("\n") else f"{line}\n"
        with self._lock:
            if self._handle is None:
                return
            self._handle.write(text)
            self._handle.flush()
            self.lines_written += 1

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None

    def __enter__(self) -> IterationLogWriter:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class IterationLogStore:
    """Log sink keyed by (project, task, iteration) under one root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, project_id: str, task_id: str, iteration: int) -> Path:
        return self.root / project_id / task_id / "runs" / f"run-{iteration}.log"

    def open_writer(self, project_id: str, task_id: str, iteration: int) -> IterationLogWriter:
        path = self.path_for(project_id, task_id, iteration)
        path.parent.mkdir(parents=True, exist_ok=True)
        return IterationLogWriter(path)

    def append(self, project_id: str, task_id: str, iteration: int, line: str) -> None:
        """Append one line outside of a supervised run (markers from other processes)."""

        with self.open_writer(project_id, task_id, iteration) as writer:
            writer.write_line(line)

    def read(self, project_id: str, task_id: str, iteration: int) -> str | None:
        """Current content; may be partial while the run is still writing."""

        path = self.path_for(project_id, task_id, iteration)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    def iterations(self, project_id: str, task_id: str) -> list[int]:
        runs_dir = self.root / project_id / task_id / "runs"
        if not runs_dir.is_dir():
            return []
        numbers = []
        for path in runs_dir.glob("run-*.log"):
            suffix = path.stem.removeprefix("run-")
            if suffix.isdigit():
                numbers.append(int(suffix))
        return sorted(numbers)
