"""Errors raised by task orchestration operations."""

from __future__ import annotations


class TaskNotFoundError(RuntimeError):
    """Requested task does not exist in the store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTaskStateError(RuntimeError):
    """Operation is not allowed from the task's current status."""


class ConcurrentTaskUpdateError(RuntimeError):
    """Stored task status changed between load and save."""


class AgentSpawnError(RuntimeError):
    """Agent process could not be started."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class UnknownAgentError(KeyError):
    """No adapter is registered under the requested agent id."""

    def __str__(self) -> str:
        return f"Unknown agent: {self.args[0]!r}"
