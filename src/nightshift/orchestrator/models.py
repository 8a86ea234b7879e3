"""Domain models for the task queue and agent execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    BACKLOG = "backlog"
    QUEUED = "queued"
    AWAITING_AGENT = "awaiting_agent"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    NEEDS_REVIEW = "needs_review"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses the scheduler still has to drive.
ACTIVE_STATUSES = frozenset(
    {
        TaskStatus.QUEUED,
        TaskStatus.AWAITING_AGENT,
        TaskStatus.RUNNING,
        TaskStatus.PAUSED,
    },
)
# Statuses that occupy a scheduler slot and carry a running session.
SESSION_STATUSES = frozenset({TaskStatus.AWAITING_AGENT, TaskStatus.RUNNING})
# Statuses whose current iteration has not been recorded yet.
PENDING_ITERATION_STATUSES = ACTIVE_STATUSES | {TaskStatus.BACKLOG}
ITERATION_END_STATUSES = frozenset(
    {TaskStatus.NEEDS_REVIEW, TaskStatus.FAILED, TaskStatus.CANCELLED},
)
FOLLOW_UP_STATUSES = frozenset({TaskStatus.NEEDS_REVIEW, TaskStatus.FAILED})


class ContinuationReason(str, Enum):
    """Why an agent signaled that its work is not finished."""

    MULTI_PHASE = "multi-phase"
    TODO_ITEMS = "todo-items"
    CONTINUATION_SIGNAL = "continuation-signal"
    APPROVAL_NEEDED = "approval-needed"
    TOKEN_LIMIT = "token-limit"


class AgentEventType(str, Enum):
    """Normalized agent output event kinds."""

    LOG = "log"
    ERROR = "error"
    PROGRESS = "progress"
    RATE_LIMIT = "rate-limit"
    USAGE_LIMIT = "usage-limit"
    COMPLETE = "complete"


@dataclass(slots=True)
class UsageSummary:
    """Cumulative token and cost usage reported by agents."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: UsageSummary) -> UsageSummary:
        """Return a new summary with ``other`` folded in."""

        return UsageSummary(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cost_usd=round(self.cost_usd + other.cost_usd, 6),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cost_usd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> UsageSummary:
        if not payload:
            return cls()
        return cls(
            input_tokens=int(payload.get("input_tokens", 0)),
            output_tokens=int(payload.get("output_tokens", 0)),
            cache_read_tokens=int(payload.get("cache_read_tokens", 0)),
            cache_creation_tokens=int(payload.get("cache_creation_tokens", 0)),
            cost_usd=float(payload.get("cost_usd", 0.0)),
        )


@dataclass(slots=True, frozen=True)
class Iteration:
    """Immutable record of one execution attempt."""

    iteration: int
    prompt: str
    started_at: datetime | None
    completed_at: datetime
    exit_code: int | None
    runtime_ms: int
    error_message: str | None
    final_status: TaskStatus
    is_plan_mode: bool = False
    plan_file_path: str | None = None


@dataclass(slots=True)
class Task:
    """One queued unit of agent work with its iteration history."""

    task_id: str
    project_id: str
    prompt: str
    status: TaskStatus
    queue_position: int
    created_at: datetime
    agent_id: str | None = None
    model: str | None = None
    thinking_mode: bool | None = None
    context_files: list[str] = field(default_factory=list)
    source: str = "manual"
    source_ref: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    runtime_ms: int = 0
    running_session_started_at: datetime | None = None
    exit_code: int | None = None
    error_message: str | None = None
    current_iteration: int = 1
    iterations: list[Iteration] = field(default_factory=list)
    session_id: str | None = None
    resume_session: bool = False
    is_plan_mode: bool = False
    plan_file_path: str | None = None
    needs_continuation: bool = False
    continuation_reason: ContinuationReason | None = None
    continuation_details: str | None = None
    suggested_next_steps: list[str] = field(default_factory=list)
    usage: UsageSummary = field(default_factory=UsageSummary)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a queued task."""

    project_id: str
    prompt: str
    task_id: str | None = None
    agent_id: str | None = None
    model: str | None = None
    thinking_mode: bool | None = None
    context_files: tuple[str, ...] = ()
    source: str = "manual"
    source_ref: str | None = None
    status: TaskStatus = TaskStatus.QUEUED


@dataclass(slots=True)
class TaskUpdate:
    """Editable task attributes; ``None`` leaves a field untouched."""

    prompt: str | None = None
    agent_id: str | None = None
    model: str | None = None
    thinking_mode: bool | None = None
    context_files: tuple[str, ...] | None = None


@dataclass(slots=True)
class Project:
    """Project registry entry consumed when building agent prompts."""

    project_id: str
    name: str
    path: str


@dataclass(slots=True)
class AgentOutputEvent:
    """One normalized event parsed from agent output."""

    type: AgentEventType
    message: str
    timestamp: datetime
    reset_at: datetime | None = None
    session_id: str | None = None
    stream: str = "stdout"
    auth_failure: bool = False
    plan_mode: bool = False
    plan_file_path: str | None = None
    tool_name: str | None = None
    usage: UsageSummary | None = None
    payload: dict[str, Any] | None = None

    @property
    def is_limit(self) -> bool:
        return self.type in {AgentEventType.RATE_LIMIT, AgentEventType.USAGE_LIMIT}


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: Task
    events: list[TaskEventView]


@dataclass(slots=True)
class RunningTaskInfo:
    """Snapshot of one supervised attempt."""

    task_id: str
    project_id: str
    agent_id: str
    pid: int | None
    state: str
    started_at: datetime
    elapsed_ms: int
    output_lines: int
    error: str | None = None
