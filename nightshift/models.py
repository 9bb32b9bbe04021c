"""Core data model: tasks, agent results and completion records."""

import json
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

TaskOrigin = Literal["one-off", "recurring"]
TaskStatus = Literal["pending", "running", "completed", "failed", "timed-out"]
TaskKind = Literal["agent", "code-agent"]

TERMINAL_STATUSES = ("completed", "failed", "timed-out")

# pending -> running -> terminal, never backwards
_STATUS_RANK = {
    "pending": 0,
    "running": 1,
    "completed": 2,
    "failed": 2,
    "timed-out": 2,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_task_id() -> str:
    return f"ns-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class Task:
    """A unit of work: one prompt run through the agent, or one code-agent run.

    Instances are immutable; status changes produce a new Task via
    with_status() so the id can never change and status never regresses.
    """

    id: str
    name: str
    origin: TaskOrigin
    prompt: str
    timeout: str
    status: TaskStatus = "pending"
    created_at: str = field(default_factory=lambda: isoformat(utc_now()))
    started_at: str | None = None
    completed_at: str | None = None
    max_budget_usd: float | None = None
    model: str | None = None
    allowed_tools: list[str] | None = None
    mcp_config: str | None = None
    output: str | None = None
    recurring_name: str | None = None
    category: str | None = None
    kind: TaskKind = "agent"
    notify: bool = True

    def with_status(self, status: TaskStatus, at: datetime | None = None) -> "Task":
        """Return a copy moved to a later status.

        Raises:
            ValueError: If the transition would move the task backwards
        """
        if status not in _STATUS_RANK:
            raise ValueError(f"Unknown task status: {status}")
        if status == self.status:
            return self
        if _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
            raise ValueError(f"Task {self.id}: cannot move from {self.status} to {status}")

        stamp = isoformat(at or utc_now())
        if status == "running":
            return replace(self, status=status, started_at=stamp)
        return replace(self, status=status, completed_at=stamp)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create a Task from a queue file payload, ignoring unknown keys."""
        known = cls.__dataclass_fields__.keys()
        kwargs = {k: v for k, v in data.items() if k in known}
        if kwargs.get("allowed_tools") is not None:
            kwargs["allowed_tools"] = list(kwargs["allowed_tools"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class AgentExecutionResult:
    """Outcome of one agent invocation, as reported by ``claude -p``."""

    session_id: str = ""
    duration_ms: int = 0
    total_cost_usd: float = 0.0
    result: str = ""
    is_error: bool = False
    num_turns: int = 0
    timed_out: bool = False

    @classmethod
    def from_claude_json(cls, stdout: str) -> "AgentExecutionResult":
        """Build a result from ``--output-format json`` stdout.

        Malformed or non-object output is kept as the result text with zero
        cost and duration rather than raising.
        """
        try:
            raw = json.loads(stdout)
        except (json.JSONDecodeError, TypeError):
            raw = None
        if not isinstance(raw, dict):
            return cls(result=stdout.strip())

        return cls(
            session_id=str(raw.get("session_id") or ""),
            duration_ms=int(raw.get("duration_ms") or 0),
            total_cost_usd=float(raw.get("total_cost_usd") or 0.0),
            result=str(raw.get("result") or ""),
            is_error=bool(raw.get("is_error", False)),
            num_turns=int(raw.get("num_turns") or 0),
        )

    @property
    def status(self) -> TaskStatus:
        """Terminal task status this result maps to."""
        if self.timed_out:
            return "timed-out"
        if self.is_error:
            return "failed"
        return "completed"

    @classmethod
    def failure(cls, message: str, duration_ms: int = 0, timed_out: bool = False) -> "AgentExecutionResult":
        return cls(
            duration_ms=duration_ms,
            result=message,
            is_error=True,
            timed_out=timed_out,
        )


@dataclass(frozen=True)
class TaskResult:
    """Completion record buffered by the pool until collected."""

    task: Task
    result: AgentExecutionResult
    started_at: datetime
    completed_at: datetime

    @property
    def terminal_status(self) -> TaskStatus:
        return self.result.status

    @property
    def duration_seconds(self) -> int:
        return round((self.completed_at - self.started_at).total_seconds())
