"""Data models for executor module."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from ..config import ProcessingOptions
from .utils import generate_activity_id, utc_now_iso

ActivityType = Literal["tool", "message", "result", "error", "system", "push", "ci"]
ActivityStatus = Literal["pending", "running", "success", "error"]
SessionStatus = Literal["pending", "processing", "completed", "failed"]
StreamEventType = Literal["activity", "metrics", "complete", "error"]

ACTIVITY_TYPES = ("tool", "message", "result", "error", "system", "push", "ci")
ACTIVITY_STATUSES = ("pending", "running", "success", "error")
STREAM_EVENT_TYPES = ("activity", "metrics", "complete", "error")
TERMINAL_STATUSES = ("completed", "failed")

DEFAULT_MAX_ACTIVITIES = 500


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Activity:
    """One displayable unit of agent behavior."""
    id: str
    timestamp: str
    type: str
    tool: Optional[str] = None
    details: Optional[str] = None
    status: Optional[str] = None
    duration: Optional[float] = None

    @classmethod
    def create(
        cls,
        type: str,
        details: Optional[str] = None,
        status: Optional[str] = None,
        tool: Optional[str] = None,
        duration: Optional[float] = None,
        id: Optional[str] = None,
    ) -> "Activity":
        """Build an activity stamped with a fresh id and the current time."""
        return cls(
            id=id or generate_activity_id(),
            timestamp=utc_now_iso(),
            type=type,
            tool=tool,
            details=details,
            status=status,
            duration=duration,
        )

    @classmethod
    def from_dict(cls, data: dict) -> Optional["Activity"]:
        """Parse the wire shape; returns None when ``type`` is not a known activity type."""
        activity_type = data.get("type")
        if activity_type not in ACTIVITY_TYPES:
            return None
        status = data.get("status")
        duration = data.get("duration")
        return cls(
            id=str(data.get("id") or generate_activity_id()),
            timestamp=str(data.get("timestamp") or utc_now_iso()),
            type=activity_type,
            tool=data.get("tool"),
            details=data.get("details"),
            status=status if status in ACTIVITY_STATUSES else None,
            duration=_as_float(duration) if duration is not None else None,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
        }
        if self.tool is not None:
            data["tool"] = self.tool
        if self.details is not None:
            data["details"] = self.details
        if self.status is not None:
            data["status"] = self.status
        if self.duration is not None:
            data["duration"] = self.duration
        return data


@dataclass(frozen=True)
class ExecutionMetrics:
    """Cost/time snapshot for the latest iteration and the running totals."""
    iteration: int
    max_iterations: int
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    total_cost_usd: float = 0.0
    total_duration_ms: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionMetrics":
        return cls(
            iteration=_as_int(data.get("iteration")),
            max_iterations=_as_int(data.get("maxIterations"), 10),
            cost_usd=_as_float(data.get("costUsd")),
            duration_ms=_as_float(data.get("durationMs")),
            total_cost_usd=_as_float(data.get("totalCostUsd")),
            total_duration_ms=_as_float(data.get("totalDurationMs")),
        )

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "costUsd": self.cost_usd,
            "durationMs": self.duration_ms,
            "totalCostUsd": self.total_cost_usd,
            "totalDurationMs": self.total_duration_ms,
        }


@dataclass(frozen=True)
class ParseState:
    """Parser state threaded explicitly between ``parse_line`` calls."""
    current_tool: Optional[str] = None
    current_tool_input: str = ""
    current_tool_activity_id: Optional[str] = None
    iteration: int = 0
    max_iterations: int = 10
    total_cost_usd: float = 0.0
    total_duration_ms: float = 0.0


Payload = Union[Activity, ExecutionMetrics, dict]


@dataclass(frozen=True)
class StreamEvent:
    """Event delivered to subscribers of one issue."""
    type: str
    issue_id: str
    payload: Payload = field(default_factory=dict)

    @classmethod
    def activity(cls, issue_id: str, activity: Activity) -> "StreamEvent":
        return cls(type="activity", issue_id=issue_id, payload=activity)

    @classmethod
    def metrics(cls, issue_id: str, metrics: ExecutionMetrics) -> "StreamEvent":
        return cls(type="metrics", issue_id=issue_id, payload=metrics)

    @classmethod
    def complete(cls, issue_id: str, message: str) -> "StreamEvent":
        return cls(type="complete", issue_id=issue_id, payload={"message": message})

    @classmethod
    def error(cls, issue_id: str, error: str) -> "StreamEvent":
        return cls(type="error", issue_id=issue_id, payload={"error": error})

    @classmethod
    def from_dict(cls, data: Any) -> Optional["StreamEvent"]:
        """Parse ``{type, issueId, payload}``; None for anything outside the closed set."""
        if not isinstance(data, dict):
            return None
        event_type = data.get("type")
        issue_id = data.get("issueId")
        payload = data.get("payload")
        if event_type not in STREAM_EVENT_TYPES or not isinstance(issue_id, str) or not issue_id:
            return None
        if not isinstance(payload, dict):
            payload = {}

        if event_type == "activity":
            activity = Activity.from_dict(payload)
            if activity is None:
                return None
            return cls.activity(issue_id, activity)
        if event_type == "metrics":
            return cls.metrics(issue_id, ExecutionMetrics.from_dict(payload))
        if event_type == "complete":
            return cls.complete(issue_id, str(payload.get("message") or "Processing completed"))
        return cls.error(issue_id, str(payload.get("error") or "Processing failed"))

    def to_dict(self) -> dict:
        payload = self.payload
        if isinstance(payload, (Activity, ExecutionMetrics)):
            payload = payload.to_dict()
        return {"type": self.type, "issueId": self.issue_id, "payload": payload}


@dataclass
class ProcessingSession:
    """Live processing state for one issue."""
    issue_id: str
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    max_activities: int = DEFAULT_MAX_ACTIVITIES
    activities: deque = field(init=False)
    metrics: Optional[ExecutionMetrics] = None
    status: str = "pending"
    error: Optional[str] = None
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    def __post_init__(self) -> None:
        self.activities = deque(maxlen=self.max_activities)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> dict:
        """JSON-safe view for poll-style consumers."""
        return {
            "issueId": self.issue_id,
            "options": self.options.model_dump(by_alias=True),
            "activities": [a.to_dict() for a in self.activities],
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "status": self.status,
            "error": self.error,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }
