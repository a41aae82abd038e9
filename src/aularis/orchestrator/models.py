"""Domain records for the batch pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ContentKind(str, Enum):
    ASSIGNMENT = "assignment"
    DISCUSSION = "discussion"
    QUIZ = "quiz"
    OTHER = "other"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    QUEUE_SCAN = "queue_scan"


ALL_TENANTS = "ALL"

WorkItemKey = Tuple[str, str, ContentKind]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialise an aware datetime in a fixed-width, sortable UTC form."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class Tenant:
    """An isolated external classroom instance."""

    id: str
    base_url: str
    name: Optional[str] = None


@dataclass(slots=True)
class WorkItem:
    """A content unit of one tenant and one course."""

    tenant_id: str
    course_id: str
    activity_id: str
    kind: ContentKind
    name: str = ""
    visible: bool = True
    open_date: Optional[datetime] = None
    close_date: Optional[datetime] = None
    needs_analysis: bool = False
    analysis_count: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    last_synced_at: Optional[datetime] = None

    @property
    def key(self) -> WorkItemKey:
        return (self.tenant_id, self.activity_id, self.kind)

    def is_in_window(self, now: datetime) -> bool:
        if not self.visible:
            return False
        if self.open_date is not None and now < self.open_date:
            return False
        if self.close_date is not None and now >= self.close_date:
            return False
        return True

    def to_payload(self) -> Dict[str, Any]:
        """Snapshot stored on the queue entry and handed to the executor."""
        return {
            "tenant_id": self.tenant_id,
            "course_id": self.course_id,
            "activity_id": self.activity_id,
            "kind": self.kind.value,
            "name": self.name,
            "visible": self.visible,
            "open_date": to_iso(self.open_date),
            "close_date": to_iso(self.close_date),
            "payload": self.payload,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "WorkItem":
        return cls(
            tenant_id=data["tenant_id"],
            course_id=data.get("course_id", ""),
            activity_id=data["activity_id"],
            kind=ContentKind(data["kind"]),
            name=data.get("name", ""),
            visible=bool(data.get("visible", True)),
            open_date=from_iso(data.get("open_date")),
            close_date=from_iso(data.get("close_date")),
            payload=data.get("payload") or {},
        )


@dataclass(slots=True)
class QueueEntry:
    """Durable analysis lifecycle record of one work item."""

    id: int
    tenant_id: str
    activity_id: str
    kind: ContentKind
    status: QueueStatus
    attempts: int
    max_attempts: int
    payload: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    course_id: Optional[str] = None
    last_error: Optional[str] = None
    requested_by: Optional[str] = None
    result: Optional[Any] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_eligible_at: Optional[datetime] = None

    @property
    def key(self) -> WorkItemKey:
        return (self.tenant_id, self.activity_id, self.kind)


@dataclass(slots=True)
class EnqueueResult:
    added: int = 0
    existing: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class QueueCounts:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    @property
    def in_progress(self) -> bool:
        return self.pending + self.processing > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
            "in_progress": self.in_progress,
        }


BATCH_COUNTERS = (
    "marked",
    "tenants_total",
    "tenants_synced",
    "courses_synced",
    "items_synced",
    "enqueued",
    "already_queued",
    "enqueue_errors",
    "analyses_completed",
    "analyses_failed",
    "cleaned",
)


@dataclass(slots=True)
class BatchJob:
    """Persisted record of one orchestrator run."""

    job_id: str
    trigger: TriggerType
    scope: str
    status: BatchStatus
    started_at: datetime
    counters: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(BATCH_COUNTERS, 0))
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    errors: List[str] = field(default_factory=list)
    fatal_error: Optional[str] = None

    def increment(self, counter: str, amount: int = 1) -> None:
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "trigger": self.trigger.value,
            "scope": self.scope,
            "status": self.status.value,
            "counters": dict(self.counters),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "errors": list(self.errors),
            "fatal_error": self.fatal_error,
        }
