"""Domain models for work items, their lifecycle and scraped output."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO8601 string (or pass through a datetime) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ItemStatus(str, Enum):
    """Lifecycle status of a work item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# completed -> processing only happens for a newer scheduling cycle (see QueueItemState.begin_attempt)
ALLOWED_TRANSITIONS = {
    ItemStatus.PENDING: {ItemStatus.PROCESSING},
    ItemStatus.PROCESSING: {ItemStatus.PROCESSING, ItemStatus.COMPLETED, ItemStatus.FAILED},
    ItemStatus.FAILED: {ItemStatus.PROCESSING, ItemStatus.FAILED},
    ItemStatus.COMPLETED: {ItemStatus.PROCESSING, ItemStatus.COMPLETED},
}


class InvalidTransition(Exception):
    """Raised when a work item state change would break the lifecycle ordering."""

    def __init__(self, key: Tuple[str, str, str, str], current: str, requested: str):
        self.key = key
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition for {':'.join(key)}: {current} -> {requested}")


def check_transition(previous: Optional["QueueItemState"], new: "QueueItemState") -> None:
    """Raise InvalidTransition unless `new` may replace `previous`."""
    if previous is None:
        if new.status != ItemStatus.PENDING:
            raise InvalidTransition(new.key, "<none>", new.status.value)
        return
    if new.status not in ALLOWED_TRANSITIONS[previous.status]:
        raise InvalidTransition(new.key, previous.status.value, new.status.value)
    if previous.terminal and new.status == ItemStatus.PROCESSING:
        raise InvalidTransition(new.key, "failed (terminal)", new.status.value)


@dataclass(frozen=True)
class WorkItem:
    """One schedulable unit of scraping work."""

    cell_id: str
    jurisdiction: str
    source: str
    category: str
    priority: int = 5
    scheduled_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.jurisdiction, self.cell_id, self.source, self.category)

    @property
    def label(self) -> str:
        return f"{self.source}:{self.jurisdiction}-{self.cell_id}/{self.category}"

    def to_message_body(self) -> Dict[str, Any]:
        return {
            "cell_id": self.cell_id,
            "jurisdiction": self.jurisdiction,
            "source": self.source,
            "category": self.category,
            "priority": self.priority,
            "scheduled_at": self.scheduled_at.isoformat(),
        }

    @classmethod
    def from_message_body(cls, body: Dict[str, Any]) -> "WorkItem":
        missing = [k for k in ("cell_id", "jurisdiction", "source", "category") if not body.get(k)]
        if missing:
            raise ValueError(f"Message body missing fields: {', '.join(missing)}")
        return cls(
            cell_id=str(body["cell_id"]),
            jurisdiction=str(body["jurisdiction"]),
            source=str(body["source"]),
            category=str(body["category"]),
            priority=int(body.get("priority", 5)),
            scheduled_at=parse_timestamp(body.get("scheduled_at")) or utcnow(),
        )


@dataclass(frozen=True)
class QueueItemState:
    """Persistent lifecycle record for a work item.

    `attempts` counts consecutive failed attempts and resets on success;
    `total_attempts` never resets. `terminal` marks a dead-lettered failure.
    """

    jurisdiction: str
    cell_id: str
    source: str
    category: str
    status: ItemStatus = ItemStatus.PENDING
    priority: int = 5
    attempts: int = 0
    total_attempts: int = 0
    terminal: bool = False
    last_error: Optional[str] = None
    last_result_count: Optional[int] = None
    last_duration_ms: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_attempted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.jurisdiction, self.cell_id, self.source, self.category)

    @classmethod
    def pending(cls, item: WorkItem, now: Optional[datetime] = None) -> "QueueItemState":
        now = now or utcnow()
        return cls(
            jurisdiction=item.jurisdiction,
            cell_id=item.cell_id,
            source=item.source,
            category=item.category,
            status=ItemStatus.PENDING,
            priority=item.priority,
            queued_at=now,
            updated_at=now,
        )

    def is_done_for(self, item: WorkItem) -> bool:
        """True when a delivery of `item` needs no further work."""
        if self.status == ItemStatus.FAILED and self.terminal:
            return True
        if self.status == ItemStatus.COMPLETED and self.completed_at:
            return self.completed_at >= item.scheduled_at
        return False

    def begin_attempt(self, now: Optional[datetime] = None) -> "QueueItemState":
        now = now or utcnow()
        new = replace(self, status=ItemStatus.PROCESSING, started_at=now, updated_at=now)
        check_transition(self, new)
        return new

    def complete(self, result_count: int, duration_ms: int, now: Optional[datetime] = None) -> "QueueItemState":
        now = now or utcnow()
        new = replace(
            self,
            status=ItemStatus.COMPLETED,
            attempts=0,
            total_attempts=self.total_attempts + 1,
            last_error=None,
            last_result_count=result_count,
            last_duration_ms=duration_ms,
            next_retry_at=None,
            completed_at=now,
            last_attempted_at=now,
            updated_at=now,
        )
        check_transition(self, new)
        return new

    def fail(
        self,
        error: str,
        duration_ms: int,
        next_retry_at: Optional[datetime] = None,
        terminal: bool = False,
        count_attempt: bool = True,
        now: Optional[datetime] = None,
    ) -> "QueueItemState":
        now = now or utcnow()
        increment = 1 if count_attempt else 0
        new = replace(
            self,
            status=ItemStatus.FAILED,
            attempts=self.attempts + increment,
            total_attempts=self.total_attempts + increment,
            terminal=terminal,
            last_error=error[:1000],
            last_result_count=0,
            last_duration_ms=duration_ms,
            next_retry_at=None if terminal else next_retry_at,
            last_attempted_at=now,
            updated_at=now,
        )
        check_transition(self, new)
        return new

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jurisdiction": self.jurisdiction,
            "cell_id": self.cell_id,
            "source": self.source,
            "category": self.category,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "total_attempts": self.total_attempts,
            "terminal": self.terminal,
            "last_error": self.last_error,
            "last_result_count": self.last_result_count,
            "last_duration_ms": self.last_duration_ms,
            "next_retry_at": _iso(self.next_retry_at),
            "queued_at": _iso(self.queued_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "last_attempted_at": _iso(self.last_attempted_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueItemState":
        return cls(
            jurisdiction=row["jurisdiction"],
            cell_id=row["cell_id"],
            source=row["source"],
            category=row["category"],
            status=ItemStatus(row["status"]),
            priority=row.get("priority", 5),
            attempts=row.get("attempts", 0),
            total_attempts=row.get("total_attempts", 0),
            terminal=bool(row.get("terminal", False)),
            last_error=row.get("last_error"),
            last_result_count=row.get("last_result_count"),
            last_duration_ms=row.get("last_duration_ms"),
            next_retry_at=parse_timestamp(row.get("next_retry_at")),
            queued_at=parse_timestamp(row.get("queued_at")),
            started_at=parse_timestamp(row.get("started_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
            last_attempted_at=parse_timestamp(row.get("last_attempted_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass
class RateLimitConfig:
    """Durable rate-limit settings and usage for one (source, scope) pair."""

    source: str
    scope: str
    requests_per_second: float = 1.0
    current_window_count: int = 0
    window_started_at: Optional[datetime] = None
    throttled: bool = False
    throttled_until: Optional[datetime] = None
    throttle_reason: Optional[str] = None
    last_request_at: Optional[datetime] = None
    last_request_duration_ms: Optional[int] = None
    total_requests: int = 0

    def throttle_remaining(self, now: Optional[datetime] = None) -> float:
        """Seconds left in an active throttle, 0 when not throttled."""
        if not self.throttled or not self.throttled_until:
            return 0.0
        now = now or utcnow()
        return max(0.0, (self.throttled_until - now).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "scope": self.scope,
            "requests_per_second": self.requests_per_second,
            "current_window_count": self.current_window_count,
            "window_started_at": _iso(self.window_started_at),
            "throttled": self.throttled,
            "throttled_until": _iso(self.throttled_until),
            "throttle_reason": self.throttle_reason,
            "last_request_at": _iso(self.last_request_at),
            "last_request_duration_ms": self.last_request_duration_ms,
            "total_requests": self.total_requests,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RateLimitConfig":
        return cls(
            source=row["source"],
            scope=row["scope"],
            requests_per_second=float(row["requests_per_second"]),
            current_window_count=row.get("current_window_count") or 0,
            window_started_at=parse_timestamp(row.get("window_started_at")),
            throttled=bool(row.get("throttled")),
            throttled_until=parse_timestamp(row.get("throttled_until")),
            throttle_reason=row.get("throttle_reason"),
            last_request_at=parse_timestamp(row.get("last_request_at")),
            last_request_duration_ms=row.get("last_request_duration_ms"),
            total_requests=row.get("total_requests") or 0,
        )


@dataclass
class ScrapedRecord:
    """A professional/license record returned by the collaborator."""

    source: str
    native_id: str
    name: Optional[str] = None
    status: Optional[str] = None
    company: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    jurisdiction: Optional[str] = None
    category: Optional[str] = None
    cell_id: Optional[str] = None
    source_label: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    scraped_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source, self.native_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "native_id": self.native_id,
            "name": self.name,
            "status": self.status,
            "company": self.company,
            "city": self.city,
            "phone": self.phone,
            "email": self.email,
            "jurisdiction": self.jurisdiction,
            "category": self.category,
            "cell_id": self.cell_id,
            "source_label": self.source_label,
            "scraped_at": _iso(self.scraped_at),
        }


@dataclass
class DeadLetterEntry:
    """A work item that exhausted its retries, kept for manual triage."""

    message_id: str
    message_body: Dict[str, Any]
    jurisdiction: str
    cell_id: str
    source: str
    category: str
    error_message: str
    error_code: Optional[str] = None
    retry_count: int = 0
    worker_version: Optional[str] = None
    failed_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    id: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.jurisdiction, self.cell_id, self.source, self.category)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "message_body": self.message_body,
            "jurisdiction": self.jurisdiction,
            "cell_id": self.cell_id,
            "source": self.source,
            "category": self.category,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "worker_version": self.worker_version,
            "failed_at": _iso(self.failed_at),
            "resolved": self.resolved,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeadLetterEntry":
        return cls(
            id=row.get("id"),
            message_id=row["message_id"],
            message_body=row.get("message_body") or {},
            jurisdiction=row["jurisdiction"],
            cell_id=row["cell_id"],
            source=row["source"],
            category=row["category"],
            error_message=row.get("error_message") or "",
            error_code=row.get("error_code"),
            retry_count=row.get("retry_count") or 0,
            worker_version=row.get("worker_version"),
            failed_at=parse_timestamp(row.get("failed_at")) or utcnow(),
            resolved=bool(row.get("resolved")),
            resolved_at=parse_timestamp(row.get("resolved_at")),
            resolved_by=row.get("resolved_by"),
            resolution_notes=row.get("resolution_notes"),
        )


@dataclass
class ProcessingLogEntry:
    """Audit row written for every processed delivery."""

    message_id: str
    jurisdiction: str
    cell_id: str
    source: str
    category: str
    outcome: str
    attempt_number: int
    result_count: int = 0
    stored_count: int = 0
    duration_ms: int = 0
    error_message: Optional[str] = None
    worker_version: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def for_item(cls, item: WorkItem, message_id: str, outcome: str, attempt_number: int, **kwargs) -> "ProcessingLogEntry":
        return cls(
            message_id=message_id,
            jurisdiction=item.jurisdiction,
            cell_id=item.cell_id,
            source=item.source,
            category=item.category,
            outcome=outcome,
            attempt_number=attempt_number,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "jurisdiction": self.jurisdiction,
            "cell_id": self.cell_id,
            "source": self.source,
            "category": self.category,
            "outcome": self.outcome,
            "attempt_number": self.attempt_number,
            "result_count": self.result_count,
            "stored_count": self.stored_count,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "worker_version": self.worker_version,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ScrapeResult:
    """Successful collaborator response."""

    records: List[ScrapedRecord]
    source_label: str
