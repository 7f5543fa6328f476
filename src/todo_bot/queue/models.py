"""Domain models for message batching and delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class BatchState(str, Enum):
    """Durable batch lifecycle states."""

    OPEN = "open"
    CLOSED = "closed"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


class CloseReason(str, Enum):
    """Why an OPEN batch stopped accepting messages."""

    IDLE_TIMEOUT = "idle_timeout"
    SIZE_LIMIT = "size_limit"
    FLUSH = "flush"
    SHUTDOWN = "shutdown"
    RECOVERY = "recovery"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    COLLABORATOR_TRANSIENT = "collaborator_transient"
    COLLABORATOR_NON_RETRYABLE = "collaborator_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    OUTPUT_INVALID = "output_invalid"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {FailureClass.TIMEOUT, FailureClass.COLLABORATOR_TRANSIENT},
)

PENDING_STATES = (
    BatchState.OPEN,
    BatchState.CLOSED,
    BatchState.PROCESSING,
    BatchState.FAILED,
)


@dataclass(slots=True)
class MessageCreate:
    """Inbound chat message before it is persisted."""

    message_id: str
    conversation_id: str
    text: str
    received_at: datetime


@dataclass(slots=True)
class MessageView:
    """Persisted message."""

    message_id: str
    conversation_id: str
    batch_id: str
    position: int
    text: str
    received_at: datetime
    created_at: datetime


@dataclass(slots=True)
class BatchView:
    """Readable batch view for the manager, workers and CLI."""

    batch_id: str
    conversation_id: str
    message_ids: tuple[str, ...]
    state: BatchState
    attempt_count: int
    next_attempt_at: datetime
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None
    close_reason: CloseReason | None = None
    worker_id: str | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    delivered_at: datetime | None = None
    delivered_item_count: int | None = None

    @property
    def message_count(self) -> int:
        return len(self.message_ids)


@dataclass(slots=True)
class BatchEventView:
    """Batch event entry for audit trail."""

    event_id: int
    batch_id: str
    event_type: str
    state_from: BatchState | None
    state_to: BatchState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchDetails:
    """Batch with its messages and event stream."""

    batch: BatchView
    messages: list[MessageView]
    events: list[BatchEventView]


@dataclass(slots=True, frozen=True)
class TaskItem:
    """One structured TODO extracted from chat text."""

    title: str
    due_date: date | None = None
    notes: str | None = None

    def to_payload(self) -> dict[str, str | None]:
        return {
            "title": self.title,
            "due_date": self.due_date.isoformat() if self.due_date is not None else None,
            "notes": self.notes,
        }


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    error_summary: str

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self, *, stage: str) -> dict[str, object]:
        return {
            "stage": stage,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(slots=True)
class DeliveryResult:
    """Outcome of one extraction+delivery attempt for a batch."""

    batch_id: str
    items: list[TaskItem] = field(default_factory=list)
    error: FailureClassification | None = None
    stage: str | None = None
    delivery_skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class AddResult:
    """Result of routing one message into its conversation's OPEN batch."""

    batch_id: str
    conversation_id: str
    message_id: str
    position: int
    created: bool
    flushed: bool


@dataclass(slots=True)
class RecoverySummary:
    """Counters reported by startup recovery."""

    closed_open: int = 0
    requeued_processing: int = 0
    pending_closed: int = 0
    dead_letters: int = 0
