"""ORM models for the signal queue, processing history and embedding outbox."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
    case,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mastery.db.base import Base
from mastery.db.types import UTCDateTime, utc_now
from mastery.errors import HistoryCompletedError

# Utility for cross-dialect JSON support (JSONB on Postgres, JSON on SQLite)
JSON_VARIANT = JSON().with_variant(JSONB, "postgresql")

# BigInteger ids only autoincrement on SQLite when declared as INTEGER
BIGINT_ID = BigInteger().with_variant(Integer, "sqlite")

MAX_EVENT_DATA_CHARS = 4000
MAX_SIGNAL_ERROR_CHARS = 500
MAX_SKIP_REASON_CHARS = 500
MAX_HISTORY_ERROR_CHARS = 1000
MAX_OUTBOX_ERROR_CHARS = 2000

# Rows that still count as "in the queue" for deduplication
UNRESOLVED_STATUSES_SQL = "status IN ('Pending', 'Processing')"


class SignalPriority(str, enum.Enum):
    URGENT = "Urgent"
    WINDOW_ALIGNED = "WindowAligned"
    STANDARD = "Standard"
    LOW = "Low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    SignalPriority.URGENT: 0,
    SignalPriority.WINDOW_ALIGNED: 1,
    SignalPriority.STANDARD: 2,
    SignalPriority.LOW: 3,
}


class ProcessingWindowType(str, enum.Enum):
    IMMEDIATE = "Immediate"
    MORNING_WINDOW = "MorningWindow"
    EVENING_WINDOW = "EveningWindow"
    WEEKLY_REVIEW = "WeeklyReview"
    BATCH_WINDOW = "BatchWindow"


class WorkItemStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    PROCESSED = "Processed"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    EXPIRED = "Expired"

    @property
    def is_terminal(self) -> bool:
        return self not in (WorkItemStatus.PENDING, WorkItemStatus.PROCESSING)


class AssessmentTier(str, enum.Enum):
    TIER0_DETERMINISTIC = "Tier0_Deterministic"
    TIER1_QUICK_ASSESSMENT = "Tier1_QuickAssessment"
    TIER2_FULL_PIPELINE = "Tier2_FullPipeline"
    SKIPPED = "Skipped"


class OutboxOperation(str, enum.Enum):
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"


def _string_enum(enum_cls: type[enum.Enum], length: int = 30) -> Enum:
    # Stored as plain strings so new members never need a schema change
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None or len(value) <= limit:
        return value
    return value[:limit]


DEFAULT_TTL_BY_PRIORITY = {
    SignalPriority.URGENT: timedelta(hours=1),
    SignalPriority.WINDOW_ALIGNED: timedelta(hours=24),
    SignalPriority.STANDARD: timedelta(hours=48),
    SignalPriority.LOW: timedelta(hours=72),
}


class SignalEntry(Base):
    """A domain event waiting to be assessed by the recommendation pipeline."""

    __tablename__ = "signal_entries"
    __table_args__ = (
        Index("idx_signal_entries_priority_status_created", "priority", "status", "created_at"),
        Index("idx_signal_entries_window_status_start", "window_type", "status", "scheduled_window_start"),
        Index("idx_signal_entries_user_status_created", "user_id", "status", "created_at"),
        Index("idx_signal_entries_status_leased_until", "status", "leased_until"),
        Index("idx_signal_entries_status_expires", "status", "expires_at"),
        Index(
            "ux_signal_entries_unresolved_target",
            "user_id",
            "event_type",
            "target_entity_type",
            "target_entity_id",
            unique=True,
            postgresql_where=text(UNRESOLVED_STATUSES_SQL),
            sqlite_where=text(UNRESOLVED_STATUSES_SQL),
        ),
    )

    id: Mapped[int] = mapped_column(BIGINT_ID, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    priority: Mapped[SignalPriority] = mapped_column(_string_enum(SignalPriority, 20), nullable=False)
    window_type: Mapped[ProcessingWindowType] = mapped_column(_string_enum(ProcessingWindowType, 20), nullable=False)
    scheduled_window_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    target_entity_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    target_entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    status: Mapped[WorkItemStatus] = mapped_column(
        _string_enum(WorkItemStatus, 20), default=WorkItemStatus.PENDING, nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    leased_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    lease_holder: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(String(MAX_SIGNAL_ERROR_CHARS), nullable=True)
    processing_tier: Mapped[Optional[AssessmentTier]] = mapped_column(_string_enum(AssessmentTier), nullable=True)
    skip_reason: Mapped[Optional[str]] = mapped_column(String(MAX_SKIP_REASON_CHARS), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SignalEntry id={self.id} user={self.user_id} event={self.event_type} "
            f"priority={self.priority} status={self.status}>"
        )

    @property
    def dedup_key(self) -> tuple:
        return (self.user_id, self.event_type, self.target_entity_type, self.target_entity_id)

    def is_lease_expired(self, now: datetime) -> bool:
        return (
            self.status == WorkItemStatus.PROCESSING
            and self.leased_until is not None
            and self.leased_until < now
        )

    def is_ready(self, now: datetime) -> bool:
        """Would a claim at ``now`` be allowed to pick this row up."""
        if self.status != WorkItemStatus.PENDING or self.expires_at <= now:
            return False
        return (
            self.window_type == ProcessingWindowType.IMMEDIATE
            or self.scheduled_window_start is None
            or self.scheduled_window_start <= now
        )

    def _clear_lease(self) -> None:
        self.leased_until = None
        self.lease_holder = None

    def release_lease(self) -> None:
        """Hand the row back to the queue without spending a retry."""
        self.status = WorkItemStatus.PENDING
        self._clear_lease()

    def record_failure(self, error: str, max_retries: int) -> WorkItemStatus:
        self.retry_count = (self.retry_count or 0) + 1
        self.last_error = truncate(error, MAX_SIGNAL_ERROR_CHARS)
        self._clear_lease()
        if self.retry_count >= max_retries:
            self.status = WorkItemStatus.FAILED
        else:
            self.status = WorkItemStatus.PENDING
        return self.status


def priority_rank():
    """SQL expression ordering priorities from most to least urgent."""
    return case(
        *[(SignalEntry.priority == priority, rank) for priority, rank in _PRIORITY_RANKS.items()],
        else_=len(_PRIORITY_RANKS),
    )


class SignalProcessingHistory(Base):
    """Audit record for one processing cycle. Read-only once completed."""

    __tablename__ = "signal_processing_history"
    __table_args__ = (
        Index("ux_signal_processing_history_batch", "batch_id", unique=True),
        Index("idx_signal_processing_history_user_started", "user_id", "started_at"),
        Index("idx_signal_processing_history_window_started", "window_type", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False)
    window_type: Mapped[ProcessingWindowType] = mapped_column(_string_enum(ProcessingWindowType, 20), nullable=False)
    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    signals_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    signals_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    signals_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    signal_ids: Mapped[Optional[List[int]]] = mapped_column(JSON_VARIANT, nullable=True)

    final_tier: Mapped[AssessmentTier] = mapped_column(
        _string_enum(AssessmentTier), default=AssessmentTier.SKIPPED, nullable=False
    )
    tier0_rules_triggered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tier1_combined_score: Mapped[Optional[float]] = mapped_column(Numeric(5, 4, asdecimal=False), nullable=True)
    tier2_executed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    recommendations_generated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    recommendation_ids: Mapped[Optional[List[str]]] = mapped_column(JSON_VARIANT, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(MAX_HISTORY_ERROR_CHARS), nullable=True)
    state_delta_summary: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def _ensure_open(self) -> None:
        if self.is_completed:
            raise HistoryCompletedError(self.batch_id)

    def restart(self, now: datetime) -> None:
        """Reuse an unfinished record for a retry of the same batch."""
        self._ensure_open()
        self.started_at = now
        self.error_message = None
        self.final_tier = AssessmentTier.SKIPPED
        self.tier0_rules_triggered = 0
        self.tier1_combined_score = None
        self.tier2_executed = False
        self.recommendations_generated = 0
        self.recommendation_ids = None
        self.state_delta_summary = None

    def record_tier0_results(self, rules_triggered: int) -> None:
        self._ensure_open()
        self.tier0_rules_triggered = rules_triggered
        if rules_triggered > 0:
            self.final_tier = AssessmentTier.TIER0_DETERMINISTIC

    def record_tier1_results(self, combined_score: float, state_delta: Optional[dict] = None) -> None:
        self._ensure_open()
        self.tier1_combined_score = combined_score
        self.state_delta_summary = state_delta
        self.final_tier = AssessmentTier.TIER1_QUICK_ASSESSMENT

    def record_tier2_executed(self) -> None:
        self._ensure_open()
        self.tier2_executed = True
        self.final_tier = AssessmentTier.TIER2_FULL_PIPELINE

    def record_recommendations(self, recommendation_ids: List[Any]) -> None:
        self._ensure_open()
        self.recommendation_ids = [str(rid) for rid in recommendation_ids]
        self.recommendations_generated = len(recommendation_ids)

    def record_outcome(self, processed: int, skipped: int) -> None:
        self._ensure_open()
        self.signals_processed = processed
        self.signals_skipped = skipped

    def record_error(self, message: str) -> None:
        self._ensure_open()
        self.error_message = truncate(message, MAX_HISTORY_ERROR_CHARS)

    def complete(self, now: datetime) -> None:
        self._ensure_open()
        self.completed_at = now
        self.duration_ms = int((now - self.started_at).total_seconds() * 1000)


class OutboxEntry(Base):
    """Entity change waiting for embedding generation."""

    __tablename__ = "outbox_entries"
    __table_args__ = (
        Index("idx_outbox_entries_status_created", "status", "created_at"),
        Index("idx_outbox_entries_status_leased_until", "status", "leased_until"),
        Index("idx_outbox_entries_entity", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(BIGINT_ID, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    operation: Mapped[OutboxOperation] = mapped_column(_string_enum(OutboxOperation, 20), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    status: Mapped[WorkItemStatus] = mapped_column(
        _string_enum(WorkItemStatus, 20), default=WorkItemStatus.PENDING, nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    leased_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    lease_holder: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(String(MAX_OUTBOX_ERROR_CHARS), nullable=True)

    def record_failure(self, error: str, max_retries: int) -> WorkItemStatus:
        self.retry_count = (self.retry_count or 0) + 1
        self.last_error = truncate(error, MAX_OUTBOX_ERROR_CHARS)
        self.leased_until = None
        self.lease_holder = None
        self.status = WorkItemStatus.FAILED if self.retry_count >= max_retries else WorkItemStatus.PENDING
        return self.status
