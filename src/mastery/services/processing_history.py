"""Service for the signal processing audit log."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy import case, desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mastery.db.models import AssessmentTier, ProcessingWindowType, SignalProcessingHistory
from mastery.db.types import utc_now
from mastery.errors import DuplicateBatchError

# Fixed namespace so batch ids are reproducible across processes and deploys
BATCH_NAMESPACE = uuid.UUID("6f1c3a52-93a4-4d7e-9a55-1f0b2f8e6d10")


@dataclass
class ProcessingStatistics:
    total_cycles: int = 0
    total_signals_processed: int = 0
    total_signals_skipped: int = 0
    total_recommendations_generated: int = 0
    cycles_with_errors: int = 0
    average_duration_ms: Optional[float] = None
    tier_distribution: Dict[str, int] = field(default_factory=dict)


def batch_id_for(user_id: str, window_type: ProcessingWindowType, signal_ids: Iterable[int]) -> uuid.UUID:
    """Idempotency key for processing this exact set of signals.

    A retry that picks up the same signals gets the same id.
    """
    ids = ",".join(str(sid) for sid in sorted(signal_ids))
    return uuid.uuid5(BATCH_NAMESPACE, f"{user_id}|{window_type.value}|{ids}")


class ProcessingHistoryService:
    """Records one row per processing cycle, keyed by a unique batch id."""

    @staticmethod
    def get_by_batch_id(session: Session, batch_id: uuid.UUID) -> Optional[SignalProcessingHistory]:
        stmt = select(SignalProcessingHistory).where(SignalProcessingHistory.batch_id == batch_id)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def exists_by_batch_id(session: Session, batch_id: uuid.UUID) -> bool:
        stmt = select(SignalProcessingHistory.id).where(SignalProcessingHistory.batch_id == batch_id)
        return session.execute(stmt).first() is not None

    @staticmethod
    def start_cycle(
        session: Session,
        *,
        user_id: str,
        window_type: ProcessingWindowType,
        batch_id: uuid.UUID,
        signal_ids: Sequence[int],
        started_at: Optional[datetime] = None,
    ) -> SignalProcessingHistory:
        """Open a history record. Raises DuplicateBatchError if the batch id is taken."""
        if ProcessingHistoryService.exists_by_batch_id(session, batch_id):
            raise DuplicateBatchError(batch_id)

        history = SignalProcessingHistory(
            user_id=user_id,
            window_type=window_type,
            batch_id=batch_id,
            started_at=started_at or utc_now(),
            signals_received=len(signal_ids),
            signal_ids=list(signal_ids),
            final_tier=AssessmentTier.SKIPPED,
        )
        session.add(history)
        try:
            session.commit()
        except IntegrityError as exc:
            # Unique index on batch_id caught a concurrent writer
            session.rollback()
            raise DuplicateBatchError(batch_id) from exc

        session.refresh(history)
        logger.info(f"[HISTORY] Started batch {batch_id} for {user_id} ({window_type.value}, {len(signal_ids)} signals)")
        return history

    @staticmethod
    def complete_cycle(
        session: Session,
        history: SignalProcessingHistory,
        *,
        signals_processed: int,
        signals_skipped: int,
        completed_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> SignalProcessingHistory:
        """Record the outcome and seal the record."""
        history.record_outcome(signals_processed, signals_skipped)
        if error:
            history.record_error(error)
        history.complete(completed_at or utc_now())
        session.commit()
        session.refresh(history)

        logger.info(
            f"[HISTORY] Completed batch {history.batch_id}: {history.final_tier.value}, "
            f"{signals_processed} processed, {signals_skipped} skipped in {history.duration_ms}ms"
        )
        return history

    @staticmethod
    def record_failure(session: Session, history: SignalProcessingHistory, error: str) -> SignalProcessingHistory:
        """Note a failed attempt while leaving the record open for a retry."""
        history.record_error(error)
        session.commit()
        session.refresh(history)
        logger.warning(f"[HISTORY] Batch {history.batch_id} attempt failed: {history.error_message}")
        return history

    @staticmethod
    def get_last_for_user(
        session: Session,
        user_id: str,
        window_type: Optional[ProcessingWindowType] = None,
    ) -> Optional[SignalProcessingHistory]:
        stmt = select(SignalProcessingHistory).where(
            SignalProcessingHistory.user_id == user_id,
            SignalProcessingHistory.completed_at.is_not(None),
        )
        if window_type is not None:
            stmt = stmt.where(SignalProcessingHistory.window_type == window_type)
        stmt = stmt.order_by(desc(SignalProcessingHistory.started_at)).limit(1)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def get_recent(session: Session, user_id: str, limit: int = 20) -> List[SignalProcessingHistory]:
        stmt = (
            select(SignalProcessingHistory)
            .where(SignalProcessingHistory.user_id == user_id)
            .order_by(desc(SignalProcessingHistory.started_at))
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def get_for_user_in_range(
        session: Session,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[SignalProcessingHistory]:
        stmt = (
            select(SignalProcessingHistory)
            .where(
                SignalProcessingHistory.user_id == user_id,
                SignalProcessingHistory.started_at >= start,
                SignalProcessingHistory.started_at < end,
            )
            .order_by(SignalProcessingHistory.started_at)
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def get_statistics(
        session: Session,
        *,
        since: datetime,
        window_type: Optional[ProcessingWindowType] = None,
        user_id: Optional[str] = None,
    ) -> ProcessingStatistics:
        """Aggregate completed cycles started at or after ``since``."""
        filters = [
            SignalProcessingHistory.started_at >= since,
            SignalProcessingHistory.completed_at.is_not(None),
        ]
        if window_type is not None:
            filters.append(SignalProcessingHistory.window_type == window_type)
        if user_id is not None:
            filters.append(SignalProcessingHistory.user_id == user_id)

        totals = session.execute(
            select(
                func.count(SignalProcessingHistory.id),
                func.coalesce(func.sum(SignalProcessingHistory.signals_processed), 0),
                func.coalesce(func.sum(SignalProcessingHistory.signals_skipped), 0),
                func.coalesce(func.sum(SignalProcessingHistory.recommendations_generated), 0),
                func.coalesce(
                    func.sum(case((SignalProcessingHistory.error_message.is_not(None), 1), else_=0)), 0
                ),
                func.avg(SignalProcessingHistory.duration_ms),
            ).where(*filters)
        ).one()

        tiers = session.execute(
            select(SignalProcessingHistory.final_tier, func.count())
            .where(*filters)
            .group_by(SignalProcessingHistory.final_tier)
        ).all()

        return ProcessingStatistics(
            total_cycles=totals[0],
            total_signals_processed=int(totals[1]),
            total_signals_skipped=int(totals[2]),
            total_recommendations_generated=int(totals[3]),
            cycles_with_errors=int(totals[4]),
            average_duration_ms=float(totals[5]) if totals[5] is not None else None,
            tier_distribution={AssessmentTier(tier).value: count for tier, count in tiers},
        )
