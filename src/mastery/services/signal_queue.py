"""Lease-based work queue over the signal_entries table."""
from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mastery.db.models import (
    DEFAULT_TTL_BY_PRIORITY,
    MAX_EVENT_DATA_CHARS,
    MAX_SKIP_REASON_CHARS,
    AssessmentTier,
    ProcessingWindowType,
    SignalEntry,
    SignalPriority,
    WorkItemStatus,
    priority_rank,
    truncate,
)
from mastery.db.types import utc_now
from mastery.errors import PayloadTooLargeError

UNRESOLVED = (WorkItemStatus.PENDING, WorkItemStatus.PROCESSING)
EXPIRED_REASON = "Expired before processing"
LEASE_EXPIRED_ERROR = "Lease expired before completion"


def _claim_order_key(signal: SignalEntry) -> tuple:
    return (signal.priority.rank, signal.created_at, signal.id)


class SignalQueueService:
    """Enqueue, claim and complete signals.

    Every state change is a single statement guarded on the row's current
    status, so concurrent workers never both own a row.
    """

    @staticmethod
    def _find_unresolved(session: Session, signal: SignalEntry) -> Optional[SignalEntry]:
        stmt = (
            select(SignalEntry)
            .where(
                SignalEntry.user_id == signal.user_id,
                SignalEntry.event_type == signal.event_type,
                SignalEntry.target_entity_type.is_not_distinct_from(signal.target_entity_type),
                SignalEntry.target_entity_id.is_not_distinct_from(signal.target_entity_id),
                SignalEntry.status.in_(UNRESOLVED),
            )
            .order_by(SignalEntry.id)
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _prepare(signal: SignalEntry, now: datetime) -> None:
        if signal.event_data is not None:
            size = len(json.dumps(signal.event_data, default=str))
            if size > MAX_EVENT_DATA_CHARS:
                raise PayloadTooLargeError(size, MAX_EVENT_DATA_CHARS)
        signal.status = WorkItemStatus.PENDING
        signal.retry_count = signal.retry_count or 0
        if signal.created_at is None:
            signal.created_at = now
        if signal.expires_at is None:
            signal.expires_at = signal.created_at + DEFAULT_TTL_BY_PRIORITY[signal.priority]

    @staticmethod
    def enqueue(session: Session, signal: SignalEntry, now: Optional[datetime] = None) -> SignalEntry:
        """Insert a pending signal, or return the unresolved one it duplicates."""
        now = now or utc_now()
        SignalQueueService._prepare(signal, now)

        existing = SignalQueueService._find_unresolved(session, signal)
        if existing:
            logger.debug(f"[QUEUE] Deduplicated {signal.event_type} for {signal.user_id} into signal {existing.id}")
            return existing

        session.add(signal)
        try:
            session.commit()
        except IntegrityError:
            # Lost the race against a concurrent enqueue of the same target
            session.rollback()
            existing = SignalQueueService._find_unresolved(session, signal)
            if existing is None:
                raise
            logger.debug(f"[QUEUE] Concurrent duplicate {signal.event_type} for {signal.user_id}, using {existing.id}")
            return existing

        session.refresh(signal)
        logger.info(f"[QUEUE] Enqueued signal {signal.id} {signal.event_type} ({signal.priority.value}) for {signal.user_id}")
        return signal

    @staticmethod
    def enqueue_batch(session: Session, signals: Sequence[SignalEntry], now: Optional[datetime] = None) -> Dict[str, int]:
        """Insert many signals in one transaction. Returns enqueued/deduplicated counts."""
        now = now or utc_now()
        stats = {"enqueued": 0, "deduplicated": 0}
        seen = set()
        fresh: List[SignalEntry] = []

        for signal in signals:
            SignalQueueService._prepare(signal, now)
            if signal.dedup_key in seen or SignalQueueService._find_unresolved(session, signal):
                stats["deduplicated"] += 1
                continue
            seen.add(signal.dedup_key)
            fresh.append(signal)

        if not fresh:
            return stats

        session.add_all(fresh)
        try:
            session.commit()
            stats["enqueued"] = len(fresh)
        except IntegrityError:
            session.rollback()
            logger.warning("[QUEUE] Batch enqueue hit a concurrent duplicate, retrying one by one")
            for signal in fresh:
                # Rolled back instances are transient again and can be re-added
                stored = SignalQueueService.enqueue(session, signal, now=now)
                if stored is signal:
                    stats["enqueued"] += 1
                else:
                    stats["deduplicated"] += 1

        logger.info(f"[QUEUE] Batch enqueue: {stats}")
        return stats

    @staticmethod
    def acquire_batch(
        session: Session,
        *,
        worker_id: str,
        lease_duration: timedelta,
        batch_size: int,
        max_priority: Optional[SignalPriority] = None,
        min_priority: Optional[SignalPriority] = None,
        window_type: Optional[ProcessingWindowType] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[SignalEntry]:
        """Claim up to ``batch_size`` ready signals for ``worker_id``.

        Selection and lease assignment happen in one
        ``UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING``
        statement. The outer ``status = 'Pending'`` guard keeps the claim safe on
        backends that ignore row locks. Database errors propagate.
        """
        if batch_size <= 0:
            return []
        now = now or utc_now()

        conditions = [
            SignalEntry.status == WorkItemStatus.PENDING,
            SignalEntry.expires_at > now,
            or_(
                SignalEntry.window_type == ProcessingWindowType.IMMEDIATE,
                SignalEntry.scheduled_window_start.is_(None),
                SignalEntry.scheduled_window_start <= now,
            ),
        ]
        if max_priority is not None or min_priority is not None:
            low = min_priority.rank if min_priority is not None else 0
            high = max_priority.rank if max_priority is not None else len(SignalPriority) - 1
            conditions.append(SignalEntry.priority.in_([p for p in SignalPriority if low <= p.rank <= high]))
        if window_type is not None:
            conditions.append(SignalEntry.window_type == window_type)
        if user_id is not None:
            conditions.append(SignalEntry.user_id == user_id)

        eligible = (
            select(SignalEntry.id)
            .where(*conditions)
            .order_by(priority_rank(), SignalEntry.created_at, SignalEntry.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(SignalEntry)
            .where(SignalEntry.id.in_(eligible), SignalEntry.status == WorkItemStatus.PENDING)
            .values(
                status=WorkItemStatus.PROCESSING,
                leased_until=now + lease_duration,
                lease_holder=worker_id,
            )
            .returning(SignalEntry)
            .execution_options(populate_existing=True)
        )

        claimed = list(session.scalars(stmt).all())
        # RETURNING gives no ordering guarantee
        claimed.sort(key=_claim_order_key)
        session.commit()

        if claimed:
            logger.info(f"[QUEUE] {worker_id} claimed {len(claimed)} signals until {now + lease_duration:%H:%M:%S}")
        return claimed

    @staticmethod
    def _complete(
        session: Session,
        signal_ids: Iterable[int],
        worker_id: Optional[str],
        values: dict,
        action: str,
    ) -> List[int]:
        ids = list(signal_ids)
        if not ids:
            return []

        stmt = update(SignalEntry).where(
            SignalEntry.id.in_(ids),
            SignalEntry.status == WorkItemStatus.PROCESSING,
        )
        if worker_id is not None:
            stmt = stmt.where(SignalEntry.lease_holder == worker_id)
        stmt = (
            stmt.values(leased_until=None, lease_holder=None, **values)
            .returning(SignalEntry.id)
            .execution_options(synchronize_session="fetch")
        )

        updated = list(session.scalars(stmt).all())
        session.commit()

        lost = sorted(set(ids) - set(updated))
        if lost:
            logger.warning(f"[QUEUE] Could not mark signals {lost} {action}: lease no longer held by {worker_id or 'any worker'}")
        return updated

    @staticmethod
    def mark_processed(
        session: Session,
        signal_ids: Iterable[int],
        tier: AssessmentTier,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """Finish leased signals successfully. Returns the ids actually updated."""
        return SignalQueueService._complete(
            session,
            signal_ids,
            worker_id,
            {
                "status": WorkItemStatus.PROCESSED,
                "processed_at": now or utc_now(),
                "processing_tier": tier,
            },
            "processed",
        )

    @staticmethod
    def mark_skipped(
        session: Session,
        signal_ids: Iterable[int],
        reason: str,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[int]:
        return SignalQueueService._complete(
            session,
            signal_ids,
            worker_id,
            {
                "status": WorkItemStatus.SKIPPED,
                "processed_at": now or utc_now(),
                "processing_tier": AssessmentTier.SKIPPED,
                "skip_reason": truncate(reason, MAX_SKIP_REASON_CHARS),
            },
            "skipped",
        )

    @staticmethod
    def release_lease(session: Session, signal_ids: Iterable[int], worker_id: Optional[str] = None) -> List[int]:
        """Return leased signals to the queue without counting an attempt."""
        return SignalQueueService._complete(
            session, signal_ids, worker_id, {"status": WorkItemStatus.PENDING}, "released"
        )

    @staticmethod
    def mark_failed(
        session: Session,
        signal_ids: Iterable[int],
        error: str,
        max_retries: int,
        worker_id: Optional[str] = None,
    ) -> Dict[str, List[int]]:
        """Record a processing failure. Rows go back to Pending until the retry budget runs out."""
        ids = list(signal_ids)
        result: Dict[str, List[int]] = {"retrying": [], "failed": []}
        if not ids:
            return result

        stmt = select(SignalEntry).where(
            SignalEntry.id.in_(ids),
            SignalEntry.status == WorkItemStatus.PROCESSING,
        )
        if worker_id is not None:
            stmt = stmt.where(SignalEntry.lease_holder == worker_id)

        for signal in session.scalars(stmt.with_for_update()).all():
            status = signal.record_failure(error, max_retries)
            if status == WorkItemStatus.FAILED:
                result["failed"].append(signal.id)
                logger.error(f"[QUEUE] Signal {signal.id} failed permanently after {signal.retry_count} attempts: {signal.last_error}")
            else:
                result["retrying"].append(signal.id)
        session.commit()

        lost = sorted(set(ids) - set(result["retrying"]) - set(result["failed"]))
        if lost:
            logger.warning(f"[QUEUE] Could not mark signals {lost} failed: lease no longer held by {worker_id or 'any worker'}")
        return result

    @staticmethod
    def release_expired_leases(session: Session, max_retries: int, now: Optional[datetime] = None) -> Dict[str, int]:
        """Reclaim signals whose worker stopped renewing or finishing them.

        Each reclaim counts as an attempt, so a signal that keeps crashing its
        worker ends up Failed instead of looping forever.
        """
        now = now or utc_now()
        stmt = (
            select(SignalEntry)
            .where(
                SignalEntry.status == WorkItemStatus.PROCESSING,
                SignalEntry.leased_until < now,
            )
            .order_by(SignalEntry.leased_until)
            .with_for_update(skip_locked=True)
        )

        stats = {"requeued": 0, "failed": 0}
        for signal in session.scalars(stmt).all():
            holder, leased_until = signal.lease_holder, signal.leased_until
            status = signal.record_failure(LEASE_EXPIRED_ERROR, max_retries)
            logger.warning(
                f"[QUEUE] Reclaimed signal {signal.id} from {holder} (lease ended {leased_until:%Y-%m-%d %H:%M:%S}), "
                f"attempt {signal.retry_count}/{max_retries} -> {status.value}"
            )
            stats["requeued" if status == WorkItemStatus.PENDING else "failed"] += 1
        session.commit()
        return stats

    @staticmethod
    def expire_old_signals(session: Session, now: Optional[datetime] = None) -> int:
        """Abandon pending signals whose TTL has passed. Returns the number expired."""
        now = now or utc_now()
        stmt = (
            update(SignalEntry)
            .where(
                SignalEntry.status == WorkItemStatus.PENDING,
                SignalEntry.expires_at <= now,
            )
            .values(
                status=WorkItemStatus.EXPIRED,
                processed_at=now,
                skip_reason=EXPIRED_REASON,
            )
            .execution_options(synchronize_session=False)
        )
        count = session.execute(stmt).rowcount
        session.commit()
        if count:
            logger.info(f"[QUEUE] Expired {count} stale signals")
        return count

    @staticmethod
    def get_by_id(session: Session, signal_id: int) -> Optional[SignalEntry]:
        return session.get(SignalEntry, signal_id)

    @staticmethod
    def get_statuses(session: Session, signal_ids: Iterable[int]) -> Dict[int, WorkItemStatus]:
        ids = list(signal_ids)
        if not ids:
            return {}
        stmt = select(SignalEntry.id, SignalEntry.status).where(SignalEntry.id.in_(ids))
        return {signal_id: status for signal_id, status in session.execute(stmt).all()}

    @staticmethod
    def get_pending_for_user(session: Session, user_id: str, limit: int = 100) -> List[SignalEntry]:
        stmt = (
            select(SignalEntry)
            .where(SignalEntry.user_id == user_id, SignalEntry.status == WorkItemStatus.PENDING)
            .order_by(priority_rank(), SignalEntry.created_at, SignalEntry.id)
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def get_pending_for_user_window(
        session: Session,
        user_id: str,
        window_type: ProcessingWindowType,
        limit: int = 100,
    ) -> List[SignalEntry]:
        stmt = (
            select(SignalEntry)
            .where(
                SignalEntry.user_id == user_id,
                SignalEntry.window_type == window_type,
                SignalEntry.status == WorkItemStatus.PENDING,
            )
            .order_by(SignalEntry.created_at, SignalEntry.id)
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def get_users_with_urgent_signals(session: Session, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        now = now or utc_now()
        stmt = (
            select(SignalEntry.user_id)
            .where(
                SignalEntry.priority == SignalPriority.URGENT,
                SignalEntry.status == WorkItemStatus.PENDING,
                SignalEntry.expires_at > now,
            )
            .group_by(SignalEntry.user_id)
            .order_by(func.min(SignalEntry.created_at))
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def get_users_for_window(
        session: Session,
        window_type: ProcessingWindowType,
        now: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[str]:
        """Users with pending signals for a window that has already opened."""
        now = now or utc_now()
        stmt = (
            select(SignalEntry.user_id)
            .where(
                SignalEntry.window_type == window_type,
                SignalEntry.status == WorkItemStatus.PENDING,
                SignalEntry.expires_at > now,
                or_(
                    SignalEntry.scheduled_window_start.is_(None),
                    SignalEntry.scheduled_window_start <= now,
                ),
            )
            .group_by(SignalEntry.user_id)
            .order_by(SignalEntry.user_id)
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def exists_for_day(session: Session, user_id: str, event_type: str, day: date) -> bool:
        """Was a signal of this type already raised for the user on this UTC day."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        stmt = (
            select(SignalEntry.id)
            .where(
                SignalEntry.user_id == user_id,
                SignalEntry.event_type == event_type,
                and_(SignalEntry.created_at >= start, SignalEntry.created_at < start + timedelta(days=1)),
            )
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none() is not None

    @staticmethod
    def get_status_counts(session: Session) -> Dict[str, int]:
        stmt = select(SignalEntry.status, func.count()).group_by(SignalEntry.status)
        counts = {status.value: 0 for status in WorkItemStatus}
        for status, count in session.execute(stmt).all():
            counts[WorkItemStatus(status).value] = count
        return counts
