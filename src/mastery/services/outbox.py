"""Service for the embedding outbox (outbox_entries table)."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from mastery.db.models import OutboxEntry, OutboxOperation, WorkItemStatus
from mastery.db.types import utc_now

LEASE_EXPIRED_ERROR = "Lease expired before completion"


class OutboxService:
    """Same leasing contract as the signal queue, strictly FIFO."""

    @staticmethod
    def enqueue(
        session: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        operation: OutboxOperation,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OutboxEntry:
        entry = OutboxEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            user_id=user_id,
            status=WorkItemStatus.PENDING,
            retry_count=0,
            created_at=now or utc_now(),
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        logger.debug(f"[OUTBOX] Enqueued {operation.value} {entity_type} {entity_id}")
        return entry

    @staticmethod
    def acquire_batch(
        session: Session,
        *,
        lease_holder: str,
        lease_duration: timedelta,
        batch_size: int,
        max_retries: int,
        now: Optional[datetime] = None,
    ) -> List[OutboxEntry]:
        """Claim the oldest pending entries in a single UPDATE ... RETURNING."""
        if batch_size <= 0:
            return []
        now = now or utc_now()

        eligible = (
            select(OutboxEntry.id)
            .where(
                OutboxEntry.status == WorkItemStatus.PENDING,
                OutboxEntry.retry_count < max_retries,
            )
            .order_by(OutboxEntry.created_at, OutboxEntry.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(OutboxEntry)
            .where(OutboxEntry.id.in_(eligible), OutboxEntry.status == WorkItemStatus.PENDING)
            .values(
                status=WorkItemStatus.PROCESSING,
                leased_until=now + lease_duration,
                lease_holder=lease_holder,
            )
            .returning(OutboxEntry)
            .execution_options(populate_existing=True)
        )

        entries = list(session.scalars(stmt).all())
        entries.sort(key=lambda e: (e.created_at, e.id))
        session.commit()
        return entries

    @staticmethod
    def deduplicate(entries: Sequence[OutboxEntry]) -> List[OutboxEntry]:
        """Keep only the newest entry per entity; older changes are superseded."""
        latest: Dict[tuple, OutboxEntry] = {}
        for entry in entries:
            key = (entry.entity_type, entry.entity_id)
            current = latest.get(key)
            if current is None or (entry.created_at, entry.id) > (current.created_at, current.id):
                latest[key] = entry
        return sorted(latest.values(), key=lambda e: (e.created_at, e.id))

    @staticmethod
    def mark_processed(
        session: Session,
        entry_ids: Iterable[int],
        lease_holder: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        stmt = update(OutboxEntry).where(
            OutboxEntry.id.in_(ids),
            OutboxEntry.status == WorkItemStatus.PROCESSING,
        )
        if lease_holder is not None:
            stmt = stmt.where(OutboxEntry.lease_holder == lease_holder)
        stmt = stmt.values(
            status=WorkItemStatus.PROCESSED,
            processed_at=now or utc_now(),
            leased_until=None,
            lease_holder=None,
        ).execution_options(synchronize_session=False)

        count = session.execute(stmt).rowcount
        session.commit()
        if count != len(ids):
            logger.warning(f"[OUTBOX] Marked {count}/{len(ids)} entries processed, the rest lost their lease")
        return count

    @staticmethod
    def mark_failed(
        session: Session,
        entry_ids: Iterable[int],
        error: str,
        max_retries: int,
        lease_holder: Optional[str] = None,
    ) -> Dict[str, int]:
        ids = list(entry_ids)
        stats = {"retrying": 0, "failed": 0}
        if not ids:
            return stats

        stmt = select(OutboxEntry).where(
            OutboxEntry.id.in_(ids),
            OutboxEntry.status == WorkItemStatus.PROCESSING,
        )
        if lease_holder is not None:
            stmt = stmt.where(OutboxEntry.lease_holder == lease_holder)

        for entry in session.scalars(stmt.with_for_update()).all():
            status = entry.record_failure(error, max_retries)
            stats["failed" if status == WorkItemStatus.FAILED else "retrying"] += 1
        session.commit()
        return stats

    @staticmethod
    def release_expired_leases(session: Session, max_retries: int, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utc_now()
        stmt = (
            select(OutboxEntry)
            .where(
                OutboxEntry.status == WorkItemStatus.PROCESSING,
                OutboxEntry.leased_until < now,
            )
            .with_for_update(skip_locked=True)
        )

        stats = {"requeued": 0, "failed": 0}
        for entry in session.scalars(stmt).all():
            holder = entry.lease_holder
            status = entry.record_failure(LEASE_EXPIRED_ERROR, max_retries)
            logger.warning(f"[OUTBOX] Reclaimed entry {entry.id} from {holder} -> {status.value}")
            stats["requeued" if status == WorkItemStatus.PENDING else "failed"] += 1
        session.commit()
        return stats

    @staticmethod
    def archive_processed(
        session: Session,
        older_than: datetime,
        batch_size: int = 1000,
    ) -> int:
        """Delete processed entries finished before ``older_than``, at most ``batch_size`` per call."""
        doomed = (
            select(OutboxEntry.id)
            .where(
                OutboxEntry.status == WorkItemStatus.PROCESSED,
                OutboxEntry.processed_at < older_than,
            )
            .order_by(OutboxEntry.id)
            .limit(batch_size)
        )
        stmt = (
            delete(OutboxEntry)
            .where(OutboxEntry.id.in_(doomed))
            .execution_options(synchronize_session=False)
        )
        count = session.execute(stmt).rowcount
        session.commit()
        if count:
            logger.info(f"[OUTBOX] Archived {count} processed entries")
        return count
