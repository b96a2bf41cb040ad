"""Alerts on work items that exhausted their retries."""
from __future__ import annotations

from typing import Dict

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mastery.db.models import OutboxEntry, SignalEntry, WorkItemStatus

DEFAULT_WARNING_THRESHOLD = 50
DEFAULT_CRITICAL_THRESHOLD = 100

_QUEUES = {
    "signals": SignalEntry,
    "outbox": OutboxEntry,
}


class FailureMonitor:
    @staticmethod
    def failed_counts(session: Session) -> Dict[str, int]:
        counts = {}
        for queue, model in _QUEUES.items():
            stmt = select(func.count()).select_from(model).where(model.status == WorkItemStatus.FAILED)
            counts[queue] = session.execute(stmt).scalar_one()
        return counts

    @staticmethod
    def check(
        session: Session,
        warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
        critical_threshold: int = DEFAULT_CRITICAL_THRESHOLD,
    ) -> Dict[str, int]:
        """Log a warning or critical alert per queue whose Failed backlog crossed a threshold."""
        counts = FailureMonitor.failed_counts(session)
        for queue, count in counts.items():
            if count >= critical_threshold:
                logger.critical(f"[MONITOR] {queue} has {count} failed items (threshold: {critical_threshold})")
            elif count >= warning_threshold:
                logger.warning(f"[MONITOR] {queue} has {count} failed items (threshold: {warning_threshold})")
            elif count:
                logger.debug(f"[MONITOR] {queue} has {count} failed items")
        return counts
