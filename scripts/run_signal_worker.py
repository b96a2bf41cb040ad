#!/usr/bin/env python3
"""One-shot signal worker for cron/systemd timers."""
import sys
import os
from datetime import datetime, timezone
from sqlalchemy import select

# Add src to path
sys.path.append(os.path.join(os.path.dirname(__file__), '../src'))

from mastery.db.base import SessionLocal
from mastery.db.models import SignalEntry, WorkItemStatus
from mastery.jobs.common import configure_logging
from mastery.jobs.signal_processing import TIERS, SignalProcessingJob
from loguru import logger

MAX_SIGNALS_PER_INVOCATION = 100


def has_queue_work(session) -> bool:
    # Pending signals still inside their TTL, or leases waiting to be reclaimed
    now = datetime.now(timezone.utc)
    stmt = select(SignalEntry.id).where(
        (SignalEntry.status == WorkItemStatus.PROCESSING)
        | ((SignalEntry.status == WorkItemStatus.PENDING) & (SignalEntry.expires_at > now))
    ).limit(1)

    return session.execute(stmt).scalar_one_or_none() is not None


def main() -> int:
    configure_logging("INFO")

    with SessionLocal() as session:
        if not has_queue_work(session):
            print("[worker] No pending signals, exiting")
            return 0

    try:
        job = SignalProcessingJob()
        for tier in TIERS:
            result = job.run_cycle(tier, limit=MAX_SIGNALS_PER_INVOCATION)
            print(f"[worker] {tier}: {result}")
    except Exception as exc:
        print(f"[worker] ERROR: {exc}", file=sys.stderr)
        logger.exception("Worker failed")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
