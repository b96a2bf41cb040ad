"""Job runner that feeds entity changes from the outbox to the embedding processor."""
from __future__ import annotations

import argparse
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from loguru import logger
from dotenv import load_dotenv

load_dotenv()

from sqlalchemy.orm import Session

from mastery.config import Settings, load_settings
from mastery.db.base import SessionLocal
from mastery.db.types import utc_now
from mastery.handlers.base import OutboxProcessor
from mastery.handlers.defaults import LoggingOutboxProcessor
from mastery.jobs.common import configure_logging, make_worker_id
from mastery.services.outbox import OutboxService


class OutboxDispatchJob:
    """Drains outbox_entries in FIFO batches."""

    def __init__(
        self,
        processor: Optional[OutboxProcessor] = None,
        settings: Optional[Settings] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        worker_id: Optional[str] = None,
    ):
        self.settings = settings or load_settings()
        self.processor = processor or LoggingOutboxProcessor()
        self.session_factory = session_factory
        self.worker_id = worker_id or self.settings.worker_id or make_worker_id("outbox")

    def run_cycle(self, now: Optional[datetime] = None) -> Dict[str, int]:
        config = self.settings.outbox
        now = now or utc_now()
        stats = {"claimed": 0, "dispatched": 0, "superseded": 0, "failed": 0, "archived": 0}

        session = self.session_factory()
        try:
            OutboxService.release_expired_leases(session, max_retries=config.max_retries, now=now)

            entries = OutboxService.acquire_batch(
                session,
                lease_holder=self.worker_id,
                lease_duration=timedelta(minutes=config.lease_minutes),
                batch_size=config.batch_size,
                max_retries=config.max_retries,
                now=now,
            )
            if entries:
                stats["claimed"] = len(entries)
                entry_ids = [entry.id for entry in entries]
                latest = OutboxService.deduplicate(entries)
                stats["superseded"] = len(entries) - len(latest)

                try:
                    self.processor.process(session, latest)
                except Exception as e:
                    logger.exception(f"[OUTBOX] Processing failed for {len(entry_ids)} entries")
                    session.rollback()
                    OutboxService.mark_failed(
                        session,
                        entry_ids,
                        f"{type(e).__name__}: {e}",
                        max_retries=config.max_retries,
                        lease_holder=self.worker_id,
                    )
                    stats["failed"] = len(entry_ids)
                else:
                    # Superseded entries are satisfied by the newest change of the same entity
                    OutboxService.mark_processed(session, entry_ids, lease_holder=self.worker_id, now=now)
                    stats["dispatched"] = len(latest)

            stats["archived"] = OutboxService.archive_processed(
                session,
                older_than=now - timedelta(days=config.archive_after_days),
                batch_size=config.archive_batch_size,
            )
        finally:
            session.close()

        if stats["claimed"]:
            logger.info(f"[OUTBOX] Cycle complete: {stats}")
        return stats


def main():
    parser = argparse.ArgumentParser(description="Embedding outbox dispatcher")
    parser.add_argument("--loop", action="store_true", help="Run in a loop")
    args = parser.parse_args()

    job = OutboxDispatchJob()
    configure_logging(job.settings.log_level)

    if not job.settings.outbox.enabled:
        logger.info("[OUTBOX] Outbox worker disabled (OUTBOX_WORKER_ENABLED=false)")
        return

    if args.loop:
        interval = job.settings.outbox.polling_interval_ms / 1000
        logger.info(f"Starting outbox polling loop every {interval}s...")
        while True:
            job.run_cycle()
            time.sleep(interval)
    else:
        job.run_cycle()


if __name__ == "__main__":
    main()
