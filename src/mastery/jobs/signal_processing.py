"""Job runner that drains the signal queue into the recommendation pipeline."""
from __future__ import annotations

import argparse
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger
from dotenv import load_dotenv

# Load env immediately to ensure DATABASE_URL is set for DB base
load_dotenv()

from sqlalchemy.orm import Session

from mastery.config import Settings, TierConfig, load_settings
from mastery.db.base import SessionLocal
from mastery.db.models import (
    ProcessingWindowType,
    SignalEntry,
    SignalPriority,
    SignalProcessingHistory,
    WorkItemStatus,
)
from mastery.db.types import utc_now
from mastery.errors import DuplicateBatchError, HistoryCompletedError
from mastery.handlers.base import SignalBatchHandler
from mastery.handlers.defaults import SkippingSignalHandler
from mastery.jobs.common import configure_logging, make_worker_id
from mastery.services.processing_history import ProcessingHistoryService, batch_id_for
from mastery.services.failure_monitor import FailureMonitor
from mastery.services.signal_classifier import SignalClassifier
from mastery.services.signal_queue import SignalQueueService

DEFAULT_SKIP_REASON = "Skipped by handler"


@dataclass(frozen=True)
class TierSpec:
    min_priority: SignalPriority
    max_priority: SignalPriority
    config_key: str


TIERS: Dict[str, TierSpec] = {
    "urgent": TierSpec(SignalPriority.URGENT, SignalPriority.URGENT, "urgent"),
    "window": TierSpec(SignalPriority.WINDOW_ALIGNED, SignalPriority.WINDOW_ALIGNED, "window"),
    "batch": TierSpec(SignalPriority.STANDARD, SignalPriority.LOW, "batch"),
}


def _new_stats() -> Dict[str, int]:
    return {"claimed": 0, "processed": 0, "skipped": 0, "failed": 0, "duplicates": 0, "lease_lost": 0}


class SignalProcessingJob:
    """Claims signals per tier, groups them by user and hands each group to the handler.

    Delivery is at-least-once. A batch is identified by a deterministic batch id,
    so a batch that completed before its signals were marked is not run twice.
    """

    def __init__(
        self,
        handler: Optional[SignalBatchHandler] = None,
        settings: Optional[Settings] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        worker_id: Optional[str] = None,
    ):
        self.settings = settings or load_settings()
        self.handler = handler or SkippingSignalHandler()
        self.session_factory = session_factory
        self.worker_id = worker_id or self.settings.worker_id or make_worker_id()

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.signals.lease_duration_seconds)

    def tier_config(self, tier: str) -> TierConfig:
        return getattr(self.settings.signals, TIERS[tier].config_key)

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Recover expired leases and stale signals, then report the failed backlog."""
        session = self.session_factory()
        try:
            stats = self._sweep(session, now or utc_now())
            FailureMonitor.check(
                session,
                warning_threshold=self.settings.failed_warning_threshold,
                critical_threshold=self.settings.failed_critical_threshold,
            )
            return stats
        finally:
            session.close()

    def _sweep(self, session: Session, now: datetime) -> Dict[str, int]:
        stats = SignalQueueService.release_expired_leases(
            session, max_retries=self.settings.signals.max_retries, now=now
        )
        stats["expired"] = SignalQueueService.expire_old_signals(session, now=now)
        return stats

    def run_cycle(self, tier: str, limit: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run one claim/process cycle for a tier. Database errors propagate."""
        if tier not in TIERS:
            raise ValueError(f"Unknown tier {tier!r}, expected one of {sorted(TIERS)}")

        spec = TIERS[tier]
        batch_size = limit or self.tier_config(tier).max_signals_per_cycle
        stats = _new_stats()

        session = self.session_factory()
        try:
            self._sweep(session, now or utc_now())

            claimed = SignalQueueService.acquire_batch(
                session,
                worker_id=self.worker_id,
                lease_duration=self.lease_duration,
                batch_size=batch_size,
                min_priority=spec.min_priority,
                max_priority=spec.max_priority,
                now=now,
            )
            if not claimed:
                logger.info(f"[WORKER] No {tier} signals ready.")
                return stats

            stats["claimed"] = len(claimed)
            groups = self._group(claimed)
            logger.info(f"[WORKER] {self.worker_id} claimed {len(claimed)} {tier} signals across {len(groups)} batches")

            for (user_id, window_type), signals in groups.items():
                if tier == "batch" and SignalClassifier.should_escalate_to_urgent(signals):
                    logger.warning(f"[WORKER] Escalating {len(signals)} batch signals for {user_id} to immediate processing")
                    window_type = ProcessingWindowType.IMMEDIATE
                self._process_group(session, user_id, window_type, signals, stats, now)

            logger.info(f"[WORKER] {tier} cycle complete: {stats}")
            return stats
        finally:
            session.close()

    @staticmethod
    def _group(signals: List[SignalEntry]) -> Dict[Tuple[str, ProcessingWindowType], List[SignalEntry]]:
        groups: Dict[Tuple[str, ProcessingWindowType], List[SignalEntry]] = defaultdict(list)
        for signal in signals:
            groups[(signal.user_id, signal.window_type)].append(signal)
        return dict(groups)

    def _process_group(
        self,
        session: Session,
        user_id: str,
        window_type: ProcessingWindowType,
        signals: List[SignalEntry],
        stats: Dict[str, int],
        now: Optional[datetime],
    ) -> None:
        signal_ids = [signal.id for signal in signals]
        batch_id = batch_id_for(user_id, window_type, signal_ids)
        started_at = now or utc_now()

        history = ProcessingHistoryService.get_by_batch_id(session, batch_id)
        if history is not None and history.is_completed:
            # Same signals already went through the pipeline; only the marking was lost
            logger.warning(f"[WORKER] Batch {batch_id} already completed, acknowledging {len(signal_ids)} signals")
            stats["duplicates"] += len(signal_ids)
            if history.error_message:
                SignalQueueService.mark_skipped(
                    session, signal_ids, f"Batch {batch_id} already failed", worker_id=self.worker_id, now=now
                )
            else:
                SignalQueueService.mark_processed(
                    session, signal_ids, history.final_tier, worker_id=self.worker_id, now=now
                )
            return

        if history is not None:
            logger.info(f"[WORKER] Retrying batch {batch_id} for {user_id}")
            history.restart(started_at)
            session.commit()
        else:
            try:
                history = ProcessingHistoryService.start_cycle(
                    session,
                    user_id=user_id,
                    window_type=window_type,
                    batch_id=batch_id,
                    signal_ids=signal_ids,
                    started_at=started_at,
                )
            except DuplicateBatchError:
                logger.warning(f"[WORKER] Batch {batch_id} started elsewhere, releasing {len(signal_ids)} signals")
                SignalQueueService.release_lease(session, signal_ids, worker_id=self.worker_id)
                stats["duplicates"] += len(signal_ids)
                return

        try:
            outcome = self.handler.handle(session, user_id=user_id, window_type=window_type, signals=signals)
        except Exception as e:
            logger.exception(f"[WORKER] Handler failed for batch {batch_id} ({user_id})")
            session.rollback()
            self._record_handler_failure(session, history, signal_ids, f"{type(e).__name__}: {e}", stats, now)
            return

        skipped_ids = [sid for sid in signal_ids if sid in outcome.skipped_signal_ids]
        processed_ids = [sid for sid in signal_ids if sid not in outcome.skipped_signal_ids]

        processed = SignalQueueService.mark_processed(
            session, processed_ids, outcome.final_tier, worker_id=self.worker_id, now=now
        )
        skipped = SignalQueueService.mark_skipped(
            session,
            skipped_ids,
            outcome.skip_reason or DEFAULT_SKIP_REASON,
            worker_id=self.worker_id,
            now=now,
        )
        stats["processed"] += len(processed)
        stats["skipped"] += len(skipped)

        if not processed and not skipped:
            # Lease expired while the handler ran; the signals are back in the queue under this batch id
            logger.warning(f"[WORKER] Lost the lease on batch {batch_id}, leaving its history to the next attempt")
            stats["lease_lost"] += len(signal_ids)
            return

        try:
            if outcome.tier0_rules_triggered:
                history.record_tier0_results(outcome.tier0_rules_triggered)
            if outcome.tier1_score is not None:
                history.record_tier1_results(outcome.tier1_score, outcome.state_delta)
            if outcome.tier2_executed:
                history.record_tier2_executed()
            if outcome.recommendation_ids:
                history.record_recommendations(outcome.recommendation_ids)
            ProcessingHistoryService.complete_cycle(
                session,
                history,
                signals_processed=len(processed),
                signals_skipped=len(skipped),
                completed_at=now or utc_now(),
            )
        except HistoryCompletedError:
            session.rollback()
            logger.warning(f"[WORKER] Batch {batch_id} was already completed by another worker")

    def _record_handler_failure(
        self,
        session: Session,
        history: SignalProcessingHistory,
        signal_ids: List[int],
        error: str,
        stats: Dict[str, int],
        now: Optional[datetime],
    ) -> None:
        result = SignalQueueService.mark_failed(
            session,
            signal_ids,
            error,
            max_retries=self.settings.signals.max_retries,
            worker_id=self.worker_id,
        )
        stats["failed"] += len(result["retrying"]) + len(result["failed"])
        stats["lease_lost"] += len(signal_ids) - len(result["retrying"]) - len(result["failed"])

        statuses = SignalQueueService.get_statuses(session, signal_ids)
        batch_id = history.batch_id
        try:
            if any(status.is_terminal for status in statuses.values()):
                # This exact set can never be claimed again, so the record is sealed now
                retrying = sorted(sid for sid, status in statuses.items() if not status.is_terminal)
                if retrying:
                    error = f"{error} (signals {retrying} retry in a new batch)"
                ProcessingHistoryService.complete_cycle(
                    session,
                    history,
                    signals_processed=0,
                    signals_skipped=0,
                    completed_at=now or utc_now(),
                    error=error,
                )
            elif any(status == WorkItemStatus.PROCESSING for status in statuses.values()):
                logger.warning(f"[WORKER] Batch {batch_id} was reclaimed by another worker, leaving its history open")
            else:
                ProcessingHistoryService.record_failure(session, history, error)
        except HistoryCompletedError:
            session.rollback()
            logger.warning(f"[WORKER] Batch {batch_id} was already completed by another worker")

    def process_all(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        """Run one cycle of every tier, most urgent first."""
        return {tier: self.run_cycle(tier, now=now) for tier in TIERS}


def main():
    parser = argparse.ArgumentParser(description="Signal processing worker")
    parser.add_argument("--tier", choices=[*TIERS, "all"], default="all", help="Which signal tier to drain")
    parser.add_argument("--limit", type=int, help="Max signals per cycle (defaults to the tier setting)")
    parser.add_argument("--loop", action="store_true", help="Run in a loop")

    args = parser.parse_args()

    job = SignalProcessingJob()
    configure_logging(job.settings.log_level)

    if not job.settings.signals.enabled:
        logger.info("[WORKER] Signal worker disabled (SIGNAL_WORKER_ENABLED=false)")
        return

    tiers = list(TIERS) if args.tier == "all" else [args.tier]
    interval = min(job.tier_config(tier).interval_seconds for tier in tiers)

    if args.loop:
        logger.info(f"Starting polling loop every {interval}s for {', '.join(tiers)}...")
        next_run = {tier: 0.0 for tier in tiers}
        while True:
            for tier in tiers:
                if time.monotonic() >= next_run[tier]:
                    job.run_cycle(tier, limit=args.limit)
                    next_run[tier] = time.monotonic() + job.tier_config(tier).interval_seconds
            time.sleep(interval)
    else:
        for tier in tiers:
            job.run_cycle(tier, limit=args.limit)


if __name__ == "__main__":
    main()
