#!/usr/bin/env python3
"""CLI entrypoint for the Mastery signal queue."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict
import uuid
from datetime import timedelta

from loguru import logger

from mastery.config import load_settings
from mastery.db.base import SessionLocal, init_db
from mastery.db.types import utc_now
from mastery.jobs.common import configure_logging
from mastery.jobs.outbox_dispatch import OutboxDispatchJob
from mastery.jobs.signal_processing import TIERS, SignalProcessingJob
from mastery.services.failure_monitor import FailureMonitor
from mastery.services.processing_history import ProcessingHistoryService
from mastery.services.signal_classifier import SignalClassifier, WindowSchedule
from mastery.services.signal_queue import SignalQueueService


def _cmd_init_db(args: argparse.Namespace) -> int:
    init_db()
    logger.info("Database tables created")
    return 0


def _cmd_signals(args: argparse.Namespace) -> int:
    job = SignalProcessingJob()
    tiers = list(TIERS) if args.tier == "all" else [args.tier]
    for tier in tiers:
        print(f"{tier}: {job.run_cycle(tier, limit=args.limit)}")
    return 0


def _cmd_outbox(args: argparse.Namespace) -> int:
    print(OutboxDispatchJob().run_cycle())
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    print(SignalProcessingJob().sweep())
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    settings = load_settings()
    with SessionLocal() as session:
        print(json.dumps({"signals": SignalQueueService.get_status_counts(session)}, indent=2))
        failed = FailureMonitor.check(
            session,
            warning_threshold=settings.failed_warning_threshold,
            critical_threshold=settings.failed_critical_threshold,
        )
        print(json.dumps({"failed_backlog": failed}, indent=2))
        stats = ProcessingHistoryService.get_statistics(
            session,
            since=utc_now() - timedelta(days=args.days),
            user_id=args.user,
        )
        print(json.dumps({"history": asdict(stats)}, indent=2, default=str))
    return 0


def _cmd_enqueue(args: argparse.Namespace) -> int:
    payload = json.loads(args.payload) if args.payload else None
    signal = SignalClassifier.build_signal(
        args.user,
        args.event_type,
        payload,
        target_entity_id=uuid.UUID(args.entity_id) if args.entity_id else None,
        window_resolver=WindowSchedule(),
    )
    if signal is None:
        print(f"Event type {args.event_type} does not produce a signal")
        return 1

    with SessionLocal() as session:
        stored = SignalQueueService.enqueue(session, signal)
        print(f"Signal {stored.id}: {stored.event_type} {stored.priority.value} {stored.status.value}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Mastery signal queue CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables (dev/test databases)").set_defaults(func=_cmd_init_db)

    signals = sub.add_parser("signals", help="Run one signal processing cycle")
    signals.add_argument("--tier", choices=[*TIERS, "all"], default="all")
    signals.add_argument("--limit", type=int, help="Max signals per tier")
    signals.set_defaults(func=_cmd_signals)

    sub.add_parser("outbox", help="Run one outbox dispatch cycle").set_defaults(func=_cmd_outbox)
    sub.add_parser("sweep", help="Reclaim expired leases and expire stale signals").set_defaults(func=_cmd_sweep)

    stats = sub.add_parser("stats", help="Queue status counts and processing statistics")
    stats.add_argument("--days", type=int, default=7, help="History window in days")
    stats.add_argument("--user", type=str, help="Restrict history statistics to one user")
    stats.set_defaults(func=_cmd_stats)

    enqueue = sub.add_parser("enqueue", help="Classify a domain event and enqueue its signal")
    enqueue.add_argument("--user", required=True)
    enqueue.add_argument("--event-type", required=True)
    enqueue.add_argument("--entity-id", help="Target entity UUID")
    enqueue.add_argument("--payload", help="Event data as JSON")
    enqueue.set_defaults(func=_cmd_enqueue)

    args = parser.parse_args()
    configure_logging(load_settings().log_level)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
