from datetime import datetime, timedelta, timezone

import pytest

from mastery.db.models import (
    AssessmentTier,
    ProcessingWindowType,
    SignalEntry,
    SignalPriority,
    SignalProcessingHistory,
    WorkItemStatus,
)
from mastery.db.types import UTCDateTime
from mastery.errors import HistoryCompletedError


def _leased(now, retry_count=0):
    return SignalEntry(
        user_id="u",
        event_type="HabitMissed",
        priority=SignalPriority.STANDARD,
        window_type=ProcessingWindowType.BATCH_WINDOW,
        status=WorkItemStatus.PROCESSING,
        leased_until=now + timedelta(seconds=30),
        lease_holder="w1",
        retry_count=retry_count,
        expires_at=now + timedelta(hours=1),
    )


def test_priority_ranks_are_ordered():
    ranks = [p.rank for p in (SignalPriority.URGENT, SignalPriority.WINDOW_ALIGNED, SignalPriority.STANDARD, SignalPriority.LOW)]
    assert ranks == sorted(ranks) == [0, 1, 2, 3]


def test_record_failure_retries_then_fails(now):
    signal = _leased(now, retry_count=1)

    assert signal.record_failure("first", max_retries=3) == WorkItemStatus.PENDING
    assert signal.leased_until is None and signal.lease_holder is None

    signal.status = WorkItemStatus.PROCESSING
    assert signal.record_failure("second", max_retries=3) == WorkItemStatus.FAILED
    assert signal.retry_count == 3
    assert signal.status.is_terminal


def test_lease_expiry_and_readiness(now):
    signal = _leased(now)
    assert not signal.is_lease_expired(now)
    assert signal.is_lease_expired(now + timedelta(minutes=1))
    assert not signal.is_ready(now)

    signal.release_lease()
    assert signal.is_ready(now)
    assert not signal.is_ready(now + timedelta(hours=2))


class _Dialect:
    def __init__(self, name):
        self.name = name


def test_utc_datetime_round_trip_on_sqlite():
    column = UTCDateTime()
    aware = datetime(2026, 3, 2, 11, 0, tzinfo=timezone(timedelta(hours=2)))

    stored = column.process_bind_param(aware, _Dialect("sqlite"))
    assert stored == datetime(2026, 3, 2, 9, 0)
    assert stored.tzinfo is None

    loaded = column.process_result_value(stored, _Dialect("sqlite"))
    assert loaded == aware
    assert loaded.tzinfo == timezone.utc


def test_utc_datetime_keeps_timezone_on_postgres():
    column = UTCDateTime()
    naive = datetime(2026, 3, 2, 9, 0)

    stored = column.process_bind_param(naive, _Dialect("postgresql"))
    assert stored.tzinfo == timezone.utc


def test_restart_clears_previous_attempt(now):
    history = SignalProcessingHistory(
        user_id="u",
        window_type=ProcessingWindowType.BATCH_WINDOW,
        started_at=now,
        final_tier=AssessmentTier.SKIPPED,
    )
    history.record_tier2_executed()
    history.record_recommendations(["rec-1"])
    history.record_error("timeout")

    history.restart(now + timedelta(minutes=5))

    assert history.started_at == now + timedelta(minutes=5)
    assert history.final_tier == AssessmentTier.SKIPPED
    assert history.tier2_executed is False
    assert history.recommendations_generated == 0
    assert history.error_message is None

    history.complete(now + timedelta(minutes=6))
    with pytest.raises(HistoryCompletedError):
        history.restart(now + timedelta(minutes=7))
