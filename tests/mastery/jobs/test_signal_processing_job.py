import unittest
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from mastery.config import Settings, SignalWorkerConfig
from mastery.db.models import (
    AssessmentTier,
    ProcessingWindowType,
    SignalPriority,
    SignalProcessingHistory,
    WorkItemStatus,
)
from mastery.handlers.base import BatchOutcome
from mastery.jobs.signal_processing import SignalProcessingJob
from mastery.services.processing_history import ProcessingHistoryService, batch_id_for
from mastery.services.signal_queue import SignalQueueService


class RecordingHandler:
    def __init__(self, outcome=None, error=None):
        self.outcome = outcome or BatchOutcome()
        self.error = error
        self.calls = []

    def handle(self, session, *, user_id, window_type, signals):
        self.calls.append((user_id, window_type, sorted(s.id for s in signals)))
        if self.error:
            raise self.error
        return self.outcome


def _job(session_factory, handler, **signal_settings):
    settings = Settings(signals=SignalWorkerConfig(**signal_settings))
    return SignalProcessingJob(handler=handler, settings=settings, session_factory=session_factory, worker_id="test-worker")


def _enqueue(session_factory, now, *signals):
    with session_factory() as session:
        return [SignalQueueService.enqueue(session, signal, now=now).id for signal in signals]


def _signal(session_factory, signal_id):
    with session_factory() as session:
        signal = SignalQueueService.get_by_id(session, signal_id)
        session.expunge(signal)
        return signal


def _histories(session_factory):
    with session_factory() as session:
        rows = session.query(SignalProcessingHistory).order_by(SignalProcessingHistory.user_id).all()
        session.expunge_all()
        return rows


def test_cycle_processes_batches_per_user(session_factory, now, make_signal):
    a1, a2, b1 = _enqueue(
        session_factory,
        now,
        make_signal(user_id="alice"),
        make_signal(user_id="alice", event_type="TaskCompleted", target_entity_type="Task"),
        make_signal(user_id="bob"),
    )
    handler = RecordingHandler(BatchOutcome(tier0_rules_triggered=2, recommendation_ids=["rec-1"]))

    stats = _job(session_factory, handler).run_cycle("batch", now=now)

    assert stats == {"claimed": 3, "processed": 3, "skipped": 0, "failed": 0, "duplicates": 0, "lease_lost": 0}
    assert sorted(handler.calls) == [
        ("alice", ProcessingWindowType.BATCH_WINDOW, sorted([a1, a2])),
        ("bob", ProcessingWindowType.BATCH_WINDOW, [b1]),
    ]
    for signal_id in (a1, a2, b1):
        signal = _signal(session_factory, signal_id)
        assert signal.status == WorkItemStatus.PROCESSED
        assert signal.processing_tier == AssessmentTier.TIER0_DETERMINISTIC

    alice, bob = _histories(session_factory)
    assert alice.batch_id == batch_id_for("alice", ProcessingWindowType.BATCH_WINDOW, [a1, a2])
    assert alice.completed_at == now
    assert alice.signals_received == 2 and alice.signals_processed == 2
    assert alice.recommendations_generated == 1
    assert bob.final_tier == AssessmentTier.TIER0_DETERMINISTIC


def test_handler_skips_are_recorded(session_factory, now, make_signal):
    keep, drop = _enqueue(session_factory, now, make_signal(), make_signal())
    handler = RecordingHandler(BatchOutcome(skipped_signal_ids={drop}, skip_reason="Already addressed"))

    stats = _job(session_factory, handler).run_cycle("batch", now=now)

    assert stats["processed"] == 1 and stats["skipped"] == 1
    assert _signal(session_factory, keep).status == WorkItemStatus.PROCESSED
    skipped = _signal(session_factory, drop)
    assert skipped.status == WorkItemStatus.SKIPPED
    assert skipped.skip_reason == "Already addressed"
    [history] = _histories(session_factory)
    assert (history.signals_processed, history.signals_skipped) == (1, 1)


def test_default_handler_skips_everything(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())

    stats = _job(session_factory, None).run_cycle("batch", now=now)

    assert stats["skipped"] == 1
    assert _signal(session_factory, signal_id).status == WorkItemStatus.SKIPPED


def test_tiers_claim_their_own_priorities(session_factory, now, make_signal):
    urgent, window, standard = _enqueue(
        session_factory,
        now,
        make_signal(priority=SignalPriority.URGENT, window_type=ProcessingWindowType.IMMEDIATE),
        make_signal(
            event_type="EveningCheckInSubmitted",
            priority=SignalPriority.WINDOW_ALIGNED,
            window_type=ProcessingWindowType.EVENING_WINDOW,
        ),
        make_signal(),
    )
    handler = RecordingHandler()
    job = _job(session_factory, handler)

    job.run_cycle("urgent", now=now)
    assert handler.calls == [("user-1", ProcessingWindowType.IMMEDIATE, [urgent])]

    job.run_cycle("window", now=now)
    assert handler.calls[-1] == ("user-1", ProcessingWindowType.EVENING_WINDOW, [window])

    job.run_cycle("batch", now=now)
    assert handler.calls[-1] == ("user-1", ProcessingWindowType.BATCH_WINDOW, [standard])


def test_handler_failure_is_recorded_and_retry_reuses_batch(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())
    failing = RecordingHandler(error=RuntimeError("model unavailable"))

    stats = _job(session_factory, failing).run_cycle("batch", now=now)

    assert stats["failed"] == 1
    signal = _signal(session_factory, signal_id)
    assert signal.status == WorkItemStatus.PENDING
    assert signal.retry_count == 1
    assert "RuntimeError: model unavailable" in signal.last_error
    [history] = _histories(session_factory)
    assert history.completed_at is None
    assert "model unavailable" in history.error_message

    ok = RecordingHandler(BatchOutcome(tier2_executed=True))
    stats = _job(session_factory, ok).run_cycle("batch", now=now + timedelta(minutes=1))

    assert stats["processed"] == 1
    [history] = _histories(session_factory)
    assert history.completed_at is not None
    assert history.error_message is None
    assert history.final_tier == AssessmentTier.TIER2_FULL_PIPELINE
    assert _signal(session_factory, signal_id).processing_tier == AssessmentTier.TIER2_FULL_PIPELINE


def test_handler_failure_exhausting_budget_completes_history(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())

    _job(session_factory, RecordingHandler(error=ValueError("bad payload")), max_retries=1).run_cycle("batch", now=now)

    assert _signal(session_factory, signal_id).status == WorkItemStatus.FAILED
    [history] = _histories(session_factory)
    assert history.completed_at == now
    assert "bad payload" in history.error_message


class LeaseLostOnceHandler(RecordingHandler):
    """First call stalls past the lease: another worker's sweep requeues the signals."""

    def __init__(self, session_factory, sweep_at, error=None, outcome=None):
        super().__init__(outcome=outcome)
        self.session_factory = session_factory
        self.sweep_at = sweep_at
        self.first_error = error

    def handle(self, session, *, user_id, window_type, signals):
        self.calls.append((user_id, window_type, sorted(s.id for s in signals)))
        if len(self.calls) == 1:
            with self.session_factory() as other:
                SignalQueueService.release_expired_leases(other, max_retries=3, now=self.sweep_at)
            if self.first_error:
                raise self.first_error
        return self.outcome


def test_failure_after_lost_lease_keeps_batch_retryable(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())
    handler = LeaseLostOnceHandler(
        session_factory,
        sweep_at=now + timedelta(minutes=5),
        error=RuntimeError("pipeline timed out"),
        outcome=BatchOutcome(tier1_score=0.7),
    )
    job = _job(session_factory, handler)

    stats = job.run_cycle("batch", now=now)

    assert stats["failed"] == 0 and stats["lease_lost"] == 1
    signal = _signal(session_factory, signal_id)
    assert signal.status == WorkItemStatus.PENDING
    assert signal.retry_count == 1
    [history] = _histories(session_factory)
    assert history.completed_at is None
    assert "pipeline timed out" in history.error_message

    stats = job.run_cycle("batch", now=now + timedelta(minutes=10))

    assert stats["processed"] == 1 and stats["duplicates"] == 0
    assert len(handler.calls) == 2
    signal = _signal(session_factory, signal_id)
    assert signal.status == WorkItemStatus.PROCESSED
    assert signal.processing_tier == AssessmentTier.TIER1_QUICK_ASSESSMENT
    [history] = _histories(session_factory)
    assert history.completed_at == now + timedelta(minutes=10)
    assert history.error_message is None


def test_success_after_lost_lease_leaves_history_open(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())
    handler = LeaseLostOnceHandler(session_factory, sweep_at=now + timedelta(minutes=5), outcome=BatchOutcome(tier2_executed=True))
    job = _job(session_factory, handler)

    stats = job.run_cycle("batch", now=now)

    assert stats["processed"] == 0 and stats["lease_lost"] == 1
    assert _signal(session_factory, signal_id).status == WorkItemStatus.PENDING
    [history] = _histories(session_factory)
    assert history.completed_at is None
    assert history.final_tier == AssessmentTier.SKIPPED

    stats = job.run_cycle("batch", now=now + timedelta(minutes=10))

    assert stats["processed"] == 1
    [history] = _histories(session_factory)
    assert history.completed_at is not None
    assert history.final_tier == AssessmentTier.TIER2_FULL_PIPELINE


def test_mixed_retry_counts_seal_every_history(session_factory, now, make_signal):
    worn, fresh = _enqueue(session_factory, now, make_signal(retry_count=2), make_signal())
    failing = RecordingHandler(error=RuntimeError("model unavailable"))
    job = _job(session_factory, failing, max_retries=3)

    job.run_cycle("batch", now=now)

    assert _signal(session_factory, worn).status == WorkItemStatus.FAILED
    assert _signal(session_factory, fresh).status == WorkItemStatus.PENDING
    [history] = _histories(session_factory)
    assert history.completed_at == now
    assert f"signals [{fresh}] retry in a new batch" in history.error_message

    job.run_cycle("batch", now=now + timedelta(minutes=1))
    job.run_cycle("batch", now=now + timedelta(minutes=2))

    assert failing.calls[1:] == [("user-1", ProcessingWindowType.BATCH_WINDOW, [fresh])] * 2
    assert _signal(session_factory, fresh).status == WorkItemStatus.FAILED
    histories = _histories(session_factory)
    assert sorted(h.signal_ids for h in histories) == sorted([[worn, fresh], [fresh]])
    assert all(h.completed_at is not None for h in histories)


def test_result_is_dropped_when_another_worker_completed_the_batch(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())
    batch_id = batch_id_for("user-1", ProcessingWindowType.BATCH_WINDOW, [signal_id])
    later = now + timedelta(minutes=5)

    class TakenOverHandler(RecordingHandler):
        def handle(self, session, *, user_id, window_type, signals):
            self.calls.append(user_id)
            # A second worker reclaims the expired lease and finishes the same batch first
            with session_factory() as other:
                SignalQueueService.release_expired_leases(other, max_retries=3, now=later)
                SignalQueueService.acquire_batch(
                    other, worker_id="other-worker", lease_duration=timedelta(minutes=2), batch_size=10, now=later
                )
                history = ProcessingHistoryService.get_by_batch_id(other, batch_id)
                history.restart(later)
                history.record_tier0_results(1)
                SignalQueueService.mark_processed(
                    other, [signal_id], AssessmentTier.TIER0_DETERMINISTIC, worker_id="other-worker", now=later
                )
                ProcessingHistoryService.complete_cycle(
                    other, history, signals_processed=1, signals_skipped=0, completed_at=later
                )
            return BatchOutcome(tier2_executed=True)

    stats = _job(session_factory, TakenOverHandler()).run_cycle("batch", now=now)

    assert stats["processed"] == 0 and stats["lease_lost"] == 1
    assert _signal(session_factory, signal_id).processing_tier == AssessmentTier.TIER0_DETERMINISTIC
    [history] = _histories(session_factory)
    assert history.final_tier == AssessmentTier.TIER0_DETERMINISTIC
    assert history.completed_at == later


def test_completed_batch_is_acknowledged_without_rerunning(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())
    with session_factory() as session:
        # A previous worker finished the pipeline but died before marking the signal
        history = ProcessingHistoryService.start_cycle(
            session,
            user_id="user-1",
            window_type=ProcessingWindowType.BATCH_WINDOW,
            batch_id=batch_id_for("user-1", ProcessingWindowType.BATCH_WINDOW, [signal_id]),
            signal_ids=[signal_id],
            started_at=now,
        )
        history.record_tier1_results(0.5)
        ProcessingHistoryService.complete_cycle(session, history, signals_processed=1, signals_skipped=0, completed_at=now)

    handler = RecordingHandler()
    stats = _job(session_factory, handler).run_cycle("batch", now=now)

    assert handler.calls == []
    assert stats["duplicates"] == 1
    signal = _signal(session_factory, signal_id)
    assert signal.status == WorkItemStatus.PROCESSED
    assert signal.processing_tier == AssessmentTier.TIER1_QUICK_ASSESSMENT
    assert len(_histories(session_factory)) == 1


def test_cycle_sweeps_abandoned_leases_first(session_factory, now, make_signal):
    [signal_id] = _enqueue(session_factory, now, make_signal())
    with session_factory() as session:
        SignalQueueService.acquire_batch(
            session, worker_id="crashed-worker", lease_duration=timedelta(seconds=30), batch_size=10, now=now
        )

    handler = RecordingHandler()
    stats = _job(session_factory, handler).run_cycle("batch", now=now + timedelta(minutes=1))

    assert stats["processed"] == 1
    signal = _signal(session_factory, signal_id)
    assert signal.status == WorkItemStatus.PROCESSED
    assert signal.retry_count == 1


@patch("mastery.jobs.signal_processing.FailureMonitor")
def test_sweep_reports_failed_backlog(MockMonitor, session_factory, now, make_signal):
    _enqueue(session_factory, now, make_signal(expires_at=now + timedelta(minutes=1)))
    job = _job(session_factory, RecordingHandler())
    job.settings.failed_warning_threshold = 5

    stats = job.sweep(now=now + timedelta(minutes=2))

    assert stats == {"requeued": 0, "failed": 0, "expired": 1}
    kwargs = MockMonitor.check.call_args.kwargs
    assert kwargs["warning_threshold"] == 5
    assert kwargs["critical_threshold"] == 100


def test_batch_escalates_to_immediate(session_factory, now, make_signal):
    _enqueue(session_factory, now, make_signal(), make_signal(), make_signal())
    handler = RecordingHandler()

    _job(session_factory, handler).run_cycle("batch", now=now)

    [(user_id, window_type, ids)] = handler.calls
    assert window_type == ProcessingWindowType.IMMEDIATE
    assert len(ids) == 3
    [history] = _histories(session_factory)
    assert history.window_type == ProcessingWindowType.IMMEDIATE


def test_unknown_tier_is_rejected(session_factory):
    with pytest.raises(ValueError):
        _job(session_factory, RecordingHandler()).run_cycle("hourly")


class TestSignalProcessingJobWiring(unittest.TestCase):
    @patch("mastery.jobs.signal_processing.load_settings")
    def test_defaults_come_from_settings(self, mock_settings):
        mock_settings.return_value = Settings(worker_id="worker-from-env")

        job = SignalProcessingJob(session_factory=MagicMock())

        self.assertEqual(job.worker_id, "worker-from-env")
        self.assertEqual(job.lease_duration, timedelta(seconds=120))
        self.assertEqual(job.tier_config("urgent").max_signals_per_cycle, 50)

    @patch("mastery.jobs.signal_processing.SignalQueueService")
    def test_claim_errors_propagate_and_close_session(self, MockQueue):
        session = MagicMock()
        MockQueue.release_expired_leases.return_value = {"requeued": 0, "failed": 0}
        MockQueue.expire_old_signals.return_value = 0
        MockQueue.acquire_batch.side_effect = OperationalError("UPDATE signal_entries", {}, Exception("db down"))

        job = SignalProcessingJob(settings=Settings(), session_factory=lambda: session, worker_id="w1")

        with self.assertRaises(OperationalError):
            job.run_cycle("urgent")
        session.close.assert_called_once()

    @patch("mastery.jobs.signal_processing.SignalQueueService")
    def test_empty_queue_returns_zero_stats(self, MockQueue):
        session = MagicMock()
        MockQueue.release_expired_leases.return_value = {"requeued": 0, "failed": 0}
        MockQueue.expire_old_signals.return_value = 0
        MockQueue.acquire_batch.return_value = []

        job = SignalProcessingJob(settings=Settings(), session_factory=lambda: session, worker_id="w1")
        stats = job.run_cycle("batch", limit=7)

        self.assertEqual(stats["claimed"], 0)
        kwargs = MockQueue.acquire_batch.call_args.kwargs
        self.assertEqual(kwargs["batch_size"], 7)
        self.assertEqual(kwargs["min_priority"], SignalPriority.STANDARD)
        self.assertEqual(kwargs["max_priority"], SignalPriority.LOW)
