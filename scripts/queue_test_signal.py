"""Queue a handful of sample signals for a test user."""
import sys
import uuid
from pathlib import Path

# Add src manually because -I flag ignores PYTHONPATH
sys.path.append(str(Path(__file__).resolve().parent.parent / "src"))

from dotenv import load_dotenv

load_dotenv()

from mastery.db.base import SessionLocal
from mastery.services.signal_classifier import (
    HABIT_MISSED,
    MORNING_CHECK_IN_SUBMITTED,
    TASK_RESCHEDULED,
    SignalClassifier,
)
from mastery.services.signal_queue import SignalQueueService

TEST_USER = "test-user@mastery.local"


def queue_test_signals():
    session = SessionLocal()
    try:
        events = [
            (MORNING_CHECK_IN_SUBMITTED, {"energy": 3, "mood": 4}),
            (HABIT_MISSED, {"habit": "Meditate"}),
            (TASK_RESCHEDULED, {"task": "Write report", "times": 2}),
        ]
        signals = [
            SignalClassifier.build_signal(TEST_USER, event_type, payload, target_entity_id=uuid.uuid4())
            for event_type, payload in events
        ]

        result = SignalQueueService.enqueue_batch(session, signals)
        print(f"Queued for {TEST_USER}: {result}")
        print(f"Queue status: {SignalQueueService.get_status_counts(session)}")
    finally:
        session.close()


if __name__ == "__main__":
    queue_test_signals()
