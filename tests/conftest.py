import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from mastery.db.base import Base, build_engine
from mastery.db.models import ProcessingWindowType, SignalEntry, SignalPriority

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
_RANDOM = object()


@pytest.fixture
def engine(tmp_path):
    # File database so concurrent sessions see each other's commits
    engine = build_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_signal():
    def _make(
        user_id="user-1",
        event_type="HabitMissed",
        priority=SignalPriority.STANDARD,
        window_type=ProcessingWindowType.BATCH_WINDOW,
        created_at=NOW,
        expires_at=None,
        target_entity_id=_RANDOM,
        target_entity_type="Habit",
        scheduled_window_start=None,
        **kwargs,
    ):
        return SignalEntry(
            user_id=user_id,
            event_type=event_type,
            priority=priority,
            window_type=window_type,
            created_at=created_at,
            expires_at=expires_at or created_at + timedelta(hours=48),
            target_entity_id=uuid.uuid4() if target_entity_id is _RANDOM else target_entity_id,
            target_entity_type=target_entity_type,
            scheduled_window_start=scheduled_window_start,
            **kwargs,
        )

    return _make
