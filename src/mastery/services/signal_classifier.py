"""Maps domain events to queue priority and processing window."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, Optional

from mastery.db.models import (
    DEFAULT_TTL_BY_PRIORITY,
    ProcessingWindowType,
    SignalEntry,
    SignalPriority,
)
from mastery.db.types import utc_now

# Event type names
MORNING_CHECK_IN_SUBMITTED = "MorningCheckInSubmitted"
EVENING_CHECK_IN_SUBMITTED = "EveningCheckInSubmitted"
CHECK_IN_SKIPPED = "CheckInSkipped"
CHECK_IN_UPDATED = "CheckInUpdated"
HABIT_COMPLETED = "HabitCompleted"
HABIT_MISSED = "HabitMissed"
HABIT_SKIPPED = "HabitSkipped"
HABIT_STREAK_MILESTONE = "HabitStreakMilestone"
TASK_COMPLETED = "TaskCompleted"
TASK_RESCHEDULED = "TaskRescheduled"
GOAL_STATUS_CHANGED = "GoalStatusChanged"
METRIC_OBSERVATION_RECORDED = "MetricObservationRecorded"
EXPERIMENT_STARTED = "ExperimentStarted"
EXPERIMENT_COMPLETED = "ExperimentCompleted"
PROJECT_STATUS_CHANGED = "ProjectStatusChanged"
USER_PROFILE_UPDATED = "UserProfileUpdated"
SEASON_CREATED = "SeasonCreated"

# Thresholds for promoting a user's pending batch to the urgent tier
MISSED_HABITS_ESCALATION = 3
RESCHEDULES_ESCALATION = 3
SKIPPED_CHECK_INS_ESCALATION = 2

# Resolves when a user's processing window opens: (user_id, window_type, now) -> start
WindowStartResolver = Callable[[str, ProcessingWindowType, datetime], Optional[datetime]]


@dataclass(frozen=True)
class SignalClassification:
    priority: SignalPriority
    window_type: ProcessingWindowType
    target_entity_type: Optional[str] = None

    @property
    def default_ttl(self) -> timedelta:
        return DEFAULT_TTL_BY_PRIORITY[self.priority]


def _standard(entity: str) -> SignalClassification:
    return SignalClassification(SignalPriority.STANDARD, ProcessingWindowType.BATCH_WINDOW, entity)


def _low(entity: str) -> SignalClassification:
    return SignalClassification(SignalPriority.LOW, ProcessingWindowType.BATCH_WINDOW, entity)


_CLASSIFICATIONS: Dict[str, SignalClassification] = {
    MORNING_CHECK_IN_SUBMITTED: SignalClassification(
        SignalPriority.WINDOW_ALIGNED, ProcessingWindowType.MORNING_WINDOW, "CheckIn"
    ),
    EVENING_CHECK_IN_SUBMITTED: SignalClassification(
        SignalPriority.WINDOW_ALIGNED, ProcessingWindowType.EVENING_WINDOW, "CheckIn"
    ),
    HABIT_COMPLETED: _standard("Habit"),
    HABIT_MISSED: _standard("Habit"),
    HABIT_SKIPPED: _standard("Habit"),
    HABIT_STREAK_MILESTONE: _standard("Habit"),
    TASK_COMPLETED: _standard("Task"),
    TASK_RESCHEDULED: _standard("Task"),
    GOAL_STATUS_CHANGED: _standard("Goal"),
    METRIC_OBSERVATION_RECORDED: _standard("Metric"),
    EXPERIMENT_STARTED: _standard("Experiment"),
    EXPERIMENT_COMPLETED: _standard("Experiment"),
    PROJECT_STATUS_CHANGED: _standard("Project"),
    USER_PROFILE_UPDATED: _low("UserProfile"),
    SEASON_CREATED: _low("Season"),
    CHECK_IN_UPDATED: _low("CheckIn"),
}

for _entity in ("Habit", "Goal", "Task", "Project", "Experiment"):
    for _verb in ("Created", "Updated", "Archived"):
        _CLASSIFICATIONS[f"{_entity}{_verb}"] = _low(_entity)


@dataclass(frozen=True)
class WindowSchedule:
    """Daily check-in windows in one timezone. Defaults match a new user profile."""

    morning_start: time = time(6, 0)
    evening_start: time = time(20, 0)
    tz: tzinfo = timezone.utc

    def __call__(self, user_id: str, window_type: ProcessingWindowType, now: datetime) -> Optional[datetime]:
        return self.window_start(window_type, now)

    def window_start(self, window_type: ProcessingWindowType, now: datetime) -> Optional[datetime]:
        """Start of today's window in UTC, or None for windows without a daily start."""
        if window_type == ProcessingWindowType.MORNING_WINDOW:
            start = self.morning_start
        elif window_type == ProcessingWindowType.EVENING_WINDOW:
            start = self.evening_start
        else:
            return None
        local_day = now.astimezone(self.tz).date()
        return datetime.combine(local_day, start, tzinfo=self.tz).astimezone(timezone.utc)


class SignalClassifier:
    """Decides how (and whether) a domain event enters the signal queue."""

    @staticmethod
    def classify(event_type: str, payload: Optional[Dict[str, Any]] = None) -> Optional[SignalClassification]:
        """Return the classification, or None for events that never produce a signal."""
        if event_type == CHECK_IN_SKIPPED:
            check_in_type = str((payload or {}).get("check_in_type", "Morning")).lower()
            window = (
                ProcessingWindowType.EVENING_WINDOW
                if check_in_type == "evening"
                else ProcessingWindowType.MORNING_WINDOW
            )
            return SignalClassification(SignalPriority.WINDOW_ALIGNED, window, "CheckIn")
        return _CLASSIFICATIONS.get(event_type)

    @staticmethod
    def should_escalate_to_urgent(signals: Iterable[SignalEntry]) -> bool:
        """Too many negative signals pending for one user warrant an immediate look."""
        missed = rescheduled = skipped_check_ins = 0
        for signal in signals:
            if signal.event_type == HABIT_MISSED:
                missed += 1
            elif signal.event_type == TASK_RESCHEDULED:
                rescheduled += 1
            elif signal.event_type == CHECK_IN_SKIPPED:
                skipped_check_ins += 1

        return (
            missed >= MISSED_HABITS_ESCALATION
            or rescheduled >= RESCHEDULES_ESCALATION
            or (skipped_check_ins >= SKIPPED_CHECK_INS_ESCALATION and missed >= 1)
        )

    @staticmethod
    def build_signal(
        user_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        target_entity_id: Optional[uuid.UUID] = None,
        scheduled_window_start: Optional[datetime] = None,
        window_resolver: Optional[WindowStartResolver] = None,
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SignalEntry]:
        """Classify an event into an unsaved signal.

        Window-aligned signals wait for ``scheduled_window_start``. When it is not
        given, ``window_resolver`` supplies it; with neither, the signal is claimable
        right away.
        """
        classification = SignalClassifier.classify(event_type, payload)
        if classification is None:
            return None

        now = now or utc_now()
        if (
            scheduled_window_start is None
            and window_resolver is not None
            and classification.priority == SignalPriority.WINDOW_ALIGNED
        ):
            scheduled_window_start = window_resolver(user_id, classification.window_type, now)
        return SignalEntry(
            user_id=user_id,
            event_type=event_type,
            event_data=payload,
            priority=classification.priority,
            window_type=classification.window_type,
            scheduled_window_start=scheduled_window_start,
            target_entity_type=classification.target_entity_type,
            target_entity_id=target_entity_id,
            created_at=now,
            expires_at=now + (ttl or classification.default_ttl),
        )
