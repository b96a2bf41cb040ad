from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence, Set

from sqlalchemy.orm import Session

from mastery.db.models import AssessmentTier, OutboxEntry, ProcessingWindowType, SignalEntry


@dataclass
class BatchOutcome:
    """What the recommendation pipeline did with one user's batch."""

    tier0_rules_triggered: int = 0
    tier1_score: Optional[float] = None       # combined score from the quick assessment
    state_delta: Optional[dict] = None
    tier2_executed: bool = False
    recommendation_ids: List[Any] = field(default_factory=list)
    skipped_signal_ids: Set[int] = field(default_factory=set)
    skip_reason: Optional[str] = None

    @property
    def final_tier(self) -> AssessmentTier:
        if self.tier2_executed:
            return AssessmentTier.TIER2_FULL_PIPELINE
        if self.tier1_score is not None:
            return AssessmentTier.TIER1_QUICK_ASSESSMENT
        if self.tier0_rules_triggered > 0:
            return AssessmentTier.TIER0_DETERMINISTIC
        return AssessmentTier.SKIPPED


class SignalBatchHandler(Protocol):
    def handle(
        self,
        session: Session,
        *,
        user_id: str,
        window_type: ProcessingWindowType,
        signals: Sequence[SignalEntry],
    ) -> BatchOutcome:
        """Assess a user's claimed signals. Raising marks the whole batch failed."""
        ...


class OutboxProcessor(Protocol):
    def process(self, session: Session, entries: Sequence[OutboxEntry]) -> None:
        """Generate or drop embeddings for the given entity changes. Raise to retry."""
        ...
