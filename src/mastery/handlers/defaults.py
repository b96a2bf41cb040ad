"""Handlers used when no recommendation pipeline or embedding backend is wired in."""
from __future__ import annotations

from typing import Sequence

from loguru import logger
from sqlalchemy.orm import Session

from mastery.db.models import OutboxEntry, ProcessingWindowType, SignalEntry
from mastery.handlers.base import BatchOutcome

NO_PIPELINE_REASON = "No recommendation pipeline configured"


class SkippingSignalHandler:
    """Acknowledges every signal as skipped so the queue keeps draining."""

    def handle(
        self,
        session: Session,
        *,
        user_id: str,
        window_type: ProcessingWindowType,
        signals: Sequence[SignalEntry],
    ) -> BatchOutcome:
        logger.info(f"[HANDLER] Skipping {len(signals)} {window_type.value} signals for {user_id}")
        return BatchOutcome(
            skipped_signal_ids={signal.id for signal in signals},
            skip_reason=NO_PIPELINE_REASON,
        )


class LoggingOutboxProcessor:
    def process(self, session: Session, entries: Sequence[OutboxEntry]) -> None:
        for entry in entries:
            logger.info(f"[OUTBOX] {entry.operation.value} {entry.entity_type} {entry.entity_id} (no embedding backend)")
