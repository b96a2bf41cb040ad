from __future__ import annotations

from typing import Optional
from uuid import UUID


class SignalQueueError(Exception):
    def __init__(self, msg: str, code: Optional[str] = None, batch_id: Optional[UUID] = None):
        super().__init__(msg)
        self.code = code
        self.batch_id = batch_id


class DuplicateBatchError(SignalQueueError):
    """A processing cycle with this batch id has already been recorded."""

    def __init__(self, batch_id: UUID):
        super().__init__(f"Batch {batch_id} already recorded", code="DUPLICATE_BATCH", batch_id=batch_id)


class HistoryCompletedError(SignalQueueError):
    """Processing history rows are read-only once completed."""

    def __init__(self, batch_id: Optional[UUID] = None):
        super().__init__(
            f"Processing history for batch {batch_id} is already completed",
            code="HISTORY_COMPLETED",
            batch_id=batch_id,
        )


class PayloadTooLargeError(SignalQueueError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Event payload is {size} chars, limit is {limit}", code="PAYLOAD_TOO_LARGE")
        self.size = size
        self.limit = limit
