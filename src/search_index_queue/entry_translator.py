"""Conversion helpers between database rows and QueueEntry records."""

import time
from datetime import datetime, timezone

from .models import IndexQueueEntry
from .schemas import Operation, QueueEntry


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def db_entry_to_queue_entry(db_entry: IndexQueueEntry) -> QueueEntry:
    """Convert SQLAlchemy IndexQueueEntry to Pydantic QueueEntry.

    Returns:
        Pydantic QueueEntry detached from the session
    """
    return QueueEntry(
        id=db_entry.id,
        record_class_name=db_entry.record_class_name,
        record_id=db_entry.record_id,
        operation=Operation(db_entry.operation),
        priority=db_entry.priority,
        run_at=ms_to_datetime(db_entry.run_at),
        lock_token=db_entry.lock_token,
        error=db_entry.error,
        attempts=db_entry.attempts,
    )
