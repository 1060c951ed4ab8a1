"""Storage contract for index queue entries.

Every persistence backend implements ``EntryStore``. The queue controller and
batch submitter only talk to this protocol, so backends are interchangeable
and chosen by configuration through ``create_entry_store``.
"""

from __future__ import annotations

import traceback
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .errors import ConfigurationError, ErrorKind, classify_error
from .schemas import Operation, QueueEntry, QueueOptions

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

MAX_ERROR_LENGTH = 4000


@runtime_checkable
class EntryStore(Protocol):
    """Persistence contract for queue entries.

    All counting, listing, reset and claiming operations are filtered by the
    class names in ``options`` when it is not empty.
    """

    def total_count(self, options: QueueOptions) -> int: ...

    def ready_count(self, options: QueueOptions) -> int: ...

    def error_count(self, options: QueueOptions) -> int: ...

    def list_errors(
        self, options: QueueOptions, limit: int = 50, offset: int = 0
    ) -> list[QueueEntry]: ...

    def reset(self, options: QueueOptions) -> int: ...

    def claim_next_batch(self, options: QueueOptions) -> list[QueueEntry]: ...

    def add(
        self,
        record_class_name: str,
        record_id: str,
        operation: Operation,
        priority: int = 0,
    ) -> QueueEntry: ...

    def delete_entries(self, ids: Sequence[int]) -> int: ...

    def set_error(
        self,
        entry: QueueEntry,
        error: BaseException,
        retry_interval: float | None = None,
        kind: ErrorKind | None = None,
    ) -> bool: ...

    def reset_entry(self, entry: QueueEntry) -> bool: ...

    def get_entry(self, entry_id: int) -> QueueEntry | None: ...


def format_error(error: BaseException, kind: ErrorKind | None = None) -> str:
    """Render an exception as the error text stored on an entry.

    The text holds the error classification, exception class, message and
    traceback, truncated to MAX_ERROR_LENGTH characters.
    """
    kind = kind or classify_error(error)
    header = f"[{kind.value}] {type(error).__name__}: {error}"
    trace = "".join(traceback.format_tb(error.__traceback__)) if error.__traceback__ else ""
    text = f"{header}\n{trace}" if trace else header
    return text[:MAX_ERROR_LENGTH]


def create_entry_store(
    backend: str,
    session_factory: sessionmaker[Session] | None = None,
) -> EntryStore:
    """Create the entry store for a configured backend.

    Args:
        backend: "sqlalchemy" or "memory"
        session_factory: Required for the sqlalchemy backend

    Raises:
        ConfigurationError: If the backend is unknown or misconfigured
    """
    if backend == "sqlalchemy":
        if session_factory is None:
            raise ConfigurationError("The sqlalchemy backend requires a session factory")
        from .sqlalchemy_store import SQLAlchemyEntryStore

        return SQLAlchemyEntryStore(session_factory)
    if backend == "memory":
        from .memory_store import InMemoryEntryStore

        return InMemoryEntryStore()
    raise ConfigurationError(f"Unknown entry store backend: {backend}")
