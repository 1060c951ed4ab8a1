"""Index client contract consumed by the batch submitter."""

from contextlib import AbstractContextManager
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class IndexClient(Protocol):
    """Client performing writes against a search engine.

    Implementations must raise ``EngineUnavailableError`` (or
    ``ConnectionRefusedError``) when the engine cannot be reached, so the
    queue can tell an outage apart from a bad document.
    """

    def batch(self) -> AbstractContextManager[None]:
        """Open a batching scope; operations are sent when the scope exits."""
        ...

    def index_record(self, record: Any) -> None:
        """Add or replace the document for a loaded record."""
        ...

    def remove_by_id(self, class_name: str, record_id: str) -> None:
        """Remove the document for a record."""
        ...

    def commit(self) -> None:
        """Make submitted operations durable and visible."""
        ...
