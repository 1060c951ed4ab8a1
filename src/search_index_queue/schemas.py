"""
Pydantic schemas for queue entries and queue options.
Shared between the queue controller, the batch submitter and every entry store.
"""

from collections.abc import Iterable
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Operation(str, Enum):
    """Operation to perform on the search index for a record."""

    UPSERT = "upsert"
    DELETE = "delete"


class QueueEntry(BaseModel):
    """One queued index-or-remove operation for a specific record.

    Entries are immutable snapshots; stores hand out new copies on change.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Store assigned identifier")
    record_class_name: str = Field(..., description="Domain type of the target record")
    record_id: str = Field(..., description="Identifier of the record within its type")
    operation: Operation = Field(Operation.UPSERT, description="Index operation")
    priority: int = Field(0, description="Higher values are processed first")
    run_at: datetime = Field(..., description="Entry is ready once run_at <= now")
    lock_token: str | None = Field(None, description="Set while leased to a worker")
    error: str | None = Field(None, description="Last failure classification and detail")
    attempts: int = Field(0, ge=0, description="Number of failed submissions")

    @property
    def is_delete(self) -> bool:
        return self.operation is Operation.DELETE

    @property
    def is_locked(self) -> bool:
        return self.lock_token is not None


class QueueOptions(BaseModel):
    """Queue configuration passed to every entry store operation."""

    model_config = ConfigDict(frozen=True)

    retry_interval: float = Field(60.0, gt=0, description="Seconds between retries")
    batch_size: int = Field(100, gt=0, description="Maximum entries per claimed batch")
    class_names: tuple[str, ...] = Field(
        default_factory=tuple, description="Record classes handled by the queue"
    )

    @field_validator("class_names", mode="before")
    @classmethod
    def normalize_class_names(cls, v: str | Iterable[str] | None) -> tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,) if v else ()
        return tuple(str(name) for name in v if name)

    def allows(self, class_name: str) -> bool:
        """Check whether entries for class_name belong to this queue."""
        return not self.class_names or class_name in self.class_names
