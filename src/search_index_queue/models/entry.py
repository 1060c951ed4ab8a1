"""Queue entry model for the search index queue table."""

from typing_extensions import override

from sqlalchemy import BigInteger, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class IndexQueueEntry(Base):
    """Pending index or remove operation for one record.

    Shared between:
    - application processes: enqueue entries
    - queue workers: claim, submit and delete entries

    Timestamps are stored in epoch milliseconds.

    At most one unlocked (pending) row exists per record. The partial unique
    index enforces this on databases that support partial indexes.
    """

    __tablename__ = "index_queue_entries"  # pyright: ignore[reportUnannotatedClassAttribute]
    __table_args__ = (  # pyright: ignore[reportUnannotatedClassAttribute]
        Index("index_queue_entries_run_at", "run_at", "record_class_name", "priority"),
        Index(
            "index_queue_entries_pending_record",
            "record_class_name",
            "record_id",
            unique=True,
            sqlite_where=text("lock_token IS NULL"),
            postgresql_where=text("lock_token IS NULL"),
        ).ddl_if(dialect=("sqlite", "postgresql")),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_class_name: Mapped[str] = mapped_column(String(255), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    run_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    lock_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @override
    def __repr__(self) -> str:
        return (
            f"<IndexQueueEntry(record_class_name={self.record_class_name}, "
            f"record_id={self.record_id}, priority={self.priority})>"
        )
