"""SQLAlchemy implementation of the EntryStore contract.

Entries live in the ``index_queue_entries`` table. Any database SQLAlchemy
supports can back the queue; several worker processes may share the table.

The store handles:
- Merging repeated enqueues of the same record into one pending row
- Lease based batch claiming with an optimistic UPDATE ... WHERE
- Error bookkeeping with linear backoff
- Operator maintenance (counts, error listing, reset)
"""

import logging
from collections.abc import Sequence
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from typing_extensions import override

from .entry_store import EntryStore, format_error
from .entry_translator import db_entry_to_queue_entry, now_ms
from .errors import ErrorKind
from .models import IndexQueueEntry
from .schemas import Operation, QueueEntry, QueueOptions

logger = logging.getLogger(__name__)


class SQLAlchemyEntryStore(EntryStore):
    """Relational EntryStore backed by a SQLAlchemy session factory.

    Example:
        engine = create_db_engine("sqlite:///index_queue.db")
        create_tables(engine)
        store = SQLAlchemyEntryStore(create_session_factory(engine))

        store.add("Post", "42", Operation.UPSERT, priority=5)
        batch = store.claim_next_batch(QueueOptions(batch_size=10))
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        """Initialize store with a session factory.

        Args:
            session_factory: SQLAlchemy session factory (sessionmaker)
        """
        self.session_factory: sessionmaker[Session] = session_factory

    # -------------------------------------------------------------------------
    # Filters
    # -------------------------------------------------------------------------

    @staticmethod
    def _class_filter(options: QueueOptions) -> list[ColumnElement[bool]]:
        if not options.class_names:
            return []
        return [IndexQueueEntry.record_class_name.in_(options.class_names)]

    def _count(self, *conditions: ColumnElement[bool]) -> int:
        with self.session_factory() as session:
            stmt = select(func.count()).select_from(IndexQueueEntry).where(*conditions)
            return session.execute(stmt).scalar_one()

    # -------------------------------------------------------------------------
    # Operator surface
    # -------------------------------------------------------------------------

    @override
    def total_count(self, options: QueueOptions) -> int:
        return self._count(*self._class_filter(options))

    @override
    def ready_count(self, options: QueueOptions) -> int:
        return self._count(IndexQueueEntry.run_at <= now_ms(), *self._class_filter(options))

    @override
    def error_count(self, options: QueueOptions) -> int:
        return self._count(IndexQueueEntry.error.is_not(None), *self._class_filter(options))

    @override
    def list_errors(
        self, options: QueueOptions, limit: int = 50, offset: int = 0
    ) -> list[QueueEntry]:
        with self.session_factory() as session:
            stmt = (
                select(IndexQueueEntry)
                .where(IndexQueueEntry.error.is_not(None), *self._class_filter(options))
                .order_by(IndexQueueEntry.id)
                .limit(limit)
                .offset(offset)
            )
            return [db_entry_to_queue_entry(row) for row in session.execute(stmt).scalars()]

    @override
    def reset(self, options: QueueOptions) -> int:
        """Clear errors, attempts and locks so every entry runs immediately.

        Returns:
            Number of entries reset
        """
        with self.session_factory() as session:
            # Duplicates go first: unlocking them all at once would leave two
            # pending rows for one record.
            self._collapse_duplicates(session, options)
            stmt = (
                update(IndexQueueEntry)
                .where(*self._class_filter(options))
                .values(run_at=now_ms(), attempts=0, error=None, lock_token=None)
                .execution_options(synchronize_session=False)
            )
            count = session.execute(stmt).rowcount
            session.commit()
            return count

    def _collapse_duplicates(self, session: Session, options: QueueOptions) -> None:
        """Fold entries sharing a record key into the newest one, locked or not."""
        stmt = (
            select(
                IndexQueueEntry.record_class_name,
                IndexQueueEntry.record_id,
                func.max(IndexQueueEntry.id),
                func.max(IndexQueueEntry.priority),
            )
            .where(*self._class_filter(options))
            .group_by(IndexQueueEntry.record_class_name, IndexQueueEntry.record_id)
            .having(func.count() > 1)
        )
        for class_name, record_id, keep_id, priority in session.execute(stmt).all():
            session.execute(
                update(IndexQueueEntry)
                .where(IndexQueueEntry.id == keep_id)
                .values(priority=priority)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(IndexQueueEntry)
                .where(
                    IndexQueueEntry.record_class_name == class_name,
                    IndexQueueEntry.record_id == record_id,
                    IndexQueueEntry.id != keep_id,
                )
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------------
    # Claiming
    # -------------------------------------------------------------------------

    def _select_ready_ids(self, session: Session, options: QueueOptions, now: int) -> list[int]:
        stmt = (
            select(IndexQueueEntry.id)
            .where(IndexQueueEntry.run_at <= now, *self._class_filter(options))
            .order_by(IndexQueueEntry.priority.desc(), IndexQueueEntry.id)
            .limit(options.batch_size)
        )
        return list(session.execute(stmt).scalars())

    @override
    def claim_next_batch(self, options: QueueOptions) -> list[QueueEntry]:
        """Atomically lease the next batch of ready entries.

        1. Select up to batch_size ready ids by priority, then id
        2. Stamp a fresh lock token on the ids that are still ready and push
           run_at out by retry_interval, so a crashed worker's entries become
           ready again on their own
        3. Re-read only the rows carrying our token

        Rows another worker (or a reset) touched between steps 1 and 2 no
        longer match the UPDATE and drop out of the result. A row leased in
        the same millisecond is only taken over once its lease is strictly in
        the past, so two workers never hold the same entry.

        Returns:
            Claimed entries in processing order; empty if nothing is ready
        """
        with self.session_factory() as session:
            now = now_ms()
            ids = self._select_ready_ids(session, options, now)
            if not ids:
                return []

            lock_token = uuid4().hex
            stmt = (
                update(IndexQueueEntry)
                .where(
                    IndexQueueEntry.id.in_(ids),
                    IndexQueueEntry.run_at <= now,
                    or_(IndexQueueEntry.lock_token.is_(None), IndexQueueEntry.run_at < now),
                )
                .values(
                    lock_token=lock_token,
                    run_at=now + max(1, int(options.retry_interval * 1000)),
                )
                .execution_options(synchronize_session=False)
            )
            _ = session.execute(stmt)
            session.commit()

            stmt = (
                select(IndexQueueEntry)
                .where(IndexQueueEntry.id.in_(ids), IndexQueueEntry.lock_token == lock_token)
                .order_by(IndexQueueEntry.priority.desc(), IndexQueueEntry.id)
            )
            entries = [db_entry_to_queue_entry(row) for row in session.execute(stmt).scalars()]

        if len(entries) < len(ids):
            logger.debug(f"Claimed {len(entries)} of {len(ids)} selected entries")
        return entries

    # -------------------------------------------------------------------------
    # Enqueue / delete
    # -------------------------------------------------------------------------

    @override
    def add(
        self,
        record_class_name: str,
        record_id: str,
        operation: Operation,
        priority: int = 0,
    ) -> QueueEntry:
        """Add an entry, merging into the pending entry for the record if any.

        Locked entries are left alone; a separate pending entry is created
        instead so the in-flight lease is not disturbed.

        The unique index on pending rows rejects a second insert for the same
        record. When another process wins that race the insert is retried
        once, which then merges into the row it created.
        """
        try:
            return self._add_or_merge(record_class_name, str(record_id), operation, priority)
        except IntegrityError:
            logger.debug(f"Concurrent enqueue of {record_class_name}:{record_id}, merging")
            return self._add_or_merge(record_class_name, str(record_id), operation, priority)

    def _find_pending(
        self,
        session: Session,
        record_class_name: str,
        record_id: str,
        exclude_id: int | None = None,
    ) -> IndexQueueEntry | None:
        stmt = (
            select(IndexQueueEntry)
            .where(
                IndexQueueEntry.record_class_name == record_class_name,
                IndexQueueEntry.record_id == record_id,
                IndexQueueEntry.lock_token.is_(None),
            )
            .order_by(IndexQueueEntry.id.desc())
            .limit(1)
        )
        if exclude_id is not None:
            stmt = stmt.where(IndexQueueEntry.id != exclude_id)
        return session.execute(stmt).scalar_one_or_none()

    def _add_or_merge(
        self, record_class_name: str, record_id: str, operation: Operation, priority: int
    ) -> QueueEntry:
        with self.session_factory() as session:
            db_entry = self._find_pending(session, record_class_name, record_id)

            if db_entry is None:
                db_entry = IndexQueueEntry(
                    record_class_name=record_class_name,
                    record_id=record_id,
                    operation=operation.value,
                    priority=priority,
                    run_at=now_ms(),
                    attempts=0,
                )
                session.add(db_entry)
            else:
                db_entry.operation = operation.value
                db_entry.priority = max(db_entry.priority, priority)
                db_entry.run_at = now_ms()

            session.commit()
            session.refresh(db_entry)
            return db_entry_to_queue_entry(db_entry)

    @override
    def delete_entries(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        with self.session_factory() as session:
            stmt = (
                delete(IndexQueueEntry)
                .where(IndexQueueEntry.id.in_(list(ids)))
                .execution_options(synchronize_session=False)
            )
            count = session.execute(stmt).rowcount
            session.commit()
            return count

    @override
    def get_entry(self, entry_id: int) -> QueueEntry | None:
        with self.session_factory() as session:
            db_entry = session.get(IndexQueueEntry, entry_id)
            if db_entry:
                return db_entry_to_queue_entry(db_entry)
            return None

    # -------------------------------------------------------------------------
    # Per-entry outcomes
    # -------------------------------------------------------------------------

    @staticmethod
    def _owned_by(entry: QueueEntry) -> ColumnElement[bool]:
        if entry.lock_token is None:
            return IndexQueueEntry.id == entry.id
        return (IndexQueueEntry.id == entry.id) & or_(
            IndexQueueEntry.lock_token == entry.lock_token,
            IndexQueueEntry.lock_token.is_(None),
        )

    @override
    def set_error(
        self,
        entry: QueueEntry,
        error: BaseException,
        retry_interval: float | None = None,
        kind: ErrorKind | None = None,
    ) -> bool:
        """Record a failed submission and release the lease.

        The entry is rescheduled to now + retry_interval * attempts.

        Returns:
            True if the entry was updated, False if the lease was lost
        """
        attempts = entry.attempts + 1
        values: dict[str, Any] = {
            "attempts": attempts,
            "error": format_error(error, kind),
            "lock_token": None,
        }
        if retry_interval is not None:
            values["run_at"] = now_ms() + int(retry_interval * 1000) * attempts

        try:
            updated = self._release(entry, values)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record error on entry {entry.id}: {error!r}")
            logger.warning(e)
            return False

        if not updated:
            logger.warning(f"Lease lost on entry {entry.id}; error not recorded: {error!r}")
        return updated

    @override
    def reset_entry(self, entry: QueueEntry) -> bool:
        """Release the lease and make the entry ready immediately."""
        try:
            return self._release(
                entry, {"attempts": 0, "error": None, "lock_token": None, "run_at": now_ms()}
            )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to reset entry {entry.id}")
            logger.warning(e)
            return False

    def _release(self, entry: QueueEntry, values: dict[str, Any]) -> bool:
        """Apply values to an owned entry, or fold it into a pending sibling.

        A pending entry for the same record was enqueued while this one was
        leased, so it holds the newest operation and supersedes this one. The
        released row is deleted rather than unlocked next to it.
        """
        try:
            return self._release_once(entry, values)
        except IntegrityError:
            # A pending entry appeared after the lookup; fold into it instead.
            return self._release_once(entry, values)

    def _release_once(self, entry: QueueEntry, values: dict[str, Any]) -> bool:
        with self.session_factory() as session:
            pending = self._find_pending(
                session, entry.record_class_name, entry.record_id, exclude_id=entry.id
            )
            if pending is None:
                stmt = (
                    update(IndexQueueEntry)
                    .where(self._owned_by(entry))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                updated = session.execute(stmt).rowcount > 0
                session.commit()
                return updated

            stmt = (
                delete(IndexQueueEntry)
                .where(self._owned_by(entry))
                .execution_options(synchronize_session=False)
            )
            deleted = session.execute(stmt).rowcount > 0
            if deleted:
                pending.priority = max(pending.priority, entry.priority)
                pending.run_at = min(pending.run_at, now_ms())
                logger.info(f"Entry {entry.id} superseded by pending entry {pending.id}")
            session.commit()
            return deleted
