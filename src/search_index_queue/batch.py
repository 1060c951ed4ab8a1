"""Submission of one claimed batch of entries to the index.

The submitter first tries the whole batch inside one batching scope followed
by a single commit, since that is the efficient path. If the batch or its
commit is rejected, every entry still owned is retried on its own so one bad
document cannot hold back its batch-mates. When the engine cannot be reached
at all, the batch is released for immediate retry and the failure is raised.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from .errors import EngineUnavailableError, ErrorKind, classify_error
from .schemas import QueueEntry

if TYPE_CHECKING:
    from .index_queue import IndexQueue

logger = logging.getLogger(__name__)


class BatchSubmitter:
    """Submits a batch of claimed entries and records their outcomes.

    Per-entry state is local to the submitter:
    - processed: entries confirmed committed and deleted from the store
    - failed: entries whose error was recorded (lease released)

    Example:
        entries = store.claim_next_batch(options)
        submitter = BatchSubmitter(queue, entries)
        submitter.submit()
        print(submitter.processed_count)
    """

    def __init__(self, queue: IndexQueue, entries: list[QueueEntry] | None = None):
        self.queue: IndexQueue = queue
        self.entries: list[QueueEntry] = list(entries or [])
        self._records: dict[int, Any] = {}
        self._pending_delete: list[QueueEntry] = []
        self._processed: set[int] = set()
        self._failed: set[int] = set()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def is_processed(self, entry: QueueEntry) -> bool:
        return entry.id in self._processed

    def is_failed(self, entry: QueueEntry) -> bool:
        return entry.id in self._failed

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    def record_for(self, entry: QueueEntry) -> Any | None:
        """Get the loaded record for an upsert entry, None if it no longer exists."""
        return self._records.get(entry.id)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self) -> int:
        """Submit the entries to the index.

        Committed entries are deleted from the store. Entries that fail are
        given an error and rescheduled with backoff.

        Returns:
            Number of entries processed

        Raises:
            EngineUnavailableError: The index is not responding; all unprocessed
                entries were reset for immediate retry
        """
        if not self.entries:
            return 0

        try:
            self._load_records()
            try:
                with self.queue.client.batch():
                    for entry in self.entries:
                        if not self.is_failed(entry):
                            _ = self._submit_entry(entry)
                self._commit()
            except Exception as e:
                match classify_error(e):
                    case ErrorKind.ENGINE_UNAVAILABLE | ErrorKind.FATAL:
                        raise
                    case ErrorKind.PER_RECORD | ErrorKind.BATCH_COMMIT:
                        logger.warning(
                            f"Batch of {len(self.entries)} failed, submitting individually: {e!r}"
                        )
                        self._submit_each_entry()
        except BaseException as e:
            match classify_error(e):
                case ErrorKind.ENGINE_UNAVAILABLE:
                    self._reset_unprocessed()
                    if isinstance(e, EngineUnavailableError):
                        raise
                    raise EngineUnavailableError(f"Index engine is not responding: {e}") from e
                case ErrorKind.FATAL:
                    self._reset_unprocessed()
                    raise
                case ErrorKind.PER_RECORD | ErrorKind.BATCH_COMMIT:
                    raise

        return self.processed_count

    def _load_records(self) -> None:
        """Load the records of all upsert entries, one call per class."""
        ids_by_class: dict[str, list[str]] = defaultdict(list)
        for entry in self.entries:
            if not entry.is_delete:
                ids_by_class[entry.record_class_name].append(entry.record_id)

        for class_name, ids in ids_by_class.items():
            class_entries = [
                entry
                for entry in self.entries
                if entry.record_class_name == class_name and not entry.is_delete
            ]
            try:
                result = self.queue.loaders.load_all(class_name, ids)
            except Exception as e:
                # loader failures concern the application database, never the index
                match classify_error(e):
                    case ErrorKind.FATAL:
                        raise
                    case (
                        ErrorKind.PER_RECORD
                        | ErrorKind.BATCH_COMMIT
                        | ErrorKind.ENGINE_UNAVAILABLE
                    ):
                        for entry in class_entries:
                            self._fail(entry, e, ErrorKind.PER_RECORD)
                        continue
            for entry in class_entries:
                if result.found(entry.record_id):
                    self._records[entry.id] = result.get(entry.record_id)

    def _submit_entry(self, entry: QueueEntry) -> bool:
        """Send one entry's operation; record a per-entry error on failure.

        Returns:
            True if the operation was accepted and the entry awaits commit
        """
        client = self.queue.client
        try:
            if entry.is_delete:
                client.remove_by_id(entry.record_class_name, entry.record_id)
            else:
                record = self.record_for(entry)
                if record is not None:
                    client.index_record(record)
        except Exception as e:
            kind = classify_error(e)
            match kind:
                case ErrorKind.ENGINE_UNAVAILABLE | ErrorKind.FATAL:
                    raise
                case ErrorKind.PER_RECORD | ErrorKind.BATCH_COMMIT:
                    self._fail(entry, e, kind)
                    return False

        self._pending_delete.append(entry)
        return True

    def _commit(self) -> None:
        """Commit the index and delete the entries it now contains."""
        try:
            self.queue.client.commit()
        except BaseException:
            self._pending_delete.clear()
            raise

        committed, self._pending_delete = self._pending_delete, []
        if committed:
            _ = self.queue.store.delete_entries([entry.id for entry in committed])
            self._processed.update(entry.id for entry in committed)

    def _submit_each_entry(self) -> None:
        """Submit and commit entries one at a time.

        Entries whose lease was already released with an error are skipped.
        """
        self._pending_delete.clear()
        for entry in self.entries:
            if self.is_processed(entry) or self.is_failed(entry):
                continue
            if not self._submit_entry(entry):
                continue
            try:
                self._commit()
            except Exception as e:
                kind = classify_error(e)
                match kind:
                    case ErrorKind.ENGINE_UNAVAILABLE | ErrorKind.FATAL:
                        raise
                    case ErrorKind.PER_RECORD | ErrorKind.BATCH_COMMIT:
                        self._fail(entry, e, kind)

    def _fail(self, entry: QueueEntry, error: BaseException, kind: ErrorKind) -> None:
        logger.info(
            f"Entry {entry.id} ({entry.record_class_name} {entry.record_id}) failed: {error!r}"
        )
        _ = self.queue.store.set_error(entry, error, self.queue.retry_interval, kind)
        self._failed.add(entry.id)

    def _reset_unprocessed(self) -> None:
        """Release every entry not yet committed for immediate retry."""
        self._pending_delete.clear()
        for entry in self.entries:
            if not self.is_processed(entry):
                _ = self.queue.store.reset_entry(entry)
