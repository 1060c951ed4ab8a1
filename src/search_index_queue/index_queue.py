"""Asynchronous queue for keeping a search index in sync with records.

Entries are added to the queue describing which records should be indexed or
removed. The queue then processes those entries and sends them to the search
engine in batches. Problems with the search engine therefore never stop the
application from working, and batching the commits handles more throughput
when a lot of records change.

Usage:
    queue = IndexQueue(
        store=SQLAlchemyEntryStore(session_factory),
        client=ElasticsearchIndexClient(url="http://localhost:9200"),
        loaders=LoaderRegistry({"Post": PostLoader()}),
        batch_size=100,
        retry_interval=60,
    )

    queue.index(post)
    queue.remove({"class": "Post", "id": 7})

    with set_priority(10):
        queue.index_all("Post", [1, 2, 3])

    processed = queue.process()
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from .batch import BatchSubmitter
from .errors import ConfigurationError, EngineUnavailableError
from .records import LoaderRegistry, class_name_of, resolve_record_key
from .schemas import Operation, QueueEntry, QueueOptions

if TYPE_CHECKING:
    from .entry_store import EntryStore
    from .index_client import IndexClient
    from .mqtt import QueueEventBroadcaster

logger = logging.getLogger(__name__)

BatchHandler = Callable[[BatchSubmitter], Any]

_default_priority: ContextVar[int | None] = ContextVar("index_queue_priority", default=None)


@contextmanager
def set_priority(priority: int) -> Iterator[None]:
    """Set the default priority for entries enqueued within the block.

    The value is bound to the current thread or asyncio task and restored when
    the block exits.

    Example:
        with set_priority(10):
            queue.index(post)  # enqueued with priority 10
    """
    token = _default_priority.set(int(priority))
    try:
        yield
    finally:
        _default_priority.reset(token)


def default_priority() -> int:
    """Get the ambient default priority (0 when none is set)."""
    priority = _default_priority.get()
    return 0 if priority is None else priority


class IndexQueue:
    """Queue of index and remove operations for a search engine.

    Args:
        store: EntryStore holding the entries
        client: IndexClient used to submit entries
        loaders: Registry of record loaders used for upserts
        retry_interval: Seconds to wait before retrying a failed entry. An
            entry that failed N times is retried after N * retry_interval.
        batch_size: Maximum number of entries submitted at once
        class_names: Record class names this queue handles; empty for all
        batch_handler: Optional callable receiving each BatchSubmitter; it
            must call ``submit()`` on it
        broadcaster: Optional event broadcaster notified of processing events
    """

    def __init__(
        self,
        store: EntryStore,
        client: IndexClient,
        loaders: LoaderRegistry | None = None,
        *,
        retry_interval: float = 60,
        batch_size: int = 100,
        class_names: str | type | Iterable[str | type] | None = None,
        batch_handler: BatchHandler | None = None,
        broadcaster: QueueEventBroadcaster | None = None,
    ):
        if class_names is None:
            names: list[str] = []
        elif isinstance(class_names, (str, type)):
            names = [class_name_of(class_names)]
        else:
            names = [class_name_of(name) for name in class_names]

        self.store: EntryStore = store
        self.client: IndexClient = client
        self.loaders: LoaderRegistry = loaders or LoaderRegistry()
        self.options: QueueOptions = QueueOptions(
            retry_interval=retry_interval,
            batch_size=batch_size,
            class_names=names,
        )
        self.batch_handler: BatchHandler | None = batch_handler
        self.broadcaster: QueueEventBroadcaster | None = broadcaster

    @property
    def retry_interval(self) -> float:
        return self.options.retry_interval

    @property
    def batch_size(self) -> int:
        return self.options.batch_size

    @property
    def class_names(self) -> tuple[str, ...]:
        return self.options.class_names

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def index(self, record: Any, priority: int | None = None) -> QueueEntry:
        """Queue a record to be indexed.

        Args:
            record: Record object with an ``id``, a mapping with ``class`` and
                ``id`` keys, or a RecordKey
            priority: Higher priorities are processed first; defaults to the
                ambient priority set with ``set_priority``
        """
        key = resolve_record_key(record)
        return self._enqueue(key.class_name, key.record_id, Operation.UPSERT, priority)

    def remove(self, record: Any, priority: int | None = None) -> QueueEntry:
        """Queue a record to be removed from the index."""
        key = resolve_record_key(record)
        return self._enqueue(key.class_name, key.record_id, Operation.DELETE, priority)

    def index_all(
        self, record_class: type | str, ids: Iterable[Any], priority: int | None = None
    ) -> list[QueueEntry]:
        """Queue a list of record ids of one class to be indexed."""
        class_name = class_name_of(record_class)
        return [
            self._enqueue(class_name, str(record_id), Operation.UPSERT, priority)
            for record_id in ids
        ]

    def remove_all(
        self, record_class: type | str, ids: Iterable[Any], priority: int | None = None
    ) -> list[QueueEntry]:
        """Queue a list of record ids of one class to be removed."""
        class_name = class_name_of(record_class)
        return [
            self._enqueue(class_name, str(record_id), Operation.DELETE, priority)
            for record_id in ids
        ]

    def _enqueue(
        self, class_name: str, record_id: str, operation: Operation, priority: int | None
    ) -> QueueEntry:
        if not self.options.allows(class_name):
            raise ConfigurationError(
                f"Class {class_name} is not in the class names allowed for the queue"
            )
        if priority is None:
            priority = default_priority()
        return self.store.add(class_name, record_id, operation, int(priority))

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def total_count(self) -> int:
        """Number of entries in the queue."""
        return self.store.total_count(self.options)

    def ready_count(self) -> int:
        """Number of entries ready to be processed now."""
        return self.store.ready_count(self.options)

    def error_count(self) -> int:
        """Number of entries carrying an error."""
        return self.store.error_count(self.options)

    def errors(self, limit: int = 50, offset: int = 0) -> list[QueueEntry]:
        """Entries carrying an error, ordered by id."""
        return self.store.list_errors(self.options, limit=limit, offset=offset)

    def reset(self) -> int:
        """Clear all errors and make every entry ready immediately."""
        count = self.store.reset(self.options)
        logger.info(f"Reset {count} queue entries")
        return count

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process(self) -> int:
        """Process the queue until no entries are ready.

        Errors on individual entries are recorded on the entries so they can
        be fixed and retried later. If the search engine is not responding,
        processing stops right away.

        Returns:
            Number of entries processed

        Raises:
            EngineUnavailableError: The search engine is not responding
        """
        count = 0
        while True:
            entries = self.store.claim_next_batch(self.options)
            if not entries:
                if self.store.ready_count(self.options) == 0:
                    break
                continue

            submitter = BatchSubmitter(self, entries)
            try:
                if self.batch_handler is not None:
                    _ = self.batch_handler(submitter)
                else:
                    _ = submitter.submit()
            except EngineUnavailableError as e:
                logger.error(f"Search engine not responding, stopping queue processing: {e}")
                if self.broadcaster is not None:
                    _ = self.broadcaster.publish_engine_unavailable(self.class_names, count, e)
                raise

            count += submitter.processed_count
            if self.broadcaster is not None:
                _ = self.broadcaster.publish_batch_processed(
                    self.class_names, len(entries), submitter.processed_count
                )

        logger.debug(f"Processed {count} queue entries")
        return count
