"""Index client stand-in that queues writes instead of sending them.

Application code written against an index client can be handed a
``QueueingIndexClient`` so that its index and remove calls become queue
entries. Delete-by-query operations cannot be expressed as entries and are
forwarded to the real client right away.

Example:
    proxy = QueueingIndexClient(queue, ElasticsearchIndexClient())

    with proxy.batch():
        proxy.index(post, comment)
        proxy.remove_by_id("Post", "7")
    proxy.commit()
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from .errors import ConfigurationError
from .schemas import QueueEntry

if TYPE_CHECKING:
    from .elasticsearch_client import ElasticsearchIndexClient
    from .index_queue import IndexQueue


class QueueingIndexClient:
    """Routes index and remove calls through an IndexQueue."""

    def __init__(self, queue: "IndexQueue", client: "ElasticsearchIndexClient | None" = None):
        self.queue = queue
        self.client = client

    def index(self, *records: Any) -> list[QueueEntry]:
        """Queue records to be indexed."""
        return [self.queue.index(record) for record in records]

    def index_record(self, record: Any) -> QueueEntry:
        return self.queue.index(record)

    def remove(self, *records: Any) -> list[QueueEntry]:
        """Queue records to be removed from the index."""
        return [self.queue.remove(record) for record in records]

    def remove_by_id(self, class_name: str, record_id: Any) -> QueueEntry:
        return self.queue.remove({"class": class_name, "id": record_id})

    @contextmanager
    def batch(self) -> Iterator[None]:
        # entries are already batched by the queue
        yield

    def commit(self) -> None:
        pass

    def remove_by_query(self, class_name: str, query: dict[str, Any]) -> None:
        """Delete matching documents directly through the real client."""
        self._require_client().remove_by_query(class_name, query)

    def remove_all(self, *class_names: str) -> None:
        """Delete all documents of the given classes directly through the real client."""
        self._require_client().remove_all(*class_names)

    def _require_client(self) -> "ElasticsearchIndexClient":
        if self.client is None:
            raise ConfigurationError("Delete by query needs a real index client")
        return self.client
