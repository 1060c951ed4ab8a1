"""Elasticsearch implementation of the IndexClient contract.

Operations issued inside ``batch()`` are buffered and sent with one bulk
request when the scope exits; outside a batch every operation is sent on its
own. ``commit()`` refreshes the indices that received writes.

Errors are translated at this boundary:
- connection failures and timeouts -> EngineUnavailableError
- rejected documents in a single request -> RecordSubmissionError
- rejected documents in a batch, failed refresh -> BatchCommitError
"""

import dataclasses
import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from elasticsearch import ApiError, ConnectionTimeout, Elasticsearch
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch.helpers import BulkIndexError, bulk
from typing_extensions import override

from .errors import BatchCommitError, EngineUnavailableError, RecordSubmissionError
from .index_client import IndexClient
from .records import resolve_record_key

logger = logging.getLogger(__name__)

DocumentBuilder = Callable[[Any], dict[str, Any]]


def default_document(record: Any) -> dict[str, Any]:
    """Build the document body for a record.

    Supports pydantic models, mappings, dataclasses and plain objects.
    """
    if hasattr(record, "model_dump"):
        return record.model_dump(mode="json")
    if isinstance(record, Mapping):
        return dict(record)
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return dataclasses.asdict(record)
    return {k: v for k, v in vars(record).items() if not k.startswith("_")}


class ElasticsearchIndexClient(IndexClient):
    """IndexClient writing one index per record class.

    Example:
        client = ElasticsearchIndexClient(url="http://localhost:9200", index_prefix="app_")

        with client.batch():
            client.index_record(post)
            client.remove_by_id("Comment", "17")
        client.commit()
    """

    def __init__(
        self,
        es: Elasticsearch | None = None,
        *,
        url: str | None = None,
        index_prefix: str = "",
        document_builder: DocumentBuilder | None = None,
    ):
        """Initialize client.

        Args:
            es: Existing Elasticsearch client; created from url if None
            url: Elasticsearch URL used when es is None
            index_prefix: Prefix prepended to every index name
            document_builder: Callable building the document body for a record
        """
        if es is None:
            if url is None:
                from .config import Config

                url = Config.ELASTICSEARCH_URL
            es = Elasticsearch(url)

        self.es: Elasticsearch = es
        self.index_prefix: str = index_prefix
        self.document_builder: DocumentBuilder = document_builder or default_document
        self._actions: list[dict[str, Any]] = []
        self._touched: set[str] = set()
        self._batching: bool = False

    def index_name(self, class_name: str) -> str:
        return f"{self.index_prefix}{class_name.lower()}"

    # -------------------------------------------------------------------------
    # IndexClient Protocol Methods
    # -------------------------------------------------------------------------

    @override
    @contextmanager
    def batch(self) -> Iterator[None]:
        """Buffer operations and send them in one bulk request on exit.

        Nested scopes join the outermost one.
        """
        if self._batching:
            yield
            return

        self._batching = True
        try:
            yield
        except BaseException:
            self._actions.clear()
            raise
        finally:
            self._batching = False
        self._send(self._take_actions(), batch=True)

    @override
    def index_record(self, record: Any) -> None:
        key = resolve_record_key(record)
        self._queue(
            {
                "_op_type": "index",
                "_index": self.index_name(key.class_name),
                "_id": key.record_id,
                "_source": self.document_builder(record),
            }
        )

    @override
    def remove_by_id(self, class_name: str, record_id: str) -> None:
        self._queue(
            {
                "_op_type": "delete",
                "_index": self.index_name(class_name),
                "_id": str(record_id),
            }
        )

    @override
    def commit(self) -> None:
        """Send anything still buffered and refresh the written indices."""
        self._send(self._take_actions(), batch=True)
        if not self._touched:
            return
        indices = sorted(self._touched)
        try:
            _ = self.es.indices.refresh(index=indices)
        except (ESConnectionError, ConnectionTimeout) as e:
            raise EngineUnavailableError(str(e)) from e
        except ApiError as e:
            raise BatchCommitError(f"Refresh of {', '.join(indices)} failed: {e}") from e
        self._touched.clear()

    # -------------------------------------------------------------------------
    # Delete by query (not queued)
    # -------------------------------------------------------------------------

    def remove_by_query(self, class_name: str, query: dict[str, Any]) -> None:
        """Delete every document of a class matching an Elasticsearch query."""
        self._delete_by_query(self.index_name(class_name), query)

    def remove_all(self, *class_names: str) -> None:
        """Delete all documents of the given classes, or of every class."""
        if class_names:
            index = ",".join(self.index_name(name) for name in class_names)
        else:
            index = f"{self.index_prefix}*"
        self._delete_by_query(index, {"match_all": {}})

    def _delete_by_query(self, index: str, query: dict[str, Any]) -> None:
        try:
            _ = self.es.delete_by_query(index=index, query=query, refresh=True)
        except (ESConnectionError, ConnectionTimeout) as e:
            raise EngineUnavailableError(str(e)) from e

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _take_actions(self) -> list[dict[str, Any]]:
        actions, self._actions = self._actions, []
        return actions

    def _queue(self, action: dict[str, Any]) -> None:
        if self._batching:
            self._actions.append(action)
        else:
            self._send([action], batch=False)

    def _send(self, actions: list[dict[str, Any]], *, batch: bool) -> None:
        if not actions:
            return
        error_class = BatchCommitError if batch else RecordSubmissionError
        try:
            _ = bulk(self.es, actions, ignore_status=(404,))
        except BulkIndexError as e:
            raise error_class(f"{len(e.errors)} document(s) rejected: {e.errors[:3]}") from e
        except (ESConnectionError, ConnectionTimeout) as e:
            raise EngineUnavailableError(str(e)) from e
        except ApiError as e:
            raise error_class(str(e)) from e
        self._touched.update(action["_index"] for action in actions)
        logger.debug(f"Sent {len(actions)} bulk action(s)")
