"""Durable search index queue."""

# Public API - Configuration
from .config import Config

# Public API - Queue
from .batch import BatchSubmitter
from .index_queue import IndexQueue, default_priority, set_priority

# Public API - Storage
from .database import create_db_engine, create_session_factory, create_tables
from .entry_store import EntryStore, create_entry_store
from .memory_store import InMemoryEntryStore
from .sqlalchemy_store import SQLAlchemyEntryStore

# Public API - Index clients and records
from .elasticsearch_client import ElasticsearchIndexClient
from .index_client import IndexClient
from .records import LoaderRegistry, LoadResult, RecordKey, RecordLoader
from .session_proxy import QueueingIndexClient

# Public API - Pydantic models and errors
from .errors import (
    BatchCommitError,
    ConfigurationError,
    EngineUnavailableError,
    ErrorKind,
    IndexClientError,
    IndexQueueError,
    RecordSubmissionError,
    classify_error,
)
from .schemas import Operation, QueueEntry, QueueOptions

__all__ = [
    # Configuration
    "Config",
    # Queue
    "BatchSubmitter",
    "IndexQueue",
    "default_priority",
    "set_priority",
    # Storage
    "EntryStore",
    "InMemoryEntryStore",
    "SQLAlchemyEntryStore",
    "create_db_engine",
    "create_entry_store",
    "create_session_factory",
    "create_tables",
    # Index clients and records
    "ElasticsearchIndexClient",
    "IndexClient",
    "LoadResult",
    "LoaderRegistry",
    "QueueingIndexClient",
    "RecordKey",
    "RecordLoader",
    # Pydantic Models
    "Operation",
    "QueueEntry",
    "QueueOptions",
    # Errors
    "BatchCommitError",
    "ConfigurationError",
    "EngineUnavailableError",
    "ErrorKind",
    "IndexClientError",
    "IndexQueueError",
    "RecordSubmissionError",
    "classify_error",
]
