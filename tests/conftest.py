"""Shared test fixtures for search_index_queue tests."""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from search_index_queue import (
    IndexQueue,
    InMemoryEntryStore,
    LoaderRegistry,
    RecordSubmissionError,
    SQLAlchemyEntryStore,
)
from search_index_queue.models import Base
from search_index_queue.mqtt import QueueEventBroadcaster

if TYPE_CHECKING:
    from collections.abc import Generator, Iterator

    from sqlalchemy.engine import Engine

    from search_index_queue import EntryStore


# ============================================================================
# Records and collaborators
# ============================================================================


@dataclass
class Post:
    id: int
    title: str


@dataclass
class Comment:
    id: int
    body: str


class DictLoader:
    """RecordLoader serving records from a dict keyed by id."""

    def __init__(self, records: Iterable[Any] = ()):
        self.records: dict[str, Any] = {str(record.id): record for record in records}
        self.calls: list[list[str]] = []
        self.error: BaseException | None = None

    def load_all(self, ids: list[str]) -> list[Any]:
        self.calls.append(list(ids))
        if self.error is not None:
            raise self.error
        return [self.records[record_id] for record_id in ids if record_id in self.records]

    def record_id(self, record: Any) -> str:
        return str(record.id)


class FakeIndexClient:
    """IndexClient recording operations and failing on demand.

    Attributes:
        committed: Operations made visible by a successful commit
        reject_ids: Record ids whose submission raises RecordSubmissionError
        submit_error: Raised by every index or remove call when set
        commit_errors: Raised by successive commits, one per call
    """

    def __init__(self):
        self.pending: list[tuple[str, str, str]] = []
        self.committed: list[tuple[str, str, str]] = []
        self.commits: int = 0
        self.batches: int = 0
        self.reject_ids: set[str] = set()
        self.submit_error: BaseException | None = None
        self.commit_errors: list[BaseException] = []

    @contextmanager
    def batch(self) -> Iterator[None]:
        self.batches += 1
        yield

    def index_record(self, record: Any) -> None:
        self._submit("index", type(record).__name__, str(record.id))

    def remove_by_id(self, class_name: str, record_id: str) -> None:
        self._submit("remove", class_name, str(record_id))

    def commit(self) -> None:
        self.commits += 1
        if self.commit_errors:
            self.pending.clear()
            raise self.commit_errors.pop(0)
        self.committed.extend(self.pending)
        self.pending.clear()

    def _submit(self, op: str, class_name: str, record_id: str) -> None:
        if self.submit_error is not None:
            raise self.submit_error
        if record_id in self.reject_ids:
            raise RecordSubmissionError(f"{class_name} {record_id} rejected")
        self.pending.append((op, class_name, record_id))


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def in_memory_engine() -> Generator[Engine, None, None]:
    """Create SQLite in-memory engine with all tables created.

    Yields:
        Engine: SQLAlchemy engine with in-memory SQLite database
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(in_memory_engine: Engine) -> sessionmaker[Session]:
    """Create session factory bound to in-memory engine."""
    return sessionmaker(bind=in_memory_engine, autoflush=False, expire_on_commit=False)


# ============================================================================
# Queue
# ============================================================================


@pytest.fixture(params=["sqlalchemy", "memory"])
def entry_store(request: pytest.FixtureRequest, session_factory: sessionmaker[Session]) -> EntryStore:
    """Entry store for every backend; store contract tests run once per backend."""
    if request.param == "sqlalchemy":
        return SQLAlchemyEntryStore(session_factory)
    return InMemoryEntryStore()


@pytest.fixture
def post_loader() -> DictLoader:
    return DictLoader(Post(id=i, title=f"Post {i}") for i in range(1, 6))


@pytest.fixture
def comment_loader() -> DictLoader:
    return DictLoader(Comment(id=i, body=f"Comment {i}") for i in range(1, 6))


@pytest.fixture
def index_client() -> FakeIndexClient:
    return FakeIndexClient()


@pytest.fixture
def broadcaster() -> MagicMock:
    return MagicMock(spec=QueueEventBroadcaster)


@pytest.fixture
def queue(
    entry_store: EntryStore,
    index_client: FakeIndexClient,
    post_loader: DictLoader,
    comment_loader: DictLoader,
    broadcaster: MagicMock,
) -> IndexQueue:
    """IndexQueue over the parametrized store with a fake index client."""
    return IndexQueue(
        entry_store,
        index_client,
        LoaderRegistry({"Post": post_loader, "Comment": comment_loader}),
        retry_interval=60,
        batch_size=10,
        broadcaster=broadcaster,
    )
