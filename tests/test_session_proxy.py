"""Tests for QueueingIndexClient."""

from unittest.mock import MagicMock

import pytest

from conftest import Post
from search_index_queue import ConfigurationError, Operation, QueueingIndexClient


@pytest.fixture
def real_client():
    return MagicMock()


@pytest.fixture
def proxy(queue, real_client):
    return QueueingIndexClient(queue, real_client)


class TestQueueingIndexClient:
    def test_index_enqueues_records(self, proxy, queue, index_client):
        entries = proxy.index(Post(1, "a"), Post(2, "b"))

        assert [e.operation for e in entries] == [Operation.UPSERT, Operation.UPSERT]
        assert queue.total_count() == 2
        assert index_client.pending == []

    def test_index_record(self, proxy, queue):
        entry = proxy.index_record(Post(3, "c"))
        assert entry.record_id == "3"

    def test_remove_and_remove_by_id(self, proxy, queue):
        _ = proxy.remove(Post(1, "a"))
        entry = proxy.remove_by_id("Comment", 4)

        assert (entry.record_class_name, entry.record_id) == ("Comment", "4")
        assert entry.operation == Operation.DELETE
        assert queue.total_count() == 2

    def test_batch_and_commit_do_nothing(self, proxy, queue, real_client):
        with proxy.batch():
            _ = proxy.index(Post(1, "a"))
        proxy.commit()

        assert queue.total_count() == 1
        real_client.commit.assert_not_called()

    def test_delete_by_query_forwarded(self, proxy, real_client, queue):
        proxy.remove_by_query("Post", {"match_all": {}})
        proxy.remove_all("Post")

        real_client.remove_by_query.assert_called_once_with("Post", {"match_all": {}})
        real_client.remove_all.assert_called_once_with("Post")
        assert queue.total_count() == 0

    def test_delete_by_query_needs_client(self, queue):
        proxy = QueueingIndexClient(queue)

        with pytest.raises(ConfigurationError):
            proxy.remove_all()

    def test_queued_records_processed(self, proxy, queue, index_client):
        _ = proxy.index(Post(1, "a"))

        assert queue.process() == 1
        assert index_client.committed == [("index", "Post", "1")]
