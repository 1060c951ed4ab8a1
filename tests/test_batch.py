"""Tests for BatchSubmitter: batch commits, individual fallback and outages."""

from datetime import datetime, timezone

import pytest

from search_index_queue import (
    BatchCommitError,
    BatchSubmitter,
    EngineUnavailableError,
)


def _claim(queue):
    return queue.store.claim_next_batch(queue.options)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def assert_released(store, entries):
    for entry in entries:
        stored = store.get_entry(entry.id)
        assert stored.error is None
        assert stored.attempts == entry.attempts
        assert stored.lock_token is None
        assert stored.run_at <= _now()


# ============================================================================
# Successful batches
# ============================================================================


class TestSubmitSuccess:
    def test_full_batch_committed_once(self, queue, index_client):
        queue.index_all("Post", [1, 2])
        queue.remove({"class": "Comment", "id": 3})
        entries = _claim(queue)

        submitter = BatchSubmitter(queue, entries)

        assert submitter.submit() == 3
        assert queue.total_count() == 0
        assert index_client.commits == 1
        assert index_client.batches == 1
        assert sorted(index_client.committed) == [
            ("index", "Post", "1"),
            ("index", "Post", "2"),
            ("remove", "Comment", "3"),
        ]
        assert all(submitter.is_processed(e) for e in entries)

    def test_total_count_drops_by_batch_size(self, queue):
        queue.index_all("Post", [1, 2, 3, 4, 5])
        queue.options = queue.options.model_copy(update={"batch_size": 3})

        _ = BatchSubmitter(queue, _claim(queue)).submit()

        assert queue.total_count() == 2

    def test_empty_batch(self, queue, index_client):
        assert BatchSubmitter(queue, []).submit() == 0
        assert index_client.commits == 0

    def test_missing_record_is_a_noop_success(self, queue, index_client):
        queue.index_all("Post", [99])
        submitter = BatchSubmitter(queue, _claim(queue))

        assert submitter.submit() == 1
        assert queue.total_count() == 0
        assert index_client.committed == []

    def test_records_loaded_once_per_class(self, queue, post_loader, comment_loader):
        queue.index_all("Post", [1, 2, 3])
        queue.index_all("Comment", [4])
        queue.remove_all("Comment", [5])
        submitter = BatchSubmitter(queue, _claim(queue))

        _ = submitter.submit()

        assert post_loader.calls == [["1", "2", "3"]]
        assert comment_loader.calls == [["4"]]

    def test_unregistered_class_is_a_noop_success(self, queue, index_client):
        queue.index({"class": "Tag", "id": 1})
        queue.remove({"class": "Tag", "id": 2})

        assert BatchSubmitter(queue, _claim(queue)).submit() == 2
        assert index_client.committed == [("remove", "Tag", "2")]


# ============================================================================
# Recoverable failures
# ============================================================================


class TestSubmitFailures:
    def test_mid_batch_submission_error(self, queue, index_client):
        first, second = queue.index_all("Post", [1, 2])
        index_client.reject_ids = {"2"}
        submitter = BatchSubmitter(queue, _claim(queue))

        assert submitter.submit() == 1

        assert queue.store.get_entry(first.id) is None
        failed = queue.store.get_entry(second.id)
        assert failed.error is not None
        assert "RecordSubmissionError" in failed.error
        assert failed.attempts == 1
        assert failed.lock_token is None
        assert index_client.commits == 1

    def test_commit_failure_falls_back_to_individual(self, queue, index_client):
        queue.index_all("Post", [1, 2])
        index_client.commit_errors = [BatchCommitError("bulk request rejected")]
        submitter = BatchSubmitter(queue, _claim(queue))

        assert submitter.submit() == 2

        assert queue.total_count() == 0
        assert queue.error_count() == 0
        assert index_client.commits == 3
        assert sorted(index_client.committed) == [("index", "Post", "1"), ("index", "Post", "2")]

    def test_fully_failed_commit(self, queue, index_client):
        entries = queue.index_all("Post", [1, 2, 3])
        index_client.commit_errors = [BatchCommitError("rejected")] * 4
        submitter = BatchSubmitter(queue, _claim(queue))

        assert submitter.submit() == 0

        assert queue.total_count() == 3
        assert queue.error_count() == 3
        for entry in entries:
            stored = queue.store.get_entry(entry.id)
            assert stored.attempts == 1
            assert stored.error.startswith("[batch_commit] BatchCommitError")
            assert stored.lock_token is None
            assert stored.run_at > _now()

    def test_unclassified_commit_error_falls_back_to_individual(self, queue, index_client):
        queue.index_all("Post", [1, 2])
        index_client.commit_errors = [ValueError("malformed"), ValueError("malformed")]
        submitter = BatchSubmitter(queue, _claim(queue))

        assert submitter.submit() == 1
        assert queue.error_count() == 1
        assert queue.errors()[0].error.startswith("[per_record] ValueError: malformed")

    def test_failed_entry_not_resubmitted_individually(self, queue, index_client):
        first, second = queue.index_all("Post", [1, 2])
        index_client.reject_ids = {"2"}
        index_client.commit_errors = [BatchCommitError("rejected")]
        submitter = BatchSubmitter(queue, _claim(queue))

        assert submitter.submit() == 1

        assert queue.store.get_entry(first.id) is None
        assert queue.store.get_entry(second.id).attempts == 1
        assert index_client.commits == 2

    def test_loader_failure_fails_class_entries(self, queue, post_loader, index_client):
        posts = queue.index_all("Post", [1, 2])
        queue.index_all("Comment", [1])
        post_loader.error = RuntimeError("application database down")
        submitter = BatchSubmitter(queue, _claim(queue))

        assert submitter.submit() == 1

        for entry in posts:
            stored = queue.store.get_entry(entry.id)
            assert "application database down" in stored.error
            assert stored.attempts == 1
        assert index_client.committed == [("index", "Comment", "1")]

    def test_loader_connection_refused_is_not_an_engine_outage(self, queue, post_loader):
        queue.index_all("Post", [1])
        post_loader.error = ConnectionRefusedError("database refused")

        assert BatchSubmitter(queue, _claim(queue)).submit() == 0
        assert queue.error_count() == 1

    def test_deletes_do_not_load_records(self, queue, post_loader, index_client):
        queue.remove_all("Post", [1, 2])
        post_loader.error = RuntimeError("should not be called")

        assert BatchSubmitter(queue, _claim(queue)).submit() == 2
        assert post_loader.calls == []


# ============================================================================
# Engine outages and fatal errors
# ============================================================================


class TestSubmitEngineUnavailable:
    def test_connection_refused_on_commit(self, queue, index_client):
        queue.index_all("Post", [1, 2])
        entries = _claim(queue)
        index_client.commit_errors = [ConnectionRefusedError("refused")]

        with pytest.raises(EngineUnavailableError) as exc_info:
            _ = BatchSubmitter(queue, entries).submit()

        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)
        assert_released(queue.store, entries)
        assert queue.total_count() == 2
        assert queue.ready_count() == 2

    def test_engine_unavailable_on_submission(self, queue, index_client):
        queue.index_all("Post", [1, 2])
        entries = _claim(queue)
        index_client.submit_error = EngineUnavailableError("no route to host")

        with pytest.raises(EngineUnavailableError, match="no route to host"):
            _ = BatchSubmitter(queue, entries).submit()

        assert_released(queue.store, entries)
        assert index_client.commits == 0

    def test_outage_during_individual_fallback(self, queue, index_client):
        first, second = queue.index_all("Post", [1, 2])
        entries = _claim(queue)

        def commit_then_fail():
            index_client.commits += 1
            if index_client.commits == 1:
                raise BatchCommitError("rejected")
            if index_client.commits == 3:
                raise ConnectionRefusedError("refused")

        index_client.commit = commit_then_fail
        submitter = BatchSubmitter(queue, entries)

        with pytest.raises(EngineUnavailableError):
            _ = submitter.submit()

        assert queue.store.get_entry(first.id) is None
        assert submitter.is_processed(first)
        assert_released(queue.store, [second])

    def test_fatal_error_resets_and_propagates(self, queue, index_client):
        queue.index_all("Post", [1, 2])
        entries = _claim(queue)
        index_client.submit_error = KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            _ = BatchSubmitter(queue, entries).submit()

        assert_released(queue.store, entries)

    def test_memory_error_is_fatal(self, queue, index_client):
        queue.index_all("Post", [1])
        entries = _claim(queue)
        index_client.commit_errors = [MemoryError()]

        with pytest.raises(MemoryError):
            _ = BatchSubmitter(queue, entries).submit()

        assert_released(queue.store, entries)
