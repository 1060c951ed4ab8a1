"""Tests for record resolution, loader registry and error classification."""

import sys
import types

import pytest

from conftest import DictLoader, Post
from search_index_queue import (
    BatchCommitError,
    ConfigurationError,
    EngineUnavailableError,
    ErrorKind,
    LoaderRegistry,
    RecordKey,
    RecordSubmissionError,
    classify_error,
)
from search_index_queue.records import class_name_of, resolve_record_key


class TestResolveRecordKey:
    def test_record_object(self):
        assert resolve_record_key(Post(id=5, title="x")) == RecordKey("Post", "5")

    def test_mapping(self):
        assert resolve_record_key({"class": "Post", "id": 5}) == RecordKey("Post", "5")
        assert resolve_record_key({"class": Post, "id": "a"}) == RecordKey("Post", "a")

    def test_record_key_passes_through(self):
        key = RecordKey("Comment", "1")
        assert resolve_record_key(key) is key

    def test_mapping_missing_keys(self):
        with pytest.raises(ConfigurationError, match="'class' and 'id'"):
            _ = resolve_record_key({"id": 5})

    def test_object_without_id(self):
        with pytest.raises(ConfigurationError):
            _ = resolve_record_key(Post(id=None, title="unsaved"))

    def test_class_name_of(self):
        assert class_name_of(Post) == "Post"
        assert class_name_of("Post") == "Post"


class TestLoaderRegistry:
    def test_load_all(self):
        registry = LoaderRegistry({"Post": DictLoader([Post(1, "a"), Post(2, "b")])})

        result = registry.load_all("Post", [1, "2", "3", 1])

        assert result.found("1")
        assert result.get("2") == Post(2, "b")
        assert not result.found("3")
        assert result.get("3") is None
        assert registry.get("Post").calls == [["1", "2", "3"]]

    def test_unregistered_class_returns_empty_result(self):
        result = LoaderRegistry().load_all("Post", ["1"])

        assert result.class_name == "Post"
        assert result.records == {}

    def test_empty_ids_skip_loader(self):
        loader = DictLoader()
        registry = LoaderRegistry()
        registry.register(Post, loader)

        _ = registry.load_all("Post", [])

        assert registry.get("Post") is loader
        assert loader.calls == []

    def test_register_rejects_non_loader(self):
        with pytest.raises(ConfigurationError):
            LoaderRegistry().register("Post", object())

    def test_from_string(self, monkeypatch):
        module = types.ModuleType("fake_loaders")
        module.post_loader = DictLoader([Post(1, "a")])
        module.CommentLoader = DictLoader
        monkeypatch.setitem(sys.modules, "fake_loaders", module)

        registry = LoaderRegistry.from_string(
            "Post=fake_loaders:post_loader, Comment=fake_loaders:CommentLoader"
        )

        assert registry.get("Post") is module.post_loader
        assert isinstance(registry.get("Comment"), DictLoader)

    def test_from_empty_string(self):
        registry = LoaderRegistry.from_string("")
        assert registry.get("Post") is None

    @pytest.mark.parametrize("value", ["Post", "Post=module", "=fake:loader", "Post=:loader"])
    def test_from_string_invalid(self, value):
        with pytest.raises(ConfigurationError, match="Invalid loader definition"):
            _ = LoaderRegistry.from_string(value)


class TestClassifyError:
    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (RecordSubmissionError("bad"), ErrorKind.PER_RECORD),
            (BatchCommitError("bad"), ErrorKind.BATCH_COMMIT),
            (EngineUnavailableError("down"), ErrorKind.ENGINE_UNAVAILABLE),
            (ConnectionRefusedError(), ErrorKind.ENGINE_UNAVAILABLE),
            (ValueError("unknown"), ErrorKind.PER_RECORD),
            (MemoryError(), ErrorKind.FATAL),
            (KeyboardInterrupt(), ErrorKind.FATAL),
            (SystemExit(1), ErrorKind.FATAL),
        ],
    )
    def test_classify(self, error, kind):
        assert classify_error(error) is kind

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)
