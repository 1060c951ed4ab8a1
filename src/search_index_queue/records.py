"""Record identification and loading.

Entries only carry a class name and a record id. Before an upsert can be sent
to the index, the record has to be loaded again through a ``RecordLoader``
registered for its class name.

Example:
    registry = LoaderRegistry()
    registry.register("Post", PostLoader(session_factory))

    result = registry.load_all("Post", ["1", "2"])
    post = result.get("1")
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Protocol, runtime_checkable

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class RecordKey(NamedTuple):
    """Class name and id identifying a record."""

    class_name: str
    record_id: str


def class_name_of(record_class: type | str) -> str:
    """Get the class name used in queue entries for a class or class name."""
    if isinstance(record_class, str):
        return record_class
    return record_class.__name__


def resolve_record_key(record: Any) -> RecordKey:
    """Resolve a record reference to its class name and id.

    Accepts a ``RecordKey``, a mapping with ``class`` and ``id`` keys, or any
    object with an ``id`` attribute (its class name is used).

    Raises:
        ConfigurationError: If the reference cannot be resolved
    """
    if isinstance(record, RecordKey):
        return record
    if isinstance(record, Mapping):
        if "class" not in record or "id" not in record:
            raise ConfigurationError("Record mapping must have 'class' and 'id' keys")
        return RecordKey(class_name_of(record["class"]), str(record["id"]))
    record_id = getattr(record, "id", None)
    if record_id is None:
        raise ConfigurationError(f"Cannot determine the id of {record!r}")
    return RecordKey(type(record).__name__, str(record_id))


@runtime_checkable
class RecordLoader(Protocol):
    """Loads records of one class for indexing."""

    def load_all(self, ids: list[str]) -> Iterable[Any]:
        """Load the records with the given ids; missing ids are omitted."""
        ...

    def record_id(self, record: Any) -> str:
        """Get the id of a loaded record."""
        ...


@dataclass
class LoadResult:
    """Records loaded for one class, keyed by record id."""

    class_name: str
    records: dict[str, Any] = field(default_factory=dict)

    def found(self, record_id: str) -> bool:
        return record_id in self.records

    def get(self, record_id: str) -> Any | None:
        return self.records.get(record_id)


class LoaderRegistry:
    """Maps record class names to their loaders."""

    def __init__(self, loaders: Mapping[str, RecordLoader] | None = None):
        self._loaders: dict[str, RecordLoader] = {}
        for class_name, loader in (loaders or {}).items():
            self.register(class_name, loader)

    def register(self, record_class: type | str, loader: RecordLoader) -> None:
        if not isinstance(loader, RecordLoader):
            raise ConfigurationError(f"{loader!r} does not implement RecordLoader")
        self._loaders[class_name_of(record_class)] = loader

    def get(self, class_name: str) -> RecordLoader | None:
        return self._loaders.get(class_name)

    def load_all(self, class_name: str, ids: Iterable[str]) -> LoadResult:
        """Load all records of a class in one call.

        Classes without a registered loader yield an empty result, so their
        upserts are treated as records that no longer exist.
        """
        result = LoadResult(class_name=class_name)
        loader = self._loaders.get(class_name)
        if loader is None:
            logger.warning(f"No record loader registered for {class_name}")
            return result

        id_list = list(dict.fromkeys(str(record_id) for record_id in ids))
        if not id_list:
            return result
        for record in loader.load_all(id_list):
            result.records[str(loader.record_id(record))] = record
        return result

    @classmethod
    def from_string(cls, value: str) -> LoaderRegistry:
        """Build a registry from ``Class=module:attribute`` pairs.

        The attribute is either a loader instance or a zero-argument factory
        returning one. Pairs are separated by commas.
        """
        registry = cls()
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            class_name, sep, target = item.partition("=")
            module_name, colon, attribute = target.partition(":")
            if not sep or not colon or not class_name or not module_name or not attribute:
                raise ConfigurationError(f"Invalid loader definition: {item!r}")
            loader = getattr(importlib.import_module(module_name.strip()), attribute.strip())
            if isinstance(loader, type) or (
                not isinstance(loader, RecordLoader) and callable(loader)
            ):
                loader = loader()
            registry.register(class_name.strip(), loader)
        return registry
