"""Process-local EntryStore.

Keeps entries in a dict guarded by a lock. Useful for tests, development and
single-process deployments; entries do not survive a restart.
"""

import itertools
import logging
import threading
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from typing_extensions import override

from .entry_store import EntryStore, format_error
from .errors import ErrorKind
from .schemas import Operation, QueueEntry, QueueOptions

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryEntryStore(EntryStore):
    """EntryStore holding entries in memory.

    Every operation runs under one lock, which makes claiming atomic across
    threads of the same process. Stored entries are frozen, so handing them
    out never exposes store state to mutation.
    """

    def __init__(self):
        self._entries: dict[int, QueueEntry] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _matching(self, options: QueueOptions) -> list[QueueEntry]:
        return [e for e in self._entries.values() if options.allows(e.record_class_name)]

    @staticmethod
    def _claim_order(entry: QueueEntry) -> tuple[int, int]:
        return (-entry.priority, entry.id)

    # -------------------------------------------------------------------------
    # Operator surface
    # -------------------------------------------------------------------------

    @override
    def total_count(self, options: QueueOptions) -> int:
        with self._lock:
            return len(self._matching(options))

    @override
    def ready_count(self, options: QueueOptions) -> int:
        now = _now()
        with self._lock:
            return sum(1 for e in self._matching(options) if e.run_at <= now)

    @override
    def error_count(self, options: QueueOptions) -> int:
        with self._lock:
            return sum(1 for e in self._matching(options) if e.error is not None)

    @override
    def list_errors(
        self, options: QueueOptions, limit: int = 50, offset: int = 0
    ) -> list[QueueEntry]:
        with self._lock:
            errors = sorted(
                (e for e in self._matching(options) if e.error is not None),
                key=lambda e: e.id,
            )
            return errors[offset : offset + limit]

    @override
    def reset(self, options: QueueOptions) -> int:
        now = _now()
        with self._lock:
            self._collapse_duplicates(options)
            matching = self._matching(options)
            for entry in matching:
                self._entries[entry.id] = entry.model_copy(
                    update={"run_at": now, "attempts": 0, "error": None, "lock_token": None}
                )
            return len(matching)

    def _collapse_duplicates(self, options: QueueOptions) -> None:
        groups: dict[tuple[str, str], list[QueueEntry]] = {}
        for entry in self._matching(options):
            groups.setdefault((entry.record_class_name, entry.record_id), []).append(entry)
        for entries in groups.values():
            if len(entries) < 2:
                continue
            keep = max(entries, key=lambda e: e.id)
            priority = max(e.priority for e in entries)
            self._entries[keep.id] = keep.model_copy(update={"priority": priority})
            for entry in entries:
                if entry.id != keep.id:
                    del self._entries[entry.id]

    # -------------------------------------------------------------------------
    # Claiming
    # -------------------------------------------------------------------------

    @override
    def claim_next_batch(self, options: QueueOptions) -> list[QueueEntry]:
        now = _now()
        lock_token = uuid4().hex
        run_at = now + timedelta(seconds=options.retry_interval)
        with self._lock:
            ready = sorted(
                (e for e in self._matching(options) if e.run_at <= now),
                key=self._claim_order,
            )[: options.batch_size]
            claimed = []
            for entry in ready:
                leased = entry.model_copy(update={"lock_token": lock_token, "run_at": run_at})
                self._entries[entry.id] = leased
                claimed.append(leased)
            return claimed

    # -------------------------------------------------------------------------
    # Enqueue / delete
    # -------------------------------------------------------------------------

    @override
    def add(
        self,
        record_class_name: str,
        record_id: str,
        operation: Operation,
        priority: int = 0,
    ) -> QueueEntry:
        now = _now()
        record_id = str(record_id)
        with self._lock:
            pending = [
                e
                for e in self._entries.values()
                if e.record_class_name == record_class_name
                and e.record_id == record_id
                and e.lock_token is None
            ]
            if pending:
                existing = max(pending, key=lambda e: e.id)
                entry = existing.model_copy(
                    update={
                        "operation": operation,
                        "priority": max(existing.priority, priority),
                        "run_at": now,
                    }
                )
            else:
                entry = QueueEntry(
                    id=next(self._ids),
                    record_class_name=record_class_name,
                    record_id=record_id,
                    operation=operation,
                    priority=priority,
                    run_at=now,
                )
            self._entries[entry.id] = entry
            return entry

    @override
    def delete_entries(self, ids: Sequence[int]) -> int:
        with self._lock:
            count = 0
            for entry_id in ids:
                if self._entries.pop(entry_id, None) is not None:
                    count += 1
            return count

    @override
    def get_entry(self, entry_id: int) -> QueueEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    # -------------------------------------------------------------------------
    # Per-entry outcomes
    # -------------------------------------------------------------------------

    def _owned(self, entry: QueueEntry) -> QueueEntry | None:
        current = self._entries.get(entry.id)
        if current is None:
            return None
        if entry.lock_token is not None and current.lock_token not in (None, entry.lock_token):
            return None
        return current

    @override
    def set_error(
        self,
        entry: QueueEntry,
        error: BaseException,
        retry_interval: float | None = None,
        kind: ErrorKind | None = None,
    ) -> bool:
        attempts = entry.attempts + 1
        update = {"attempts": attempts, "error": format_error(error, kind), "lock_token": None}
        if retry_interval is not None:
            update["run_at"] = _now() + timedelta(seconds=retry_interval * attempts)
        with self._lock:
            if not self._release(entry, update):
                logger.warning(f"Lease lost on entry {entry.id}; error not recorded: {error!r}")
                return False
            return True

    @override
    def reset_entry(self, entry: QueueEntry) -> bool:
        with self._lock:
            return self._release(
                entry, {"attempts": 0, "error": None, "lock_token": None, "run_at": _now()}
            )

    def _release(self, entry: QueueEntry, update: dict[str, Any]) -> bool:
        current = self._owned(entry)
        if current is None:
            return False
        if not self._fold_into_pending(entry):
            self._entries[entry.id] = current.model_copy(update=update)
        return True

    def _fold_into_pending(self, entry: QueueEntry) -> bool:
        siblings = [
            e
            for e in self._entries.values()
            if e.record_class_name == entry.record_class_name
            and e.record_id == entry.record_id
            and e.lock_token is None
            and e.id != entry.id
        ]
        if not siblings:
            return False
        pending = max(siblings, key=lambda e: e.id)
        self._entries[pending.id] = pending.model_copy(
            update={
                "priority": max(pending.priority, entry.priority),
                "run_at": min(pending.run_at, _now()),
            }
        )
        del self._entries[entry.id]
        logger.info(f"Entry {entry.id} superseded by pending entry {pending.id}")
        return True
