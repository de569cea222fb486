import logging
import sqlite3
import threading
from collections.abc import Callable
from typing import Any

from database.db import save_items

logger = logging.getLogger(__name__)

SnapshotFn = Callable[[], list[dict[str, Any]]]
SaveFn = Callable[[str, list[dict[str, Any]]], None]


class PersistenceFailure(Exception):
    """The backing store rejected a save."""


class StoreWriter:
    """
    Pushes in-memory state to the key-value store.

    Mutations only mark keys dirty. The background ticker flushes them with
    a fresh snapshot, off the request path. A failed save leaves the key
    dirty, so the next flush retries it with whatever the state is by then.
    """

    def __init__(self, save_fn: SaveFn = save_items):
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._save = save_fn
        self._sources: dict[str, SnapshotFn] = {}
        self._pending: set[str] = set()
        self.last_error: str | None = None

    def register(self, key: str, snapshot_fn: SnapshotFn) -> None:
        self._sources[key] = snapshot_fn

    def mark_dirty(self, key: str) -> None:
        with self._lock:
            self._pending.add(key)

    @property
    def pending(self) -> set[str]:
        with self._lock:
            return set(self._pending)

    def _save_one(self, key: str) -> None:
        items = self._sources[key]()
        try:
            self._save(key, items)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailure(f"Saving {key} failed: {e}") from e

    def flush(self) -> bool:
        """
        Save every dirty key. Returns True when nothing is left pending.

        Mutations may keep marking keys dirty while a flush runs; a key
        touched mid-save stays pending for the next flush.
        """
        with self._flush_lock:
            with self._lock:
                keys = sorted(self._pending)
                self._pending.clear()

            failed: dict[str, str] = {}
            for key in keys:
                try:
                    self._save_one(key)
                except PersistenceFailure as e:
                    failed[key] = str(e)
                    logger.warning("%s; will retry", e)

            with self._lock:
                self._pending.update(failed)
                if failed:
                    self.last_error = list(failed.values())[-1]
                elif not self._pending:
                    self.last_error = None
                return not self._pending
