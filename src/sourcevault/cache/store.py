from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from sourcevault.cache.cipher import CipherHandle, CipherSqliteEngine, read_salt
from sourcevault.cache.errors import NotUnlocked, StoreUnavailable
from sourcevault.cache.models import CacheEntry, EntryMetadata, SchemaVersion
from sourcevault.cache.utils import wall_clock

logger = logging.getLogger(__name__)

STORE_FILENAME = "cache.store"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS entries (
  path TEXT PRIMARY KEY,
  content BLOB NOT NULL,
  size INTEGER NOT NULL,
  mtime INTEGER NOT NULL,
  cached_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS metadata (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""


class EncryptedStore:
    """Path-keyed cache entries plus a small metadata table, encrypted at rest.

    Every read and write needs an open handle, which only ``SessionManager.unlock``
    provides. Writes are persisted straight away unless they happen inside
    ``deferred()``, in which case they are persisted when the outermost block exits
    or when ``persist()`` is called.
    """

    def __init__(
        self,
        *,
        cache_dir: str | Path,
        engine: Optional[CipherSqliteEngine] = None,
        clock: Callable[[], float] = wall_clock,
    ) -> None:
        self._path = Path(cache_dir).expanduser() / STORE_FILENAME
        self._engine = engine or CipherSqliteEngine()
        self._clock = clock
        self._handle: Optional[CipherHandle] = None
        self._lock = threading.RLock()
        self._defer_depth = 0
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def exists(self) -> bool:
        return self._path.exists()

    def salt(self) -> Optional[bytes]:
        return read_salt(self._path)

    def open(self, key: bytes, salt: bytes) -> None:
        with self._lock:
            if self._handle is not None:
                self.close()
            is_new = not self.exists()
            handle = self._engine.open(self._path, key, salt)
            try:
                self._prepare_schema(handle)
                if is_new:
                    self._engine.commit(handle)
            except sqlite3.DatabaseError as e:
                self._engine.close(handle)
                raise StoreUnavailable(f"Store schema could not be prepared: {self._path}") from e
            except StoreUnavailable:
                self._engine.close(handle)
                raise
            self._handle = handle
            self._dirty = False
            self._defer_depth = 0
            logger.info("Store opened. path=%s new=%s", self._path, is_new)

    def close(self) -> None:
        with self._lock:
            handle = self._handle
            if handle is None:
                return
            try:
                if self._dirty:
                    self._engine.commit(handle)
            finally:
                self._engine.close(handle)
                self._handle = None
                self._dirty = False
                self._defer_depth = 0
            logger.info("Store closed. path=%s", self._path)

    def _prepare_schema(self, handle: CipherHandle) -> None:
        version = self._engine.query(handle, "PRAGMA user_version")[0][0]
        tables = {row[0] for row in self._engine.query(handle, "SELECT name FROM sqlite_master WHERE type='table'")}
        if tables and version != SchemaVersion:
            logger.warning(
                "Store schema version mismatch, starting fresh. path=%s expected=%s actual=%s",
                self._path,
                SchemaVersion,
                version,
            )
            self._engine.execute(handle, "DROP TABLE IF EXISTS entries")
            self._engine.execute(handle, "DROP TABLE IF EXISTS metadata")
            self._engine.executescript(handle, SCHEMA_SQL)
            self._engine.execute(handle, f"PRAGMA user_version = {SchemaVersion}")
            self._engine.commit(handle)
            return
        self._engine.executescript(handle, SCHEMA_SQL)
        self._engine.execute(handle, f"PRAGMA user_version = {SchemaVersion}")

    def _require_handle(self) -> CipherHandle:
        if self._handle is None:
            raise NotUnlocked("The cache is locked. Unlock it first.")
        return self._handle

    def _written(self, handle: CipherHandle) -> None:
        self._dirty = True
        if self._defer_depth == 0:
            self._persist_locked(handle)

    def _persist_locked(self, handle: CipherHandle) -> None:
        self._engine.commit(handle)
        self._dirty = False

    @contextmanager
    def deferred(self) -> Iterator[None]:
        with self._lock:
            self._require_handle()
            self._defer_depth += 1
        try:
            yield
        except BaseException:
            # Keep the original error (often a cancellation) if the final persist also fails.
            try:
                self._leave_deferred()
            except StoreUnavailable:
                logger.exception("Persist after interrupted batch failed. path=%s", self._path)
            raise
        self._leave_deferred()

    def _leave_deferred(self) -> None:
        with self._lock:
            self._defer_depth = max(0, self._defer_depth - 1)
            if self._defer_depth == 0 and self._handle is not None and self._dirty:
                self._persist_locked(self._handle)

    def persist(self) -> None:
        with self._lock:
            handle = self._require_handle()
            if self._dirty:
                self._persist_locked(handle)

    def get(self, path: str) -> Optional[tuple[bytes, int]]:
        with self._lock:
            handle = self._require_handle()
            rows = self._engine.query(handle, "SELECT content, mtime FROM entries WHERE path = ?", (path,))
        if not rows:
            return None
        content, mtime = rows[0]
        return bytes(content), int(mtime)

    def put(self, path: str, content: bytes, size: int, mtime: int) -> None:
        with self._lock:
            handle = self._require_handle()
            self._engine.execute(
                handle,
                "INSERT OR REPLACE INTO entries (path, content, size, mtime, cached_at) VALUES (?, ?, ?, ?, ?)",
                (path, sqlite3.Binary(content), int(size), int(mtime), self._clock()),
            )
            self._written(handle)

    def delete(self, path: str) -> bool:
        with self._lock:
            handle = self._require_handle()
            removed = self._engine.execute(handle, "DELETE FROM entries WHERE path = ?", (path,))
            if removed:
                self._written(handle)
        return removed > 0

    def list_all(self) -> dict[str, EntryMetadata]:
        with self._lock:
            handle = self._require_handle()
            rows = self._engine.query(handle, "SELECT path, mtime, size, cached_at FROM entries ORDER BY path")
        return {
            path: EntryMetadata(mtime=int(mtime), size=int(size), cached_at=float(cached_at))
            for path, mtime, size, cached_at in rows
        }

    def snapshot(self) -> list[CacheEntry]:
        """Return every entry with its content, read in one statement."""
        with self._lock:
            handle = self._require_handle()
            rows = self._engine.query(
                handle,
                "SELECT path, content, size, mtime, cached_at FROM entries ORDER BY path",
            )
        return [
            CacheEntry(path=path, content=bytes(content), size=int(size), mtime=int(mtime), cached_at=float(cached_at))
            for path, content, size, mtime, cached_at in rows
        ]

    def set_metadata(self, key: str, value: Any) -> None:
        with self._lock:
            handle = self._require_handle()
            self._engine.execute(
                handle,
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )
            self._written(handle)

    def get_metadata(self, key: str) -> Any:
        with self._lock:
            handle = self._require_handle()
            rows = self._engine.query(handle, "SELECT value FROM metadata WHERE key = ?", (key,))
        if not rows:
            return None
        return json.loads(rows[0][0])

    def clear_all(self) -> None:
        with self._lock:
            handle = self._require_handle()
            self._engine.execute(handle, "DELETE FROM entries")
            self._engine.execute(handle, "DELETE FROM metadata")
            # Freed pages would otherwise keep old content inside the sealed image.
            self._engine.vacuum(handle)
            self._persist_locked(handle)
        logger.info("Store cleared. path=%s", self._path)
