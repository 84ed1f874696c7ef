from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from sourcevault.cache.errors import AuthenticationError, RefreshInProgress
from sourcevault.cache.filters import PathFilter
from sourcevault.cache.models import (
    LAST_REFRESH_KEY,
    CacheStats,
    ConfigurationWarning,
    ListedEntry,
    RefreshSummary,
    SearchMatch,
)
from sourcevault.cache.search import SearchIndexer
from sourcevault.cache.session import CredentialSource, SessionManager
from sourcevault.cache.store import EncryptedStore
from sourcevault.cache.sync import SyncEngine
from sourcevault.cache.utils import display_path, wall_clock
from sourcevault.config.models import CacheSettings

logger = logging.getLogger(__name__)


def _normalize_directories(directories: Sequence[str]) -> tuple[list[str], list[ConfigurationWarning]]:
    normalized: list[str] = []
    warnings: list[ConfigurationWarning] = []
    for directory in directories:
        path = Path(directory).expanduser()
        if not path.is_dir():
            logger.warning("Configured directory does not exist. path=%s", directory)
            warnings.append(ConfigurationWarning(directory=str(directory), reason="directory does not exist"))
            normalized.append(str(path.absolute()))
            continue
        normalized.append(str(path.resolve()))
    return normalized, warnings


class CacheContext:
    """Everything one configured cache needs, built once at setup.

    This is the surface the UI layer talks to: lifecycle operations (unlock, lock,
    refresh, prune, clear, stats) and the three queries (list entries, fetch content,
    search content).
    """

    def __init__(
        self,
        settings: CacheSettings,
        *,
        credentials: Optional[CredentialSource] = None,
        clock: Callable[[], float] = time.monotonic,
        wall: Callable[[], float] = wall_clock,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._wall = wall
        self._directories, self._warnings = _normalize_directories(settings.directories)

        self._filter = PathFilter.from_settings(settings)
        self._store = EncryptedStore(cache_dir=settings.cache_dir, clock=wall)
        self._session = SessionManager(
            store=self._store,
            timeout_seconds=settings.session_timeout_seconds,
            clock=clock,
        )
        self._sync = SyncEngine(
            directories=self._directories,
            path_filter=self._filter,
            store=self._store,
            session=self._session,
            prune_on_refresh=settings.prune_on_refresh,
            checkpoint_every=settings.checkpoint_every,
            clock=wall,
        )
        self._search = SearchIndexer(store=self._store, session=self._session, directories=self._directories)

        self._refresh_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None
        self._runtime_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def settings(self) -> CacheSettings:
        return self._settings

    @property
    def directories(self) -> tuple[str, ...]:
        return tuple(self._directories)

    @property
    def warnings(self) -> tuple[ConfigurationWarning, ...]:
        return tuple(self._warnings)

    @property
    def store_path(self) -> Path:
        return self._store.path

    def needs_setup(self) -> bool:
        return self._session.needs_setup()

    # Lifecycle

    def unlock(self, passphrase: Optional[str] = None, *, confirmation: Optional[str] = None) -> bool:
        """Unlock the cache. Returns False for a wrong or unconfirmed passphrase.

        Without an explicit passphrase the configured credential source is asked.
        Storage failures other than a bad passphrase propagate as ``StoreUnavailable``.
        """
        if passphrase is None:
            if self._credentials is None:
                logger.warning("Cannot unlock: no passphrase given and no credential source configured.")
                return False
            if self._session.needs_setup():
                passphrase = self._credentials.passphrase(prompt="New cache passphrase")
                confirmation = self._credentials.passphrase(prompt="Confirm cache passphrase")
            else:
                passphrase = self._credentials.passphrase(prompt="Cache passphrase")
            if passphrase is None:
                logger.info("Unlock aborted: no passphrase entered.")
                return False

        try:
            self._session.unlock(passphrase, confirmation=confirmation)
        except AuthenticationError as e:
            logger.warning("Cache is locked: %s", e)
            return False
        return True

    def lock(self) -> None:
        self._session.lock()

    def is_locked(self) -> bool:
        return self._session.is_locked()

    async def refresh(self) -> Optional[RefreshSummary]:
        """Run one refresh pass. Returns None when the pass was cancelled via ``cancel_refresh``."""
        if self._refresh_lock.locked():
            raise RefreshInProgress("A cache refresh is already running.")
        async with self._refresh_lock:
            self._ensure_unlocked()
            task = asyncio.create_task(self._sync.refresh())
            self._refresh_task = task
            try:
                return await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                logger.info("Cache refresh cancelled before completion.")
                return None
            finally:
                self._refresh_task = None

    def cancel_refresh(self) -> bool:
        task = self._refresh_task
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_refreshing(self) -> bool:
        return self._refresh_lock.locked()

    async def prune(self) -> int:
        if self._refresh_lock.locked():
            raise RefreshInProgress("Cannot prune while a cache refresh is running.")
        async with self._refresh_lock:
            self._ensure_unlocked()
            return await self._sync.prune()

    def clear(self) -> None:
        if self._refresh_lock.locked():
            raise RefreshInProgress("Cannot clear the cache while a refresh is running.")
        self._ensure_unlocked()
        with self._session.activity():
            self._store.clear_all()
        logger.info("Cache cleared.")

    def get_stats(self) -> CacheStats:
        if self._session.is_locked():
            return CacheStats(
                cached_files=0,
                total_size=0,
                last_refresh=None,
                locked=True,
                cache_dir=str(self._store.path.parent),
                directories=self.directories,
            )
        with self._session.activity():
            entries = self._store.list_all()
            last_refresh = self._store.get_metadata(LAST_REFRESH_KEY)
        return CacheStats(
            cached_files=len(entries),
            total_size=sum(meta.size for meta in entries.values()),
            last_refresh=last_refresh,
            locked=False,
            cache_dir=str(self._store.path.parent),
            directories=self.directories,
        )

    # Queries

    async def list_entries(self) -> list[ListedEntry]:
        self._ensure_unlocked()
        await self._auto_refresh_if_stale()
        with self._session.activity():
            paths = list(self._store.list_all().keys())
        entries = [ListedEntry(display_path=display_path(p, self._directories), full_path=p) for p in paths]
        return sorted(entries, key=lambda entry: entry.display_path)

    def fetch(self, path: str) -> Optional[bytes]:
        """Return the cached content for ``path`` (absolute, or relative to the first root)."""
        self._ensure_unlocked()
        full_path = self._resolve_display_path(path)
        with self._session.activity():
            cached = self._store.get(full_path)
        if cached is None:
            return None
        content, _ = cached
        return content

    async def search(self, query: Optional[str], *, limit: Optional[int] = None) -> list[SearchMatch]:
        if not query:
            return []
        self._ensure_unlocked()
        await self._auto_refresh_if_stale()
        return await self._search.search(query, limit=limit)

    # Background refresh

    def start_runtime_refresh(self) -> None:
        if self._runtime_task and not self._runtime_task.done():
            return
        self._stop_event.clear()
        self._runtime_task = asyncio.create_task(self._runtime_loop())

    async def stop_runtime_refresh(self) -> None:
        if not self._runtime_task:
            return
        self._stop_event.set()
        await self._runtime_task
        self._runtime_task = None

    async def close(self) -> None:
        await self.stop_runtime_refresh()
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.lock()

    async def _runtime_loop(self) -> None:
        interval = self._settings.refresh_interval_seconds
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                await self._runtime_tick()
            except Exception:
                logger.exception("Cache runtime refresh tick failed.")
            elapsed = time.monotonic() - started
            sleep_seconds = max(0.0, interval - elapsed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except asyncio.TimeoutError:
                continue

    async def _runtime_tick(self) -> None:
        # Never prompt from the background; a locked cache just waits for the next tick.
        if self._session.is_locked() or self._refresh_lock.locked():
            return
        await self.refresh()

    # Helpers

    def _ensure_unlocked(self) -> None:
        if not self._session.is_locked():
            return
        if self._settings.password_prompt and self._credentials is not None:
            self.unlock()
        self._session.require_unlocked()

    async def _auto_refresh_if_stale(self) -> None:
        if not self._settings.auto_refresh or self._refresh_lock.locked():
            return
        with self._session.activity():
            last_refresh = self._store.get_metadata(LAST_REFRESH_KEY)
        if last_refresh is not None and self._wall() - last_refresh <= self._settings.refresh_interval_seconds:
            return
        logger.info("Cache is stale, refreshing before query. last_refresh=%s", last_refresh)
        await self.refresh()

    def _resolve_display_path(self, path: str) -> str:
        candidate = Path(path)
        if candidate.is_absolute() or not self._directories:
            return str(candidate)
        return str(Path(self._directories[0]) / candidate)
