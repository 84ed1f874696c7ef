from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from sourcevault.cache.filters import PathFilter
from sourcevault.cache.models import LAST_REFRESH_KEY, EntryMetadata, RefreshSummary
from sourcevault.cache.scanner import DirectoryScanner
from sourcevault.cache.session import SessionManager
from sourcevault.cache.store import EncryptedStore
from sourcevault.cache.utils import wall_clock

logger = logging.getLogger(__name__)


class SyncEngine:
    """Brings the store in line with the configured directories.

    Only files whose modification time moved forward (or that are not cached yet) are
    read and re-encrypted. ``last_refresh`` is written once, after every directory has
    been processed, so an interrupted pass leaves the previous value in place.
    """

    def __init__(
        self,
        *,
        directories: Sequence[str],
        path_filter: PathFilter,
        store: EncryptedStore,
        session: SessionManager,
        prune_on_refresh: bool = False,
        checkpoint_every: int = 200,
        clock: Callable[[], float] = wall_clock,
    ) -> None:
        self._directories = list(directories)
        self._filter = path_filter
        self._store = store
        self._session = session
        self._prune_on_refresh = prune_on_refresh
        self._checkpoint_every = max(1, int(checkpoint_every))
        self._clock = clock

    async def refresh(self) -> RefreshSummary:
        self._session.require_unlocked()
        summary = RefreshSummary()
        existing = self._store.list_all()

        with self._store.deferred():
            try:
                for directory in self._directories:
                    scanner = DirectoryScanner(self._filter)
                    for file_path in scanner.scan(directory):
                        summary.total += 1
                        if self._sync_file(file_path, existing.get(str(file_path))):
                            summary.updated += 1
                            if summary.updated % self._checkpoint_every == 0:
                                self._store.persist()
                        self._session.touch()
                        await asyncio.sleep(0)
                    summary.warnings.extend(scanner.warnings)

                if self._prune_on_refresh:
                    summary.pruned = self._prune_missing(existing.keys())

                self._store.set_metadata(LAST_REFRESH_KEY, self._clock())
            except asyncio.CancelledError:
                logger.info(
                    "Cache refresh cancelled, keeping entries written so far. updated=%d total=%d",
                    summary.updated,
                    summary.total,
                )
                raise

        self._session.touch()
        logger.info(
            "Cache refresh complete. updated=%d total=%d pruned=%d warnings=%d",
            summary.updated,
            summary.total,
            summary.pruned,
            len(summary.warnings),
        )
        return summary

    async def prune(self) -> int:
        """Remove entries whose source file no longer exists on disk."""
        with self._session.activity():
            paths = list(self._store.list_all().keys())
            with self._store.deferred():
                removed = self._prune_missing(paths)
        logger.info("Cache prune complete. removed=%d", removed)
        return removed

    def _sync_file(self, file_path: Path, entry: Optional[EntryMetadata]) -> bool:
        try:
            stat = file_path.stat()
        except OSError:
            logger.debug("File vanished during refresh, skipping. path=%s", file_path)
            return False

        mtime = int(stat.st_mtime)
        if entry is not None and mtime <= entry.mtime:
            return False

        try:
            content = file_path.read_bytes()
        except OSError as e:
            logger.warning("Failed to read file, skipping. path=%s error=%s", file_path, e)
            return False

        if len(content) > self._filter.max_file_size:
            logger.debug("File grew past the size limit while refreshing, skipping. path=%s", file_path)
            return False

        self._store.put(str(file_path), content, len(content), mtime)
        return True

    def _prune_missing(self, paths: Iterable[str]) -> int:
        removed = 0
        for path in paths:
            if Path(path).exists():
                continue
            if self._store.delete(path):
                removed += 1
                logger.debug("Pruned cache entry for missing file. path=%s", path)
        return removed
