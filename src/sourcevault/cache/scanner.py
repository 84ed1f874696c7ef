from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

from sourcevault.cache.filters import PathFilter
from sourcevault.cache.models import ScanWarning

logger = logging.getLogger(__name__)


class DirectoryScanner:
    """Depth-first walk of one root that yields the files worth caching.

    Ignored directories are never entered. Problems with a single subtree are
    recorded in ``warnings`` and the walk moves on.
    """

    def __init__(self, path_filter: PathFilter) -> None:
        self._filter = path_filter
        self.warnings: list[ScanWarning] = []

    def scan(self, root_directory: str | Path) -> Iterator[Path]:
        root = Path(root_directory)
        if not root.is_dir():
            self._warn(root, "root directory does not exist")
            return
        yield from self._walk(root, root)

    def _walk(self, root: Path, directory: Path) -> Iterator[Path]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            self._warn(directory, f"cannot list directory: {e.strerror or e}")
            return

        for entry in entries:
            path = directory / entry.name
            rel_path = path.relative_to(root).as_posix()
            if self._filter.should_ignore(rel_path):
                continue

            try:
                if entry.is_symlink():
                    logger.debug("Skipping symlink. path=%s", path)
                    continue
                if entry.is_dir(follow_symlinks=False):
                    yield from self._walk(root, path)
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                size = entry.stat(follow_symlinks=False).st_size
            except OSError as e:
                self._warn(path, f"cannot stat entry: {e.strerror or e}")
                continue

            if self._filter.should_cache(str(path), size):
                yield path

    def _warn(self, path: Path, reason: str) -> None:
        logger.warning("Scan problem, skipping. path=%s reason=%s", path, reason)
        self.warnings.append(ScanWarning(path=str(path), reason=reason))
