from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from sourcevault.cache.models import SearchMatch
from sourcevault.cache.session import SessionManager
from sourcevault.cache.store import EncryptedStore
from sourcevault.cache.utils import display_path

logger = logging.getLogger(__name__)


class SearchIndexer:
    """Case-insensitive substring search over the content of every cached file."""

    def __init__(self, *, store: EncryptedStore, session: SessionManager, directories: Sequence[str]) -> None:
        self._store = store
        self._session = session
        self._directories = list(directories)

    async def search(self, query: Optional[str], *, limit: Optional[int] = None) -> list[SearchMatch]:
        if not query:
            return []

        with self._session.activity():
            entries = self._store.snapshot()

        needle = query.lower()
        matches: list[SearchMatch] = []
        for entry in entries:
            shown = display_path(entry.path, self._directories)
            text = entry.content.decode("utf-8", errors="replace")
            for line_number, line in enumerate(text.split("\n"), start=1):
                line = line.rstrip("\r")
                if needle in line.lower():
                    matches.append(SearchMatch(path=shown, line_number=line_number, line_text=line))
                    if limit is not None and len(matches) >= limit:
                        logger.debug("Search result limit reached. query_len=%d limit=%d", len(query), limit)
                        return matches
            await asyncio.sleep(0)

        logger.debug("Search complete. files=%d matches=%d", len(entries), len(matches))
        return matches
