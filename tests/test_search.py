import tempfile
import unittest
from pathlib import Path

from cache_fixtures import FakeClock

from sourcevault.cache.errors import NotUnlocked
from sourcevault.cache.search import SearchIndexer
from sourcevault.cache.session import SessionManager
from sourcevault.cache.store import EncryptedStore


class SearchIndexerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = EncryptedStore(cache_dir=Path(self._tmp.name))
        self.session = SessionManager(store=self.store, timeout_seconds=0, clock=FakeClock())
        self.session.unlock("secret", confirmation="secret")
        self.indexer = SearchIndexer(store=self.store, session=self.session, directories=["/work/project"])

    def tearDown(self) -> None:
        self.session.lock()
        self._tmp.cleanup()

    async def test_case_insensitive_match_reports_line(self) -> None:
        self.store.put("/work/project/a.lua", b"foo\nbar baz", 11, 1)

        matches = await self.indexer.search("BAZ")

        self.assertEqual(len(matches), 1)
        self.assertEqual((matches[0].path, matches[0].line_number, matches[0].line_text), ("a.lua", 2, "bar baz"))

    async def test_empty_query_returns_nothing(self) -> None:
        self.store.put("/work/project/a.lua", b"anything", 8, 1)

        self.assertEqual(await self.indexer.search(""), [])
        self.assertEqual(await self.indexer.search(None), [])

    async def test_paths_outside_first_root_stay_absolute(self) -> None:
        self.store.put("/elsewhere/b.py", b"needle", 6, 1)

        matches = await self.indexer.search("needle")

        self.assertEqual(matches[0].path, "/elsewhere/b.py")

    async def test_matches_in_a_file_are_in_line_order(self) -> None:
        self.store.put("/work/project/a.lua", b"hit one\nmiss\r\nHIT two\r\nhit three", 30, 1)

        matches = await self.indexer.search("hit")

        self.assertEqual([m.line_number for m in matches], [1, 3, 4])
        self.assertEqual(matches[1].line_text, "HIT two")

    async def test_limit_stops_early(self) -> None:
        self.store.put("/work/project/a.lua", b"x\nx\nx", 5, 1)

        matches = await self.indexer.search("x", limit=2)

        self.assertEqual(len(matches), 2)

    async def test_search_while_locked_fails(self) -> None:
        self.session.lock()
        with self.assertRaises(NotUnlocked):
            await self.indexer.search("x")


if __name__ == "__main__":
    unittest.main()
