import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from cache_fixtures import FakeClock, write_file

from sourcevault.cache.errors import NotUnlocked
from sourcevault.cache.filters import PathFilter
from sourcevault.cache.models import LAST_REFRESH_KEY
from sourcevault.cache.session import SessionManager
from sourcevault.cache.store import EncryptedStore
from sourcevault.cache.sync import SyncEngine


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.root = base / "src"
        self.root.mkdir()
        self.store = EncryptedStore(cache_dir=base / "cache")
        self.session = SessionManager(store=self.store, timeout_seconds=0, clock=FakeClock())
        self.session.unlock("secret", confirmation="secret")

    def tearDown(self) -> None:
        self.session.lock()
        self._tmp.cleanup()

    def _engine(self, **overrides) -> SyncEngine:
        values = {
            "directories": [str(self.root)],
            "path_filter": PathFilter(allow_patterns=["*.lua"], ignore_patterns=[".git"], max_file_size=64),
            "store": self.store,
            "session": self.session,
            "clock": lambda: 5000.0,
        }
        values.update(overrides)
        return SyncEngine(**values)

    async def test_only_allowed_files_are_cached(self) -> None:
        write_file(self.root / "a.lua", "print('a')")
        write_file(self.root / "a.txt", "plain text")

        summary = await self._engine().refresh()

        self.assertEqual((summary.total, summary.updated), (1, 1))
        self.assertEqual(list(self.store.list_all()), [str(self.root / "a.lua")])
        self.assertEqual(self.store.get_metadata(LAST_REFRESH_KEY), 5000.0)

    async def test_second_refresh_without_changes_updates_nothing(self) -> None:
        write_file(self.root / "a.lua", "a")
        write_file(self.root / "sub" / "b.lua", "b")
        engine = self._engine()

        first = await engine.refresh()
        second = await engine.refresh()

        self.assertEqual(first.updated, 2)
        self.assertEqual((second.total, second.updated), (2, 0))

    async def test_modified_file_is_recached(self) -> None:
        path = write_file(self.root / "a.lua", "old", mtime=1_600_000_000)
        engine = self._engine()
        await engine.refresh()

        write_file(path, "new content", mtime=1_600_000_100)
        summary = await engine.refresh()

        self.assertEqual(summary.updated, 1)
        self.assertEqual(self.store.get(str(path)), (b"new content", 1_600_000_100))

    async def test_older_mtime_is_not_recached(self) -> None:
        path = write_file(self.root / "a.lua", "cached", mtime=1_600_000_100)
        engine = self._engine()
        await engine.refresh()

        write_file(path, "rolled back", mtime=1_600_000_000)
        summary = await engine.refresh()

        self.assertEqual(summary.updated, 0)
        self.assertEqual(self.store.get(str(path))[0], b"cached")

    async def test_ignored_directory_never_cached(self) -> None:
        write_file(self.root / ".git" / "config.lua", "ignored")
        write_file(self.root / "keep.lua", "kept")

        await self._engine().refresh()

        self.assertEqual(list(self.store.list_all()), [str(self.root / "keep.lua")])

    async def test_size_boundary(self) -> None:
        write_file(self.root / "exact.lua", "x" * 64)
        write_file(self.root / "over.lua", "x" * 65)

        await self._engine().refresh()

        self.assertEqual(list(self.store.list_all()), [str(self.root / "exact.lua")])

    async def test_deleted_files_are_kept_without_pruning(self) -> None:
        path = write_file(self.root / "a.lua", "a")
        await self._engine().refresh()
        os.remove(path)

        summary = await self._engine().refresh()

        self.assertEqual(summary.pruned, 0)
        self.assertIn(str(path), self.store.list_all())

    async def test_prune_on_refresh_removes_deleted_files(self) -> None:
        path = write_file(self.root / "a.lua", "a")
        write_file(self.root / "b.lua", "b")
        engine = self._engine(prune_on_refresh=True)
        await engine.refresh()
        os.remove(path)

        summary = await engine.refresh()

        self.assertEqual(summary.pruned, 1)
        self.assertEqual(list(self.store.list_all()), [str(self.root / "b.lua")])

    async def test_explicit_prune(self) -> None:
        path = write_file(self.root / "a.lua", "a")
        engine = self._engine()
        await engine.refresh()
        os.remove(path)

        self.assertEqual(await engine.prune(), 1)
        self.assertEqual(self.store.list_all(), {})

    async def test_missing_root_is_reported_as_warning(self) -> None:
        write_file(self.root / "a.lua", "a")
        engine = self._engine(directories=[str(self.root), str(self.root.parent / "gone")])

        summary = await engine.refresh()

        self.assertEqual(summary.updated, 1)
        self.assertEqual(len(summary.warnings), 1)

    async def test_refresh_requires_unlocked_session(self) -> None:
        write_file(self.root / "a.lua", "a")
        self.session.lock()

        with self.assertRaises(NotUnlocked):
            await self._engine().refresh()

    async def test_cancelled_refresh_keeps_written_entries_and_last_refresh(self) -> None:
        for i in range(10):
            write_file(self.root / f"f{i}.lua", str(i))
        engine = self._engine(checkpoint_every=2)

        task = asyncio.create_task(engine.refresh())
        for _ in range(4):
            await asyncio.sleep(0)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        cached = self.store.list_all()
        self.assertGreater(len(cached), 0)
        self.assertLess(len(cached), 10)
        self.assertIsNone(self.store.get_metadata(LAST_REFRESH_KEY))

        self.session.lock()
        self.session.unlock("secret")
        self.assertEqual(len(self.store.list_all()), len(cached))


if __name__ == "__main__":
    unittest.main()
