import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from cache_fixtures import write_file

from sourcevault.cache.filters import PathFilter
from sourcevault.cache.scanner import DirectoryScanner


def _filter(max_file_size: int = 1024) -> PathFilter:
    return PathFilter(allow_patterns=["*.lua"], ignore_patterns=[".git", "build"], max_file_size=max_file_size)


class DirectoryScannerTests(unittest.TestCase):
    def test_yields_matching_files_depth_first(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            write_file(root / "a.lua", "a")
            write_file(root / "a.txt", "not cached")
            write_file(root / "sub" / "deeper" / "b.lua", "b")

            scanner = DirectoryScanner(_filter())
            found = [p.relative_to(root).as_posix() for p in scanner.scan(root)]

            self.assertEqual(found, ["a.lua", "sub/deeper/b.lua"])
            self.assertEqual(scanner.warnings, [])

    def test_ignored_subtree_is_never_listed(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            write_file(root / ".git" / "hooks" / "x.lua", "x")
            write_file(root / "build" / "out.lua", "x")
            write_file(root / "src" / "keep.lua", "keep")

            listed: list[str] = []
            real_scandir = os.scandir

            def spy(path):
                listed.append(Path(path).relative_to(root).as_posix())
                return real_scandir(path)

            with mock.patch("sourcevault.cache.scanner.os.scandir", side_effect=spy):
                found = list(DirectoryScanner(_filter()).scan(root))

            self.assertEqual([p.name for p in found], ["keep.lua"])
            self.assertEqual(sorted(listed), [".", "src"])

    def test_ignore_patterns_apply_below_the_root_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "build" / "project"
            write_file(root / "a.lua", "a")

            found = list(DirectoryScanner(_filter()).scan(root))

            self.assertEqual([p.name for p in found], ["a.lua"])

    def test_missing_root_yields_nothing_and_warns(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            scanner = DirectoryScanner(_filter())
            found = list(scanner.scan(Path(tmp) / "missing"))

            self.assertEqual(found, [])
            self.assertEqual(len(scanner.warnings), 1)
            self.assertIn("does not exist", scanner.warnings[0].reason)

    def test_unlistable_subtree_is_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            write_file(root / "locked" / "hidden.lua", "x")
            write_file(root / "open" / "visible.lua", "x")
            real_scandir = os.scandir

            def failing(path):
                if Path(path).name == "locked":
                    raise PermissionError(13, "Permission denied")
                return real_scandir(path)

            scanner = DirectoryScanner(_filter())
            with mock.patch("sourcevault.cache.scanner.os.scandir", side_effect=failing):
                found = list(scanner.scan(root))

            self.assertEqual([p.name for p in found], ["visible.lua"])
            self.assertEqual(len(scanner.warnings), 1)
            self.assertTrue(scanner.warnings[0].path.endswith("locked"))

    def test_symlinks_are_not_followed(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "root"
            outside = Path(tmp) / "outside"
            write_file(outside / "secret.lua", "x")
            write_file(root / "real.lua", "x")
            try:
                os.symlink(outside, root / "link")
            except (OSError, NotImplementedError):
                self.skipTest("symlinks unavailable")

            found = list(DirectoryScanner(_filter()).scan(root))

            self.assertEqual([p.name for p in found], ["real.lua"])

    def test_oversized_files_are_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            write_file(root / "exact.lua", "x" * 8)
            write_file(root / "big.lua", "x" * 9)

            found = list(DirectoryScanner(_filter(max_file_size=8)).scan(root))

            self.assertEqual([p.name for p in found], ["exact.lua"])


if __name__ == "__main__":
    unittest.main()
