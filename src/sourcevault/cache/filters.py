from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Sequence

from sourcevault.config.models import CacheSettings, compile_allow_pattern


@dataclass(frozen=True, slots=True)
class Matcher:
    """A compiled allow pattern.

    Patterns ending in ``$`` are anchored regular expressions searched against the
    whole path. Anything else is a glob tested against the file name and the path.
    """

    pattern: str
    regex: re.Pattern[str]
    anchored: bool

    @classmethod
    def compile(cls, pattern: str) -> "Matcher":
        return cls(pattern=pattern, regex=compile_allow_pattern(pattern), anchored=pattern.endswith("$"))

    def matches(self, path: str) -> bool:
        if self.anchored:
            return self.regex.search(path) is not None
        if self.regex.match(PurePath(path).name):
            return True
        return self.regex.match(path) is not None


class PathFilter:
    def __init__(
        self,
        *,
        allow_patterns: Sequence[str],
        ignore_patterns: Sequence[str],
        max_file_size: int,
    ) -> None:
        self._allow = tuple(Matcher.compile(p) for p in allow_patterns)
        self._ignore = tuple(p for p in ignore_patterns if p)
        self._max_file_size = max_file_size

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "PathFilter":
        return cls(
            allow_patterns=settings.allow_patterns,
            ignore_patterns=settings.ignore_patterns,
            max_file_size=settings.max_file_size,
        )

    @property
    def max_file_size(self) -> int:
        return self._max_file_size

    def should_ignore(self, path: str) -> bool:
        return any(pattern in path for pattern in self._ignore)

    def should_cache(self, path: str, file_size: int) -> bool:
        if file_size > self._max_file_size:
            return False
        return any(matcher.matches(path) for matcher in self._allow)
