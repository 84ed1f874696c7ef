from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

SchemaVersion = 1

LAST_REFRESH_KEY = "last_refresh"


@dataclass(slots=True)
class CacheEntry:
    path: str
    content: bytes
    size: int
    mtime: int
    cached_at: float


@dataclass(frozen=True, slots=True)
class EntryMetadata:
    mtime: int
    size: int
    cached_at: float


@dataclass(frozen=True, slots=True)
class ScanWarning:
    path: str
    reason: str


@dataclass(frozen=True, slots=True)
class ConfigurationWarning:
    directory: str
    reason: str


@dataclass(slots=True)
class RefreshSummary:
    total: int = 0
    updated: int = 0
    pruned: int = 0
    warnings: list[ScanWarning] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ListedEntry:
    display_path: str
    full_path: str


@dataclass(frozen=True, slots=True)
class SearchMatch:
    path: str
    line_number: int  # 1-based
    line_text: str


@dataclass(frozen=True, slots=True)
class CacheStats:
    cached_files: int
    total_size: int
    last_refresh: Optional[float]
    locked: bool
    cache_dir: str
    directories: tuple[str, ...]
