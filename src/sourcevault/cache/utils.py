from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence


def wall_clock() -> float:
    return time.time()


def format_timestamp(value: Optional[float]) -> str:
    if not value:
        return "Never"
    return datetime.fromtimestamp(value, tz=timezone.utc).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def display_path(full_path: str, directories: Sequence[str]) -> str:
    """Return ``full_path`` relative to the first root directory when it lies under it."""
    if not directories:
        return full_path
    try:
        return Path(full_path).relative_to(directories[0]).as_posix()
    except ValueError:
        return full_path


def atomic_write_bytes(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_bytes(payload)
    tmp_path.replace(path)
