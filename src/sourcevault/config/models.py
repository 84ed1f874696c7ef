from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from platformdirs import user_cache_dir, user_config_dir
from pydantic import BaseModel, ConfigDict, Field, field_validator

APP_NAME = "sourcevault"

DEFAULT_ALLOW_PATTERNS = (
    "*.lua",
    "*.py",
    "*.js",
    "*.ts",
    "*.go",
    "*.rs",
    "*.c",
    "*.cpp",
    "*.h",
    "*.java",
    "*.md",
    "*.txt",
)
DEFAULT_IGNORE_PATTERNS = (".git", "node_modules", "__pycache__", ".pytest_cache", "target", "build")


def _default_cache_dir() -> str:
    return str(Path(user_cache_dir(APP_NAME, appauthor=False)))


def compile_allow_pattern(pattern: str) -> re.Pattern[str]:
    """Compile an allow pattern: an anchored regex when it ends in ``$``, else a glob."""
    if pattern.endswith("$"):
        return re.compile(pattern)
    return re.compile(fnmatch.translate(pattern))


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file: FileLoggingSettings = FileLoggingSettings()


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    cache_dir: str = Field(default_factory=_default_cache_dir)
    directories: Sequence[str] = ()

    # Glob patterns ("*.lua") or anchored regular expressions ending in "$" ("\.lua$")
    allow_patterns: Sequence[str] = DEFAULT_ALLOW_PATTERNS
    # Case-sensitive substrings of the path relative to the scanned root
    ignore_patterns: Sequence[str] = DEFAULT_IGNORE_PATTERNS

    max_file_size: int = Field(default=1024 * 1024, ge=0)

    auto_refresh: bool = True
    refresh_interval_seconds: float = Field(default=300.0, ge=0)

    # 0 disables idle locking
    session_timeout_seconds: float = Field(default=1800.0, ge=0)
    password_prompt: bool = True

    prune_on_refresh: bool = False
    checkpoint_every: int = Field(default=200, ge=1)

    @field_validator("allow_patterns")
    @classmethod
    def _check_allow_patterns(cls, patterns: Sequence[str]) -> Sequence[str]:
        for pattern in patterns:
            try:
                compile_allow_pattern(pattern)
            except re.error as e:
                raise ValueError(f"Invalid allow pattern {pattern!r}: {e}") from e
        return patterns


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cache: CacheSettings = CacheSettings()
    logging: LoggingSettings = LoggingSettings()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = str(Path(user_config_dir(APP_NAME, appauthor=False)) / "config.yaml")
    env_prefix: str = "SOURCEVAULT__"
    dotenv_path: Optional[str] = ".env"
