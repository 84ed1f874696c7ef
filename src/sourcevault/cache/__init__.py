"""Encrypted incremental mirror of source trees."""

from __future__ import annotations

from sourcevault.cache.context import CacheContext
from sourcevault.cache.errors import (
    AuthenticationError,
    NotUnlocked,
    PassphraseMismatch,
    RefreshInProgress,
    SourceVaultError,
    StoreUnavailable,
)
from sourcevault.cache.models import (
    CacheStats,
    ConfigurationWarning,
    ListedEntry,
    RefreshSummary,
    ScanWarning,
    SearchMatch,
)
from sourcevault.cache.session import CredentialSource, PromptCredentialSource, StaticCredentialSource

__all__ = [
    "AuthenticationError",
    "CacheContext",
    "CacheStats",
    "ConfigurationWarning",
    "CredentialSource",
    "ListedEntry",
    "NotUnlocked",
    "PassphraseMismatch",
    "PromptCredentialSource",
    "RefreshInProgress",
    "RefreshSummary",
    "ScanWarning",
    "SearchMatch",
    "SourceVaultError",
    "StaticCredentialSource",
    "StoreUnavailable",
]
