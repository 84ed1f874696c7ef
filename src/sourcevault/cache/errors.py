from __future__ import annotations


class SourceVaultError(Exception):
    """Base class for cache engine errors."""


class AuthenticationError(SourceVaultError):
    """The passphrase does not open the store. The caller may retry unlock."""


class PassphraseMismatch(AuthenticationError):
    """First-time setup passphrase and confirmation differ."""


class StoreUnavailable(SourceVaultError):
    """The store file cannot be read or written for reasons other than the passphrase."""


class NotUnlocked(SourceVaultError):
    """A store operation was attempted while the session is locked."""


class RefreshInProgress(SourceVaultError):
    """A refresh was requested while another one is still running."""
