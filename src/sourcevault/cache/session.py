from __future__ import annotations

import getpass
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Protocol

from sourcevault.cache.cipher import derive_key, new_salt
from sourcevault.cache.errors import AuthenticationError, NotUnlocked, PassphraseMismatch
from sourcevault.cache.store import EncryptedStore

logger = logging.getLogger(__name__)

PASSPHRASE_ENV_VAR = "SOURCEVAULT_PASSPHRASE"


class CredentialSource(Protocol):
    def passphrase(self, *, prompt: str) -> Optional[str]:
        ...


@dataclass(frozen=True, slots=True)
class StaticCredentialSource:
    """Answers every prompt from memory. ``confirmation`` defaults to the passphrase."""

    secret: Optional[str]
    confirmation: Optional[str] = None

    def passphrase(self, *, prompt: str) -> Optional[str]:
        if prompt.lower().startswith("confirm") and self.confirmation is not None:
            return self.confirmation
        return self.secret


class PromptCredentialSource:
    """Reads the passphrase from ``SOURCEVAULT_PASSPHRASE`` or prompts on the terminal."""

    def __init__(self, *, env_var: str = PASSPHRASE_ENV_VAR) -> None:
        self._env_var = env_var

    def passphrase(self, *, prompt: str) -> Optional[str]:
        value = os.environ.get(self._env_var)
        if value:
            return value
        try:
            return getpass.getpass(f"{prompt}: ")
        except (EOFError, KeyboardInterrupt):
            return None


@dataclass(slots=True)
class _Session:
    unlocked: bool = False
    last_activity: float = 0.0


class SessionManager:
    """Owns the locked/unlocked state of the store.

    The session starts locked. ``unlock`` derives the key and hands it to the store,
    which holds the only copy until ``lock`` closes it. The store's authentication tag decides whether the passphrase was right. While
    unlocked, any store access older than ``timeout_seconds`` since the previous one
    locks the session again (a timeout of 0 never expires).
    """

    def __init__(
        self,
        *,
        store: EncryptedStore,
        timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._session = _Session()

    def needs_setup(self) -> bool:
        return not self._store.exists()

    def is_locked(self) -> bool:
        self._expire_if_idle()
        return not self._session.unlocked

    def unlock(self, passphrase: str, *, confirmation: Optional[str] = None) -> None:
        if self._session.unlocked:
            self.lock()
        if not passphrase:
            raise AuthenticationError("An empty passphrase cannot unlock the cache.")

        salt = self._store.salt()
        if salt is None:
            if confirmation != passphrase:
                raise PassphraseMismatch("Passphrase confirmation does not match.")
            salt = new_salt()
            logger.info("Creating a new encrypted store. path=%s", self._store.path)

        key = derive_key(passphrase, salt)
        try:
            self._store.open(key, salt)
        except AuthenticationError:
            logger.warning("Unlock failed: wrong passphrase. path=%s", self._store.path)
            raise

        self._session = _Session(unlocked=True, last_activity=self._clock())
        logger.info("Cache unlocked.")

    def lock(self) -> None:
        was_unlocked = self._session.unlocked
        self._session = _Session()
        try:
            self._store.close()
        finally:
            if was_unlocked:
                logger.info("Cache locked.")

    def require_unlocked(self) -> None:
        self._expire_if_idle()
        if not self._session.unlocked:
            raise NotUnlocked("The cache is locked. Unlock it first.")

    def touch(self) -> None:
        if self._session.unlocked:
            self._session.last_activity = self._clock()

    @contextmanager
    def activity(self) -> Iterator[None]:
        """Gate a store access: check the idle timeout first, refresh it on success."""
        self.require_unlocked()
        yield
        self.touch()

    def _expire_if_idle(self) -> None:
        if not self._session.unlocked or self._timeout_seconds <= 0:
            return
        idle = self._clock() - self._session.last_activity
        if idle > self._timeout_seconds:
            logger.info("Session idle timeout reached, locking. idle_seconds=%.0f", idle)
            self.lock()
