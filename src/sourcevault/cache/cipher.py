"""Encrypted sqlite container.

The database lives in memory while a session is unlocked. On disk it is a single
file laid out as ``salt || nonce || AES-256-GCM(serialized database)`` with the
salt bound as associated data, so nothing of the sqlite header survives in
plaintext. The GCM tag doubles as the passphrase check.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sourcevault.cache.errors import AuthenticationError, StoreUnavailable
from sourcevault.cache.utils import atomic_write_bytes

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 256_000
KEY_BYTES = 32
SALT_BYTES = 16
NONCE_BYTES = 12
HEADER_BYTES = SALT_BYTES + NONCE_BYTES


def new_salt() -> bytes:
    return os.urandom(SALT_BYTES)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def read_salt(path: Path) -> Optional[bytes]:
    """Return the salt of an existing container, or None when there is no container yet."""
    try:
        with path.open("rb") as fh:
            salt = fh.read(SALT_BYTES)
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StoreUnavailable(f"Cannot read store file: {path}: {e}") from e
    if len(salt) < SALT_BYTES:
        raise StoreUnavailable(f"Store file is truncated: {path}")
    return salt


def seal(key: bytes, salt: bytes, plaintext: bytes) -> bytes:
    nonce = os.urandom(NONCE_BYTES)
    return salt + nonce + AESGCM(key).encrypt(nonce, plaintext, salt)


def unseal(key: bytes, blob: bytes) -> bytes:
    if len(blob) <= HEADER_BYTES:
        raise StoreUnavailable("Store file is truncated.")
    salt = blob[:SALT_BYTES]
    nonce = blob[SALT_BYTES:HEADER_BYTES]
    try:
        return AESGCM(key).decrypt(nonce, blob[HEADER_BYTES:], salt)
    except InvalidTag as e:
        raise AuthenticationError("Wrong passphrase or the store was not written with this passphrase.") from e


@dataclass(slots=True)
class CipherHandle:
    path: Path
    salt: bytes
    key: bytes
    conn: sqlite3.Connection


class CipherSqliteEngine:
    """Opens, queries and persists an encrypted sqlite container."""

    def open(self, path: Path, key: bytes, salt: bytes) -> CipherHandle:
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        try:
            blob = path.read_bytes()
        except FileNotFoundError:
            blob = None
        except OSError as e:
            conn.close()
            raise StoreUnavailable(f"Cannot read store file: {path}: {e}") from e

        if blob is not None:
            try:
                plaintext = unseal(key, blob)
                conn.deserialize(plaintext)
                conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
            except (AuthenticationError, StoreUnavailable):
                conn.close()
                raise
            except sqlite3.DatabaseError as e:
                conn.close()
                raise StoreUnavailable(f"Store file decrypted but is not a valid database: {path}") from e
            logger.debug("Opened encrypted store. path=%s bytes=%d", path, len(blob))
        return CipherHandle(path=path, salt=salt, key=key, conn=conn)

    def execute(self, handle: CipherHandle, statement: str, params: Iterable[Any] = ()) -> int:
        cursor = handle.conn.execute(statement, tuple(params))
        return cursor.rowcount

    def executescript(self, handle: CipherHandle, script: str) -> None:
        handle.conn.executescript(script)

    def query(self, handle: CipherHandle, statement: str, params: Iterable[Any] = ()) -> list[tuple[Any, ...]]:
        return handle.conn.execute(statement, tuple(params)).fetchall()

    def vacuum(self, handle: CipherHandle) -> None:
        handle.conn.commit()
        handle.conn.execute("VACUUM")

    def commit(self, handle: CipherHandle) -> None:
        """Commit pending changes and write the sealed database atomically."""
        handle.conn.commit()
        payload = seal(handle.key, handle.salt, handle.conn.serialize())
        try:
            atomic_write_bytes(handle.path, payload)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write store file: {handle.path}: {e}") from e

    def close(self, handle: CipherHandle) -> None:
        handle.conn.close()
