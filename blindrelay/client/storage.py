"""
Local session store for the chat client.

A key/value store with get/put/delete by string key. Values are JSON
documents. The SQLite store seals every value with AES-256-GCM under a
per-device key when one is supplied, so nothing on disk is readable without
that key file.
"""

import os
import json
import logging
import sqlite3
from typing import Any, Dict, Optional
from pathlib import Path

from blindrelay.crypto.primitives import KEY_SIZE, aead_decrypt, aead_encrypt, DecryptionFailed


logger = logging.getLogger(__name__)

ACTIVE_SESSION_KEY = "active_session"
MASTER_KEY_KEY = "masterKey"
PREVIOUS_TRANSPORT_KEY_KEY = "previousTransportKey"
TRANSPORT_KEY_ROTATED_AT_KEY = "transportKeyRotatedAt"


class SessionStore:
    """Interface shared by all store backends"""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def put(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    """Process-local store; used by tests and ephemeral sessions"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def keys(self):
        return list(self._data.keys())


def load_or_create_device_key(path: Path) -> bytes:
    """
    Load the device key, creating it with 0600 permissions on first use.

    Args:
        path: Key file location

    Returns:
        32-byte device key
    """
    if path.exists():
        data = path.read_bytes()
        if len(data) != KEY_SIZE:
            raise ValueError(f"Device key at {path} has the wrong length")
        return data

    key = os.urandom(KEY_SIZE)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    return key


class SqliteSessionStore(SessionStore):
    """
    Durable store backed by one SQLite file per account directory.
    """

    def __init__(self, db_path: Path, device_key: Optional[bytes] = None):
        """
        Initialize the store.

        Args:
            db_path: SQLite database file
            device_key: Optional 32-byte key sealing every value at rest
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.device_key = device_key
        self.db: Optional[sqlite3.Connection] = sqlite3.connect(str(self.db_path))
        self._init_database()

    @classmethod
    def open(cls, storage_dir: str, name: str = "session") -> 'SqliteSessionStore':
        """Open (or create) the sealed store in storage_dir"""
        directory = Path(storage_dir)
        directory.mkdir(parents=True, exist_ok=True)
        device_key = load_or_create_device_key(directory / f"{name}.key")
        return cls(directory / f"{name}.db", device_key=device_key)

    def _init_database(self):
        """Initialize SQLite database"""
        cursor = self.db.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)
        self.db.commit()

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with device key (iv + ciphertext)"""
        if not self.device_key:
            return data
        ciphertext, iv = aead_encrypt(self.device_key, data)
        return iv + ciphertext

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with device key"""
        if not self.device_key:
            return encrypted_data
        return aead_decrypt(self.device_key, encrypted_data[12:], encrypted_data[:12])

    def get(self, key: str) -> Optional[Any]:
        if not self.db:
            return None

        cursor = self.db.cursor()
        cursor.execute("SELECT value FROM kv WHERE key = ?", (key,))
        result = cursor.fetchone()
        if not result:
            return None

        try:
            return json.loads(self._decrypt(result[0]).decode())
        except (DecryptionFailed, ValueError):
            logger.warning("Discarding unreadable store entry %r", key)
            return None

    def put(self, key: str, value: Any) -> None:
        if not self.db:
            raise RuntimeError("Session store is closed")

        encrypted = self._encrypt(json.dumps(value).encode())
        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
            (key, encrypted)
        )
        self.db.commit()

    def delete(self, key: str) -> None:
        if not self.db:
            return
        cursor = self.db.cursor()
        cursor.execute("DELETE FROM kv WHERE key = ?", (key,))
        self.db.commit()

    def clear(self) -> None:
        if not self.db:
            return
        cursor = self.db.cursor()
        cursor.execute("DELETE FROM kv")
        self.db.commit()

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
