"""
Tests for the local session store
"""

import os
import sqlite3
import stat
import pytest

from blindrelay.client.storage import (
    MemorySessionStore,
    SqliteSessionStore,
    load_or_create_device_key,
)


RECORD = {"username": "alice", "token": "secret-marker", "kdf_iterations": 310000}


class TestMemorySessionStore:

    def test_get_put_delete(self):
        store = MemorySessionStore()
        assert store.get("active_session") is None

        store.put("active_session", RECORD)
        assert store.get("active_session") == RECORD

        store.delete("active_session")
        store.delete("active_session")
        assert store.get("active_session") is None

    def test_values_are_copies(self):
        store = MemorySessionStore()
        store.put("active_session", RECORD)
        store.get("active_session")["token"] = "changed"
        assert store.get("active_session")["token"] == "secret-marker"

    def test_clear(self):
        store = MemorySessionStore()
        store.put("a", 1)
        store.put("b", [1, 2])
        store.clear()
        assert store.keys() == []


class TestSqliteSessionStore:

    def test_persists_across_reopen(self, tmp_path):
        store = SqliteSessionStore.open(str(tmp_path))
        store.put("active_session", RECORD)
        store.put("transportKeyRotatedAt", 1700000000000)
        store.close()

        reopened = SqliteSessionStore.open(str(tmp_path))
        assert reopened.get("active_session") == RECORD
        assert reopened.get("transportKeyRotatedAt") == 1700000000000
        reopened.close()

    def test_values_sealed_on_disk(self, tmp_path):
        store = SqliteSessionStore.open(str(tmp_path))
        store.put("active_session", RECORD)
        store.close()

        db = sqlite3.connect(str(tmp_path / "session.db"))
        [(raw,)] = db.execute("SELECT value FROM kv").fetchall()
        db.close()
        assert b"secret-marker" not in raw

    def test_wrong_device_key_reads_nothing(self, tmp_path):
        store = SqliteSessionStore(tmp_path / "s.db", device_key=os.urandom(32))
        store.put("active_session", RECORD)
        store.close()

        other = SqliteSessionStore(tmp_path / "s.db", device_key=os.urandom(32))
        assert other.get("active_session") is None
        other.close()

    def test_clear_and_delete(self, tmp_path):
        store = SqliteSessionStore(tmp_path / "s.db")
        store.put("a", {"x": 1})
        store.put("b", {"y": 2})
        store.delete("a")
        assert store.get("a") is None
        assert store.get("b") == {"y": 2}

        store.clear()
        assert store.get("b") is None
        store.close()

    def test_closed_store(self, tmp_path):
        store = SqliteSessionStore(tmp_path / "s.db")
        store.close()
        assert store.get("a") is None
        with pytest.raises(RuntimeError):
            store.put("a", 1)


class TestDeviceKey:

    def test_created_private(self, tmp_path):
        path = tmp_path / "session.key"
        key = load_or_create_device_key(path)

        assert len(key) == 32
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert load_or_create_device_key(path) == key

    def test_wrong_length_rejected(self, tmp_path):
        path = tmp_path / "session.key"
        path.write_bytes(b"short")
        with pytest.raises(ValueError):
            load_or_create_device_key(path)
