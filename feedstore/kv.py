"""A small persistent key-value store with per-key expiry."""

from __future__ import annotations

import os
import sqlite3
import threading
import time
from datetime import timedelta

DEFAULT_DIRECTORY = os.path.join(".", "data", "kv")
_DB_FILE = "kv.db"


class KeyNotFoundError(KeyError):
    """Raised when a key is absent or has expired."""


def _ttl_seconds(ttl: float | timedelta) -> int:
    if isinstance(ttl, timedelta):
        ttl = ttl.total_seconds()
    if ttl < 0:
        raise ValueError("ttl must not be negative")
    return int(ttl)


class KVStore:
    """Byte keys to byte values, stored in a directory. Safe to share between threads."""

    def __init__(self, directory: str = "") -> None:
        self.directory = directory or DEFAULT_DIRECTORY
        os.makedirs(self.directory, exist_ok=True)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            os.path.join(self.directory, _DB_FILE), check_same_thread=False
        )
        with self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS entries ("
                "key BLOB PRIMARY KEY, value BLOB NOT NULL, expires_at REAL)"
            )

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ValueError("store is closed")
        return self._conn

    def get(self, key: bytes) -> bytes:
        """Return the value stored under ``key``; raise KeyNotFoundError if there is none."""
        with self._lock:
            row = self._connection().execute(
                "SELECT value, expires_at FROM entries WHERE key = ?", (bytes(key),)
            ).fetchone()
        if row is None:
            raise KeyNotFoundError(key)
        value, expires_at = row
        if expires_at is not None and expires_at <= time.time():
            raise KeyNotFoundError(key)
        return bytes(value)

    def set(self, key: bytes, value: bytes, ttl: float | timedelta = 0) -> None:
        """Store ``value`` under ``key``.

        ``ttl`` is truncated to whole seconds; zero keeps the entry forever.
        """
        seconds = _ttl_seconds(ttl)
        expires_at = time.time() + seconds if seconds else None
        with self._lock:
            conn = self._connection()
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (bytes(key), bytes(value), expires_at),
                )

    def close(self) -> None:
        """Close the store; later calls other than close raise ValueError."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> KVStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()