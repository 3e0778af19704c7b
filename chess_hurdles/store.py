"""Durable key-value stores.

The core only needs get/set/scan/delete with per-key atomicity. SqliteStore
is the on-disk implementation; MemoryStore backs tests and throwaway
sessions.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Iterator, Protocol

from chess_hurdles.errors import StoreError


class KeyValueStore(Protocol):
    """Minimal durable store contract."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store. Not durable."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        for key, value in list(self._data.items()):
            if key.startswith(prefix):
                yield key, value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class SqliteStore:
    """Single-table SQLite key-value store.

    A connection is opened per operation so the store can be shared across
    threads (the MCP server and CLI each use one instance).
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot create table in {self._db_path}: {exc}") from exc
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open {self._db_path}: {exc}") from exc

    def get(self, key: str) -> str | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None
        except sqlite3.Error as exc:
            raise StoreError(f"get {key!r} failed: {exc}") from exc
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    (key, value),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"set {key!r} failed: {exc}") from exc
        finally:
            conn.close()

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        conn = self._connect()
        try:
            # keys sharing a prefix sort contiguously starting at the prefix
            rows = conn.execute(
                "SELECT key, value FROM kv WHERE key >= ? ORDER BY key",
                (prefix,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"scan {prefix!r} failed: {exc}") from exc
        finally:
            conn.close()
        for key, value in rows:
            if not key.startswith(prefix):
                break
            yield key, value

    def delete(self, key: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            raise StoreError(f"delete {key!r} failed: {exc}") from exc
        finally:
            conn.close()
