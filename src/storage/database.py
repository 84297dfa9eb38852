"""Database — persistence backends for the encrypted store.

Backends are opaque async key -> bytes stores. They never see plaintext for
encrypted keys; the only plaintext they hold is the legacy table (read by
the one-time migration) and a handful of flags.

SQLiteBackend runs each statement on a worker thread so the event loop
keeps serving other agents while the disk is busy.
"""

from __future__ import annotations

import abc
import asyncio
import sqlite3
import time
from pathlib import Path
from threading import Lock

from src.config import StorageConfig
from src.storage.migrations import run_migrations
from src.observability.logger import get_logger

log = get_logger(__name__)


class StorageBackend(abc.ABC):
    """Async key/value interface over string keys and byte-blob values."""

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def get(self, key: str) -> bytes | None:
        ...

    @abc.abstractmethod
    async def set(self, key: str, data: bytes) -> None:
        ...

    @abc.abstractmethod
    async def remove(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def list_keys(self) -> list[str]:
        ...

    # ── Legacy plaintext values & flags ──────────────────────────────

    @abc.abstractmethod
    async def get_legacy(self, key: str) -> str | None:
        ...

    @abc.abstractmethod
    async def set_legacy(self, key: str, value: str) -> None:
        ...

    @abc.abstractmethod
    async def remove_legacy(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def get_flag(self, name: str) -> str | None:
        ...

    @abc.abstractmethod
    async def set_flag(self, name: str, value: str) -> None:
        ...


class SQLiteBackend(StorageBackend):
    """SQLite-backed store (one file per engine process)."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None
        # sqlite3 connections are not safe for concurrent use across threads
        self._conn_lock = Lock()

    async def connect(self) -> None:
        """Open database connection and run migrations."""
        await asyncio.to_thread(self._connect_sync)

    def _connect_sync(self) -> None:
        db_path = Path(self._config.sqlite_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        version = run_migrations(conn)
        self._conn = conn
        log.info("database.connected", path=str(db_path), schema_version=version)

    async def close(self) -> None:
        with self._conn_lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _execute(self, sql: str, params: tuple = (), fetch: str = "") -> object:
        with self._conn_lock:
            cur = self.conn.execute(sql, params)
            if fetch == "one":
                return cur.fetchone()
            if fetch == "all":
                return cur.fetchall()
            self.conn.commit()
            return None

    async def _run(self, sql: str, params: tuple = (), fetch: str = "") -> object:
        return await asyncio.to_thread(self._execute, sql, params, fetch)

    # ── Encrypted blobs ──────────────────────────────────────────────

    async def get(self, key: str) -> bytes | None:
        row = await self._run(
            "SELECT data FROM encrypted_kv WHERE key = ?", (key,), fetch="one",
        )
        return bytes(row["data"]) if row else None

    async def set(self, key: str, data: bytes) -> None:
        await self._run(
            "INSERT OR REPLACE INTO encrypted_kv (key, data, updated_at) VALUES (?, ?, ?)",
            (key, sqlite3.Binary(data), time.time()),
        )

    async def remove(self, key: str) -> None:
        await self._run("DELETE FROM encrypted_kv WHERE key = ?", (key,))

    async def list_keys(self) -> list[str]:
        rows = await self._run("SELECT key FROM encrypted_kv ORDER BY key", fetch="all")
        return [r["key"] for r in rows]

    # ── Legacy plaintext values & flags ──────────────────────────────

    async def get_legacy(self, key: str) -> str | None:
        row = await self._run(
            "SELECT value FROM legacy_kv WHERE key = ?", (key,), fetch="one",
        )
        return row["value"] if row else None

    async def set_legacy(self, key: str, value: str) -> None:
        await self._run(
            "INSERT OR REPLACE INTO legacy_kv (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, time.time()),
        )

    async def remove_legacy(self, key: str) -> None:
        await self._run("DELETE FROM legacy_kv WHERE key = ?", (key,))

    async def get_flag(self, name: str) -> str | None:
        row = await self._run(
            "SELECT value FROM store_flags WHERE name = ?", (name,), fetch="one",
        )
        return row["value"] if row else None

    async def set_flag(self, name: str, value: str) -> None:
        await self._run(
            "INSERT OR REPLACE INTO store_flags (name, value, updated_at) VALUES (?, ?, ?)",
            (name, value, time.time()),
        )


class MemoryBackend(StorageBackend):
    """Process-local backend for tests and throwaway runs."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.legacy: dict[str, str] = {}
        self.flags: dict[str, str] = {}

    async def get(self, key: str) -> bytes | None:
        return self.blobs.get(key)

    async def set(self, key: str, data: bytes) -> None:
        self.blobs[key] = bytes(data)

    async def remove(self, key: str) -> None:
        self.blobs.pop(key, None)

    async def list_keys(self) -> list[str]:
        return sorted(self.blobs)

    async def get_legacy(self, key: str) -> str | None:
        return self.legacy.get(key)

    async def set_legacy(self, key: str, value: str) -> None:
        self.legacy[key] = value

    async def remove_legacy(self, key: str) -> None:
        self.legacy.pop(key, None)

    async def get_flag(self, name: str) -> str | None:
        return self.flags.get(name)

    async def set_flag(self, name: str, value: str) -> None:
        self.flags[name] = value
