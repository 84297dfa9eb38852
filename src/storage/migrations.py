"""SQLite schema for the persistence backend.

Each version is applied in its own transaction and stamped in
``schema_version``; a database is never left half-upgraded.
"""

from __future__ import annotations

import sqlite3
import time

from src.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, tuple[str, ...]] = {
    # Plaintext rows written by earlier releases; read once by migrate_legacy()
    1: (
        "CREATE TABLE IF NOT EXISTS legacy_kv ("
        " key TEXT PRIMARY KEY, value TEXT NOT NULL, updated_at REAL)",
    ),
    2: (
        "CREATE TABLE IF NOT EXISTS encrypted_kv ("
        " key TEXT PRIMARY KEY, data BLOB NOT NULL, updated_at REAL)",
        "CREATE TABLE IF NOT EXISTS store_flags ("
        " name TEXT PRIMARY KEY, value TEXT NOT NULL, updated_at REAL)",
    ),
}


def current_version(conn: sqlite3.Connection) -> int:
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return 0
    return int(row[0] or 0) if row else 0


def run_migrations(conn: sqlite3.Connection) -> int:
    """Bring ``conn`` up to SCHEMA_VERSION. Returns the resulting version."""
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_version ("
        " version INTEGER PRIMARY KEY, applied_at REAL)"
    )
    conn.commit()

    start = current_version(conn)
    pending = [v for v in sorted(_MIGRATIONS) if v > start]
    for version in pending:
        with conn:
            for statement in _MIGRATIONS[version]:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, time.time()),
            )
        log.info("migrations.applied", version=version)

    if not pending:
        log.debug("migrations.up_to_date", version=start)
    return current_version(conn)
