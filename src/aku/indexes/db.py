"""SQLite connection helper shared by the derived indexes."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


def get_conn(db_path: Path) -> sqlite3.Connection:
    """Open an index database with WAL mode and foreign key enforcement.

    Index files are disposable: if one is corrupt, delete it and run
    ``aku reindex``.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # A 0-byte file means an interrupted create; fail clearly instead of an
    # opaque "disk I/O error" on the first PRAGMA.
    if db_path.exists() and db_path.stat().st_size == 0:
        msg = f"SQLite DB is empty (0 bytes): {db_path}\nFix: rm {db_path}* && aku reindex"
        raise sqlite3.OperationalError(msg)
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.OperationalError as exc:
        conn.close()
        msg = f"Failed to open DB {db_path}, it may be corrupt.\nFix: rm {db_path}* && aku reindex\nOriginal error: {exc}"
        raise sqlite3.OperationalError(msg) from exc
    return conn


def memory_conn() -> sqlite3.Connection:
    """In-memory index database, for tests and in-memory substrates."""
    conn = sqlite3.connect(":memory:")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn
