"""Temporal index: one time-ordered row per atom (temporal.db)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aku.indexes.db import get_conn, memory_conn

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from aku.models import AKU

logger = logging.getLogger("aku.indexes.temporal")

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS timeline (
        hash TEXT PRIMARY KEY,
        created TEXT NOT NULL,
        domain TEXT NOT NULL,
        type TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_timeline_created ON timeline(created);
"""


class TemporalIndex:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path
        self.conn = get_conn(db_path) if db_path is not None else memory_conn()
        self.conn.executescript(_SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def index_aku(self, aku: AKU, *, commit: bool = True) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO timeline(hash, created, domain, type) VALUES (?, ?, ?, ?)",
            (str(aku.id), aku.meta.created, aku.meta.domain, aku.meta.type),
        )
        if commit:
            self.conn.commit()

    def recent(self, limit: int = 20) -> list[str]:
        """Most recently created hashes first."""
        rows = self.conn.execute(
            "SELECT hash FROM timeline ORDER BY created DESC, hash LIMIT ?", (limit,)
        ).fetchall()
        return [r[0] for r in rows]

    def in_time_range(self, start: str, end: str, limit: int = 100) -> list[str]:
        """Hashes created within [start, end] (ISO 8601, inclusive), most recent first."""
        rows = self.conn.execute(
            """SELECT hash FROM timeline
               WHERE created >= ? AND created <= ?
               ORDER BY created DESC, hash
               LIMIT ?""",
            (start, end, limit),
        ).fetchall()
        return [r[0] for r in rows]

    def count(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM timeline").fetchone()[0])

    def clear(self) -> None:
        self.conn.execute("DELETE FROM timeline")
        self.conn.commit()

    def rebuild(self, atoms: Iterable[AKU]) -> int:
        self.clear()
        count = 0
        for aku in atoms:
            self.index_aku(aku, commit=False)
            count += 1
        self.conn.commit()
        logger.info("temporal index rebuilt: %d atoms", count)
        return count
