"""Full-text index over atom domain, title, body and tags (fts.db).

Self-contained FTS5 table (no ``content=`` link) so the index stores its own
copy of every column and can be dropped and rebuilt independently:

    content(hash UNINDEXED, domain, title, body, tags)   porter unicode61

Queries are tokenized on whitespace, stripped of FTS5 metacharacters, quoted
and OR-joined: ``"vector search"`` becomes ``"vector" OR "search"``. If FTS5
still rejects the query, search falls back to a LIKE scan with a flat score.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import TYPE_CHECKING

from aku.indexes.db import get_conn, memory_conn
from aku.models import SearchResult

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from aku.models import AKU

logger = logging.getLogger("aku.indexes.fts")

_SCHEMA = """
    CREATE VIRTUAL TABLE IF NOT EXISTS content USING fts5(
        hash UNINDEXED,
        domain,
        title,
        body,
        tags,
        tokenize='porter unicode61'
    );
"""

_METACHARS = re.compile(r'["*^~(){}\[\]:\\]')
_FALLBACK_SCORE = 1.0


def build_match_query(query: str) -> str | None:
    """OR-joined quoted terms for FTS5 MATCH. None when nothing survives sanitizing."""
    terms = [_METACHARS.sub("", token) for token in query.split()]
    terms = [t for t in terms if t]
    if not terms:
        return None
    return " OR ".join(f'"{t}"' for t in terms)


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class FullTextIndex:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path
        self.conn = get_conn(db_path) if db_path is not None else memory_conn()
        self.conn.executescript(_SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def index_aku(self, aku: AKU, *, commit: bool = True) -> None:
        # FTS5 has no primary key; replace by hash manually
        self.conn.execute("DELETE FROM content WHERE hash = ?", (str(aku.id),))
        self.conn.execute(
            "INSERT INTO content(hash, domain, title, body, tags) VALUES (?, ?, ?, ?, ?)",
            (str(aku.id), aku.meta.domain, aku.title, aku.body, " ".join(aku.meta.tags)),
        )
        if commit:
            self.conn.commit()

    def search(self, query: str, limit: int = 20) -> list[SearchResult]:
        """Ranked matches, best first. Never raises for query syntax."""
        match = build_match_query(query)
        if match is None:
            return []
        try:
            rows = self.conn.execute(
                """SELECT hash, bm25(content) AS rank
                   FROM content
                   WHERE content MATCH ?
                   ORDER BY rank
                   LIMIT ?""",
                (match, limit),
            ).fetchall()
        except sqlite3.OperationalError as exc:
            logger.warning("FTS query %r rejected (%s), falling back to substring scan", match, exc)
            return self._fallback_search(query.strip(), limit)
        # bm25 is lower-is-better; flip so higher score means more relevant
        return [SearchResult(hash=r[0], score=-float(r[1])) for r in rows]

    def _fallback_search(self, text: str, limit: int) -> list[SearchResult]:
        """Case-insensitive substring scan; any whitespace-separated term may match."""
        terms = text.split()
        if not terms:
            return []
        where = " OR ".join([r"title LIKE ? ESCAPE '\' OR body LIKE ? ESCAPE '\'"] * len(terms))
        params: list[str | int] = []
        for term in terms:
            pattern = _like_pattern(term)
            params += [pattern, pattern]
        rows = self.conn.execute(
            f"SELECT hash FROM content WHERE {where} LIMIT ?",  # noqa: S608
            (*params, limit),
        ).fetchall()
        return [SearchResult(hash=r[0], score=_FALLBACK_SCORE) for r in rows]

    def count(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM content").fetchone()[0])

    def clear(self) -> None:
        self.conn.execute("DELETE FROM content")
        self.conn.commit()

    def rebuild(self, atoms: Iterable[AKU]) -> int:
        self.clear()
        count = 0
        for aku in atoms:
            self.index_aku(aku, commit=False)
            count += 1
        self.conn.commit()
        logger.info("fts index rebuilt: %d atoms", count)
        return count
