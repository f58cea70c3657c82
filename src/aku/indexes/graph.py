"""Graph index: atoms, tags and edges in SQLite for queries without parsing atom files.

Schema (graph.db):
    atoms(hash PK, domain, type, confidence, created)
    tags(hash -> atoms, tag)                  embedded at ingest
    links(from_hash -> atoms, to_hash, relation)    meta.links
    external_links(from_hash, to_hash, relation, created)   external-links.jsonl

Link lookups and traversals merge ``links`` and ``external_links``. Targets
are not required to be indexed, so orphaned edges stay visible.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from aku.errors import ValidationError
from aku.hashing import ContentHash
from aku.indexes.db import get_conn, memory_conn
from aku.models import DIRECTIONS, GraphNode, LinkRef

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from aku.models import AKU, ExternalLink

logger = logging.getLogger("aku.indexes.graph")

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS atoms (
        hash TEXT PRIMARY KEY,
        domain TEXT NOT NULL,
        type TEXT NOT NULL,
        confidence REAL NOT NULL,
        created TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_atoms_domain ON atoms(domain);
    CREATE INDEX IF NOT EXISTS idx_atoms_type ON atoms(type);
    CREATE INDEX IF NOT EXISTS idx_atoms_created ON atoms(created);

    CREATE TABLE IF NOT EXISTS tags (
        hash TEXT NOT NULL REFERENCES atoms(hash) ON DELETE CASCADE,
        tag TEXT NOT NULL,
        PRIMARY KEY (hash, tag)
    );
    CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag);

    CREATE TABLE IF NOT EXISTS links (
        from_hash TEXT NOT NULL REFERENCES atoms(hash) ON DELETE CASCADE,
        to_hash TEXT NOT NULL,
        relation TEXT NOT NULL,
        PRIMARY KEY (from_hash, to_hash, relation)
    );
    CREATE INDEX IF NOT EXISTS idx_links_to ON links(to_hash);

    -- No FK: an external link may point at (or come from) an unindexed atom
    CREATE TABLE IF NOT EXISTS external_links (
        from_hash TEXT NOT NULL,
        to_hash TEXT NOT NULL,
        relation TEXT NOT NULL,
        created TEXT,
        PRIMARY KEY (from_hash, to_hash, relation)
    );
    CREATE INDEX IF NOT EXISTS idx_external_links_to ON external_links(to_hash);
"""


def _check_depth(max_depth: int) -> None:
    if max_depth < 0:
        msg = f"max_depth must be >= 0, got {max_depth}"
        raise ValidationError(msg)


class GraphIndex:
    """Relational projection of atom metadata and the link graph."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path
        self.conn = get_conn(db_path) if db_path is not None else memory_conn()
        self.conn.executescript(_SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def index_aku(self, aku: AKU, *, commit: bool = True) -> None:
        """Upsert the atom row and replace its tags and embedded links."""
        meta = aku.meta
        self.conn.execute(
            """INSERT INTO atoms(hash, domain, type, confidence, created)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(hash) DO UPDATE SET
                   domain=excluded.domain, type=excluded.type,
                   confidence=excluded.confidence, created=excluded.created""",
            (str(aku.id), meta.domain, meta.type, meta.confidence, meta.created),
        )
        self.conn.execute("DELETE FROM tags WHERE hash = ?", (str(aku.id),))
        self.conn.execute("DELETE FROM links WHERE from_hash = ?", (str(aku.id),))
        self.conn.executemany(
            "INSERT OR IGNORE INTO tags(hash, tag) VALUES (?, ?)",
            [(str(aku.id), tag) for tag in meta.tags],
        )
        self.conn.executemany(
            "INSERT OR IGNORE INTO links(from_hash, to_hash, relation) VALUES (?, ?, ?)",
            [(str(aku.id), target, rel) for rel, target in meta.iter_links()],
        )
        if commit:
            self.conn.commit()

    def index_link(self, link: ExternalLink, *, commit: bool = True) -> None:
        self.conn.execute(
            """INSERT OR IGNORE INTO external_links(from_hash, to_hash, relation, created)
               VALUES (?, ?, ?, ?)""",
            (str(link.source), str(link.target), link.relation, link.created),
        )
        if commit:
            self.conn.commit()

    def clear(self) -> None:
        # Edges and tags before atoms
        self.conn.executescript("""
            DELETE FROM tags;
            DELETE FROM links;
            DELETE FROM external_links;
            DELETE FROM atoms;
        """)
        self.conn.commit()

    def rebuild(self, atoms: Iterable[AKU], external_links: Iterable[ExternalLink] = ()) -> int:
        """Clear every table and re-index from the atom stream. Returns atoms indexed."""
        self.clear()
        count = 0
        for aku in atoms:
            self.index_aku(aku, commit=False)
            count += 1
        for link in external_links:
            self.index_link(link, commit=False)
        self.conn.commit()
        logger.info("graph index rebuilt: %d atoms", count)
        return count

    # ------------------------------------------------------------------
    # Metadata queries
    # ------------------------------------------------------------------

    def count(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM atoms").fetchone()[0])

    def by_domain(self, prefix: str, limit: int = 100) -> list[str]:
        """Hashes whose domain starts with ``prefix``, most recent first."""
        rows = self.conn.execute(
            """SELECT hash FROM atoms
               WHERE substr(domain, 1, ?) = ?
               ORDER BY created DESC, hash
               LIMIT ?""",
            (len(prefix), prefix, limit),
        ).fetchall()
        return [r[0] for r in rows]

    def by_type(self, type_: str, limit: int = 100) -> list[str]:
        rows = self.conn.execute(
            "SELECT hash FROM atoms WHERE type = ? ORDER BY created DESC, hash LIMIT ?",
            (type_, limit),
        ).fetchall()
        return [r[0] for r in rows]

    def by_tag(self, tag: str, limit: int = 100) -> list[str]:
        rows = self.conn.execute(
            """SELECT a.hash FROM tags t JOIN atoms a ON a.hash = t.hash
               WHERE t.tag = ?
               ORDER BY a.created DESC, a.hash
               LIMIT ?""",
            (tag, limit),
        ).fetchall()
        return [r[0] for r in rows]

    def tags_of(self, content_hash: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT tag FROM tags WHERE hash = ? ORDER BY tag", (str(ContentHash(content_hash)),)
        ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def outgoing_links(self, content_hash: str) -> list[LinkRef]:
        key = str(ContentHash(content_hash))
        rows = self.conn.execute(
            """SELECT to_hash, relation, 'embedded' FROM links WHERE from_hash = ?
               UNION ALL
               SELECT to_hash, relation, 'external' FROM external_links WHERE from_hash = ?
               ORDER BY 1, 2, 3""",
            (key, key),
        ).fetchall()
        return [LinkRef(hash=r[0], relation=r[1], origin=r[2]) for r in rows]

    def incoming_links(self, content_hash: str) -> list[LinkRef]:
        key = str(ContentHash(content_hash))
        rows = self.conn.execute(
            """SELECT from_hash, relation, 'embedded' FROM links WHERE to_hash = ?
               UNION ALL
               SELECT from_hash, relation, 'external' FROM external_links WHERE to_hash = ?
               ORDER BY 1, 2, 3""",
            (key, key),
        ).fetchall()
        return [LinkRef(hash=r[0], relation=r[1], origin=r[2]) for r in rows]

    def _adjacent(self, node: str, direction: str) -> list[str]:
        """Distinct neighbor hashes in lexicographic order."""
        found: set[str] = set()
        if direction in ("out", "both"):
            found.update(ref.hash for ref in self.outgoing_links(node))
        if direction in ("in", "both"):
            found.update(ref.hash for ref in self.incoming_links(node))
        return sorted(found)

    def traverse(self, start: str, max_depth: int = 3, direction: str = "out") -> list[GraphNode]:
        """BFS from ``start``; each node once, at its first-discovered depth."""
        key = str(ContentHash(start))
        if direction not in DIRECTIONS:
            msg = f"Invalid direction: {direction!r}"
            raise ValidationError(msg)
        _check_depth(max_depth)

        visited = {key}
        result = [GraphNode(hash=key, depth=0)]
        queue: deque[tuple[str, int]] = deque([(key, 0)])
        while queue:
            node, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for neighbor in self._adjacent(node, direction):
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                result.append(GraphNode(hash=neighbor, depth=depth + 1))
                queue.append((neighbor, depth + 1))
        return result

    def shortest_path(self, source: str, target: str, max_depth: int = 10) -> list[str] | None:
        """Hashes from ``source`` to ``target`` inclusive, following edges either way.

        Neighbors are expanded in hash order, so ties between equal-length
        paths resolve the same way on every call. None if unreachable within
        ``max_depth`` hops.
        """
        src = str(ContentHash(source))
        dst = str(ContentHash(target))
        _check_depth(max_depth)
        if src == dst:
            return [src]

        parents: dict[str, str] = {}
        visited = {src}
        frontier = [src]
        for _ in range(max_depth):
            next_frontier: list[str] = []
            for node in frontier:
                for neighbor in self._adjacent(node, "both"):
                    if neighbor in visited:
                        continue
                    visited.add(neighbor)
                    parents[neighbor] = node
                    if neighbor == dst:
                        path = [dst]
                        while path[-1] != src:
                            path.append(parents[path[-1]])
                        return path[::-1]
                    next_frontier.append(neighbor)
            if not next_frontier:
                break
            frontier = next_frontier
        return None

