"""Vector index: unit-normalized embeddings in SQLite, brute-force cosine search.

Schema (vectors.db):
    embeddings(hash PK, vector BLOB float32, dimensions, model, created)
    index_meta(key PK, value)        dimensions, model

Search loads every stored vector into a numpy matrix (cached until the next
write) and ranks by dot product. Fine up to roughly 1e5 vectors; beyond that
use a real ANN index.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import numpy as np

from aku.errors import AtomNotFoundError, DimensionMismatchError, ValidationError
from aku.hashing import ContentHash
from aku.indexes.db import get_conn, memory_conn
from aku.models import VectorSearchResult

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from numpy.typing import NDArray

    VectorLike = Sequence[float] | NDArray[np.floating]

logger = logging.getLogger("aku.indexes.vector")

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS embeddings (
        hash TEXT PRIMARY KEY,
        vector BLOB NOT NULL,      -- raw float32 bytes, unit length
        dimensions INTEGER NOT NULL,
        model TEXT NOT NULL,
        created TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS index_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
"""


# ---------------------------------------------------------------------------
# Vector math
# ---------------------------------------------------------------------------


def _as_array(vector: VectorLike) -> NDArray[np.float32]:
    arr = np.asarray(vector, dtype=np.float32)
    if arr.ndim != 1:
        msg = f"Expected a 1-D vector, got shape {arr.shape}"
        raise ValidationError(msg)
    return arr


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either vector has zero magnitude."""
    va, vb = _as_array(a), _as_array(b)
    if va.shape != vb.shape:
        raise DimensionMismatchError(len(va), len(vb), what="Vector")
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def normalize_vector(vector: VectorLike) -> NDArray[np.float32]:
    """Unit-length copy. A zero vector stays zero."""
    arr = _as_array(vector)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.copy()
    return (arr / norm).astype(np.float32)


def euclidean_distance(a: VectorLike, b: VectorLike) -> float:
    va, vb = _as_array(a), _as_array(b)
    if va.shape != vb.shape:
        raise DimensionMismatchError(len(va), len(vb), what="Vector")
    return float(np.linalg.norm(va - vb))


def embedding_to_bytes(vector: VectorLike) -> bytes:
    return _as_array(vector).tobytes()


def bytes_to_embedding(data: bytes) -> NDArray[np.float32]:
    return np.frombuffer(data, dtype=np.float32).copy()


def angular_distance(similarity: float) -> float:
    """sqrt(2 * (1 - similarity)): chord length between unit vectors."""
    return math.sqrt(max(0.0, 2.0 * (1.0 - similarity)))


# ---------------------------------------------------------------------------
# VectorIndex
# ---------------------------------------------------------------------------


class VectorIndex:
    """Fixed-dimension embedding store keyed by atom hash."""

    def __init__(self, db_path: Path | None = None, dimensions: int = 1536, model: str = "unknown") -> None:
        if dimensions <= 0:
            msg = f"dimensions must be positive, got {dimensions}"
            raise ValidationError(msg)
        self.db_path = db_path
        self.dimensions = dimensions
        self.model = model
        self.conn = get_conn(db_path) if db_path is not None else memory_conn()
        self.conn.executescript(_SCHEMA)
        self._check_meta()
        self._cache: tuple[list[str], NDArray[np.float32]] | None = None

    def _check_meta(self) -> None:
        row = self.conn.execute("SELECT value FROM index_meta WHERE key = 'dimensions'").fetchone()
        if row is not None and int(row[0]) != self.dimensions and self.count() > 0:
            self.conn.close()
            raise DimensionMismatchError(int(row[0]), self.dimensions, what="Vector index")
        self.conn.executemany(
            "INSERT OR REPLACE INTO index_meta(key, value) VALUES (?, ?)",
            [("dimensions", str(self.dimensions)), ("model", self.model)],
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def _check_dimensions(self, vector: NDArray[np.float32]) -> None:
        if vector.shape[0] != self.dimensions:
            raise DimensionMismatchError(self.dimensions, vector.shape[0])

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def store(self, content_hash: str, embedding: VectorLike) -> None:
        """Persist ``embedding`` (normalized) for an atom, replacing any previous one."""
        key = str(ContentHash(content_hash))
        vec = _as_array(embedding)
        self._check_dimensions(vec)
        self.conn.execute(
            """INSERT OR REPLACE INTO embeddings(hash, vector, dimensions, model, created)
               VALUES (?, ?, ?, ?, ?)""",
            (key, embedding_to_bytes(normalize_vector(vec)), self.dimensions, self.model,
             datetime.now(UTC).isoformat()),
        )
        self.conn.commit()
        self._cache = None

    def get(self, content_hash: str) -> NDArray[np.float32] | None:
        row = self.conn.execute(
            "SELECT vector FROM embeddings WHERE hash = ?", (str(ContentHash(content_hash)),)
        ).fetchone()
        return bytes_to_embedding(row[0]) if row else None

    def has(self, content_hash: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM embeddings WHERE hash = ?", (str(ContentHash(content_hash)),)
        ).fetchone()
        return row is not None

    def delete(self, content_hash: str) -> bool:
        cur = self.conn.execute("DELETE FROM embeddings WHERE hash = ?", (str(ContentHash(content_hash)),))
        self.conn.commit()
        self._cache = None
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _matrix(self) -> tuple[list[str], NDArray[np.float32]]:
        if self._cache is None:
            rows = self.conn.execute("SELECT hash, vector FROM embeddings ORDER BY hash").fetchall()
            ids = [r[0] for r in rows]
            if rows:
                matrix = np.vstack([bytes_to_embedding(r[1]) for r in rows])
            else:
                matrix = np.zeros((0, self.dimensions), dtype=np.float32)
            self._cache = (ids, matrix)
        return self._cache

    def search(self, query: VectorLike, limit: int = 10, min_similarity: float = 0.0) -> list[VectorSearchResult]:
        """Top ``limit`` stored vectors by cosine similarity, best first."""
        q = _as_array(query)
        self._check_dimensions(q)
        ids, matrix = self._matrix()
        if not ids or limit <= 0:
            return []

        # Stored rows are unit length, so the dot product is the cosine
        scores = matrix @ normalize_vector(q)
        order = np.argsort(-scores, kind="stable")
        results: list[VectorSearchResult] = []
        for i in order:
            similarity = float(scores[int(i)])
            if similarity < min_similarity:
                break
            results.append(
                VectorSearchResult(hash=ids[int(i)], similarity=similarity, distance=angular_distance(similarity))
            )
            if len(results) >= limit:
                break
        return results

    def find_nearest(self, content_hash: str, k: int = 5, min_similarity: float = 0.0) -> list[VectorSearchResult]:
        """Up to ``k`` neighbors of a stored embedding, excluding itself."""
        key = str(ContentHash(content_hash))
        vec = self.get(key)
        if vec is None:
            msg = f"No embedding found for {key}"
            raise AtomNotFoundError(msg)
        hits = self.search(vec, limit=k + 1, min_similarity=min_similarity)
        return [h for h in hits if h.hash != key][:k]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def count(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0])

    def stats(self) -> dict[str, int | str]:
        return {"count": self.count(), "dimensions": self.dimensions, "model": self.model}

    def clear(self) -> None:
        self.conn.execute("DELETE FROM embeddings")
        self.conn.commit()
        self._cache = None
        logger.info("vector index cleared")
