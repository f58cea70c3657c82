"""Derived indexes. Disposable: every one can be rebuilt from the atom store.

    indexes/graph.db      GraphIndex
    indexes/temporal.db   TemporalIndex
    indexes/fts.db        FullTextIndex
    indexes/vectors.db    VectorIndex (only when indexes.vectors.enabled)

Indexing is explicit: after ``Substrate.ingest`` the caller passes the atom to
``IndexManager.index_aku``. Nothing subscribes to the store.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aku.config import IndexesConfig
from aku.indexes.fts import FullTextIndex
from aku.indexes.graph import GraphIndex
from aku.indexes.temporal import TemporalIndex
from aku.indexes.vector import VectorIndex

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path
    from types import TracebackType

    from aku.models import AKU, ExternalLink
    from aku.substrate import Substrate

logger = logging.getLogger("aku.indexes")

__all__ = ["FullTextIndex", "GraphIndex", "IndexManager", "TemporalIndex", "VectorIndex"]


class IndexManager:
    """Owns one handle per enabled index; disabled indexes are None."""

    def __init__(self, index_dir: Path | None = None, config: IndexesConfig | None = None) -> None:
        cfg = config or IndexesConfig()
        self.index_dir = index_dir
        if index_dir is not None:
            index_dir.mkdir(parents=True, exist_ok=True)

        def path(name: str) -> Path | None:
            return index_dir / name if index_dir is not None else None

        self.graph = GraphIndex(path("graph.db")) if cfg.graph.enabled else None
        self.temporal = TemporalIndex(path("temporal.db")) if cfg.temporal.enabled else None
        self.fts = FullTextIndex(path("fts.db")) if cfg.fts.enabled else None
        self.vectors = (
            VectorIndex(path("vectors.db"), dimensions=cfg.vectors.dimensions, model=cfg.vectors.model)
            if cfg.vectors.enabled
            else None
        )

    @classmethod
    def for_substrate(cls, substrate: Substrate) -> IndexManager:
        """Indexes under <root>/indexes, or in memory for a rootless substrate."""
        return cls(substrate.indexes_dir, substrate.config.indexes)

    def _atom_indexes(self) -> list[GraphIndex | TemporalIndex | FullTextIndex]:
        return [idx for idx in (self.graph, self.temporal, self.fts) if idx is not None]

    def index_aku(self, aku: AKU) -> None:
        for idx in self._atom_indexes():
            idx.index_aku(aku)

    def index_link(self, link: ExternalLink) -> None:
        if self.graph is not None:
            self.graph.index_link(link)

    def rebuild(self, atoms: Iterable[AKU], external_links: Iterable[ExternalLink] = ()) -> int:
        """Clear graph, temporal and FTS, then replay ``atoms`` once through all three.

        Embeddings are not derived from atoms here; re-embed with ``aku embed``.
        """
        indexes = self._atom_indexes()
        for idx in indexes:
            idx.clear()
        count = 0
        for aku in atoms:
            for idx in indexes:
                idx.index_aku(aku, commit=False)
            count += 1
        if self.graph is not None:
            for link in external_links:
                self.graph.index_link(link, commit=False)
        for idx in indexes:
            idx.conn.commit()
        logger.info("rebuilt %d index(es) from %d atoms", len(indexes), count)
        return count

    def clear(self) -> None:
        for idx in self._atom_indexes():
            idx.clear()
        if self.vectors is not None:
            self.vectors.clear()

    def close(self) -> None:
        for idx in (self.graph, self.temporal, self.fts, self.vectors):
            if idx is not None:
                idx.close()

    def __enter__(self) -> IndexManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
