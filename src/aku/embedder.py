"""Embedding providers: deterministic mock, or local fastembed with diskcache.

The vector index never embeds anything itself; callers pick a provider here
and hand the vectors to ``VectorIndex.store`` / ``VectorIndex.search``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from diskcache import Cache
    from fastembed import TextEmbedding
    from numpy.typing import NDArray


class EmbeddingProvider(Protocol):
    model: str
    dimensions: int

    def embed_document(self, text: str) -> NDArray[np.float32]: ...

    def embed_query(self, text: str) -> NDArray[np.float32]: ...

    def embed_batch(self, texts: list[str]) -> list[NDArray[np.float32]]: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _safe_model_name(model: str) -> str:
    """Sanitize a model string for use as a filesystem directory name."""
    return model.replace("/", "_").replace(":", "_")


# ---------------------------------------------------------------------------
# MockEmbeddingProvider
# ---------------------------------------------------------------------------

@dataclass
class MockEmbeddingProvider:
    """Deterministic unit vectors seeded by the text's SHA-256. For tests and offline use.

    Identical text always maps to the identical vector; different texts are
    close to orthogonal at reasonable dimensions.
    """

    dimensions: int = 128
    model: str = "mock-v1"

    def embed_document(self, text: str) -> NDArray[np.float32]:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        vec = np.random.default_rng(seed).standard_normal(self.dimensions).astype(np.float32)
        return vec / np.float32(np.linalg.norm(vec))

    def embed_query(self, text: str) -> NDArray[np.float32]:
        return self.embed_document(text)

    def embed_batch(self, texts: list[str]) -> list[NDArray[np.float32]]:
        return [self.embed_document(t) for t in texts]


# ---------------------------------------------------------------------------
# FastEmbedEmbedder
# ---------------------------------------------------------------------------

@dataclass
class FastEmbedEmbedder:
    """Local embedder using fastembed TextEmbedding (ONNX, no API key needed)."""

    model: str = "BAAI/bge-small-en-v1.5"
    dimensions: int = 384  # bge-small-en-v1.5 is 384-dim
    _fe_model: TextEmbedding | None = field(default=None, repr=False, init=False)

    @property
    def _model(self) -> TextEmbedding:
        """Get or create the fastembed model (lazy)."""
        if self._fe_model is None:
            try:
                from fastembed import TextEmbedding
            except ImportError as e:
                msg = "fastembed is required for local embeddings: pip install 'aku-substrate[embeddings]'"
                raise ImportError(msg) from e
            self._fe_model = TextEmbedding(self.model)
        return self._fe_model

    def embed_document(self, text: str) -> NDArray[np.float32]:
        embeddings = list(self._model.embed([text]))
        return np.array(embeddings[0], dtype=np.float32)

    def embed_query(self, text: str) -> NDArray[np.float32]:
        embeddings = list(self._model.query_embed(text))
        return np.array(embeddings[0], dtype=np.float32)

    def embed_batch(self, texts: list[str]) -> list[NDArray[np.float32]]:
        if not texts:
            return []
        return [np.array(emb, dtype=np.float32) for emb in self._model.embed(texts)]


# ---------------------------------------------------------------------------
# CachedEmbedder
# ---------------------------------------------------------------------------

@dataclass
class CachedEmbedder:
    """Wraps an embedder with diskcache on disk.

    Cache key: sha256 of "{task_type}:{text}:{dimensions}"
    Cache path: {cache_dir}/{safe_model_name}/
    Stored as raw float32 bytes (.tobytes() / np.frombuffer).
    """

    embedder: FastEmbedEmbedder | MockEmbeddingProvider
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "aku" / "embeddings")
    _disk_cache: Cache | None = field(default=None, repr=False, init=False)

    @property
    def model(self) -> str:
        return self.embedder.model

    @property
    def dimensions(self) -> int:
        return self.embedder.dimensions

    @property
    def _cache(self) -> Cache:
        """Get or create the diskcache instance (lazy, model-specific directory)."""
        if self._disk_cache is None:
            try:
                from diskcache import Cache
            except ImportError as e:
                msg = "diskcache is required for caching: pip install 'aku-substrate[embeddings]'"
                raise ImportError(msg) from e
            model_dir = self.cache_dir / _safe_model_name(self.embedder.model)
            model_dir.mkdir(parents=True, exist_ok=True)
            self._disk_cache = Cache(str(model_dir))
        return self._disk_cache

    def _cache_key(self, text: str, task_type: str) -> str:
        raw = f"{task_type}:{text}:{self.dimensions}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def _cached(self, key: str) -> NDArray[np.float32] | None:
        data = self._cache.get(key)
        if data is None:
            return None
        return np.frombuffer(data, dtype=np.float32)  # type: ignore[arg-type]

    def embed_document(self, text: str) -> NDArray[np.float32]:
        key = self._cache_key(text, "document")
        cached = self._cached(key)
        if cached is not None:
            return cached
        embedding = self.embedder.embed_document(text)
        self._cache.set(key, embedding.tobytes())
        return embedding

    def embed_query(self, text: str) -> NDArray[np.float32]:
        key = self._cache_key(text, "query")
        cached = self._cached(key)
        if cached is not None:
            return cached
        embedding = self.embedder.embed_query(text)
        self._cache.set(key, embedding.tobytes())
        return embedding

    def embed_batch(self, texts: list[str]) -> list[NDArray[np.float32]]:
        """Embed a batch of documents, only sending cache misses to the inner embedder."""
        results: list[NDArray[np.float32] | None] = [None] * len(texts)
        missing: list[int] = []
        for i, text in enumerate(texts):
            results[i] = self._cached(self._cache_key(text, "document"))
            if results[i] is None:
                missing.append(i)

        if missing:
            fresh = self.embedder.embed_batch([texts[i] for i in missing])
            for i, emb in zip(missing, fresh, strict=True):
                self._cache.set(self._cache_key(texts[i], "document"), emb.tobytes())
                results[i] = emb

        return [r for r in results if r is not None]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_embedder(model: str, cache_dir: Path | None = None, dimensions: int | None = None) -> EmbeddingProvider:
    """Create an embedder for a model string.

    - ``mock`` or ``mock:<dims>`` -> MockEmbeddingProvider (never cached)
    - ``fastembed:<model>`` or a bare model name -> FastEmbedEmbedder, wrapped
      in CachedEmbedder when ``cache_dir`` is given
    """
    lower = model.lower()
    if lower == "mock" or lower.startswith("mock:"):
        dims = int(model.split(":", 1)[1]) if ":" in model else (dimensions or 128)
        return MockEmbeddingProvider(dimensions=dims)

    bare = model[len("fastembed:"):] if lower.startswith("fastembed:") else model
    base = FastEmbedEmbedder(model=bare) if dimensions is None else FastEmbedEmbedder(model=bare, dimensions=dimensions)
    if cache_dir is None:
        return base
    return CachedEmbedder(embedder=base, cache_dir=cache_dir)
