"""Content-addressed knowledge store: atom files as source of truth, SQLite as derived index.

Layout:
    <root>/
        .aku/version            # format version (1)
        .aku/config.yaml        # SubstrateConfig
        atoms/<hash[:2]>/<hash> # YAML frontmatter + body, immutable
        heads/latest            # most recently ingested hash
        heads/domains/<top>     # append-log of hashes per top-level domain
        indexes/                # graph.db, temporal.db, fts.db, vectors.db (fully reconstructable)
        WAL/pending.jsonl       # pending/committed markers, no replay
        external-links.jsonl    # edges added after ingest

Atom id = sha256 of canonical(meta minus created/source.timestamp, normalized body).
Ingesting the same knowledge twice returns the same hash and writes nothing.

Concurrent writes: single writer process per root. Atom files are written via
temp file + rename; single-line appends rely on O_APPEND.
"""

from aku.config import SubstrateConfig, load_config
from aku.errors import (
    AKUParseError,
    AtomNotFoundError,
    ConfigError,
    DimensionMismatchError,
    InvalidDomainError,
    InvalidHashError,
    SubstrateError,
    ValidationError,
)
from aku.hashing import ContentHash, canonicalize, compute_hash, is_valid_hash, verify_hash
from aku.indexes import IndexManager
from aku.models import AKU, AKUFilter, AKUMeta, ExternalLink, IngestInput, IntegrityReport, KnowledgeSource, SubstrateStats
from aku.substrate import Substrate, init_substrate, open_substrate, validate_domain

__all__ = [
    "AKU",
    "AKUFilter",
    "AKUMeta",
    "AKUParseError",
    "AtomNotFoundError",
    "ConfigError",
    "ContentHash",
    "DimensionMismatchError",
    "ExternalLink",
    "IndexManager",
    "IngestInput",
    "IntegrityReport",
    "InvalidDomainError",
    "InvalidHashError",
    "KnowledgeSource",
    "Substrate",
    "SubstrateConfig",
    "SubstrateError",
    "SubstrateStats",
    "ValidationError",
    "canonicalize",
    "compute_hash",
    "init_substrate",
    "is_valid_hash",
    "load_config",
    "open_substrate",
    "validate_domain",
    "verify_hash",
]
