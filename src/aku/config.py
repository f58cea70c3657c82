"""SubstrateConfig: per-store configuration kept in .aku/config.yaml.

Layout of a substrate root:

    .aku/
        version           # format version, single integer
        config.yaml       # this file
        schemas/
    atoms/<shard>/<hash>
    heads/latest
    heads/domains/<top>
    indexes/              # derived caches, disposable (.gitignore'd)
    WAL/pending.jsonl
    external-links.jsonl

config.yaml example:

    version: 1
    substrate:
      hash_algorithm: sha256
      shard_depth: 2
    indexes:
      vectors:
        enabled: false
        model: unknown
        dimensions: 1536
      graph:
        enabled: true
      temporal:
        enabled: true
      fts:
        enabled: true
    defaults:
      confidence: 0.8
      volatility: evolving

The config is loaded once and passed to ``Substrate`` explicitly; nothing in
the core reads environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from aku.errors import ConfigError
from aku.models import VOLATILITIES

FORMAT_VERSION = 1
CONFIG_RELPATH = ".aku/config.yaml"
VERSION_RELPATH = ".aku/version"
_SUPPORTED_HASHES = ("sha256",)


@dataclass
class IndexToggle:
    enabled: bool = True


@dataclass
class VectorIndexConfig:
    enabled: bool = False
    model: str = "unknown"
    dimensions: int = 1536


@dataclass
class IndexesConfig:
    vectors: VectorIndexConfig = field(default_factory=VectorIndexConfig)
    graph: IndexToggle = field(default_factory=IndexToggle)
    temporal: IndexToggle = field(default_factory=IndexToggle)
    fts: IndexToggle = field(default_factory=IndexToggle)


@dataclass
class DefaultsConfig:
    confidence: float = 0.8
    volatility: str = "evolving"


@dataclass
class SubstrateConfig:
    """Resolved configuration for one substrate."""

    version: int = FORMAT_VERSION
    hash_algorithm: str = "sha256"
    shard_depth: int = 2
    indexes: IndexesConfig = field(default_factory=IndexesConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)

    def validate(self) -> SubstrateConfig:
        if self.hash_algorithm not in _SUPPORTED_HASHES:
            msg = f"Unsupported hash_algorithm: {self.hash_algorithm!r} (only sha256)"
            raise ConfigError(msg)
        if not isinstance(self.shard_depth, int) or not 1 <= self.shard_depth <= 64:
            msg = f"shard_depth must be an integer in 1..64, got {self.shard_depth!r}"
            raise ConfigError(msg)
        if not 0.0 <= self.defaults.confidence <= 1.0:
            msg = f"defaults.confidence must be within [0, 1], got {self.defaults.confidence}"
            raise ConfigError(msg)
        if self.defaults.volatility not in VOLATILITIES:
            msg = f"defaults.volatility must be one of {VOLATILITIES}, got {self.defaults.volatility!r}"
            raise ConfigError(msg)
        if self.indexes.vectors.dimensions <= 0:
            msg = f"indexes.vectors.dimensions must be positive, got {self.indexes.vectors.dimensions}"
            raise ConfigError(msg)
        return self

    def to_dict(self) -> dict[str, Any]:
        vec = self.indexes.vectors
        return {
            "version": self.version,
            "substrate": {
                "hash_algorithm": self.hash_algorithm,
                "shard_depth": self.shard_depth,
            },
            "indexes": {
                "vectors": {"enabled": vec.enabled, "model": vec.model, "dimensions": vec.dimensions},
                "graph": {"enabled": self.indexes.graph.enabled},
                "temporal": {"enabled": self.indexes.temporal.enabled},
                "fts": {"enabled": self.indexes.fts.enabled},
            },
            "defaults": {
                "confidence": self.defaults.confidence,
                "volatility": self.defaults.volatility,
            },
        }


def _toggle(section: dict[str, Any], default: bool = True) -> IndexToggle:
    return IndexToggle(enabled=bool(section.get("enabled", default)))


def config_from_dict(raw: dict[str, Any] | None) -> SubstrateConfig:
    """Build a config from the nested YAML layout. Missing keys use defaults."""
    raw = raw or {}
    if not isinstance(raw, dict):
        msg = "config.yaml must contain a mapping"
        raise ConfigError(msg)

    sub_section = raw.get("substrate") or {}
    idx_section = raw.get("indexes") or {}
    def_section = raw.get("defaults") or {}
    vec_section = idx_section.get("vectors") or {}

    try:
        cfg = SubstrateConfig(
            version=int(raw.get("version", FORMAT_VERSION)),
            hash_algorithm=str(sub_section.get("hash_algorithm", "sha256")),
            shard_depth=int(sub_section.get("shard_depth", 2)),
            indexes=IndexesConfig(
                vectors=VectorIndexConfig(
                    enabled=bool(vec_section.get("enabled", False)),
                    model=str(vec_section.get("model", "unknown")),
                    dimensions=int(vec_section.get("dimensions", 1536)),
                ),
                graph=_toggle(idx_section.get("graph") or {}),
                temporal=_toggle(idx_section.get("temporal") or {}),
                fts=_toggle(idx_section.get("fts") or {}),
            ),
            defaults=DefaultsConfig(
                confidence=float(def_section.get("confidence", 0.8)),
                volatility=str(def_section.get("volatility", "evolving")),
            ),
        )
    except (TypeError, ValueError) as exc:
        msg = f"Malformed substrate config: {exc}"
        raise ConfigError(msg) from exc
    return cfg.validate()


def load_config(root: Path | str) -> SubstrateConfig:
    """Read <root>/.aku/config.yaml, or return defaults if it does not exist."""
    path = Path(root) / CONFIG_RELPATH
    if not path.exists():
        return SubstrateConfig()
    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"Cannot parse {path}: {exc}"
        raise ConfigError(msg) from exc
    return config_from_dict(raw)


def write_config(root: Path | str, cfg: SubstrateConfig) -> Path:
    path = Path(root) / CONFIG_RELPATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.to_dict(), sort_keys=False), encoding="utf-8")
    return path


def read_format_version(root: Path | str) -> int | None:
    """Return the integer in .aku/version, or None if the store is uninitialized."""
    path = Path(root) / VERSION_RELPATH
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8").strip()
    try:
        return int(text)
    except ValueError as exc:
        msg = f"Malformed format version in {path}: {text!r}"
        raise ConfigError(msg) from exc
