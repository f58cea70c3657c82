"""Data models for the knowledge substrate."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from aku.hashing import ContentHash

KNOWLEDGE_TYPES = ("fact", "concept", "relationship", "procedure", "insight", "question", "artifact")
VOLATILITIES = ("stable", "evolving", "ephemeral")
RELATION_TYPES = (
    "relates_to",    # general association
    "derived_from",  # source/origin
    "supersedes",    # newer version of a corrected atom
    "contradicts",
    "part_of",
    "instance_of",
    "causes",
    "requires",
)
SOURCE_TYPES = ("training", "search", "conversation", "inference", "user", "import")
DIRECTIONS = ("in", "out", "both")


@dataclass
class KnowledgeSource:
    """Provenance of an atom. ``timestamp`` is excluded from the hash."""

    type: str = "user"
    timestamp: str = ""
    uri: str | None = None
    session: str | None = None
    citation: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> KnowledgeSource:
        return cls(
            type=d.get("type", "user"),
            timestamp=d.get("timestamp", ""),
            uri=d.get("uri"),
            session=d.get("session"),
            citation=d.get("citation"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        if self.uri is not None:
            d["uri"] = self.uri
        if self.session is not None:
            d["session"] = self.session
        if self.citation is not None:
            d["citation"] = self.citation
        return d


@dataclass
class AKUMeta:
    """Frontmatter of an atom."""

    created: str
    source: KnowledgeSource
    domain: str
    type: str
    confidence: float
    volatility: str
    links: dict[str, list[str]] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    extra: dict[str, Any] | None = None

    @property
    def top_domain(self) -> str:
        return self.domain.split("/", 1)[0]

    def iter_links(self) -> list[tuple[str, str]]:
        """Embedded edges as (relation, target) pairs, in declaration order."""
        return [(rel, target) for rel, targets in self.links.items() for target in targets or []]

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AKUMeta:
        raw_links = d.get("links") or {}
        return cls(
            created=str(d.get("created", "")),
            source=KnowledgeSource.from_dict(d.get("source") or {}),
            domain=d.get("domain", ""),
            type=d.get("type", "fact"),
            confidence=float(d.get("confidence", 0.0)),
            volatility=d.get("volatility", "evolving"),
            links={str(rel): [str(t) for t in targets or []] for rel, targets in raw_links.items()},
            tags=[str(t) for t in d.get("tags") or []],
            extra=d.get("extra"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "created": self.created,
            "source": self.source.to_dict(),
            "domain": self.domain,
            "type": self.type,
            "confidence": self.confidence,
            "volatility": self.volatility,
            # plain str: ContentHash is not representable by yaml.safe_dump
            "links": {rel: [str(t) for t in targets] for rel, targets in self.links.items()},
            "tags": [str(t) for t in self.tags],
        }
        if self.extra is not None:
            d["extra"] = self.extra
        return d


@dataclass
class AKU:
    """Atomic Knowledge Unit. ``id`` is always derived, never trusted input."""

    id: ContentHash
    meta: AKUMeta
    body: str

    @property
    def title(self) -> str:
        """First markdown heading, else first non-blank line (100 chars), else ''."""
        for line in self.body.split("\n"):
            stripped = line.strip()
            if stripped.startswith("# "):
                return stripped[2:].strip()
            if stripped:
                return stripped[:100]
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": str(self.id), "meta": self.meta.to_dict(), "body": self.body}


@dataclass
class IngestInput:
    """Partial atom description; ``Substrate.ingest`` fills in defaults."""

    body: str
    domain: str
    type: str = "fact"
    source: KnowledgeSource | dict[str, Any] | None = None
    confidence: float | None = None
    volatility: str | None = None
    links: dict[str, list[str]] | None = None
    tags: list[str] | None = None
    extra: dict[str, Any] | None = None
    created: str | None = None           # override for imports/backfills


@dataclass
class AKUFilter:
    """Filter for ``Substrate.list``. ``None`` fields do not constrain."""

    domain: str | None = None
    domain_prefix: str | None = None
    type: str | None = None
    tags: list[str] | None = None        # all required
    min_confidence: float | None = None
    since: str | None = None             # inclusive, ISO 8601
    until: str | None = None             # inclusive, ISO 8601
    limit: int | None = None
    offset: int = 0

    @property
    def needs_content(self) -> bool:
        """True when matching requires parsing the atom file."""
        return any(
            v is not None
            for v in (self.domain, self.domain_prefix, self.type, self.tags,
                      self.min_confidence, self.since, self.until)
        )

    def matches(self, aku: AKU) -> bool:
        meta = aku.meta
        if self.domain is not None and meta.domain != self.domain:
            return False
        if self.domain_prefix is not None and not meta.domain.startswith(self.domain_prefix):
            return False
        if self.type is not None and meta.type != self.type:
            return False
        if self.min_confidence is not None and meta.confidence < self.min_confidence:
            return False
        if self.since is not None and meta.created < self.since:
            return False
        if self.until is not None and meta.created > self.until:
            return False
        return not (self.tags and not set(self.tags).issubset(meta.tags))


@dataclass
class ExternalLink:
    """An edge appended to external-links.jsonl after the source atom exists."""

    source: ContentHash
    target: ContentHash
    relation: str
    created: str = ""

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ExternalLink:
        return cls(
            source=ContentHash(d["from"]),
            target=ContentHash(d["to"]),
            relation=d.get("relation", "relates_to"),
            created=d.get("created", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": str(self.source),
            "to": str(self.target),
            "relation": self.relation,
            "created": self.created,
        }


@dataclass(frozen=True)
class LinkRef:
    """One edge as seen from a graph-index lookup."""

    hash: str
    relation: str
    origin: str = "embedded"             # embedded | external


@dataclass(frozen=True)
class OrphanedLink:
    source: str
    target: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.source, "to": self.target}


@dataclass
class IntegrityReport:
    valid: bool
    total_checked: int
    corrupted: list[str] = field(default_factory=list)
    orphaned_links: list[OrphanedLink] = field(default_factory=list)
    missing_atoms: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "totalChecked": self.total_checked,
            "corrupted": list(self.corrupted),
            "orphanedLinks": [o.to_dict() for o in self.orphaned_links],
            "missingAtoms": list(self.missing_atoms),
        }


@dataclass
class SubstrateStats:
    total_atoms: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_domain: dict[str, int] = field(default_factory=dict)
    total_links: int = 0                 # embedded only
    oldest_atom: str | None = None
    newest_atom: str | None = None
    disk_usage: int = 0                  # bytes of atom files

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalAtoms": self.total_atoms,
            "byType": dict(self.by_type),
            "byDomain": dict(self.by_domain),
            "totalLinks": self.total_links,
            "oldestAtom": self.oldest_atom,
            "newestAtom": self.newest_atom,
            "diskUsage": self.disk_usage,
        }


@dataclass(frozen=True)
class SearchResult:
    hash: str
    score: float


@dataclass(frozen=True)
class GraphNode:
    hash: str
    depth: int


@dataclass(frozen=True)
class VectorSearchResult:
    hash: str
    similarity: float                    # cosine, -1..1
    distance: float                      # sqrt(2 * (1 - similarity))
