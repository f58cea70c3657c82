"""Substrate: ingest, fetch, list, link, verify and summarize atoms.

The atom store is the only source of truth. Indexes are derived: callers
index an atom explicitly after ingest (``IndexManager.index_aku``) and can
rebuild every index from ``Substrate.iter_atoms()`` at any time.

Ingest pipeline:
    validate domain -> fill defaults -> compute hash -> dedup check
    -> WAL pending -> write atom -> update heads -> WAL committed

Concurrency: one writer process per root. The dedup check and the write are
not atomic across processes; a lost race rewrites identical bytes via an
atomic rename, so the store stays consistent.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from aku.config import (
    CONFIG_RELPATH,
    FORMAT_VERSION,
    VERSION_RELPATH,
    SubstrateConfig,
    load_config,
    read_format_version,
    write_config,
)
from aku.errors import (
    AKUParseError,
    AtomNotFoundError,
    ConfigError,
    InvalidDomainError,
    SubstrateError,
    ValidationError,
)
from aku.frontmatter import parse_aku, serialize_aku
from aku.hashing import ContentHash, compute_hash, normalize_body, verify_hash
from aku.links import LinkStore
from aku.models import (
    AKU,
    DIRECTIONS,
    KNOWLEDGE_TYPES,
    RELATION_TYPES,
    SOURCE_TYPES,
    VOLATILITIES,
    AKUFilter,
    AKUMeta,
    ExternalLink,
    IngestInput,
    IntegrityReport,
    KnowledgeSource,
    OrphanedLink,
    SubstrateStats,
)
from aku.storage import AtomStorage, FileAtomStorage, MemoryAtomStorage

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger("aku.substrate")

WAL_FILE = "WAL/pending.jsonl"
LATEST_HEAD = "heads/latest"
DOMAIN_HEADS_DIR = "heads/domains"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
_TRAVERSAL_MARKERS = ("..", "//", "\\", "%2f", "%2e", "%5c")

_INIT_DIRS = (".aku/schemas", "atoms", "heads/domains", "heads/sessions", "indexes", "WAL")
_INDEX_GITIGNORE = "*\n!.gitignore\n"


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_domain(domain: str) -> None:
    """Reject any domain that could escape the store root when used as a path.

    Runs before any path is built from the domain.
    """
    if not isinstance(domain, str) or not domain:
        msg = f"Invalid domain: {domain!r} must be a non-empty string"
        raise InvalidDomainError(msg)
    lowered = domain.lower()
    if domain.startswith("/") or any(marker in lowered for marker in _TRAVERSAL_MARKERS):
        msg = f'Invalid domain: path traversal detected in "{domain}"'
        raise InvalidDomainError(msg)
    for segment in domain.split("/"):
        if not _SEGMENT_RE.match(segment):
            msg = (
                f'Invalid domain: segment "{segment}" must start with alphanumeric and '
                "contain only alphanumeric, underscore, or hyphen"
            )
            raise InvalidDomainError(msg)


def _check_choice(value: Any, choices: tuple[str, ...], what: str) -> str:
    if value not in choices:
        msg = f"Invalid {what}: {value!r} (expected one of {', '.join(choices)})"
        raise ValidationError(msg)
    return str(value)


def _check_timestamp(value: str, what: str) -> str:
    try:
        datetime.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        msg = f"Invalid {what}: {value!r} is not an ISO 8601 timestamp"
        raise ValidationError(msg) from exc
    return value


def _normalize_links(links: dict[str, Any] | None) -> dict[str, list[str]]:
    if links is None:
        return {}
    if not isinstance(links, dict):
        msg = f"links must be a mapping, got {type(links).__name__}"
        raise ValidationError(msg)
    out: dict[str, list[str]] = {}
    for relation, targets in links.items():
        _check_choice(relation, RELATION_TYPES, "link relation")
        if isinstance(targets, str):
            targets = [targets]
        elif targets is None:
            targets = []
        elif not isinstance(targets, (list, tuple)):
            msg = f"Invalid link targets for {relation}: expected a hash or list of hashes, got {type(targets).__name__}"
            raise ValidationError(msg)
        hashes = [str(ContentHash(t)) for t in targets]
        if hashes:
            out[relation] = hashes
    return out


def _normalize_tags(tags: list[str] | None) -> list[str]:
    seen: dict[str, None] = {}
    for tag in tags or []:
        if not isinstance(tag, str) or not tag.strip():
            msg = f"Invalid tag: {tag!r}"
            raise ValidationError(msg)
        seen.setdefault(tag.strip(), None)
    return list(seen)


def _normalize_extra(extra: dict[str, Any] | None) -> dict[str, Any] | None:
    if extra is None:
        return None
    if not isinstance(extra, dict):
        msg = f"extra must be a mapping, got {type(extra).__name__}"
        raise ValidationError(msg)
    try:
        # Plain JSON types only, so the YAML round trip reproduces the hash input
        return json.loads(json.dumps(extra))  # type: ignore[no-any-return]
    except (TypeError, ValueError) as exc:
        msg = f"extra must be JSON-serializable: {exc}"
        raise ValidationError(msg) from exc


# ---------------------------------------------------------------------------
# Substrate
# ---------------------------------------------------------------------------


class Substrate:
    """Content-addressed atom store plus heads, WAL and external link log."""

    def __init__(
        self,
        storage: AtomStorage,
        config: SubstrateConfig | None = None,
        *,
        root: Path | str | None = None,
    ) -> None:
        self.storage = storage
        self.config = (config or SubstrateConfig()).validate()
        self.root = Path(root) if root is not None else None
        self.links = LinkStore(storage)

    @classmethod
    def in_memory(cls, config: SubstrateConfig | None = None) -> Substrate:
        return cls(MemoryAtomStorage(), config)

    @property
    def indexes_dir(self) -> Path | None:
        """Where derived indexes live; None for a substrate without a root."""
        return self.root / "indexes" if self.root is not None else None

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _build_meta(self, item: IngestInput) -> AKUMeta:
        now = _now()
        defaults = self.config.defaults

        raw_source = item.source
        if isinstance(raw_source, KnowledgeSource):
            source = KnowledgeSource(**vars(raw_source))
        elif raw_source is None or isinstance(raw_source, dict):
            source = KnowledgeSource.from_dict(raw_source or {})
        else:
            msg = f"source must be a KnowledgeSource or mapping, got {type(raw_source).__name__}"
            raise ValidationError(msg)
        source.type = _check_choice(source.type or "user", SOURCE_TYPES, "source type")
        source.timestamp = source.timestamp or now

        confidence = defaults.confidence if item.confidence is None else item.confidence
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0:
            msg = f"Invalid confidence: {confidence!r} (expected a number within [0, 1])"
            raise ValidationError(msg)

        return AKUMeta(
            created=_check_timestamp(item.created, "created") if item.created else now,
            source=source,
            domain=item.domain,
            type=_check_choice(item.type or "fact", KNOWLEDGE_TYPES, "type"),
            confidence=float(confidence),
            volatility=_check_choice(item.volatility or defaults.volatility, VOLATILITIES, "volatility"),
            links=_normalize_links(item.links),
            tags=_normalize_tags(item.tags),
            extra=_normalize_extra(item.extra),
        )

    def ingest(self, item: IngestInput) -> ContentHash:
        """Store an atom and return its content hash. Idempotent."""
        validate_domain(item.domain)
        meta = self._build_meta(item)
        body = normalize_body(item.body)
        content_hash = compute_hash(meta, body)

        if self.exists(content_hash):
            logger.debug("ingest dedup: %s already stored", content_hash.short)
            return content_hash

        aku = AKU(id=content_hash, meta=meta, body=body)
        self._append_wal(content_hash, "pending")
        self.storage.write_atom(content_hash, serialize_aku(aku))
        self._update_heads(content_hash, meta.domain)
        self._append_wal(content_hash, "committed")

        logger.info("ingested %s (%s, %s)", content_hash.short, meta.domain, meta.type)
        return content_hash

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, content_hash: str) -> AKU | None:
        """Fetch an atom. Raises on a malformed hash, None if well-formed but absent."""
        key = ContentHash(content_hash)
        text = self.storage.read_atom(key)
        if text is None:
            return None
        return parse_aku(text, key)

    def exists(self, content_hash: str) -> bool:
        return self.storage.atom_exists(ContentHash(content_hash))

    def iter_atoms(self) -> Iterator[AKU]:
        """Lazily yield every parseable atom. Unparseable files are skipped."""
        for content_hash in self.storage.iter_atom_hashes():
            try:
                aku = self.get(content_hash)
            except AKUParseError as exc:
                logger.warning("skipping unparseable atom %s: %s", content_hash[:12], exc)
                continue
            if aku is not None:
                yield aku

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def link(self, source: str, target: str, relation: str = "relates_to") -> ExternalLink:
        """Record an edge after ingestion. ``source`` must exist; ``target`` need not."""
        src = ContentHash(source)
        dst = ContentHash(target)
        _check_choice(relation, RELATION_TYPES, "link relation")
        if not self.exists(src):
            msg = f"Source AKU not found: {src}"
            raise AtomNotFoundError(msg)

        entry = ExternalLink(source=src, target=dst, relation=relation, created=_now())
        self.links.append(entry)
        logger.info("linked %s -[%s]-> %s", src.short, relation, dst.short)
        return entry

    def external_links(self) -> Iterator[ExternalLink]:
        return iter(self.links)

    def neighbors(self, content_hash: str, direction: str = "both") -> set[str]:
        """Adjacent hashes over embedded links (outgoing) and the external log."""
        key = ContentHash(content_hash)
        _check_choice(direction, DIRECTIONS, "direction")
        found: set[str] = set()

        if direction in ("out", "both"):
            aku = self.get(key)
            if aku is not None:
                found.update(target for _, target in aku.meta.iter_links())

        for entry in self.links:
            if direction in ("out", "both") and entry.source == key:
                found.add(str(entry.target))
            if direction in ("in", "both") and entry.target == key:
                found.add(str(entry.source))
        return found

    # ------------------------------------------------------------------
    # Heads
    # ------------------------------------------------------------------

    def _update_heads(self, content_hash: str, domain: str) -> None:
        self.storage.write_text(LATEST_HEAD, content_hash)
        top = domain.split("/", 1)[0]
        self.storage.append_line(f"{DOMAIN_HEADS_DIR}/{top}", content_hash)

    def get_head(self, name: str = "latest") -> str | None:
        """Most recent hash recorded under heads/<name>, or None."""
        if not _SEGMENT_RE.match(name):
            msg = f"Invalid head name: {name!r}"
            raise ValidationError(msg)
        text = self.storage.read_text(f"heads/{name}")
        if text is None:
            return None
        return text.strip() or None

    def domain_heads(self, top: str) -> list[str]:
        """Hashes ingested under a top-level domain, oldest first."""
        validate_domain(top)
        if "/" in top:
            msg = f"Expected a top-level domain segment, got {top!r}"
            raise InvalidDomainError(msg)
        return list(self.storage.iter_lines(f"{DOMAIN_HEADS_DIR}/{top}"))

    # ------------------------------------------------------------------
    # WAL
    # ------------------------------------------------------------------

    def _append_wal(self, content_hash: str, status: str) -> None:
        entry = {"hash": str(content_hash), "timestamp": _now(), "status": status}
        self.storage.append_line(WAL_FILE, json.dumps(entry))
        logger.debug("wal %s %s", status, content_hash[:12])

    def pending_writes(self) -> list[str]:
        """Hashes with a pending WAL marker but no committed marker. No replay."""
        pending: dict[str, None] = {}
        for line in self.storage.iter_lines(WAL_FILE):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("skipping malformed WAL record: %.120s", line)
                continue
            if entry.get("status") == "pending":
                pending.setdefault(entry.get("hash", ""), None)
            elif entry.get("status") == "committed":
                pending.pop(entry.get("hash", ""), None)
        return [h for h in pending if h]

    # ------------------------------------------------------------------
    # Audit (full O(n) scans, no cancellation)
    # ------------------------------------------------------------------

    def verify(self) -> IntegrityReport:
        """Recompute every hash and check embedded link targets exist."""
        seen: set[str] = set()
        corrupted: list[str] = []
        edges: list[tuple[str, str]] = []
        total = 0

        for content_hash in self.storage.iter_atom_hashes():
            total += 1
            seen.add(content_hash)
            # Parse or rehash failures count as corruption
            try:
                aku = self.get(content_hash)
                intact = aku is not None and verify_hash(content_hash, aku.meta, aku.body)
            except (SubstrateError, TypeError, ValueError) as exc:
                logger.debug("verify: %s unreadable: %s", content_hash[:12], exc)
                intact = False
            if not intact or aku is None:
                corrupted.append(content_hash)
                continue
            edges.extend((content_hash, target) for _, target in aku.meta.iter_links())

        orphaned = [OrphanedLink(src, dst) for src, dst in edges if dst not in seen]
        missing = list(dict.fromkeys(o.target for o in orphaned))
        return IntegrityReport(
            valid=not corrupted and not orphaned,
            total_checked=total,
            corrupted=corrupted,
            orphaned_links=orphaned,
            missing_atoms=missing,
        )

    def stats(self) -> SubstrateStats:
        out = SubstrateStats()
        for aku in self.iter_atoms():
            meta = aku.meta
            out.total_atoms += 1
            out.by_type[meta.type] = out.by_type.get(meta.type, 0) + 1
            out.by_domain[meta.top_domain] = out.by_domain.get(meta.top_domain, 0) + 1
            out.total_links += len(meta.iter_links())
            if out.oldest_atom is None or meta.created < out.oldest_atom:
                out.oldest_atom = meta.created
            if out.newest_atom is None or meta.created > out.newest_atom:
                out.newest_atom = meta.created
            out.disk_usage += self.storage.atom_size(aku.id)
        return out

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(self, flt: AKUFilter | None = None) -> Iterator[ContentHash]:
        """Lazily yield hashes matching ``flt``. Each call starts a fresh scan."""
        flt = flt or AKUFilter()
        if flt.limit is not None and flt.limit <= 0:
            return
        skipped = 0
        emitted = 0
        for content_hash in self.storage.iter_atom_hashes():
            if flt.needs_content:
                try:
                    aku = self.get(content_hash)
                except AKUParseError as exc:
                    logger.warning("list: skipping unparseable atom %s: %s", content_hash[:12], exc)
                    continue
                if aku is None or not flt.matches(aku):
                    continue
            if skipped < flt.offset:
                skipped += 1
                continue
            yield ContentHash(content_hash)
            emitted += 1
            if flt.limit is not None and emitted >= flt.limit:
                return


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------


def init_substrate(root: Path | str, config: SubstrateConfig | None = None) -> Substrate:
    """Create the directory layout, version marker and config at ``root``.

    Without an explicit ``config`` an existing config file is kept.
    """
    root_path = Path(root).expanduser()
    if config is None and (root_path / CONFIG_RELPATH).exists():
        config = load_config(root_path)
    cfg = (config or SubstrateConfig()).validate()
    for rel in _INIT_DIRS:
        (root_path / rel).mkdir(parents=True, exist_ok=True)
    (root_path / VERSION_RELPATH).write_text(str(FORMAT_VERSION), encoding="utf-8")
    write_config(root_path, cfg)
    gitignore = root_path / "indexes" / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(_INDEX_GITIGNORE, encoding="utf-8")
    logger.info("initialized substrate at %s", root_path)
    return Substrate(FileAtomStorage(root_path, cfg.shard_depth), cfg, root=root_path)


def open_substrate(root: Path | str) -> Substrate:
    """Open an existing substrate, initializing it if ``.aku/version`` is absent."""
    root_path = Path(root).expanduser()
    version = read_format_version(root_path)
    if version is None:
        return init_substrate(root_path)
    if version > FORMAT_VERSION:
        msg = f"Substrate at {root_path} uses format v{version}; this build supports v{FORMAT_VERSION}"
        raise ConfigError(msg)
    cfg = load_config(root_path)
    if not (root_path / CONFIG_RELPATH).exists():
        logger.debug("no config at %s, using defaults", root_path)
    return Substrate(FileAtomStorage(root_path, cfg.shard_depth), cfg, root=root_path)
