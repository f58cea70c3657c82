"""Content addressing: canonical serialization and SHA-256 identity.

The hash is knowledge identity, not discovery-event identity: ``created`` and
``source.timestamp`` are stripped before hashing, so the same knowledge
ingested twice at different times lands on the same atom.

    ---AKU-META---
    <canonical JSON of meta, keys sorted, primitive arrays sorted>
    ---AKU-BODY---
    <normalized body>
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping
from typing import Any

from aku.errors import InvalidHashError

_HASH_RE = re.compile(r"^[a-f0-9]{64}$")
_META_MARKER = "---AKU-META---"
_BODY_MARKER = "---AKU-BODY---"


class ContentHash(str):
    """A validated content hash. Construction fails on anything malformed."""

    __slots__ = ()

    def __new__(cls, value: str) -> ContentHash:
        if isinstance(value, ContentHash):
            return value
        if not isinstance(value, str) or not _HASH_RE.match(value):
            msg = f"Invalid hash format: {value!r}"
            raise InvalidHashError(msg)
        return super().__new__(cls, value)

    @property
    def short(self) -> str:
        return self[:12]


def is_valid_hash(value: object) -> bool:
    """True for exactly 64 lowercase hex chars. Never normalizes case."""
    return isinstance(value, str) and _HASH_RE.match(value) is not None


def shard_prefix(content_hash: str, depth: int = 2) -> str:
    """Directory bucket for a hash: its first ``depth`` characters."""
    return content_hash[:depth]


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _sort_value(value: Any) -> Any:
    """Recursively sort mapping keys and arrays of primitives."""
    if isinstance(value, Mapping):
        return {str(k): _sort_value(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        items = [_sort_value(v) for v in value]
        if items and all(isinstance(v, str) for v in items):
            return sorted(items)
        if items and all(_is_number(v) for v in items):
            return sorted(items)
        if items and all(isinstance(v, str) or _is_number(v) for v in items):
            # Mixed strings and numbers: numbers first, then strings
            return sorted(items, key=lambda v: (isinstance(v, str), v))
        return items
    return value


def _meta_dict(meta: Any) -> dict[str, Any]:
    if hasattr(meta, "to_dict"):
        return meta.to_dict()  # type: ignore[no-any-return]
    if isinstance(meta, Mapping):
        return dict(meta)
    msg = f"meta must be a mapping or AKUMeta, got {type(meta).__name__}"
    raise TypeError(msg)


def semantic_meta(meta: Any) -> dict[str, Any]:
    """Meta with temporal fields removed (``created``, ``source.timestamp``)."""
    data = {k: v for k, v in _meta_dict(meta).items() if k != "created" and v is not None}
    source = data.get("source")
    if isinstance(source, Mapping):
        data["source"] = {
            k: v for k, v in source.items() if k != "timestamp" and v is not None
        }
    return data


def canonical_json(value: Any) -> str:
    return json.dumps(_sort_value(value), separators=(",", ":"), ensure_ascii=False)


def normalize_body(body: str) -> str:
    """LF line endings, no trailing whitespace per line, trimmed overall."""
    text = body.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in text.split("\n")).strip()


def canonicalize(meta: Any, body: str) -> str:
    """Canonical text form of an atom; the input to ``compute_hash``."""
    return (
        f"{_META_MARKER}\n{canonical_json(semantic_meta(meta))}\n"
        f"{_BODY_MARKER}\n{normalize_body(body)}"
    )


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_string(content: str) -> ContentHash:
    """SHA-256 of arbitrary text, hex-encoded."""
    return ContentHash(hashlib.sha256(content.encode("utf-8")).hexdigest())


def compute_hash(meta: Any, body: str) -> ContentHash:
    return hash_string(canonicalize(meta, body))


def verify_hash(content_hash: str, meta: Any, body: str) -> bool:
    """True iff ``content_hash`` is the identity of (meta, body)."""
    return compute_hash(meta, body) == content_hash
