"""Atom file format: YAML frontmatter (sorted keys) followed by the body.

    ---
    confidence: 0.8
    created: '2026-10-17T18:40:00+00:00'
    domain: data-systems/storage
    ...
    ---

    <body text>
"""

from __future__ import annotations

import json

import yaml

from aku.errors import AKUParseError
from aku.hashing import ContentHash
from aku.models import AKU, AKUMeta

DELIMITER = "---"


def serialize_aku(aku: AKU) -> str:
    frontmatter = yaml.safe_dump(
        aku.meta.to_dict(),
        sort_keys=True,
        default_flow_style=False,
        allow_unicode=True,
        width=1_000_000,
    )
    return f"{DELIMITER}\n{frontmatter}{DELIMITER}\n\n{aku.body}"


def parse_aku(content: str, content_hash: str) -> AKU:
    """Parse an atom file. ``content_hash`` is the name it was stored under."""
    lines = content.split("\n")
    if not lines or lines[0].rstrip("\r") != DELIMITER:
        msg = f"Invalid AKU {content_hash}: missing frontmatter start"
        raise AKUParseError(msg)

    end = next(
        (i for i in range(1, len(lines)) if lines[i].rstrip("\r") == DELIMITER),
        None,
    )
    if end is None:
        msg = f"Invalid AKU {content_hash}: missing frontmatter end"
        raise AKUParseError(msg)

    try:
        raw = yaml.safe_load("\n".join(lines[1:end]))
    except yaml.YAMLError as exc:
        msg = f"Invalid AKU {content_hash}: frontmatter is not valid YAML ({exc})"
        raise AKUParseError(msg) from exc
    if not isinstance(raw, dict):
        msg = f"Invalid AKU {content_hash}: frontmatter is not a mapping"
        raise AKUParseError(msg)

    try:
        json.dumps(raw)
    except (TypeError, ValueError) as exc:
        msg = f"Invalid AKU {content_hash}: frontmatter holds a non-JSON value ({exc})"
        raise AKUParseError(msg) from exc

    try:
        meta = AKUMeta.from_dict(raw)
    except (AttributeError, TypeError, ValueError) as exc:
        msg = f"Invalid AKU {content_hash}: malformed frontmatter field ({exc})"
        raise AKUParseError(msg) from exc

    body = "\n".join(lines[end + 1:]).strip()
    return AKU(id=ContentHash(content_hash), meta=meta, body=body)
