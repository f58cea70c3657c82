"""External link log: edges recorded after the source atom already exists.

external-links.jsonl line format:
    {"from": "<hash>", "to": "<hash>", "relation": "relates_to", "created": "..."}

Atoms stay immutable; links declared at ingest time live in ``meta.links``
and are merged with this log by ``Substrate.neighbors``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from aku.errors import InvalidHashError
from aku.models import ExternalLink

if TYPE_CHECKING:
    from collections.abc import Iterator

    from aku.storage import AtomStorage

logger = logging.getLogger("aku.links")

EXTERNAL_LINKS_FILE = "external-links.jsonl"


class LinkStore:
    """Append-only JSONL edge log on top of an AtomStorage."""

    def __init__(self, storage: AtomStorage, name: str = EXTERNAL_LINKS_FILE) -> None:
        self.storage = storage
        self.name = name

    def append(self, link: ExternalLink) -> None:
        self.storage.append_line(self.name, json.dumps(link.to_dict()))

    def __iter__(self) -> Iterator[ExternalLink]:
        for line in self.storage.iter_lines(self.name):
            try:
                yield ExternalLink.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, InvalidHashError):
                logger.warning("skipping malformed link record: %.120s", line)

    def outgoing(self, content_hash: str) -> set[str]:
        return {str(link.target) for link in self if link.source == content_hash}

    def incoming(self, content_hash: str) -> set[str]:
        return {str(link.source) for link in self if link.target == content_hash}
