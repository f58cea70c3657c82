# tests/test_hashing.py
"""Tests for canonical hashing and the ContentHash type."""

import copy
import re

import pytest

from aku.errors import InvalidHashError
from aku.hashing import (
    ContentHash,
    canonical_json,
    canonicalize,
    compute_hash,
    hash_string,
    is_valid_hash,
    normalize_body,
    shard_prefix,
    verify_hash,
)
from aku.models import AKUMeta

HEX64 = re.compile(r"^[a-f0-9]{64}$")


@pytest.fixture
def meta():
    return {
        "created": "2026-01-01T00:00:00+00:00",
        "source": {"type": "user", "timestamp": "2026-01-01T00:00:00+00:00"},
        "domain": "t/a",
        "type": "fact",
        "confidence": 0.8,
        "volatility": "evolving",
        "links": {},
        "tags": ["alpha", "beta"],
    }


class TestDeterminism:
    def test_repeated_hash_is_identical(self, meta):
        assert compute_hash(meta, "Hello") == compute_hash(meta, "Hello")

    def test_tag_order_does_not_matter(self, meta):
        reordered = copy.deepcopy(meta)
        reordered["tags"] = ["beta", "alpha"]
        assert compute_hash(meta, "Hello") == compute_hash(reordered, "Hello")

    def test_key_order_does_not_matter(self, meta):
        reversed_meta = dict(reversed(list(meta.items())))
        assert compute_hash(meta, "Hello") == compute_hash(reversed_meta, "Hello")

    def test_created_is_excluded(self, meta):
        later = copy.deepcopy(meta)
        later["created"] = "2030-06-01T12:00:00+00:00"
        assert compute_hash(meta, "Hello") == compute_hash(later, "Hello")

    def test_source_timestamp_is_excluded(self, meta):
        later = copy.deepcopy(meta)
        later["source"]["timestamp"] = "2030-06-01T12:00:00+00:00"
        assert compute_hash(meta, "Hello") == compute_hash(later, "Hello")

    def test_body_whitespace_normalized(self, meta):
        assert compute_hash(meta, "Hello  \r\nWorld\n\n") == compute_hash(meta, "Hello\nWorld")

    def test_body_change_changes_hash(self, meta):
        assert compute_hash(meta, "Hello") != compute_hash(meta, "Hello!")

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("domain", "t/b"),
            ("type", "concept"),
            ("confidence", 0.9),
            ("volatility", "stable"),
            ("links", {"relates_to": ["a" * 64]}),
            ("tags", ["alpha", "gamma"]),
            ("extra", {"lang": "en"}),
        ],
    )
    def test_semantic_field_change_changes_hash(self, meta, field, value):
        changed = copy.deepcopy(meta)
        changed[field] = value
        assert compute_hash(meta, "Hello") != compute_hash(changed, "Hello")

    def test_source_uri_is_included(self, meta):
        changed = copy.deepcopy(meta)
        changed["source"]["uri"] = "https://example.com"
        assert compute_hash(meta, "Hello") != compute_hash(changed, "Hello")

    def test_dataclass_and_dict_agree(self, meta):
        assert compute_hash(AKUMeta.from_dict(meta), "Hello") == compute_hash(meta, "Hello")


class TestCanonicalForm:
    def test_layout(self, meta):
        text = canonicalize(meta, "Body\n")
        head, body = text.split("\n---AKU-BODY---\n")
        assert head.startswith("---AKU-META---\n{")
        assert body == "Body"
        assert '"created"' not in head
        assert '"timestamp"' not in head

    def test_keys_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_primitive_arrays_sorted(self):
        assert canonical_json({"x": ["b", "a", "c"]}) == '{"x":["a","b","c"]}'
        assert canonical_json({"x": [3, 1, 2]}) == '{"x":[1,2,3]}'

    def test_structured_arrays_keep_order(self):
        assert canonical_json({"x": [{"b": 2}, {"b": 1}]}) == '{"x":[{"b":2},{"b":1}]}'

    def test_unicode_kept_verbatim(self):
        assert canonical_json({"x": "ünï"}) == '{"x":"ünï"}'

    def test_normalize_body(self):
        assert normalize_body("  a \r\nb\t\rc  \n\n") == "a\nb\nc"

    def test_verify_hash(self, meta):
        h = compute_hash(meta, "Hello")
        assert verify_hash(h, meta, "Hello")
        assert not verify_hash(h, meta, "Goodbye")


class TestHashFormat:
    def test_output_is_lowercase_hex64(self, meta):
        assert HEX64.match(compute_hash(meta, "anything"))
        assert HEX64.match(hash_string(""))

    def test_hash_string_matches_sha256(self):
        assert hash_string("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "a" * 63,
            "a" * 65,
            "A" * 64,
            "g" * 64,
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015aD",
            None,
            123,
        ],
    )
    def test_is_valid_hash_rejects(self, value):
        assert not is_valid_hash(value)

    def test_is_valid_hash_accepts(self):
        assert is_valid_hash("0" * 64)

    def test_content_hash_rejects_malformed(self):
        with pytest.raises(InvalidHashError, match="Invalid hash format"):
            ContentHash("ABC")

    def test_content_hash_is_a_str(self):
        h = ContentHash("f" * 64)
        assert h == "f" * 64
        assert isinstance(h, str)
        assert h.short == "f" * 12
        assert ContentHash(h) is h

    def test_shard_prefix(self):
        assert shard_prefix("abcdef" + "0" * 58) == "ab"
        assert shard_prefix("abcdef" + "0" * 58, depth=3) == "abc"
