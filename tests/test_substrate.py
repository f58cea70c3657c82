# tests/test_substrate.py
"""Tests for Substrate: ingest, get, list, link, verify, stats, heads and WAL."""

import json
import re
from collections.abc import Iterator

import pytest
from conftest import fake_hash

from aku.config import DefaultsConfig, SubstrateConfig, write_config
from aku.errors import (
    AtomNotFoundError,
    ConfigError,
    InvalidDomainError,
    InvalidHashError,
    ValidationError,
)
from aku.models import AKUFilter, IngestInput, KnowledgeSource
from aku.substrate import Substrate, init_substrate, open_substrate, validate_domain

HEX64 = re.compile(r"^[a-f0-9]{64}$")


class TestIngest:
    def test_end_to_end(self, fs_substrate):
        h = fs_substrate.ingest(IngestInput(body="Hello", domain="t/a", type="fact"))
        assert HEX64.match(h)
        aku = fs_substrate.get(h)
        assert aku.meta.confidence == 0.8
        assert aku.meta.volatility == "evolving"
        assert aku.meta.source.type == "user"
        assert aku.meta.source.timestamp
        stats = fs_substrate.stats()
        assert stats.total_atoms == 1
        assert stats.by_domain["t"] == 1

    def test_idempotent(self, substrate):
        item = IngestInput(body="Same", domain="t/a", tags=["x", "y"], confidence=0.5, volatility="stable")
        h1 = substrate.ingest(item)
        h2 = substrate.ingest(item)
        assert h1 == h2
        assert list(substrate.list()) == [h1]

    def test_dedup_ignores_tag_order_and_time(self, substrate):
        h1 = substrate.ingest(IngestInput(body="Same", domain="t/a", tags=["x", "y"], created="2020-01-01T00:00:00+00:00"))
        h2 = substrate.ingest(IngestInput(body="Same", domain="t/a", tags=["y", "x"], created="2025-01-01T00:00:00+00:00"))
        assert h1 == h2
        assert substrate.get(h1).meta.created == "2020-01-01T00:00:00+00:00"

    def test_dedup_has_no_side_effects(self, substrate):
        item = IngestInput(body="Once", domain="t/a")
        h = substrate.ingest(item)
        substrate.ingest(item)
        assert substrate.domain_heads("t") == [h]
        wal = list(substrate.storage.iter_lines("WAL/pending.jsonl"))
        assert [json.loads(line)["status"] for line in wal] == ["pending", "committed"]

    def test_different_content_different_hash(self, substrate):
        h1 = substrate.ingest(IngestInput(body="A", domain="t/a"))
        h2 = substrate.ingest(IngestInput(body="A", domain="t/b"))
        h3 = substrate.ingest(IngestInput(body="A", domain="t/a", type="concept"))
        assert len({h1, h2, h3}) == 3

    def test_body_stored_normalized(self, substrate):
        h = substrate.ingest(IngestInput(body="  Hello  \r\nWorld\n\n", domain="t/a"))
        assert substrate.get(h).body == "Hello\nWorld"
        assert substrate.ingest(IngestInput(body="Hello\nWorld", domain="t/a")) == h

    def test_defaults_from_config(self):
        sub = Substrate.in_memory(SubstrateConfig(defaults=DefaultsConfig(confidence=0.3, volatility="ephemeral")))
        aku = sub.get(sub.ingest(IngestInput(body="x", domain="t")))
        assert aku.meta.confidence == 0.3
        assert aku.meta.volatility == "ephemeral"

    def test_explicit_values_kept(self, substrate):
        src = KnowledgeSource(type="search", uri="https://example.com")
        h = substrate.ingest(IngestInput(
            body="x", domain="t", type="procedure", source=src, confidence=1, volatility="stable",
            tags=["a", "a", "b"], extra={"k": (1, 2)},
        ))
        meta = substrate.get(h).meta
        assert meta.type == "procedure"
        assert meta.source.type == "search"
        assert meta.source.uri == "https://example.com"
        assert meta.confidence == 1.0
        assert meta.tags == ["a", "b"]
        assert meta.extra == {"k": [1, 2]}
        assert src.timestamp == ""

    def test_embedded_links_stored(self, substrate):
        target = substrate.ingest(IngestInput(body="target", domain="t"))
        h = substrate.ingest(IngestInput(body="source", domain="t", links={"derived_from": [target]}))
        assert substrate.get(h).meta.links == {"derived_from": [target]}

    def test_empty_link_lists_dropped(self, substrate):
        h1 = substrate.ingest(IngestInput(body="x", domain="t", links={"relates_to": []}))
        h2 = substrate.ingest(IngestInput(body="x", domain="t"))
        assert h1 == h2

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"type": "opinion"},
            {"confidence": 1.5},
            {"confidence": -0.1},
            {"confidence": True},
            {"volatility": "frozen"},
            {"source": {"type": "rumor"}},
            {"source": "user"},
            {"links": {"likes": ["a" * 64]}},
            {"links": {"relates_to": 5}},
            {"links": ["a" * 64]},
            {"tags": [""]},
            {"extra": {"obj": object()}},
            {"created": "yesterday"},
        ],
    )
    def test_invalid_input_rejected_without_writes(self, substrate, kwargs):
        with pytest.raises(ValidationError):
            substrate.ingest(IngestInput(body="x", domain="t", **kwargs))
        assert substrate.storage.atoms == {}
        assert substrate.storage.files == {}

    def test_malformed_link_target(self, substrate):
        with pytest.raises(InvalidHashError):
            substrate.ingest(IngestInput(body="x", domain="t", links={"relates_to": ["not-a-hash"]}))


class TestDomainSafety:
    @pytest.mark.parametrize(
        "domain",
        [
            "../../../etc/passwd",
            "test/../../../etc",
            "a/..",
            "a//b",
            "/abs",
            "a/%2e%2e/b",
            "a/%2E%2E",
            "a%2Fb",
            "a\\b",
            "a/",
            "",
            "-lead",
            "_lead",
            "a/b c",
            "a/b.c",
        ],
    )
    def test_rejected(self, fs_substrate, tmp_path, domain):
        before = sorted(p.name for p in tmp_path.iterdir())
        with pytest.raises(InvalidDomainError):
            fs_substrate.ingest(IngestInput(body="evil", domain=domain))
        assert list(fs_substrate.storage.iter_atom_hashes()) == []
        assert not (fs_substrate.root / "WAL" / "pending.jsonl").exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == before

    @pytest.mark.parametrize("domain", ["t", "data-systems/storage_v2", "A1/b-2/C_3"])
    def test_accepted(self, domain):
        validate_domain(domain)


class TestGet:
    def test_malformed_hash_raises(self, substrate):
        with pytest.raises(InvalidHashError):
            substrate.get("abc")

    def test_uppercase_hash_raises(self, substrate):
        with pytest.raises(InvalidHashError):
            substrate.get("A" * 64)

    def test_absent_returns_none(self, substrate):
        assert substrate.get(fake_hash("absent")) is None
        assert not substrate.exists(fake_hash("absent"))

    def test_round_trip_from_disk(self, fs_substrate):
        h = fs_substrate.ingest(IngestInput(body="# Title\n\nText", domain="t/a", tags=["b", "a"], extra={"n": 1}))
        reopened = open_substrate(fs_substrate.root)
        aku = reopened.get(h)
        assert aku.id == h
        assert aku.body == "# Title\n\nText"
        assert aku.meta.tags == ["b", "a"]
        assert aku.meta.extra == {"n": 1}


class TestList:
    @pytest.fixture
    def populated(self, substrate):
        hashes = {
            "a": substrate.ingest(IngestInput(body="a", domain="sci/physics", type="fact", tags=["x", "y"],
                                              confidence=0.9, created="2026-01-01T00:00:00+00:00")),
            "b": substrate.ingest(IngestInput(body="b", domain="sci/chem", type="concept", tags=["x"],
                                              confidence=0.5, created="2026-02-01T00:00:00+00:00")),
            "c": substrate.ingest(IngestInput(body="c", domain="art", type="fact", tags=["y"],
                                              confidence=0.7, created="2026-03-01T00:00:00+00:00")),
            "d": substrate.ingest(IngestInput(body="d", domain="science", type="fact",
                                              confidence=0.2, created="2026-04-01T00:00:00+00:00")),
        }
        return substrate, hashes

    def _names(self, hashes, result):
        inverse = {v: k for k, v in hashes.items()}
        return sorted(inverse[h] for h in result)

    def test_is_lazy_iterator(self, substrate):
        assert isinstance(substrate.list(), Iterator)

    def test_all(self, populated):
        sub, hashes = populated
        assert self._names(hashes, sub.list()) == ["a", "b", "c", "d"]

    def test_exact_domain(self, populated):
        sub, hashes = populated
        assert self._names(hashes, sub.list(AKUFilter(domain="sci/chem"))) == ["b"]

    def test_domain_prefix(self, populated):
        sub, hashes = populated
        assert self._names(hashes, sub.list(AKUFilter(domain_prefix="sci/"))) == ["a", "b"]
        assert self._names(hashes, sub.list(AKUFilter(domain_prefix="sci"))) == ["a", "b", "d"]

    def test_type(self, populated):
        sub, hashes = populated
        assert self._names(hashes, sub.list(AKUFilter(type="fact"))) == ["a", "c", "d"]

    def test_tags_all_required(self, populated):
        sub, hashes = populated
        assert self._names(hashes, sub.list(AKUFilter(tags=["x"]))) == ["a", "b"]
        assert self._names(hashes, sub.list(AKUFilter(tags=["x", "y"]))) == ["a"]

    def test_min_confidence(self, populated):
        sub, hashes = populated
        assert self._names(hashes, sub.list(AKUFilter(min_confidence=0.7))) == ["a", "c"]

    def test_time_range_inclusive(self, populated):
        sub, hashes = populated
        flt = AKUFilter(since="2026-02-01T00:00:00+00:00", until="2026-03-01T00:00:00+00:00")
        assert self._names(hashes, sub.list(flt)) == ["b", "c"]

    def test_limit_and_offset(self, populated):
        sub, _ = populated
        everything = list(sub.list())
        assert list(sub.list(AKUFilter(limit=2))) == everything[:2]
        assert list(sub.list(AKUFilter(offset=1, limit=2))) == everything[1:3]
        assert list(sub.list(AKUFilter(offset=10))) == []
        assert list(sub.list(AKUFilter(limit=0))) == []

    def test_offset_counts_matches_only(self, populated):
        sub, hashes = populated
        facts = list(sub.list(AKUFilter(type="fact")))
        assert list(sub.list(AKUFilter(type="fact", offset=1))) == facts[1:]

    def test_each_call_starts_fresh(self, populated):
        sub, _ = populated
        first = sub.list()
        next(first)
        assert len(list(sub.list())) == 4


class TestLinks:
    def test_link_requires_source(self, substrate):
        with pytest.raises(AtomNotFoundError):
            substrate.link(fake_hash("src"), fake_hash("dst"))

    def test_link_allows_missing_target(self, substrate):
        h = substrate.ingest(IngestInput(body="a", domain="t"))
        entry = substrate.link(h, fake_hash("future"), "requires")
        assert entry.relation == "requires"
        assert [e.target for e in substrate.external_links()] == [fake_hash("future")]

    def test_link_validates(self, substrate):
        h = substrate.ingest(IngestInput(body="a", domain="t"))
        with pytest.raises(InvalidHashError):
            substrate.link(h, "nope")
        with pytest.raises(ValidationError):
            substrate.link(h, fake_hash("x"), "likes")

    def test_neighbors_merge_embedded_and_external(self, substrate):
        c = substrate.ingest(IngestInput(body="c", domain="t"))
        b = substrate.ingest(IngestInput(body="b", domain="t", links={"relates_to": [c]}))
        a = substrate.ingest(IngestInput(body="a", domain="t"))
        substrate.link(a, b)
        substrate.link(b, c, "causes")  # duplicates the embedded edge

        assert substrate.neighbors(b, "out") == {c}
        assert substrate.neighbors(b, "in") == {a}
        assert substrate.neighbors(b, "both") == {a, c}
        assert substrate.neighbors(c, "in") == {b}
        # embedded links are out-direction only
        assert substrate.neighbors(c, "out") == set()

    def test_neighbors_invalid_direction(self, substrate):
        with pytest.raises(ValidationError):
            substrate.neighbors(fake_hash("x"), "sideways")

    def test_malformed_link_lines_skipped(self, substrate):
        h = substrate.ingest(IngestInput(body="a", domain="t"))
        substrate.link(h, fake_hash("x"))
        substrate.storage.append_line("external-links.jsonl", "{not json")
        substrate.storage.append_line("external-links.jsonl", '{"from": "bad", "to": "bad"}')
        assert len(list(substrate.external_links())) == 1


class TestVerify:
    def test_healthy_store(self, fs_substrate):
        hashes = [fs_substrate.ingest(IngestInput(body=f"atom {i}", domain="t")) for i in range(3)]
        fs_substrate.ingest(IngestInput(body="linked", domain="t", links={"part_of": hashes[:2]}))
        report = fs_substrate.verify()
        assert report.valid
        assert report.total_checked == 4
        assert report.corrupted == []
        assert report.orphaned_links == []

    def test_tampered_atom_is_corrupted(self, fs_substrate):
        h = fs_substrate.ingest(IngestInput(body="original", domain="t"))
        path = fs_substrate.storage.atom_path(h)
        path.write_text(path.read_text().replace("original", "tampered"))
        report = fs_substrate.verify()
        assert not report.valid
        assert report.corrupted == [h]

    def test_unparseable_atom_is_corrupted(self, substrate):
        h = substrate.ingest(IngestInput(body="x", domain="t"))
        substrate.storage.atoms[h] = "no frontmatter here"
        report = substrate.verify()
        assert report.corrupted == [h]
        assert report.total_checked == 1

    def test_invalid_utf8_is_corrupted(self, fs_substrate):
        good = fs_substrate.ingest(IngestInput(body="good", domain="t"))
        bad = fs_substrate.ingest(IngestInput(body="bytes", domain="t"))
        path = fs_substrate.storage.atom_path(bad)
        path.write_bytes(path.read_bytes() + b"\xff\xfe")
        report = fs_substrate.verify()
        assert report.corrupted == [bad]
        assert report.total_checked == 2
        assert [a.id for a in fs_substrate.iter_atoms()] == [good]
        assert list(fs_substrate.list(AKUFilter(domain="t"))) == [good]
        assert fs_substrate.stats().total_atoms == 1

    @pytest.mark.parametrize("value", ["2020-01-01", "!!binary aGVsbG8=", "!!set {a: null}"])
    def test_non_json_frontmatter_is_corrupted(self, fs_substrate, value):
        h = fs_substrate.ingest(IngestInput(body="typed", domain="t", extra={"d": "x"}))
        path = fs_substrate.storage.atom_path(h)
        path.write_text(path.read_text().replace("d: x", f"d: {value}"))
        report = fs_substrate.verify()
        assert not report.valid
        assert report.corrupted == [h]
        assert list(fs_substrate.iter_atoms()) == []
        assert fs_substrate.stats().total_atoms == 0

    def test_orphaned_links(self, substrate):
        missing = fake_hash("missing")
        h = substrate.ingest(IngestInput(body="x", domain="t", links={"relates_to": [missing], "causes": [missing]}))
        report = substrate.verify()
        assert not report.valid
        assert report.corrupted == []
        assert [(o.source, o.target) for o in report.orphaned_links] == [(h, missing), (h, missing)]
        assert report.missing_atoms == [missing]
        assert report.to_dict()["orphanedLinks"][0] == {"from": h, "to": missing}

    def test_external_links_are_not_orphans(self, substrate):
        h = substrate.ingest(IngestInput(body="x", domain="t"))
        substrate.link(h, fake_hash("elsewhere"))
        assert substrate.verify().valid


class TestStats:
    def test_empty(self, substrate):
        stats = substrate.stats()
        assert stats.total_atoms == 0
        assert stats.oldest_atom is None
        assert stats.to_dict()["totalAtoms"] == 0

    def test_aggregates(self, fs_substrate):
        a = fs_substrate.ingest(IngestInput(body="a", domain="sci/physics", created="2026-01-01T00:00:00+00:00"))
        fs_substrate.ingest(IngestInput(body="b", domain="sci/chem", type="concept",
                                        links={"relates_to": [a]}, created="2026-05-01T00:00:00+00:00"))
        fs_substrate.ingest(IngestInput(body="c", domain="art", created="2026-03-01T00:00:00+00:00"))
        h = fs_substrate.ingest(IngestInput(body="d", domain="art", created="2026-02-01T00:00:00+00:00"))
        fs_substrate.link(h, a)

        stats = fs_substrate.stats()
        assert stats.total_atoms == 4
        assert stats.by_type == {"fact": 3, "concept": 1}
        assert stats.by_domain == {"sci": 2, "art": 2}
        assert stats.total_links == 1
        assert stats.oldest_atom == "2026-01-01T00:00:00+00:00"
        assert stats.newest_atom == "2026-05-01T00:00:00+00:00"
        assert stats.disk_usage > 0


class TestHeadsAndWal:
    def test_heads(self, substrate):
        h1 = substrate.ingest(IngestInput(body="1", domain="sci/a"))
        h2 = substrate.ingest(IngestInput(body="2", domain="sci/b"))
        h3 = substrate.ingest(IngestInput(body="3", domain="art"))
        assert substrate.get_head() == h3
        assert substrate.domain_heads("sci") == [h1, h2]
        assert substrate.domain_heads("art") == [h3]
        assert substrate.domain_heads("none") == []

    def test_head_before_any_ingest(self, substrate):
        assert substrate.get_head("latest") is None

    def test_head_name_validated(self, substrate):
        with pytest.raises(ValidationError):
            substrate.get_head("../config")
        with pytest.raises(InvalidDomainError):
            substrate.domain_heads("sci/a")

    def test_pending_writes(self, substrate):
        substrate.ingest(IngestInput(body="1", domain="t"))
        assert substrate.pending_writes() == []
        interrupted = fake_hash("interrupted")
        substrate.storage.append_line(
            "WAL/pending.jsonl", json.dumps({"hash": interrupted, "timestamp": "x", "status": "pending"})
        )
        assert substrate.pending_writes() == [interrupted]


class TestInitAndOpen:
    def test_init_layout(self, tmp_path):
        root = tmp_path / "kb"
        init_substrate(root)
        for rel in (".aku/schemas", "atoms", "heads/domains", "heads/sessions", "indexes", "WAL"):
            assert (root / rel).is_dir()
        assert (root / ".aku" / "version").read_text() == "1"
        assert (root / ".aku" / "config.yaml").is_file()
        assert (root / "indexes" / ".gitignore").read_text() == "*\n!.gitignore\n"

    def test_open_initializes_missing_root(self, tmp_path):
        sub = open_substrate(tmp_path / "fresh")
        assert (tmp_path / "fresh" / ".aku" / "version").is_file()
        assert sub.indexes_dir == tmp_path / "fresh" / "indexes"

    def test_open_reads_config(self, tmp_path):
        root = tmp_path / "kb"
        init_substrate(root)
        write_config(root, SubstrateConfig(shard_depth=3))
        sub = open_substrate(root)
        h = sub.ingest(IngestInput(body="x", domain="t"))
        assert (root / "atoms" / h[:3] / h).is_file()

    def test_reinit_keeps_config(self, tmp_path):
        root = tmp_path / "kb"
        init_substrate(root, SubstrateConfig(shard_depth=3))
        assert init_substrate(root).config.shard_depth == 3

    def test_open_rejects_newer_format(self, tmp_path):
        root = tmp_path / "kb"
        init_substrate(root)
        (root / ".aku" / "version").write_text("2")
        with pytest.raises(ConfigError, match="format v2"):
            open_substrate(root)

    def test_in_memory_has_no_index_dir(self, substrate):
        assert substrate.indexes_dir is None
