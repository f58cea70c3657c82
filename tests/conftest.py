"""Shared pytest fixtures."""

import pytest

from aku.config import IndexesConfig, SubstrateConfig, VectorIndexConfig
from aku.hashing import hash_string
from aku.indexes import IndexManager
from aku.models import IngestInput
from aku.substrate import Substrate, init_substrate


def fake_hash(label):
    """A well-formed hash that no stored atom has."""
    return hash_string(f"not-an-atom:{label}")


@pytest.fixture
def substrate():
    """In-memory substrate with default config."""
    return Substrate.in_memory()


@pytest.fixture
def fs_substrate(tmp_path):
    """Substrate initialized on disk under tmp_path/kb."""
    return init_substrate(tmp_path / "kb")


@pytest.fixture
def indexes():
    """In-memory graph/temporal/fts indexes (vectors disabled)."""
    with IndexManager() as manager:
        yield manager


@pytest.fixture
def mock_vector_config():
    return SubstrateConfig(
        indexes=IndexesConfig(vectors=VectorIndexConfig(enabled=True, model="mock", dimensions=64)),
    )


@pytest.fixture
def ingest(substrate):
    """Ingest into the in-memory substrate and return the stored AKU."""

    def _ingest(body, domain="t/a", **kwargs):
        content_hash = substrate.ingest(IngestInput(body=body, domain=domain, **kwargs))
        return substrate.get(content_hash)

    return _ingest
