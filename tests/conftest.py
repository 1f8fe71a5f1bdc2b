"""Shared pytest fixtures."""

import pytest

from tests.fixtures.memory_index import InMemoryVectorIndex
from tests.fixtures.mock_provider import MockProvider
from tests.fixtures.seeds import DIM, FakeClock, whitespace_counter
from tiermem.config import Settings
from tiermem.memory.storage import MemoryStorage


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "project_root": tmp_path,
        "database_path": "memory.db",
        "chroma_path": "chroma",
        "embedding_dimension": DIM,
        "min_chunk_tokens": 2,
        "max_chunk_tokens": 20,
        "job_backoff_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    db = MemoryStorage(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def mock_provider():
    return MockProvider(dimension=DIM)


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def manager_factory(tmp_path, mock_provider, vector_index):
    """Build MemoryManagers on the mock provider and in-memory index."""
    from tiermem.memory.manager import MemoryManager

    created = []

    def _make(**overrides):
        clock = overrides.pop("clock", None)
        kwargs = {
            "provider": mock_provider,
            "index": vector_index,
            "token_counter": whitespace_counter,
        }
        if clock is not None:
            kwargs["clock"] = clock
        mgr = MemoryManager(make_settings(tmp_path, **overrides), **kwargs)
        created.append(mgr)
        return mgr

    yield _make
    for mgr in created:
        mgr.storage.close()


@pytest.fixture
def manager(manager_factory):
    return manager_factory()
