"""Shared fixtures for fragment store tests."""

from pathlib import Path

import pytest

from fragment_store.base import VectorStore
from fragment_store.config import JSONBackendConfig, SQLiteBackendConfig
from fragment_store.json_store import JSONVectorStore
from fragment_store.models import FragmentMetadata
from fragment_store.sqlite_store import SQLiteVectorStore

MODEL = "test-embedding"
DIMENSION = 2


def make_json_store(tmp_path: Path, dimension: int = DIMENSION) -> JSONVectorStore:
    config = JSONBackendConfig(index_path=str(tmp_path / "index.json"))
    return JSONVectorStore(config, embedding_model=MODEL, dimension=dimension)


def make_sqlite_store(tmp_path: Path, dimension: int = DIMENSION) -> SQLiteVectorStore:
    config = SQLiteBackendConfig(db_path=str(tmp_path / "store.db"), cache_size=2000)
    return SQLiteVectorStore(config, embedding_model=MODEL, dimension=dimension)


@pytest.fixture
def metadata() -> FragmentMetadata:
    return FragmentMetadata(
        document_id="doc-1",
        section="Intro",
        content_type="markdown",
        tags=["alpha", "beta"],
        folder="notes/research",
    )


@pytest.fixture
async def json_store(tmp_path: Path):
    store = make_json_store(tmp_path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_store(tmp_path: Path):
    store = make_sqlite_store(tmp_path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture(params=["json", "sqlite"])
async def store(request: pytest.FixtureRequest, tmp_path: Path):
    """Each local backend, initialized in an empty directory."""
    factory = make_json_store if request.param == "json" else make_sqlite_store
    instance: VectorStore = factory(tmp_path)
    await instance.initialize()
    yield instance
    await instance.close()


@pytest.fixture
def make_store(tmp_path: Path):
    """Build an uninitialized local store of the given kind under ``tmp_path``."""

    def _make(kind: str, dimension: int = DIMENSION, directory: Path | None = None) -> VectorStore:
        factory = make_json_store if kind == "json" else make_sqlite_store
        return factory(directory or tmp_path, dimension)

    return _make
