"""Test fixtures for CAFS."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from cafs.config import CASConfig
from cafs.engine import CASEngine
from cafs.server import CASServer, create_server
from cafs.storage import (
    BlobMetadataStore,
    FileBlobStore,
    MemoryBlobStore,
    SQLiteMetadataStore,
)


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def config(temp_dir: Path) -> CASConfig:
    """Create test configuration."""
    return CASConfig(
        data_dir=temp_dir,
        bucket_name="test-bucket",
        database_path=temp_dir / "test.db",
    )


@pytest.fixture
def memory_blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def file_blobs(config: CASConfig) -> FileBlobStore:
    """Create test blob store."""
    return FileBlobStore(config.blob_dir)


@pytest_asyncio.fixture
async def sqlite_store(config: CASConfig) -> AsyncGenerator[SQLiteMetadataStore, None]:
    """Create test metadata database."""
    store = SQLiteMetadataStore(config.database_path)
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "file", "sqlite"])
async def engine(request, config: CASConfig) -> AsyncGenerator[CASEngine, None]:
    """Engine over each blob/metadata combination."""
    if request.param == "memory":
        blobs = MemoryBlobStore()
        yield CASEngine(blobs, BlobMetadataStore(blobs), config)
    elif request.param == "file":
        blobs = FileBlobStore(config.blob_dir)
        yield CASEngine(blobs, BlobMetadataStore(blobs), config)
    else:
        store = SQLiteMetadataStore(config.database_path)
        await store.connect()
        yield CASEngine(MemoryBlobStore(), store, config)
        await store.close()


@pytest.fixture
def memory_engine(config: CASConfig) -> CASEngine:
    """Engine over in-memory blobs with JSON entries."""
    blobs = MemoryBlobStore()
    return CASEngine(blobs, BlobMetadataStore(blobs), config)


@pytest_asyncio.fixture
async def server(config: CASConfig) -> AsyncGenerator[CASServer, None]:
    """Create test server."""
    async with create_server(config) as srv:
        yield srv


# --- Sample Content Fixtures ---

@pytest.fixture
def sample_json() -> str:
    """Compact JSON document."""
    return '{"name":"John","age":30}'


@pytest.fixture
def sample_text() -> str:
    return "Hello, this is plain text content!"


@pytest.fixture
def sample_binary() -> bytes:
    """Bytes that are not valid UTF-8."""
    return bytes(range(256)) * 4
