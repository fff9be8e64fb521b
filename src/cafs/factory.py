"""Build a CAS engine and its backends from configuration."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from cafs.config import CASConfig, ensure_directories, load_config
from cafs.engine import CASEngine
from cafs.logging_config import StructuredLogger
from cafs.storage import BlobMetadataStore, FileBlobStore, MetadataStore, SQLiteMetadataStore

logger = StructuredLogger(__name__)


def build_engine(config: CASConfig) -> tuple[CASEngine, SQLiteMetadataStore | None]:
    """Wire an engine over local storage.

    Payloads go to config.blob_dir. Entries go next to them as JSON
    documents, or to config.database_path when metadata_backend is
    "sqlite"; in that case the returned database must be connected
    before use and closed afterwards.
    """
    ensure_directories(config)

    blobs = FileBlobStore(config.blob_dir)
    database: SQLiteMetadataStore | None = None
    metadata: MetadataStore
    if config.metadata_backend == "sqlite":
        database = SQLiteMetadataStore(config.database_path, config.metadata_collection)
        metadata = database
    else:
        metadata = BlobMetadataStore(blobs)

    logger.debug(
        "Built CAS engine",
        operation="build_engine",
        blob_dir=str(config.blob_dir),
        metadata_backend=config.metadata_backend,
    )
    return CASEngine(blobs, metadata, config), database


@asynccontextmanager
async def create_cas(config: CASConfig | None = None) -> AsyncIterator[CASEngine]:
    """Create an engine and manage backend lifecycle."""
    engine, database = build_engine(config or load_config())
    if database is not None:
        await database.connect()
    try:
        yield engine
    finally:
        if database is not None:
            await database.close()
