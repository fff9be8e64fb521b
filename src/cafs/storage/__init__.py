"""Storage layer for CAFS."""

from cafs.storage.blobs import BlobStore, FileBlobStore, MemoryBlobStore
from cafs.storage.database import SQLiteMetadataStore
from cafs.storage.metadata import BlobMetadataStore, MetadataStore

__all__ = [
    "BlobStore",
    "FileBlobStore",
    "MemoryBlobStore",
    "MetadataStore",
    "BlobMetadataStore",
    "SQLiteMetadataStore",
]
