"""CAFS: Content-Addressable File Storage.

Stores arbitrary content once, keyed by the SHA256 digest of its bytes,
on top of a blob store and a metadata store.

Key features:
- Deduplication of identical payloads within a folder
- Reference counting with deletion at zero references
- Integrity verification on every read
- Pluggable metadata backends (JSON documents or SQLite)
- MCP tool surface (cafs.server)
"""

__version__ = "0.1.0"

from cafs.config import CASConfig, load_config
from cafs.engine import CASEngine
from cafs.errors import (
    CASError,
    ContentIntegrityError,
    ContentNotFoundError,
    InvalidDigestError,
    SizeLimitExceededError,
    StorageAdapterError,
)
from cafs.factory import build_engine, create_cas
from cafs.hashing import hash_content
from cafs.models import CASEntry, ResourceIdentity, ResourceMetadata, StoreResult

__all__ = [
    "CASConfig",
    "CASEngine",
    "CASEntry",
    "CASError",
    "ContentIntegrityError",
    "ContentNotFoundError",
    "InvalidDigestError",
    "ResourceIdentity",
    "ResourceMetadata",
    "SizeLimitExceededError",
    "StorageAdapterError",
    "StoreResult",
    "build_engine",
    "create_cas",
    "hash_content",
    "load_config",
    "__version__",
]
