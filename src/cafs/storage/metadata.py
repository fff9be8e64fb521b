"""Metadata store capability and the blob-backed implementation.

Entries are addressed by key (see cafs.hashing.metadata_key). The engine
only depends on this protocol, so entries can live next to the payloads
as JSON documents (BlobMetadataStore) or in a database
(cafs.storage.database.SQLiteMetadataStore).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from cafs.models import CASEntry, isoformat_now
from cafs.storage.blobs import BlobStore


class MetadataStore(Protocol):
    """Async key -> CASEntry store consumed by the CAS engine.

    referenceCount is only moved by increment(); insert() sets its
    starting value and update() leaves it as stored.
    """

    async def get(self, key: str) -> CASEntry | None:
        """Entry stored under key, or None."""
        ...

    async def insert(self, key: str, entry: CASEntry) -> bool:
        """Create the entry under key.

        Returns:
            False, without writing, if an entry already exists
        """
        ...

    async def update(self, key: str, mutate: Callable[[CASEntry], Any]) -> CASEntry | None:
        """Apply mutate to the stored entry and persist it.

        Returns:
            The updated entry, or None if no entry exists under key
        """
        ...

    async def delete(self, key: str) -> bool:
        """Remove the entry; False if it did not exist."""
        ...

    async def increment(self, key: str, delta: int) -> int | None:
        """Add delta to referenceCount (floored at 0).

        Returns:
            New reference count, or None if no entry exists under key
        """
        ...


class BlobMetadataStore:
    """Entries persisted as JSON documents inside a blob store.

    insert(), update() and increment() are read-modify-writes; callers
    sharing a key must serialize around them (the engine holds a
    per-digest lock). Several processes writing one bucket can lose
    updates; use SQLiteMetadataStore for that.
    """

    content_type = "application/json"

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    async def get(self, key: str) -> CASEntry | None:
        document = await self.blobs.get(key)
        if document is None:
            return None
        return CASEntry.from_document(document)

    async def put(self, key: str, entry: CASEntry) -> None:
        """Write the document unconditionally."""
        await self.blobs.put(
            key,
            entry.to_document().encode("utf-8"),
            self.content_type,
            {"timestamp": entry.metadata.timestamp, "updatedAt": isoformat_now()},
        )

    async def insert(self, key: str, entry: CASEntry) -> bool:
        if await self.blobs.exists(key):
            return False
        await self.put(key, entry)
        return True

    async def update(self, key: str, mutate: Callable[[CASEntry], Any]) -> CASEntry | None:
        entry = await self.get(key)
        if entry is None:
            return None
        count = entry.metadata.reference_count
        mutate(entry)
        entry.metadata.reference_count = count
        await self.put(key, entry)
        return entry

    async def delete(self, key: str) -> bool:
        return await self.blobs.delete(key)

    async def increment(self, key: str, delta: int) -> int | None:
        entry = await self.get(key)
        if entry is None:
            return None
        entry.metadata.reference_count = max(0, entry.metadata.reference_count + delta)
        await self.put(key, entry)
        return entry.metadata.reference_count
