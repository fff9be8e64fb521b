"""CAS engine: content hashing, deduplication and reference counting.

The engine sits on two capabilities, a BlobStore holding payload bytes
and a MetadataStore holding one CASEntry per digest. There is no
transaction spanning both, so write order is fixed:

- store: payload first, entry last
- delete: payload first, entry last

A crash between the two steps of a store leaves an orphan payload with
no entry; a crash during delete leaves an entry pointing at a missing
payload. Orphan payloads are healed by the next store of the same
content; nothing sweeps them otherwise.

Concurrency Model:
- Per-digest locks serialize check-then-write, decrement-then-delete and
  entry updates within one process
- Entries are created with insert() (loses to an existing entry, which is
  then incremented), counts move only through increment() and other
  fields only through update(); SQLiteMetadataStore makes all three
  atomic across processes sharing its database
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Iterator

from cafs.config import CASConfig
from cafs.errors import (
    CASError,
    ContentIntegrityError,
    ContentNotFoundError,
    InvalidDigestError,
    SizeLimitExceededError,
    StorageAdapterError,
)
from cafs.hashing import (
    digest_from_path,
    encode_content,
    hash_content,
    is_digest,
    metadata_key,
    metadata_prefix,
    normalize_folder,
    storage_path,
)
from cafs.logging_config import StructuredLogger
from cafs.models import (
    CASEntry,
    ResourceIdentity,
    ResourceMetadata,
    StoreResult,
    isoformat_now,
    utc_now,
)
from cafs.storage.blobs import BlobStore
from cafs.storage.metadata import MetadataStore

logger = StructuredLogger(__name__)

EntryFilter = Callable[[CASEntry], bool]


@contextmanager
def _adapter_call(operation: str, path: str, digest: str | None = None) -> Iterator[None]:
    """Re-label backend exceptions as StorageAdapterError."""
    try:
        yield
    except CASError:
        raise
    except Exception as e:
        raise StorageAdapterError(operation, path=path, digest=digest, cause=e) from e


class CASEngine:
    """Content-addressable storage over a blob store and a metadata store."""

    def __init__(
        self,
        blobs: BlobStore,
        metadata: MetadataStore,
        config: CASConfig | None = None,
    ):
        self.blobs = blobs
        self.metadata = metadata
        self.config = config or CASConfig()

        # Per-digest locks, dropped once no caller holds or awaits them
        self._digest_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}

    # --- Lock Management ---

    @asynccontextmanager
    async def digest_lock(self, folder: str, digest: str) -> AsyncIterator[None]:
        """Hold the lock serializing operations on one digest in one folder."""
        key = (folder, digest)
        lock = self._digest_locks.get(key)
        if lock is None:
            lock = self._digest_locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._digest_locks[key]

    # --- Addressing ---

    def resolve_digest(self, folder: str, address: str) -> str:
        """Accept a digest or its storage path within folder.

        Raises:
            InvalidDigestError: For anything else
        """
        if is_digest(address):
            return address
        digest = digest_from_path(address)
        if digest is not None and address == storage_path(folder, digest):
            return digest
        raise InvalidDigestError(address, folder=folder)

    # --- Store ---

    async def store_content(
        self,
        folder: str | None,
        content: str | bytes,
        identity: str | ResourceIdentity | None = None,
        *,
        content_type: str | None = None,
        tags: list[str] | None = None,
        custom_properties: dict[str, Any] | None = None,
    ) -> StoreResult:
        """Store content once, deduplicating by digest.

        Args:
            folder: Namespace; None uses the identity's type_id, then the
                configured default folder
            content: Payload; str is stored UTF-8 encoded
            identity: Resource id (or descriptor) recorded in referencedBy
            content_type: MIME type, defaults to config.default_content_type
            tags: Tags for a newly created entry
            custom_properties: Custom properties for a newly created entry

        Returns:
            StoreResult. Size-limit and backend failures are reported with
            success=False instead of being raised.
        """
        resource_id = identity.id if isinstance(identity, ResourceIdentity) else identity
        if folder is None:
            type_id = identity.type_id if isinstance(identity, ResourceIdentity) else None
            folder = type_id or self.config.default_folder

        try:
            folder = normalize_folder(folder)
            data = encode_content(content)
            if len(data) > self.config.max_file_size:
                raise SizeLimitExceededError(len(data), self.config.max_file_size, folder=folder)

            digest = hash_content(data)
            path = storage_path(folder, digest)

            async with self.digest_lock(folder, digest):
                if self.config.enable_deduplication:
                    with _adapter_call("exists", path, digest):
                        exists = await self.blobs.exists(path)
                    if exists:
                        created = await self._count_reference(
                            folder, digest, len(data), resource_id,
                            content_type, tags, custom_properties,
                        )
                        if created:
                            logger.warning(
                                "Payload had no entry, recreated it",
                                folder=folder,
                                digest=digest,
                                operation="store_content",
                            )
                        logger.info(
                            "Deduplicated content",
                            folder=folder,
                            digest=digest,
                            operation="store_content",
                        )
                        return StoreResult(
                            success=True,
                            content_hash=digest,
                            deduplicated=True,
                            storage_path=path,
                        )

                timestamp = isoformat_now()
                with _adapter_call("put", path, digest):
                    await self.blobs.put(
                        path,
                        data,
                        content_type or self.config.default_content_type,
                        {"contentHash": digest, "timestamp": timestamp},
                    )

                # An entry written meanwhile by another engine, or left
                # behind without its payload, keeps counting references
                await self._count_reference(
                    folder, digest, len(data), resource_id,
                    content_type, tags, custom_properties, timestamp,
                )

            logger.info(
                "Stored new content",
                folder=folder,
                digest=digest,
                operation="store_content",
                content_size=len(data),
            )
            return StoreResult(
                success=True,
                content_hash=digest,
                deduplicated=False,
                storage_path=path,
            )

        except (CASError, ValueError, TypeError) as e:
            logger.error(
                f"Failed to store content: {e}",
                folder=folder,
                operation="store_content",
                error_type=type(e).__name__,
            )
            return StoreResult.failure(e)

    async def _count_reference(
        self,
        folder: str,
        digest: str,
        size: int,
        resource_id: str | None,
        content_type: str | None,
        tags: list[str] | None,
        custom_properties: dict[str, Any] | None,
        timestamp: str | None = None,
    ) -> bool:
        """Count one reference, creating the entry if there is none.

        Returns:
            True if a new entry was created
        """
        if await self._reference_existing(folder, digest, resource_id):
            return False
        if await self._create_entry(
            folder, digest, size, resource_id,
            content_type, tags, custom_properties, timestamp,
        ):
            return True
        # Lost the insert to another writer
        if not await self._reference_existing(folder, digest, resource_id):
            raise ContentNotFoundError(
                digest, folder=folder, context_msg="entry removed while storing"
            )
        return False

    async def _reference_existing(
        self, folder: str, digest: str, resource_id: str | None
    ) -> bool:
        """Count one more reference on an existing entry.

        Returns:
            False if there is no entry for digest
        """
        key = metadata_key(folder, digest)
        with _adapter_call("increment", key, digest):
            count = await self.metadata.increment(key, 1)
        if count is None:
            return False

        if resource_id:
            with _adapter_call("update", key, digest):
                await self.metadata.update(key, lambda entry: entry.add_reference(resource_id))
        return True

    async def _create_entry(
        self,
        folder: str,
        digest: str,
        size: int,
        resource_id: str | None,
        content_type: str | None,
        tags: list[str] | None,
        custom_properties: dict[str, Any] | None,
        timestamp: str | None = None,
    ) -> bool:
        entry = CASEntry(
            content_hash=digest,
            storage_path=storage_path(folder, digest),
            metadata=ResourceMetadata(
                content_size=size,
                content_type=content_type or self.config.default_content_type,
                timestamp=timestamp or isoformat_now(),
                last_accessed_at=utc_now(),
                reference_count=1,
                tags=list(tags or []),
                custom_properties=dict(custom_properties or {}),
            ),
            referenced_by=[resource_id] if resource_id else [],
        )
        key = metadata_key(folder, digest)
        with _adapter_call("insert", key, digest):
            return await self.metadata.insert(key, entry)

    # --- Read ---

    async def retrieve_content(
        self,
        folder: str,
        digest: str,
        update_access_time: bool = True,
    ) -> bytes:
        """Read a payload and verify it still hashes to its digest.

        Raises:
            ContentNotFoundError: No payload at the storage path
            ContentIntegrityError: Stored bytes hash to something else
            StorageAdapterError: Backend failure
        """
        folder = normalize_folder(folder)
        digest = self.resolve_digest(folder, digest)
        path = storage_path(folder, digest)

        with _adapter_call("get", path, digest):
            data = await self.blobs.get(path)
        if data is None:
            raise ContentNotFoundError(digest, folder=folder, path=path)

        actual = hash_content(data)
        if actual != digest:
            logger.error(
                "Stored payload failed integrity check",
                folder=folder,
                digest=digest,
                operation="retrieve_content",
                actual=actual,
            )
            raise ContentIntegrityError(digest, actual, path=path, folder=folder)

        if update_access_time:
            await self._touch(folder, digest)

        return data

    async def retrieve_text(
        self,
        folder: str,
        digest: str,
        update_access_time: bool = True,
        encoding: str = "utf-8",
    ) -> str:
        """retrieve_content() decoded to str."""
        data = await self.retrieve_content(folder, digest, update_access_time)
        return data.decode(encoding)

    async def _touch(self, folder: str, digest: str) -> None:
        """Bump lastAccessedAt; never fails the read that triggered it."""
        key = metadata_key(folder, digest)

        def _accessed(entry: CASEntry) -> None:
            entry.metadata.last_accessed_at = utc_now()

        try:
            async with self.digest_lock(folder, digest):
                await self.metadata.update(key, _accessed)
        except Exception:
            logger.warning(
                "Could not update last access time",
                folder=folder,
                digest=digest,
                operation="retrieve_content",
                exc_info=True,
            )

    async def content_exists(self, folder: str, digest: str) -> bool:
        """Check the payload only. Backend failures read as False."""
        try:
            folder = normalize_folder(folder)
            digest = self.resolve_digest(folder, digest)
        except ValueError:
            return False

        path = storage_path(folder, digest)
        try:
            return await self.blobs.exists(path)
        except Exception:
            logger.warning(
                "Existence check failed, reporting absent",
                folder=folder,
                digest=digest,
                operation="content_exists",
                exc_info=True,
            )
            return False

    # --- Delete ---

    async def delete_content(
        self,
        folder: str,
        digest: str,
        force_delete: bool = False,
    ) -> None:
        """Drop one reference, removing payload and entry at zero.

        Args:
            folder: Namespace the content was stored in
            digest: Content digest
            force_delete: Remove regardless of the reference count

        Raises:
            ContentNotFoundError: No entry for digest
            StorageAdapterError: Backend failure
        """
        folder = normalize_folder(folder)
        digest = self.resolve_digest(folder, digest)
        key = metadata_key(folder, digest)

        async with self.digest_lock(folder, digest):
            with _adapter_call("get", key, digest):
                entry = await self.metadata.get(key)
            if entry is None:
                raise ContentNotFoundError(digest, folder=folder, context_msg="no CAS entry")

            if not force_delete:
                with _adapter_call("increment", key, digest):
                    remaining = await self.metadata.increment(key, -1)
                if remaining is None:
                    raise ContentNotFoundError(digest, folder=folder, context_msg="no CAS entry")
                if remaining > 0:
                    logger.info(
                        "Released reference",
                        folder=folder,
                        digest=digest,
                        operation="delete_content",
                        remaining=remaining,
                    )
                    return

            with _adapter_call("delete", entry.storage_path, digest):
                await self.blobs.delete(entry.storage_path)
            with _adapter_call("delete", key, digest):
                await self.metadata.delete(key)

        logger.info(
            "Deleted content",
            folder=folder,
            digest=digest,
            operation="delete_content",
            forced=force_delete,
        )

    # --- Entries ---

    async def get_entry(self, folder: str, digest: str) -> CASEntry | None:
        """Entry for digest, or None. Never mutates."""
        folder = normalize_folder(folder)
        digest = self.resolve_digest(folder, digest)
        key = metadata_key(folder, digest)
        with _adapter_call("get", key, digest):
            return await self.metadata.get(key)

    async def list_entries(
        self,
        folder: str,
        filter: EntryFilter | None = None,
    ) -> AsyncIterator[CASEntry]:
        """Yield entries for payloads stored directly under folder.

        Each call re-lists the blob store. Payloads whose entry is missing
        or unreadable are skipped, as are entries at zero references.
        """
        folder = normalize_folder(folder)
        prefix = f"{folder}/"
        with _adapter_call("list", prefix):
            paths = await self.blobs.list(prefix)

        skip_prefix = metadata_prefix(folder)
        for path in paths:
            if path.startswith(skip_prefix):
                continue
            digest = digest_from_path(path)
            if digest is None or path != storage_path(folder, digest):
                continue

            try:
                entry = await self.metadata.get(metadata_key(folder, digest))
            except Exception:
                logger.debug(
                    "Skipping payload with unreadable entry",
                    folder=folder,
                    digest=digest,
                    operation="list_entries",
                    exc_info=True,
                )
                continue
            if entry is None:
                logger.debug(
                    "Skipping payload without entry",
                    folder=folder,
                    digest=digest,
                    operation="list_entries",
                )
                continue
            if entry.metadata.reference_count <= 0:
                continue
            if filter is not None and not filter(entry):
                continue
            yield entry

    async def collect_entries(
        self,
        folder: str,
        filter: EntryFilter | None = None,
    ) -> list[CASEntry]:
        """list_entries() gathered into a list."""
        return [entry async for entry in self.list_entries(folder, filter)]

    async def _mutate_entry(
        self,
        folder: str,
        digest: str,
        mutate: Callable[[CASEntry], Any],
    ) -> CASEntry:
        folder = normalize_folder(folder)
        digest = self.resolve_digest(folder, digest)
        key = metadata_key(folder, digest)
        async with self.digest_lock(folder, digest):
            with _adapter_call("update", key, digest):
                entry = await self.metadata.update(key, mutate)
        if entry is None:
            raise ContentNotFoundError(digest, folder=folder, context_msg="no CAS entry")
        return entry

    async def add_reference(self, folder: str, digest: str, resource_id: str) -> CASEntry:
        """Link a resource id to an entry without changing its count."""
        return await self._mutate_entry(
            folder, digest, lambda entry: entry.add_reference(resource_id)
        )

    async def remove_reference(self, folder: str, digest: str, resource_id: str) -> CASEntry:
        """Unlink a resource id from an entry without changing its count."""
        def _remove(entry: CASEntry) -> None:
            if resource_id in entry.referenced_by:
                entry.referenced_by.remove(resource_id)

        return await self._mutate_entry(folder, digest, _remove)

    async def update_entry_metadata(
        self,
        folder: str,
        digest: str,
        *,
        tags: list[str] | None = None,
        custom_properties: dict[str, Any] | None = None,
        content_type: str | None = None,
    ) -> CASEntry:
        """Merge tags and custom properties into an entry.

        timestamp, contentHash and referenceCount are never touched.
        """
        def _update(entry: CASEntry) -> None:
            meta = entry.metadata
            if tags:
                meta.tags = sorted(set(meta.tags) | set(tags))
            if custom_properties:
                meta.custom_properties.update(custom_properties)
            if content_type:
                meta.content_type = content_type

        return await self._mutate_entry(folder, digest, _update)
