"""Tests for storage layer."""

from __future__ import annotations

import asyncio

import pytest

from cafs.models import CASEntry, ResourceMetadata
from cafs.storage import (
    BlobMetadataStore,
    FileBlobStore,
    MemoryBlobStore,
    SQLiteMetadataStore,
)


def make_entry(digest: str = "a" * 64, count: int = 1) -> CASEntry:
    return CASEntry(
        content_hash=digest,
        storage_path=f"cafs/{digest}",
        metadata=ResourceMetadata(
            content_size=5,
            content_type="text/plain",
            reference_count=count,
            tags=["b", "a", "b"],
        ),
        referenced_by=["res-1"],
    )


@pytest.fixture(params=["memory", "file"])
def blobs(request, file_blobs: FileBlobStore, memory_blobs: MemoryBlobStore):
    return file_blobs if request.param == "file" else memory_blobs


class TestBlobStore:
    """Tests for blob store implementations."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, blobs):
        await blobs.put("cafs/x", b"Hello", "text/plain", {"k": "v"})

        assert await blobs.get("cafs/x") == b"Hello"
        attrs = await blobs.get_attributes("cafs/x")
        assert attrs == {"contentType": "text/plain", "metadata": {"k": "v"}}

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, blobs):
        assert await blobs.get("cafs/missing") is None

    @pytest.mark.asyncio
    async def test_exists_and_delete(self, blobs):
        await blobs.put("cafs/x", b"data", "text/plain")

        assert await blobs.exists("cafs/x")
        assert await blobs.delete("cafs/x") is True
        assert not await blobs.exists("cafs/x")
        assert await blobs.delete("cafs/x") is False

    @pytest.mark.asyncio
    async def test_overwrite(self, blobs):
        await blobs.put("cafs/x", b"one", "text/plain")
        await blobs.put("cafs/x", b"two", "text/plain")
        assert await blobs.get("cafs/x") == b"two"

    @pytest.mark.asyncio
    async def test_list_by_prefix(self, blobs):
        await blobs.put("cafs/a", b"1", "text/plain")
        await blobs.put("cafs/metadata/a.json", b"{}", "application/json")
        await blobs.put("other/b", b"2", "text/plain")

        assert await blobs.list("cafs/") == ["cafs/a", "cafs/metadata/a.json"]
        assert await blobs.list("") == ["cafs/a", "cafs/metadata/a.json", "other/b"]

    @pytest.mark.asyncio
    async def test_rejects_escaping_keys(self, blobs):
        with pytest.raises(ValueError):
            await blobs.put("../outside", b"x", "text/plain")


class TestFileBlobStore:
    """Filesystem-specific behavior."""

    @pytest.mark.asyncio
    async def test_attributes_not_listed(self, file_blobs: FileBlobStore):
        await file_blobs.put("cafs/a", b"1", "text/plain")

        assert await file_blobs.list() == ["cafs/a"]
        assert (file_blobs.root / ".attrs" / "cafs" / "a.json").exists()

    @pytest.mark.asyncio
    async def test_delete_removes_attributes(self, file_blobs: FileBlobStore):
        await file_blobs.put("cafs/a", b"1", "text/plain")
        await file_blobs.delete("cafs/a")

        assert await file_blobs.get_attributes("cafs/a") is None

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, file_blobs: FileBlobStore):
        await file_blobs.put("cafs/a", b"1", "text/plain")

        leftovers = [p for p in file_blobs.root.rglob("*.tmp")]
        assert leftovers == []


    @pytest.mark.asyncio
    async def test_concurrent_writers_on_one_root(self, config):
        """Several stores sharing a directory all succeed on the same key."""
        stores = [FileBlobStore(config.blob_dir) for _ in range(4)]

        for _ in range(10):
            await asyncio.gather(
                *(s.put("cafs/shared", b"same bytes", "text/plain") for s in stores),
                *(s.put("cafs/metadata/shared.json", b"{}", "application/json") for s in stores),
            )

        assert await stores[0].get("cafs/shared") == b"same bytes"
        assert await stores[0].list("cafs/") == ["cafs/metadata/shared.json", "cafs/shared"]
        assert list(config.blob_dir.rglob("*.tmp")) == []


class TestBlobMetadataStore:
    """Entries persisted as JSON documents."""

    @pytest.mark.asyncio
    async def test_entry_crud(self, memory_blobs: MemoryBlobStore):
        store = BlobMetadataStore(memory_blobs)
        key = f"cafs/metadata/{'a' * 64}.json"

        assert await store.insert(key, make_entry()) is True
        loaded = await store.get(key)
        assert loaded is not None
        assert loaded.content_hash == "a" * 64
        assert loaded.metadata.tags == ["a", "b"]

        assert await store.delete(key) is True
        assert await store.get(key) is None

    @pytest.mark.asyncio
    async def test_insert_keeps_existing(self, memory_blobs: MemoryBlobStore):
        store = BlobMetadataStore(memory_blobs)
        key = "cafs/metadata/x.json"
        await store.insert(key, make_entry(count=3))

        assert await store.insert(key, make_entry(count=1)) is False
        assert (await store.get(key)).metadata.reference_count == 3

    @pytest.mark.asyncio
    async def test_update_leaves_count(self, memory_blobs: MemoryBlobStore):
        store = BlobMetadataStore(memory_blobs)
        key = "cafs/metadata/x.json"
        await store.insert(key, make_entry(count=2))

        def _mutate(entry: CASEntry) -> None:
            entry.add_reference("res-2")
            entry.metadata.reference_count = 99

        updated = await store.update(key, _mutate)

        assert updated.referenced_by == ["res-1", "res-2"]
        assert updated.metadata.reference_count == 2
        assert (await store.get(key)).metadata.reference_count == 2
        assert await store.update("cafs/metadata/missing.json", _mutate) is None

    @pytest.mark.asyncio
    async def test_document_layout(self, memory_blobs: MemoryBlobStore):
        """Persisted field names follow the shared document format."""
        import json

        store = BlobMetadataStore(memory_blobs)
        key = f"cafs/metadata/{'a' * 64}.json"
        await store.put(key, make_entry())

        document = json.loads(await memory_blobs.get(key))
        assert set(document) == {"contentHash", "gcsPath", "metadata", "referencedBy"}
        assert set(document["metadata"]) == {
            "contentSize",
            "contentType",
            "timestamp",
            "lastAccessedAt",
            "referenceCount",
            "tags",
            "customProperties",
        }
        assert document["gcsPath"] == f"cafs/{'a' * 64}"

    @pytest.mark.asyncio
    async def test_increment_floors_at_zero(self, memory_blobs: MemoryBlobStore):
        store = BlobMetadataStore(memory_blobs)
        key = "cafs/metadata/x.json"
        await store.insert(key, make_entry(count=1))

        assert await store.increment(key, 1) == 2
        assert await store.increment(key, -5) == 0
        assert await store.increment("cafs/metadata/missing.json", 1) is None


class TestSQLiteMetadataStore:
    """Tests for SQLite metadata store."""

    @pytest.mark.asyncio
    async def test_entry_crud(self, sqlite_store: SQLiteMetadataStore):
        key = "cafs/metadata/a.json"
        assert await sqlite_store.insert(key, make_entry()) is True

        loaded = await sqlite_store.get(key)
        assert loaded is not None
        assert loaded.referenced_by == ["res-1"]
        assert await sqlite_store.count() == 1

        assert await sqlite_store.insert(key, make_entry(count=7)) is False
        assert (await sqlite_store.get(key)).metadata.reference_count == 1
        assert await sqlite_store.count() == 1

        assert await sqlite_store.delete(key) is True
        assert await sqlite_store.delete(key) is False
        assert await sqlite_store.get(key) is None

    @pytest.mark.asyncio
    async def test_increment(self, sqlite_store: SQLiteMetadataStore):
        key = "cafs/metadata/a.json"
        await sqlite_store.insert(key, make_entry(count=1))

        assert await sqlite_store.increment(key, 1) == 2
        assert await sqlite_store.increment(key, 1) == 3
        assert (await sqlite_store.get(key)).metadata.reference_count == 3

        assert await sqlite_store.increment(key, -10) == 0
        assert await sqlite_store.increment("cafs/metadata/none.json", 1) is None

    @pytest.mark.asyncio
    async def test_update_never_moves_count(self, sqlite_store: SQLiteMetadataStore):
        """A document update after a stale read keeps increments made since."""
        key = "cafs/metadata/a.json"
        await sqlite_store.insert(key, make_entry(count=1))
        stale = await sqlite_store.get(key)

        await sqlite_store.increment(key, 1)

        def _mutate(entry: CASEntry) -> None:
            entry.add_reference("res-2")
            entry.metadata.reference_count = stale.metadata.reference_count

        updated = await sqlite_store.update(key, _mutate)

        assert updated.metadata.reference_count == 2
        loaded = await sqlite_store.get(key)
        assert loaded.metadata.reference_count == 2
        assert loaded.referenced_by == ["res-1", "res-2"]
        assert await sqlite_store.update("cafs/metadata/none.json", _mutate) is None

    @pytest.mark.asyncio
    async def test_concurrent_updates_keep_every_change(self, config):
        """Interleaved updates over two connections lose nothing."""
        first = SQLiteMetadataStore(config.database_path)
        second = SQLiteMetadataStore(config.database_path)
        await first.connect()
        await second.connect()
        try:
            key = "cafs/metadata/a.json"
            await first.insert(key, make_entry(count=1))

            async def _link(store: SQLiteMetadataStore, resource_id: str) -> None:
                await store.increment(key, 1)
                await store.update(key, lambda entry: entry.add_reference(resource_id))

            await asyncio.gather(
                *(_link(first if i % 2 else second, f"res-{i + 2}") for i in range(10))
            )

            loaded = await first.get(key)
            assert loaded.metadata.reference_count == 11
            assert sorted(loaded.referenced_by) == sorted(
                ["res-1"] + [f"res-{i + 2}" for i in range(10)]
            )
        finally:
            await first.close()
            await second.close()

    @pytest.mark.asyncio
    async def test_failed_update_rolls_back(self, sqlite_store: SQLiteMetadataStore):
        key = "cafs/metadata/a.json"
        await sqlite_store.insert(key, make_entry())

        def _explode(entry: CASEntry) -> None:
            entry.add_reference("res-2")
            raise RuntimeError("mutation failed")

        with pytest.raises(RuntimeError):
            await sqlite_store.update(key, _explode)

        assert (await sqlite_store.get(key)).referenced_by == ["res-1"]
        assert await sqlite_store.increment(key, 1) == 2

    @pytest.mark.asyncio
    async def test_collections_are_isolated(self, config):
        first = SQLiteMetadataStore(config.database_path, "one")
        second = SQLiteMetadataStore(config.database_path, "two")
        await first.connect()
        await second.connect()
        try:
            await first.insert("k", make_entry())
            assert await second.get("k") is None
            assert await first.get("k") is not None
        finally:
            await first.close()
            await second.close()

    @pytest.mark.asyncio
    async def test_reconnect_keeps_entries(self, config):
        store = SQLiteMetadataStore(config.database_path)
        await store.connect()
        await store.insert("k", make_entry(count=4))
        await store.close()

        reopened = SQLiteMetadataStore(config.database_path)
        await reopened.connect()
        try:
            assert (await reopened.get("k")).metadata.reference_count == 4
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_not_connected(self, config):
        store = SQLiteMetadataStore(config.database_path)
        with pytest.raises(RuntimeError, match="not connected"):
            await store.get("k")
