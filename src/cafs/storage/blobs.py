"""Blob store capability and local implementations.

A blob store holds opaque bytes under flat string keys such as
``cafs/<digest>``. Keys may contain ``/`` for folder-style prefixes but
there are no directory semantics beyond prefix listing.

FileBlobStore layout:
    {root}/{key}                   payload bytes
    {root}/.attrs/{key}.json       content type + custom metadata
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from pathlib import Path, PurePosixPath
from typing import Any, Protocol


ATTRS_DIR = ".attrs"


class BlobStore(Protocol):
    """Async blob I/O consumed by the CAS engine.

    Implementations may raise any transport-level exception; the engine
    wraps those into StorageAdapterError.
    """

    async def exists(self, path: str) -> bool:
        """True if a blob is stored at path."""
        ...

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Write (or overwrite) the blob at path."""
        ...

    async def get(self, path: str) -> bytes | None:
        """Blob bytes, or None if absent."""
        ...

    async def delete(self, path: str) -> bool:
        """Remove the blob; False if it did not exist."""
        ...

    async def list(self, prefix: str = "") -> list[str]:
        """Keys starting with prefix, sorted."""
        ...


def _check_key(path: str) -> str:
    """Reject keys that could escape the store root."""
    parts = PurePosixPath(path).parts
    if not path or path.startswith("/") or any(p in ("..", ".") for p in parts):
        raise ValueError(f"Invalid blob key: {path!r}")
    if parts[0] == ATTRS_DIR:
        raise ValueError(f"Blob key uses reserved prefix: {path!r}")
    return path


class FileBlobStore:
    """Local directory acting as a bucket.

    Writes go through a temp file + os.replace() so a reader never sees a
    half-written payload.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _blob_path(self, path: str) -> Path:
        return self.root / _check_key(path)

    def _attrs_path(self, path: str) -> Path:
        return self.root / ATTRS_DIR / f"{_check_key(path)}.json"

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._blob_path(path).is_file)

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        attrs = {"contentType": content_type, "metadata": dict(metadata or {})}
        await asyncio.to_thread(self._write, path, data, attrs)

    def _write(self, path: str, data: bytes, attrs: dict[str, Any]) -> None:
        blob_path = self._blob_path(path)
        attrs_path = self._attrs_path(path)
        blob_path.parent.mkdir(parents=True, exist_ok=True)
        attrs_path.parent.mkdir(parents=True, exist_ok=True)

        # Temp names are unique per write; concurrent writers of one key
        # each replace the target with their own complete file
        suffix = f".{uuid.uuid4().hex}.tmp"
        blob_tmp = blob_path.with_name(blob_path.name + suffix)
        attrs_tmp = attrs_path.with_name(attrs_path.name + suffix)
        try:
            blob_tmp.write_bytes(data)
            attrs_tmp.write_text(json.dumps(attrs))
            os.replace(blob_tmp, blob_path)
            os.replace(attrs_tmp, attrs_path)
        finally:
            blob_tmp.unlink(missing_ok=True)
            attrs_tmp.unlink(missing_ok=True)

    async def get(self, path: str) -> bytes | None:
        return await asyncio.to_thread(self._read, path)

    def _read(self, path: str) -> bytes | None:
        try:
            return self._blob_path(path).read_bytes()
        except FileNotFoundError:
            return None

    async def get_attributes(self, path: str) -> dict[str, Any] | None:
        """Content type and custom metadata recorded at put time."""
        return await asyncio.to_thread(self._read_attrs, path)

    def _read_attrs(self, path: str) -> dict[str, Any] | None:
        try:
            return json.loads(self._attrs_path(path).read_text())
        except FileNotFoundError:
            return None

    async def delete(self, path: str) -> bool:
        return await asyncio.to_thread(self._delete, path)

    def _delete(self, path: str) -> bool:
        self._attrs_path(path).unlink(missing_ok=True)
        try:
            self._blob_path(path).unlink()
        except FileNotFoundError:
            return False
        return True

    async def list(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._list, prefix)

    def _list(self, prefix: str) -> list[str]:
        keys = []
        for file_path in self.root.rglob("*"):
            if not file_path.is_file() or file_path.name.endswith(".tmp"):
                continue
            key = file_path.relative_to(self.root).as_posix()
            if key.startswith(ATTRS_DIR + "/"):
                continue
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class MemoryBlobStore:
    """In-memory blob store for tests and local development.

    Note: Data is lost when process exits!
    """

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._attrs: dict[str, dict[str, Any]] = {}

    async def exists(self, path: str) -> bool:
        return path in self._blobs

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._blobs[_check_key(path)] = bytes(data)
        self._attrs[path] = {"contentType": content_type, "metadata": dict(metadata or {})}

    async def get(self, path: str) -> bytes | None:
        return self._blobs.get(path)

    async def get_attributes(self, path: str) -> dict[str, Any] | None:
        return self._attrs.get(path)

    async def delete(self, path: str) -> bool:
        self._attrs.pop(path, None)
        return self._blobs.pop(path, None) is not None

    async def list(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._blobs if key.startswith(prefix))
