"""Content hashing and storage-path derivation.

Layout inside a bucket:
    {folder}/{digest}                    payload bytes
    {folder}/metadata/{digest}.json      CAS entry document
"""

from __future__ import annotations

import hashlib
import re

DIGEST_RE = re.compile(r"^[a-f0-9]{64}$")

METADATA_DIR = "metadata"


def encode_content(content: str | bytes) -> bytes:
    """Bytes that will actually be stored for ``content``.

    Raises:
        TypeError: For anything but str or a bytes-like buffer
    """
    if isinstance(content, str):
        return content.encode("utf-8")
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    raise TypeError(f"Content must be str or bytes, not {type(content).__name__}")


def hash_content(content: str | bytes) -> str:
    """SHA256 hash (hex) of the encoded content."""
    return hashlib.sha256(encode_content(content)).hexdigest()


def is_digest(value: str) -> bool:
    return bool(DIGEST_RE.match(value))


def normalize_folder(folder: str) -> str:
    """Strip surrounding slashes; an empty folder is rejected."""
    cleaned = folder.strip().strip("/")
    if not cleaned:
        raise ValueError("Folder must be a non-empty namespace")
    return cleaned


def storage_path(folder: str, digest: str) -> str:
    """Blob key for a payload."""
    return f"{normalize_folder(folder)}/{digest}"


def metadata_key(folder: str, digest: str) -> str:
    """Key of the CAS entry document for a payload."""
    return f"{normalize_folder(folder)}/{METADATA_DIR}/{digest}.json"


def metadata_prefix(folder: str) -> str:
    return f"{normalize_folder(folder)}/{METADATA_DIR}/"


def digest_from_path(path: str) -> str | None:
    """Extract the digest from a payload path.

    Returns None for metadata documents and for anything whose final
    segment is not a digest.
    """
    if path.endswith(".json"):
        return None
    last = path.rstrip("/").rsplit("/", 1)[-1]
    return last if is_digest(last) else None
