"""Core data models for CAFS.

Identifier semantics:
- content_hash: SHA256 of the stored bytes, the only identity of a payload
- storage_path: blob key, always {folder}/{content_hash}
- referenced_by: external resource ids pointing at one payload (audit only)

Entries are persisted with camelCase field names (contentHash, gcsPath,
referencedBy, ...) so documents written by other CAFS clients stay readable.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current instant, timezone-aware."""
    return datetime.now(timezone.utc)


def isoformat_now() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ResourceIdentity(_CamelModel):
    """Caller descriptor for the resource a payload is stored on behalf of."""
    id: str
    type_id: str | None = Field(default=None, alias="typeId")
    role_id: str | None = Field(default=None, alias="roleId")
    execution_id: str | None = Field(default=None, alias="executionId")


class ResourceMetadata(_CamelModel):
    """Bookkeeping attached to one stored payload."""
    content_size: int = Field(alias="contentSize", ge=0)
    content_type: str = Field(alias="contentType")
    timestamp: str = Field(default_factory=isoformat_now)  # set once at creation
    last_accessed_at: datetime = Field(default_factory=utc_now, alias="lastAccessedAt")
    reference_count: int = Field(default=1, alias="referenceCount", ge=0)
    tags: list[str] = Field(default_factory=list)
    custom_properties: dict[str, Any] = Field(default_factory=dict, alias="customProperties")

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, value: list[str]) -> list[str]:
        return sorted(set(value))


class CASEntry(_CamelModel):
    """Persisted record for one digest."""
    content_hash: str = Field(alias="contentHash")
    storage_path: str = Field(alias="gcsPath")
    metadata: ResourceMetadata
    referenced_by: list[str] = Field(default_factory=list, alias="referencedBy")

    def add_reference(self, resource_id: str | None) -> bool:
        """Record a referencing resource; False if already present."""
        if not resource_id or resource_id in self.referenced_by:
            return False
        self.referenced_by.append(resource_id)
        return True

    def to_document(self) -> str:
        """JSON document in the persisted layout."""
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_document(cls, document: str | bytes) -> CASEntry:
        return cls.model_validate_json(document)


class StoreResult(_CamelModel):
    """Outcome of store_content; failures are reported here, not raised."""
    success: bool
    content_hash: str = Field(default="", alias="contentHash")
    deduplicated: bool = False
    storage_path: str = Field(default="", alias="storagePath")
    error: str | None = None
    error_type: str | None = Field(default=None, alias="errorType")

    @classmethod
    def failure(cls, error: Exception) -> StoreResult:
        return cls(
            success=False,
            error=str(error),
            error_type=type(error).__name__,
        )
