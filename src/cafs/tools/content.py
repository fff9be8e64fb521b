"""Content tools: cas.content.* and cas.entry.*"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any

from cafs.errors import ContentNotFoundError
from cafs.models import CASEntry
from cafs.server import tool_handler

if TYPE_CHECKING:
    from cafs.server import CASServer


def register_content_tools(server: "CASServer") -> None:
    """Register content and entry tools."""

    @server.tool("cas.content.store")
    async def cas_content_store(
        content: str,
        folder: str | None = None,
        resource_id: str | None = None,
        content_type: str | None = None,
        tags: list[str] | None = None,
        custom_properties: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Store content, deduplicating identical payloads.

        Args:
            content: Text content to store
            folder: Namespace (defaults to the configured folder)
            resource_id: Resource that references this content
            content_type: MIME type
            tags: Tags for a newly stored payload
            custom_properties: Custom properties for a newly stored payload
        """
        return await _content_store(
            server,
            content=content,
            folder=folder,
            resource_id=resource_id,
            content_type=content_type,
            tags=tags,
            custom_properties=custom_properties,
        )

    @server.tool("cas.content.retrieve")
    async def cas_content_retrieve(
        content_hash: str,
        folder: str | None = None,
        update_access_time: bool = True,
    ) -> dict[str, Any]:
        """Retrieve content by digest.

        Args:
            content_hash: SHA256 digest returned by cas.content.store
            folder: Namespace the content was stored in
            update_access_time: Record this read in the entry
        """
        return await _content_retrieve(
            server,
            content_hash=content_hash,
            folder=folder,
            update_access_time=update_access_time,
        )

    @server.tool("cas.content.exists")
    async def cas_content_exists(
        content_hash: str,
        folder: str | None = None,
    ) -> dict[str, Any]:
        """Check whether a payload is stored."""
        return await _content_exists(server, content_hash=content_hash, folder=folder)

    @server.tool("cas.content.delete")
    async def cas_content_delete(
        content_hash: str,
        folder: str | None = None,
        force: bool = False,
    ) -> dict[str, Any]:
        """Release one reference; the payload goes away at zero.

        Args:
            content_hash: SHA256 digest
            folder: Namespace the content was stored in
            force: Delete regardless of remaining references
        """
        return await _content_delete(
            server, content_hash=content_hash, folder=folder, force=force
        )

    @server.tool("cas.entry.get")
    async def cas_entry_get(
        content_hash: str,
        folder: str | None = None,
    ) -> dict[str, Any]:
        """Get the bookkeeping entry for a digest."""
        return await _entry_get(server, content_hash=content_hash, folder=folder)

    @server.tool("cas.entry.list")
    async def cas_entry_list(
        folder: str | None = None,
        tag: str | None = None,
        content_type: str | None = None,
        limit: int = 100,
    ) -> dict[str, Any]:
        """List entries in a folder.

        Args:
            folder: Namespace to list
            tag: Only entries carrying this tag
            content_type: Only entries with this MIME type
            limit: Maximum entries returned
        """
        return await _entry_list(
            server, folder=folder, tag=tag, content_type=content_type, limit=limit
        )


def _entry_to_dict(entry: CASEntry) -> dict[str, Any]:
    return entry.model_dump(mode="json", by_alias=True)


@tool_handler("cas.content.store")
async def _content_store(
    server: "CASServer",
    content: str,
    folder: str | None = None,
    resource_id: str | None = None,
    content_type: str | None = None,
    tags: list[str] | None = None,
    custom_properties: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Store content."""
    result = await server.engine.store_content(
        server.folder_or_default(folder),
        content,
        resource_id,
        content_type=content_type,
        tags=tags,
        custom_properties=custom_properties,
    )
    return result.model_dump(by_alias=True, exclude_none=True)


@tool_handler("cas.content.retrieve")
async def _content_retrieve(
    server: "CASServer",
    content_hash: str,
    folder: str | None = None,
    update_access_time: bool = True,
) -> dict[str, Any]:
    """Retrieve content; non-UTF-8 payloads come back base64 encoded."""
    data = await server.engine.retrieve_content(
        server.folder_or_default(folder), content_hash, update_access_time
    )
    try:
        return {"content_hash": content_hash, "content": data.decode("utf-8"), "encoding": "utf-8"}
    except UnicodeDecodeError:
        return {
            "content_hash": content_hash,
            "content": base64.b64encode(data).decode("ascii"),
            "encoding": "base64",
        }


@tool_handler("cas.content.exists")
async def _content_exists(
    server: "CASServer",
    content_hash: str,
    folder: str | None = None,
) -> dict[str, Any]:
    exists = await server.engine.content_exists(server.folder_or_default(folder), content_hash)
    return {"content_hash": content_hash, "exists": exists}


@tool_handler("cas.content.delete")
async def _content_delete(
    server: "CASServer",
    content_hash: str,
    folder: str | None = None,
    force: bool = False,
) -> dict[str, Any]:
    """Delete content and report what is left."""
    resolved = server.folder_or_default(folder)
    await server.engine.delete_content(resolved, content_hash, force_delete=force)
    entry = await server.engine.get_entry(resolved, content_hash)
    return {
        "content_hash": content_hash,
        "deleted": entry is None,
        "reference_count": entry.metadata.reference_count if entry else 0,
    }


@tool_handler("cas.entry.get")
async def _entry_get(
    server: "CASServer",
    content_hash: str,
    folder: str | None = None,
) -> dict[str, Any]:
    resolved = server.folder_or_default(folder)
    entry = await server.engine.get_entry(resolved, content_hash)
    if entry is None:
        raise ContentNotFoundError(content_hash, folder=resolved, context_msg="no CAS entry")
    return _entry_to_dict(entry)


@tool_handler("cas.entry.list")
async def _entry_list(
    server: "CASServer",
    folder: str | None = None,
    tag: str | None = None,
    content_type: str | None = None,
    limit: int = 100,
) -> dict[str, Any]:
    """List entries with optional tag/content-type filters."""
    def matches(entry: CASEntry) -> bool:
        if tag is not None and tag not in entry.metadata.tags:
            return False
        if content_type is not None and entry.metadata.content_type != content_type:
            return False
        return True

    entries: list[dict[str, Any]] = []
    truncated = False
    async for entry in server.engine.list_entries(server.folder_or_default(folder), matches):
        if len(entries) >= limit:
            truncated = True
            break
        entries.append(_entry_to_dict(entry))

    return {"entries": entries, "count": len(entries), "truncated": truncated}
