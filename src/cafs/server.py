"""CAFS MCP Server.

Exposes the CAS engine as Model Context Protocol tools so agents and
other processes can store and fetch content by digest.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, TypeVar

from mcp.server.fastmcp import FastMCP

from cafs.config import CASConfig, load_config
from cafs.factory import build_engine
from cafs.logging_config import StructuredLogger, configure_logging, correlation_id_var

logger = StructuredLogger(__name__)

# Type for tool handlers
T = TypeVar("T")

# Track whether we've warned about tool naming (one-time only)
_WARNED_NO_NAME_SUPPORT = False


class ToolNamingError(Exception):
    """Raised when canonical tool naming fails in strict mode."""
    pass


def named_tool(mcp_server: FastMCP, canonical_name: str, *, strict: bool = True):
    """Register a tool with canonical naming.

    Args:
        mcp_server: The MCP Server instance
        canonical_name: Canonical tool name (e.g., "cas.content.store")
        strict: If True (default), fail fast when SDK doesn't support name=.
                If False, fall back to function names with a warning.

    Raises:
        ToolNamingError: In strict mode, if SDK doesn't support canonical naming.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        global _WARNED_NO_NAME_SUPPORT
        try:
            return mcp_server.tool(name=canonical_name)(func)
        except TypeError as e:
            if "name" not in str(e):
                raise

            if strict:
                raise ToolNamingError(
                    f"MCP SDK doesn't support tool(name=...). "
                    f"Cannot register '{canonical_name}' with canonical name. "
                    f"Either upgrade to FastMCP/newer SDK, or set "
                    f"allow_noncanonical_tool_names=True in config."
                ) from e

            if not _WARNED_NO_NAME_SUPPORT:
                logger.warning(
                    "MCP SDK doesn't support tool(name=...). "
                    "Falling back to function names (e.g., 'cas_content_store' "
                    "instead of 'cas.content.store')."
                )
                _WARNED_NO_NAME_SUPPORT = True

            return mcp_server.tool()(func)

    return decorator


class CASServer:
    """CAFS MCP Server owning one engine and its backends."""

    def __init__(self, config: CASConfig | None = None):
        self.config = config or load_config()
        self.engine, self._database = build_engine(self.config)

        self.mcp = FastMCP("cafs")
        self._register_tools()

    async def start(self) -> None:
        """Start the server."""
        if self._database is not None:
            await self._database.connect()

    async def stop(self) -> None:
        """Stop the server."""
        if self._database is not None:
            await self._database.close()

    def _register_tools(self) -> None:
        """Register all MCP tools."""
        from cafs.tools.content import register_content_tools

        register_content_tools(self)

    def tool(self, name: str):
        """Register a tool with canonical naming.

        Args:
            name: Canonical tool name (e.g., "cas.content.store")
        """
        strict = not self.config.allow_noncanonical_tool_names
        return named_tool(self.mcp, name, strict=strict)

    def folder_or_default(self, folder: str | None) -> str:
        return folder or self.config.default_folder


def tool_handler(operation: str):
    """Decorator for tool handlers with correlation IDs and structured logging.

    Args:
        operation: Canonical operation name (e.g., "cas.content.store")
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(server: CASServer, **kwargs: Any) -> Any:
            correlation_id = str(uuid.uuid4())
            correlation_id_var.set(correlation_id)

            start_time = time.time()
            folder = kwargs.get("folder")

            logger.info(
                f"Starting {operation}",
                folder=folder,
                operation=operation,
                input_keys=list(kwargs.keys())
            )

            try:
                result = await func(server, **kwargs)
                duration_ms = int((time.time() - start_time) * 1000)

                logger.info(
                    f"Completed {operation}",
                    folder=folder,
                    operation=operation,
                    duration_ms=duration_ms,
                    success=True
                )
                return result

            except Exception as e:
                duration_ms = int((time.time() - start_time) * 1000)

                logger.error(
                    f"Failed {operation}: {str(e)}",
                    folder=folder,
                    operation=operation,
                    duration_ms=duration_ms,
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise

            finally:
                # Clear correlation ID to prevent leaks
                correlation_id_var.set(None)

        return wrapper
    return decorator


@asynccontextmanager
async def create_server(config: CASConfig | None = None):
    """Create and manage server lifecycle."""
    server = CASServer(config)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


async def run_server() -> None:
    """Run the MCP server."""
    config = load_config()

    configure_logging(
        log_level=config.log_level,
        structured=config.structured_logging,
        log_file=config.log_file
    )

    async with create_server(config) as server:
        # FastMCP handles stdio internally
        await server.mcp.run_stdio_async()


def main() -> None:
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
