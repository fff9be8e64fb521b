#!/usr/bin/env python3
"""Validate that tools are registered with canonical names."""

import asyncio
from cafs.server import create_server
from cafs.config import load_config


EXPECTED_TOOLS = {
    "cas.content.store",
    "cas.content.retrieve",
    "cas.content.exists",
    "cas.content.delete",
    "cas.entry.get",
    "cas.entry.list",
}


async def main():
    config = load_config()

    async with create_server(config) as server:
        # Get tools from FastMCP's tool manager
        tools = server.mcp._tool_manager._tools

        print("Registered tools:")
        print("-" * 60)
        for tool_name in sorted(tools.keys()):
            status = "✓" if tool_name in EXPECTED_TOOLS else "✗"
            print(f"{status} {tool_name}")
        print("-" * 60)

        missing = EXPECTED_TOOLS - set(tools)
        unexpected = set(tools) - EXPECTED_TOOLS
        print(f"Total tools: {len(tools)}")

        if missing or unexpected:
            for name in sorted(missing):
                print(f"missing: {name}")
            for name in sorted(unexpected):
                print(f"unexpected: {name}")
            print("\n❌ ERROR: Tool registry does not match cas.<category>.<action>")
            return 1

        print("\n✅ SUCCESS: All tools use canonical naming (cas.category.action)")
        return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    exit(exit_code)
