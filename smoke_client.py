#!/usr/bin/env python3
"""Drive a running CAFS MCP server the way a client would."""

import asyncio
import json
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client


async def call(session: ClientSession, tool: str, **arguments) -> dict:
    result = await session.call_tool(tool, arguments=arguments)
    return json.loads(result.content[0].text)


async def smoke_test():
    server_params = StdioServerParameters(
        command="python",
        args=["-m", "cafs.server"],
        env=None
    )

    print("🔌 Connecting to CAFS server...")

    async with stdio_client(server_params) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()

            tools = await session.list_tools()
            print(f"📋 Available tools ({len(tools.tools)}):")
            for tool in tools.tools:
                print(f"   • {tool.name}")

            document = json.dumps({"name": "John", "age": 30, "city": "New York"}, indent=2)

            stored = await call(session, "cas.content.store", content=document, folder="cafs")
            print(f"✅ JSON stored with hash: {stored['contentHash'][:16]}...")

            text = await call(
                session,
                "cas.content.store",
                content="Hello, this is plain text content!",
                folder="cafs",
                content_type="text/plain",
            )
            print(f"✅ Text stored with hash: {text['contentHash'][:16]}...")

            duplicate = await call(session, "cas.content.store", content=document, folder="cafs")
            print(f"✅ Duplicate JSON - Deduplicated: {duplicate['deduplicated']}")

            retrieved = await call(
                session, "cas.content.retrieve", content_hash=stored["contentHash"], folder="cafs"
            )
            print("✅ Retrieved JSON:", json.loads(retrieved["content"]))

            listing = await call(session, "cas.entry.list", folder="cafs")
            for entry in listing["entries"]:
                meta = entry["metadata"]
                print(f"📄 Hash: {entry['contentHash'][:16]}...")
                print(f"   Size: {meta['contentSize']} bytes")
                print(f"   References: {meta['referenceCount']}")
                print(f"   Created: {meta['timestamp']}")

            exists = await call(
                session, "cas.content.exists", content_hash=stored["contentHash"], folder="cafs"
            )
            print(f"✅ JSON content exists: {exists['exists']}")


if __name__ == "__main__":
    asyncio.run(smoke_test())
