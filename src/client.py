"""
Smoke-test client for a running GraphQL MCP server.

Connects over legacy SSE (default) or Streamable HTTP, lists the tools and exercises
both of them, including the error paths (invalid syntax, invalid variables, a mutation).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import urlparse

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

DEFAULT_SERVER_URL = "http://localhost:3000/sse"
EXPECTED_TOOLS = ("search-schema", "query-graphql")
SIMPLE_QUERY = "{ __typename }"

TEST_CALLS: list[tuple[str, str, dict[str, Any]]] = [
    (
        "Semantic Schema Search",
        "search-schema",
        {"question": "What queries are available in the schema?", "k": 3},
    ),
    ("Simple Query", "query-graphql", {"query": SIMPLE_QUERY}),
    (
        "Query with Variables",
        "query-graphql",
        {
            "query": "query GetGreeting($name: String!) {\n  greeting(name: $name)\n}",
            "variables": json.dumps({"name": "MCP User"}),
        },
    ),
    ("Invalid Query", "query-graphql", {"query": "{ missingClosingBrace"}),
    (
        "Invalid Variables",
        "query-graphql",
        {"query": SIMPLE_QUERY, "variables": '{ "name": "MissingQuote }'},
    ),
    (
        "Mutation",
        "query-graphql",
        {"query": 'mutation { addData(input: { value: "test" }) { id } }'},
    ),
]


def result_text(result: Any) -> str:
    content = getattr(result, "content", None) or []
    if content and getattr(content[0], "type", None) == "text":
        return content[0].text
    return json.dumps([item.model_dump() for item in content], indent=2) if content else str(result)


@asynccontextmanager
async def open_session(url: str, transport: str, headers: dict[str, str]) -> AsyncIterator[ClientSession]:
    if transport == "sse":
        async with sse_client(url, headers=headers) as (read_stream, write_stream):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                yield session
        return
    async with streamablehttp_client(url, headers=headers) as (read_stream, write_stream, _):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            yield session


async def run(url: str, transport: str, api_key: str | None) -> int:
    headers = {"X-API-Key": api_key} if api_key else {}
    print(f"[Client] Target MCP Server URL: {url} ({transport})")

    async with open_session(url, transport, headers) as session:
        print("\n--- Listing Available Tools ---")
        tools = await session.list_tools()
        names = [tool.name for tool in tools.tools]
        print(f"[Client] Tools: {names}")
        missing = [name for name in EXPECTED_TOOLS if name not in names]
        if missing:
            print(f"[Client] Error: Expected tools not found: {missing}", file=sys.stderr)
            return 1

        print("\n--- Testing GraphQL Tools ---")
        results = {}
        for label, tool, arguments in TEST_CALLS:
            print(f"\n[Client] Calling {tool} with {json.dumps(arguments)}")
            result = results[label] = await session.call_tool(tool, arguments)
            print(f"[Client] {label} Result (isError: {bool(result.isError)}):\n{result_text(result)}")

        mutation = results["Mutation"]
        if mutation.isError and "not allowed" in result_text(mutation):
            print("\n[Client] Received expected mutation disallowed error.")
        elif not mutation.isError:
            print("\n[Client] Warning: Mutation was not rejected. Check ALLOW_MUTATIONS.")

        print("\n--- Finished Testing GraphQL Tools ---")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Exercise a running GraphQL MCP server.")
    parser.add_argument(
        "--url",
        default=os.environ.get("MCP_SERVER_URL") or DEFAULT_SERVER_URL,
        help="Server URL (default: MCP_SERVER_URL or http://localhost:3000/sse).",
    )
    parser.add_argument(
        "--transport",
        choices=("sse", "streamable-http"),
        default=None,
        help="Transport to use (default: sse unless the URL path ends with /mcp).",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("MCP_API_KEY"),
        help="Value for the X-API-Key header (default: MCP_API_KEY).",
    )
    args = parser.parse_args(argv)

    parsed = urlparse(args.url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise SystemExit(f"Invalid MCP_SERVER_URL: {args.url}. Please provide a valid URL.")
    transport = args.transport or ("streamable-http" if parsed.path.rstrip("/").endswith("/mcp") else "sse")

    raise SystemExit(asyncio.run(run(args.url, transport, args.api_key)))


if __name__ == "__main__":
    main()
