"""
Per-session MCP protocol server.

Every session gets its own FastMCP instance exposing:
- `search-schema`: semantic lookup over the indexed schema chunks.
- `query-graphql`: mutation-gated pass-through to the GraphQL endpoint.
- the `graphql-schema` resource with the SDL the index was last built from.

Tool state lives in the shared retriever and proxy; an instance holds nothing else.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult, TextContent

from graphql_proxy import GraphQLProxy
from schema_indexer import DEFAULT_SEARCH_LIMIT, SchemaRetriever

CHUNK_DELIMITER = "\n\n---\n\n"
NOTHING_FOUND = "No relevant schema information found for this question."
DEFAULT_INSTRUCTIONS = (
    "This server is an abstraction layer over a GraphQL API. Before writing a query, call "
    "search-schema with a focused natural-language question to find the relevant types and "
    "fields. Then call query-graphql with a single valid query (variables as a JSON string)."
)
logger = logging.getLogger("graphql-mcp")


@dataclass
class ToolBackend:
    """Process-wide collaborators every session's tools delegate to."""

    retriever: SchemaRetriever
    proxy: GraphQLProxy
    schema_text: str | None = None


def _text_result(text: str, *, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


def build_protocol_server(
    backend: ToolBackend,
    *,
    name: str,
    instructions: str | None = None,
) -> FastMCP:
    logger.info("Building new protocol server instance for a session")
    server = FastMCP(name, instructions=instructions or DEFAULT_INSTRUCTIONS)

    @server.tool(name="search-schema")
    async def search_schema(question: str, k: int = DEFAULT_SEARCH_LIMIT) -> CallToolResult:
        """
        Semantically search the GraphQL schema for the types, fields and arguments
        relevant to a natural-language question. Returns the k best-matching schema excerpts.
        """
        logger.info("Handling tool call: search-schema (k=%s)", k)
        try:
            texts = await backend.retriever.search(question, k=k)
        except Exception as exc:
            logger.error("Error in search-schema tool: %s", exc)
            return _text_result(f"Failed to search schema: {exc}", is_error=True)
        if not texts:
            return _text_result(NOTHING_FOUND)
        return _text_result(CHUNK_DELIMITER.join(texts))

    @server.tool(name="query-graphql")
    async def query_graphql(query: str, variables: str | None = None) -> CallToolResult:
        """Query the GraphQL endpoint with the given query and optional JSON-encoded variables."""
        logger.info("Handling tool call: query-graphql for endpoint: %s", backend.proxy.endpoint)
        outcome = await backend.proxy.execute(query, variables)
        return _text_result(outcome.text, is_error=outcome.is_error)

    @server.resource(backend.proxy.endpoint, name="graphql-schema", mime_type="text/plain")
    def graphql_schema() -> str:
        """The GraphQL schema (SDL) the search index was built from."""
        if backend.schema_text is None:
            raise RuntimeError("Schema has not been loaded yet.")
        return backend.schema_text

    return server


async def run_protocol_server(
    server: FastMCP,
    read_stream: MemoryObjectReceiveStream,
    write_stream: MemoryObjectSendStream,
) -> None:
    """Serve one session's message streams until the transport closes them."""
    lowlevel = server._mcp_server
    await lowlevel.run(read_stream, write_stream, lowlevel.create_initialization_options())
