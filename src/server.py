"""
GraphQL MCP server exposing `search-schema` and `query-graphql` tools over a remote endpoint.

What it does:
- Indexes the endpoint's schema (introspected, or read from a local SDL file) into a
  Qdrant collection of embedded, definition-aligned chunks before it starts listening.
- Serves every agent connection with its own protocol-server instance, over either
  transport style, with per-session idle eviction.

How `search-schema` works:
- Embed the question, fetch the k nearest chunks, return their texts best first,
  separated by a fixed delimiter (or an explicit "nothing found" message).

How `query-graphql` works:
- Parse the query to reject syntax errors and (unless ALLOW_MUTATIONS=true) mutations
  before anything is sent, then proxy it with the configured headers and report HTTP,
  JSON and GraphQL-level problems as distinct, labelled results.

Endpoints:
- /mcp: Streamable HTTP (session id in the `mcp-session-id` header).
- /sse + /messages: legacy HTTP+SSE (session id in the `sessionId` query parameter).
- /health: liveness plus session and index counts.
When MCP_API_KEY is set, the MCP endpoints require a matching X-API-Key header.
With MCP_ALLOWED_HOSTS (and optionally MCP_ALLOWED_ORIGINS) set, requests carrying any
other Host or Origin header are refused.
"""
from __future__ import annotations

import argparse
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path

import uvicorn
from mcp.server.transport_security import TransportSecuritySettings
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from config import ENV_PATHS, ServerConfig, load_server_config, parse_header_args
from embedding_client import EmbeddingClient
from graphql_proxy import GraphQLProxy
from protocol_server import ToolBackend, build_protocol_server
from schema_indexer import SchemaRetriever, reindex_with_policy
from schema_source import load_schema_text
from sessions import SessionMultiplexer
from vector_index import SchemaVectorIndex, create_qdrant_client

APP_NAME = "graphql-mcp"
STREAM_PATH = "/mcp"
PUSH_STREAM_PATH = "/sse"
PUSH_MESSAGE_PATH = "/messages"
API_KEY_HEADER = "x-api-key"
SHUTDOWN_GRACE_S = 5
logger = logging.getLogger(APP_NAME)


class ApiKeyMiddleware:
    """Require `X-API-Key` on the MCP endpoints when a key is configured."""

    def __init__(self, app: ASGIApp, api_key: str | None, protected_paths: tuple[str, ...]):
        self.app = app
        self.api_key = api_key
        self.protected_paths = protected_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.api_key or not self._is_protected(scope["path"]):
            await self.app(scope, receive, send)
            return

        provided = Request(scope).headers.get(API_KEY_HEADER)
        if not provided:
            logger.warning("Authentication failed: Missing X-API-Key header")
            response = PlainTextResponse("Unauthorized: Missing X-API-Key header", status_code=401)
        elif not hmac.compare_digest(provided.encode(), self.api_key.encode()):
            logger.warning("Authentication failed: Invalid X-API-Key")
            response = PlainTextResponse("Forbidden: Invalid API Key", status_code=403)
        else:
            await self.app(scope, receive, send)
            return
        await response(scope, receive, send)

    def _is_protected(self, path: str) -> bool:
        return any(path == prefix or path.startswith(prefix + "/") for prefix in self.protected_paths)


class StreamEndpoint:
    def __init__(self, multiplexer: SessionMultiplexer):
        self.multiplexer = multiplexer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.multiplexer.handle_stream_request(scope, receive, send)


class PushStreamEndpoint:
    def __init__(self, multiplexer: SessionMultiplexer):
        self.multiplexer = multiplexer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.multiplexer.serve_push_stream(scope, receive, send)


class PushMessageEndpoint:
    def __init__(self, multiplexer: SessionMultiplexer):
        self.multiplexer = multiplexer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.multiplexer.handle_push_message(scope, receive, send)


def build_backend(config: ServerConfig) -> ToolBackend:
    embedder = EmbeddingClient(config=config.embedder)
    index = SchemaVectorIndex(create_qdrant_client(config.vector_store), config.vector_store.collection)
    retriever = SchemaRetriever(
        embedder,
        index,
        chunk_size=config.index.chunk_size,
        chunk_overlap=config.index.chunk_overlap,
        concurrency=config.index.embed_concurrency,
    )
    proxy = GraphQLProxy(
        config.endpoint,
        headers=config.headers,
        allow_mutations=config.allow_mutations,
        timeout_s=config.graphql_timeout_s,
    )
    return ToolBackend(retriever=retriever, proxy=proxy)


async def refresh_schema_index(config: ServerConfig, backend: ToolBackend) -> None:
    fetched: str | None = None

    async def fetch_schema() -> str:
        nonlocal fetched
        fetched = await load_schema_text(
            schema_path=config.schema_path,
            endpoint_url=config.endpoint,
            headers=config.headers,
            timeout_s=config.graphql_timeout_s,
        )
        return fetched

    result = await reindex_with_policy(
        backend.retriever,
        fetch_schema,
        policy=config.index.reindex_policy,
        retries=config.index.reindex_retries,
        backoff_s=config.index.reindex_backoff_s,
    )
    if result is not None:
        backend.schema_text = fetched
        logger.info(
            "Indexed %s/%s schema chunks (dim=%s).",
            result.indexed_count,
            result.split_count,
            result.dimension,
        )
        if result.failed:
            logger.warning("%s chunks failed to embed: %s", len(result.failed), result.failed)


def build_security_settings(config: ServerConfig) -> TransportSecuritySettings | None:
    if not (config.allowed_hosts or config.allowed_origins):
        return None
    return TransportSecuritySettings(
        enable_dns_rebinding_protection=True,
        allowed_hosts=list(config.allowed_hosts),
        allowed_origins=list(config.allowed_origins),
    )


def create_app(config: ServerConfig, backend: ToolBackend | None = None) -> Starlette:
    backend = backend or build_backend(config)

    def server_factory():
        return build_protocol_server(backend, name=config.name, instructions=config.instructions)

    multiplexer = SessionMultiplexer(
        server_factory,
        message_path=PUSH_MESSAGE_PATH,
        idle_timeout_s=config.session_idle_timeout_s,
        json_response=config.json_response,
        security_settings=build_security_settings(config),
    )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        try:
            # Uvicorn binds its socket only after startup completes.
            await refresh_schema_index(config, backend)
            async with multiplexer.run():
                yield
        finally:
            await backend.retriever.index.close()
            await backend.retriever.embedder.close()

    async def health(request: Request) -> JSONResponse:
        last = backend.retriever.last_result
        return JSONResponse(
            {
                "status": "ok",
                "sessions": multiplexer.stats(),
                "indexed_chunks": last.indexed_count if last else 0,
            }
        )

    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route(STREAM_PATH, endpoint=StreamEndpoint(multiplexer), methods=["GET", "POST", "DELETE"]),
            Route(PUSH_STREAM_PATH, endpoint=PushStreamEndpoint(multiplexer), methods=["GET"]),
            Route(PUSH_MESSAGE_PATH, endpoint=PushMessageEndpoint(multiplexer), methods=["POST"]),
        ],
        lifespan=lifespan,
    )
    app.add_middleware(
        ApiKeyMiddleware,
        api_key=config.api_key,
        protected_paths=(STREAM_PATH, PUSH_STREAM_PATH, PUSH_MESSAGE_PATH),
    )
    app.state.multiplexer = multiplexer
    app.state.backend = backend
    return app


def main(argv: list[str] | None = None) -> None:
    try:
        config = load_server_config()
    except ValueError as exc:
        checked = ", ".join(str(path) for path in ENV_PATHS)
        raise SystemExit(f"Error parsing environment variables (also read from {checked}): {exc}") from exc

    parser = argparse.ArgumentParser(description="Run the GraphQL schema-search MCP server.")
    source_group = parser.add_mutually_exclusive_group()
    source_group.add_argument(
        "--schema",
        type=Path,
        default=config.schema_path,
        help="Path to a GraphQL schema file (SDL). Defaults to introspecting the endpoint.",
    )
    source_group.add_argument(
        "--introspect",
        action="store_true",
        help="Ignore SCHEMA and introspect the endpoint.",
    )
    parser.add_argument("--endpoint", default=config.endpoint, help="GraphQL endpoint URL to proxy queries to.")
    parser.add_argument(
        "--header",
        action="append",
        default=[],
        help="Add an HTTP header for the GraphQL endpoint, like 'Authorization: Bearer ...' (repeatable).",
    )
    parser.add_argument(
        "--allow-mutations",
        action="store_true",
        default=config.allow_mutations,
        help="Allow mutation operations (default: ALLOW_MUTATIONS or false).",
    )
    parser.add_argument("--host", default=config.host, help="Host to bind (default: 0.0.0.0).")
    parser.add_argument("--port", type=int, default=config.port, help="Port to bind (default: 3000).")
    parser.add_argument(
        "--log-level",
        default=config.log_level,
        help="Log level (DEBUG, INFO, WARNING, ERROR).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO))

    try:
        headers = dict(config.headers)
        headers.update(parse_header_args(args.header))
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    config = replace(
        config,
        endpoint=args.endpoint,
        headers=headers,
        schema_path=None if args.introspect else args.schema,
        allow_mutations=args.allow_mutations,
        host=args.host,
        port=args.port,
        log_level=str(args.log_level).upper(),
    )
    if config.schema_path is not None and not config.schema_path.exists():
        raise SystemExit(f"Schema file not found: {config.schema_path}")

    print(
        f"Starting {config.name} targeting {config.endpoint} "
        f"on http://{config.host}:{config.port} (schema={config.schema_path or '<introspection>'})",
        flush=True,
    )
    logger.info("Allow mutations: %s", config.allow_mutations)
    logger.info("API Key Authentication: %s", "ENABLED (expecting X-API-Key header)" if config.api_key else "DISABLED")
    if config.headers:
        logger.info("Using custom headers for GraphQL endpoint: %s", sorted(config.headers))

    # A fail-fast reindex error aborts lifespan startup and uvicorn exits non-zero.
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        timeout_graceful_shutdown=SHUTDOWN_GRACE_S,
    )


if __name__ == "__main__":
    main()
