"""
Obtain the authoritative GraphQL schema as SDL text.

Either a local SDL file or live introspection of the remote endpoint. Both paths go
through graphql-core's printer so definitions come out separated by blank lines,
which is the boundary shape the chunker splits on. A file that parses but does not
build as a standalone schema (a federation subgraph, say) is used as written.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

import aiohttp
import anyio
from graphql import (
    GraphQLError,
    build_ast_schema,
    build_client_schema,
    get_introspection_query,
    parse,
    print_schema,
)

logger = logging.getLogger("graphql-mcp.schema")


class SchemaSourceError(RuntimeError):
    pass


async def read_schema_file(schema_path: Path) -> str:
    if not await anyio.Path(schema_path).exists():
        raise SchemaSourceError(f"Schema file not found: {schema_path}")
    raw = await anyio.Path(schema_path).read_text(encoding="utf-8")
    try:
        document = parse(raw)
    except GraphQLError as exc:
        raise SchemaSourceError(f"Schema file {schema_path} is not valid SDL: {exc.message}") from exc
    try:
        return print_schema(build_ast_schema(document))
    except (GraphQLError, TypeError) as exc:
        # Subgraph SDL may apply directives (@key, @external) it never declares.
        logger.warning("Using schema file %s as written; it does not build on its own: %s", schema_path, exc)
        return raw.strip() + "\n"


async def introspect_endpoint(
    endpoint_url: str,
    headers: dict[str, str] | None = None,
    timeout_s: float = 30.0,
) -> str:
    payload = {
        "query": get_introspection_query(descriptions=True),
        "operationName": "IntrospectionQuery",
        "variables": {},
    }
    request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
    request_headers.update(headers or {})

    timeout = aiohttp.ClientTimeout(total=timeout_s)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.post(endpoint_url, json=payload, headers=request_headers) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise SchemaSourceError(
                    f"Introspection request failed ({resp.status}): {text.strip()}"
                )
    try:
        result = json.loads(text) if text else {}
    except json.JSONDecodeError as exc:
        raise SchemaSourceError("Introspection response was not valid JSON") from exc

    if result.get("errors"):
        raise SchemaSourceError(f"Introspection failed: {result['errors']}")
    data = result.get("data")
    if not data:
        raise SchemaSourceError("Introspection response missing 'data'.")
    return print_schema(build_client_schema(data))


async def load_schema_text(
    *,
    schema_path: Path | None,
    endpoint_url: str,
    headers: dict[str, str] | None = None,
    timeout_s: float = 30.0,
) -> str:
    if schema_path is not None:
        logger.info("Reading schema from file %s", schema_path)
        return await read_schema_file(schema_path)
    logger.info("Introspecting schema from endpoint %s", endpoint_url)
    return await introspect_endpoint(endpoint_url, headers=headers, timeout_s=timeout_s)
