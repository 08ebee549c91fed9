"""
Schema retrieval pipeline for the GraphQL MCP server.

This module splits GraphQL SDL into overlapping chunks aligned to definition
boundaries, embeds each chunk through an OpenAI-compatible embeddings endpoint with
a small fixed number of calls in flight, and replaces the Qdrant collection with the
chunks that embedded successfully. Semantic search embeds a question and returns the
nearest chunk texts. It is used by the MCP server at startup and per `search-schema`
call, and by the CLI to build and query the index by hand.
"""
from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Sequence

import numpy as np

from config import (
    DEFAULT_ENDPOINT,
    IndexConfig,
    load_embedder_config,
    load_index_config,
    load_vector_store_config,
    parse_header_args,
)
from embedding_client import EmbeddingClient
from schema_chunker import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE, split_schema
from schema_source import load_schema_text
from vector_index import SchemaChunk, SchemaVectorIndex, create_qdrant_client

DEFAULT_EMBED_CONCURRENCY = 3
DEFAULT_SEARCH_LIMIT = 5
logger = logging.getLogger("graphql-mcp.rag")


class ReindexError(RuntimeError):
    pass


@dataclass
class ReindexResult:
    schema_sha: str
    split_count: int
    indexed_count: int
    dimension: int
    failed: list[int] = field(default_factory=list)


def compute_schema_sha(schema_text: str) -> str:
    return hashlib.sha256(schema_text.encode("utf-8")).hexdigest()


def _format_progress(done: int, total: int, width: int = 20) -> str:
    if total <= 0:
        return "[--------------------] 0%"
    ratio = min(max(done / total, 0.0), 1.0)
    filled = int(ratio * width)
    bar = "#" * filled + "-" * (width - filled)
    return f"[{bar}] {int(ratio * 100)}%"


async def embed_chunks(
    embedder: EmbeddingClient,
    texts: Sequence[str],
    *,
    concurrency: int = DEFAULT_EMBED_CONCURRENCY,
) -> list[np.ndarray | None]:
    """
    Embed each text on its own, never more than `concurrency` calls in flight.

    A failed text yields None in its slot; the others are unaffected.
    """
    semaphore = asyncio.Semaphore(max(1, int(concurrency)))
    total = len(texts)
    done = 0

    async def embed(position: int, text: str) -> np.ndarray | None:
        nonlocal done
        async with semaphore:
            try:
                vector = await embedder.embed_one(text)
            except Exception as exc:
                logger.error("Error embedding chunk %s/%s: %s", position + 1, total, exc)
                return None
        done += 1
        logger.info("Embedded %s/%s %s", done, total, _format_progress(done, total))
        return vector

    return list(await asyncio.gather(*(embed(pos, text) for pos, text in enumerate(texts))))


class SchemaRetriever:
    def __init__(
        self,
        embedder: EmbeddingClient,
        index: SchemaVectorIndex,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        concurrency: int = DEFAULT_EMBED_CONCURRENCY,
    ):
        self.embedder = embedder
        self.index = index
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.concurrency = concurrency
        self.last_result: ReindexResult | None = None

    async def reindex(self, schema_text: str) -> ReindexResult:
        """
        Rebuild the collection from schema text.

        Raises ReindexError, leaving the previous collection untouched, when the split
        yields no chunks or no chunk could be embedded.
        """
        texts = split_schema(
            schema_text,
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )
        logger.info("Split schema into %s chunks.", len(texts))
        if not texts:
            raise ReindexError("No chunks generated after splitting schema.")

        vectors = await embed_chunks(self.embedder, texts, concurrency=self.concurrency)
        failed = [pos for pos, vector in enumerate(vectors) if vector is None]
        embedded = [(text, vector) for text, vector in zip(texts, vectors) if vector is not None]
        logger.info(
            "Embedding completed: %s embedded, %s failed.", len(embedded), len(failed)
        )
        if not embedded:
            raise ReindexError("No vectors generated from schema chunks.")

        # Ordinals are positions in the post-filter sequence.
        chunks = [
            SchemaChunk(ordinal=ordinal, text=text, vector=vector)
            for ordinal, (text, vector) in enumerate(embedded)
        ]
        indexed = await self.index.replace(chunks)
        result = ReindexResult(
            schema_sha=compute_schema_sha(schema_text),
            split_count=len(texts),
            indexed_count=indexed,
            dimension=len(chunks[0].vector),
            failed=failed,
        )
        self.last_result = result
        logger.info("Schema refresh complete for collection '%s'.", self.index.collection)
        return result

    async def search(self, question: str, k: int = DEFAULT_SEARCH_LIMIT) -> list[str]:
        """Return the texts of the `k` chunks nearest to the question, best first."""
        if k < 1:
            raise ValueError("k must be at least 1")
        query_vector = await self.embedder.embed_one(question)
        hits = await self.index.search(query_vector, limit=k)
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return [hit.text for hit in hits[:k]]


async def reindex_with_policy(
    retriever: SchemaRetriever,
    fetch_schema: Callable[[], Awaitable[str]],
    *,
    policy: str = "stale",
    retries: int = 3,
    backoff_s: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ReindexResult | None:
    """
    Fetch the schema and reindex it, applying the configured failure policy.

    - stale: log the failure and keep serving whatever the collection holds.
    - fail-fast: raise ReindexError.
    - retry: retry with exponential backoff, then behave like stale.
    """
    attempts = 1 + (max(0, retries) if policy == "retry" else 0)
    delay = backoff_s
    for attempt in range(1, attempts + 1):
        try:
            schema_text = await fetch_schema()
            return await retriever.reindex(schema_text)
        except Exception as exc:
            logger.error("Schema reindex attempt %s/%s failed: %s", attempt, attempts, exc)
            if policy == "fail-fast":
                if isinstance(exc, ReindexError):
                    raise
                raise ReindexError(f"Schema reindex failed: {exc}") from exc
            if attempt < attempts:
                logger.info("Retrying schema reindex in %.1fs...", delay)
                await sleep(delay)
                delay *= 2
    logger.warning("Serving the previous (possibly empty) schema index.")
    return None


def build_retriever(index_config: IndexConfig | None = None) -> SchemaRetriever:
    index_config = index_config or load_index_config()
    store_config = load_vector_store_config()
    embedder = EmbeddingClient(config=load_embedder_config())
    index = SchemaVectorIndex(create_qdrant_client(store_config), store_config.collection)
    return SchemaRetriever(
        embedder,
        index,
        chunk_size=index_config.chunk_size,
        chunk_overlap=index_config.chunk_overlap,
        concurrency=index_config.embed_concurrency,
    )


async def _run_cli(args: argparse.Namespace) -> int:
    retriever = build_retriever()
    try:
        if args.command == "search":
            limit = max(1, min(args.limit, 20))
            texts = await retriever.search(args.query, k=limit)
            print(json.dumps(texts, indent=2))
            return 0

        schema_text = await load_schema_text(
            schema_path=args.schema,
            endpoint_url=args.endpoint,
            headers=parse_header_args(args.header),
        )
        result = await retriever.reindex(schema_text)
        print(
            f"Indexed {result.indexed_count}/{result.split_count} chunks into "
            f"'{retriever.index.collection}' using {retriever.embedder.model} "
            f"(schema sha {result.schema_sha})."
        )
        return 0 if not result.failed else 2
    finally:
        await retriever.index.close()
        await retriever.embedder.close()


def cli(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Build or query the GraphQL schema index.")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Subcommands")

    index_parser = subparsers.add_parser("index", help="Split, embed and upsert the schema")
    source_group = index_parser.add_mutually_exclusive_group()
    source_group.add_argument("--schema", type=Path, default=None, help="Path to a GraphQL schema file (SDL)")
    source_group.add_argument("--endpoint", default=DEFAULT_ENDPOINT, help="GraphQL endpoint to introspect")
    index_parser.add_argument(
        "--header",
        action="append",
        default=[],
        help="HTTP header for introspection, like 'Authorization: Bearer ...' (repeatable)",
    )

    search_parser = subparsers.add_parser("search", help="Search the index with a natural language question")
    search_parser.add_argument("query", help="Search question")
    search_parser.add_argument("--limit", type=int, default=DEFAULT_SEARCH_LIMIT, help="Maximum number of results")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_run_cli(args))


if __name__ == "__main__":
    raise SystemExit(cli())
