from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams

from config import VectorStoreConfig

logger = logging.getLogger("graphql-mcp.rag")


@dataclass(frozen=True)
class SchemaChunk:
    ordinal: int
    text: str
    vector: np.ndarray | None = None


@dataclass(frozen=True)
class SearchHit:
    ordinal: int
    text: str
    score: float


def create_qdrant_client(config: VectorStoreConfig) -> AsyncQdrantClient:
    if config.url == ":memory:":
        return AsyncQdrantClient(location=":memory:")
    return AsyncQdrantClient(url=config.url, api_key=config.api_key)


class SchemaVectorIndex:
    """The single schema collection, replaced wholesale on every reindex."""

    def __init__(self, client: AsyncQdrantClient, collection: str):
        self._client = client
        self.collection = collection

    async def replace(self, chunks: Sequence[SchemaChunk]) -> int:
        """Recreate the collection sized to the chunk vectors and upsert every chunk."""
        if not chunks:
            raise ValueError("Cannot replace the collection with zero chunks")
        if chunks[0].vector is None:
            raise ValueError(f"Chunk {chunks[0].ordinal} has no vector")
        dimension = len(chunks[0].vector)
        for chunk in chunks:
            if chunk.vector is None or len(chunk.vector) != dimension:
                raise ValueError(
                    f"Chunk {chunk.ordinal} has a vector of a different dimensionality"
                )
            if not chunk.text:
                raise ValueError(f"Chunk {chunk.ordinal} has no text")

        logger.info("Recreating collection '%s' (dim=%s)...", self.collection, dimension)
        if await self._client.collection_exists(self.collection):
            await self._client.delete_collection(self.collection)
        await self._client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=dimension, distance=Distance.COSINE),
        )

        logger.info("Upserting %s points into collection '%s'...", len(chunks), self.collection)
        points = [
            PointStruct(
                id=chunk.ordinal,
                vector=np.asarray(chunk.vector, dtype=np.float32).tolist(),
                payload={"text": chunk.text},
            )
            for chunk in chunks
        ]
        await self._client.upsert(collection_name=self.collection, points=points, wait=True)
        return len(points)

    async def search(self, query_vector: np.ndarray, limit: int = 5) -> list[SearchHit]:
        result = await self._client.query_points(
            collection_name=self.collection,
            query=np.asarray(query_vector, dtype=np.float32).tolist(),
            limit=max(1, limit),
            with_payload=True,
        )
        hits = []
        for point in result.points:
            payload = point.payload or {}
            text = payload.get("text")
            hits.append(
                SearchHit(
                    ordinal=int(point.id),
                    text=text if isinstance(text, str) else "",
                    score=float(point.score),
                )
            )
        return hits

    async def count(self) -> int:
        if not await self._client.collection_exists(self.collection):
            return 0
        result = await self._client.count(collection_name=self.collection, exact=True)
        return result.count

    async def close(self) -> None:
        await self._client.close()
