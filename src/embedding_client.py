from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import aiohttp
import numpy as np

from config import EmbedderConfig, load_embedder_config

logger = logging.getLogger("graphql-mcp.rag")


class EmbeddingError(RuntimeError):
    pass


class EmbeddingClient:
    """OpenAI-compatible `/embeddings` client returning L2-normalised float32 vectors."""

    def __init__(self, *, config: EmbedderConfig | None = None, model: str | None = None):
        self.config = config or load_embedder_config()
        self.model = model or self.config.model
        self._session: aiohttp.ClientSession | None = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json", "Content-Type": "application/json"}
            headers.update(self.config.resolved_headers())
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_s),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def embed_one(self, text: str) -> np.ndarray:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        body = await self._request({"input": list(texts), "model": self.model})
        return _normalize(_vectors_from_response(body, expected=len(texts)))

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = self.config.embeddings_url
        async with self._client().post(url, json=payload) as resp:
            text = await resp.text()
            status = resp.status
        if status == 401 and not self.config.api_key and self.config.api_key_header not in self.config.headers:
            raise EmbeddingError(
                "Embedding request failed (401): missing API key. "
                "Set GRAPHQL_EMBED_API_KEY or GRAPHQL_EMBED_HEADERS with Authorization."
            )
        if status >= 400:
            logger.debug("Embedding service answered %s: %s", status, text[:200])
            raise EmbeddingError(f"Embedding request failed ({status}): {text.strip()}")
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise EmbeddingError("Embedding response was not valid JSON") from exc


def _vectors_from_response(body: dict[str, Any], *, expected: int) -> np.ndarray:
    if body.get("error"):
        raise EmbeddingError(f"Embedding error: {body['error']}")
    items = body.get("data")
    if not isinstance(items, list) or len(items) != expected:
        raise EmbeddingError("Embedding response missing data")
    # `index` ties each vector to its input position.
    ordered = sorted(items, key=lambda item: item.get("index", 0))
    return np.asarray([item["embedding"] for item in ordered], dtype=np.float32)


def _normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return vectors / norms
