import asyncio
import re
import zlib

import numpy as np
import pytest
from qdrant_client import AsyncQdrantClient

from schema_indexer import SchemaRetriever
from vector_index import SchemaVectorIndex

EXAMPLE_SCHEMA = "type Query { hello: String } type User { id: ID! name: String }"
FAIL_MARKER = "Broken"


class FakeEmbedder:
    """Bag-of-words vectors without network calls. Texts containing FAIL_MARKER fail."""

    def __init__(self, dims=4096, delay_s=0.005):
        self.dims = dims
        self.delay_s = delay_s
        self.model = "fake-embedder"
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def vector_for(self, text):
        vector = np.zeros(self.dims, dtype=np.float32)
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(token.encode()) % self.dims] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm else vector

    async def close(self):
        self.closed = True

    async def embed_one(self, text):
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay_s)
            if FAIL_MARKER in text:
                raise RuntimeError("Embedding request failed (500): upstream unavailable")
            return self.vector_for(text)
        finally:
            self.in_flight -= 1


def type_block(name, fields=25):
    lines = [f"type {name} {{"]
    lines.extend(f"  field{i:02d}: String" for i in range(fields))
    lines.append("}")
    return "\n".join(lines)


def schema_of(names, fields=25):
    return "\n\n".join(type_block(name, fields) for name in names)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_index():
    return SchemaVectorIndex(AsyncQdrantClient(location=":memory:"), "test-schema")


@pytest.fixture
def retriever(embedder, vector_index):
    return SchemaRetriever(embedder, vector_index, chunk_size=800, chunk_overlap=80, concurrency=3)
