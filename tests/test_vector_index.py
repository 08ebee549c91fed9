import numpy as np
import pytest

from vector_index import SchemaChunk


def chunk(ordinal, text="type A { id: ID }", dims=4):
    vector = np.zeros(dims, dtype=np.float32)
    vector[ordinal % dims] = 1.0
    return SchemaChunk(ordinal=ordinal, text=text, vector=vector)


@pytest.mark.asyncio
async def test_count_of_missing_collection_is_zero(vector_index):
    assert await vector_index.count() == 0


@pytest.mark.asyncio
async def test_replace_recreates_collection(vector_index):
    assert await vector_index.replace([chunk(i) for i in range(4)]) == 4
    assert await vector_index.replace([chunk(i, dims=8) for i in range(2)]) == 2
    assert await vector_index.count() == 2


@pytest.mark.asyncio
async def test_replace_rejects_mixed_dimensions(vector_index):
    with pytest.raises(ValueError, match="dimensionality"):
        await vector_index.replace([chunk(0, dims=4), chunk(1, dims=8)])
    assert await vector_index.count() == 0


@pytest.mark.asyncio
async def test_replace_rejects_empty_text(vector_index):
    with pytest.raises(ValueError, match="no text"):
        await vector_index.replace([chunk(0), chunk(1, text="")])


@pytest.mark.asyncio
async def test_replace_rejects_zero_chunks(vector_index):
    with pytest.raises(ValueError):
        await vector_index.replace([])


@pytest.mark.asyncio
async def test_search_orders_hits_by_similarity(vector_index):
    await vector_index.replace([chunk(i, text=f"chunk {i}") for i in range(3)])

    hits = await vector_index.search(np.array([0.1, 0.9, 0.2, 0.0], dtype=np.float32), limit=2)

    assert [hit.text for hit in hits] == ["chunk 1", "chunk 2"]
    assert hits[0].score >= hits[1].score
