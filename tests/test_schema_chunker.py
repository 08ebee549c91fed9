from conftest import EXAMPLE_SCHEMA, schema_of, type_block
from schema_chunker import split_schema


def test_small_schema_is_one_chunk():
    assert split_schema(EXAMPLE_SCHEMA) == [EXAMPLE_SCHEMA]


def test_blank_schema_yields_no_chunks():
    assert split_schema("") == []
    assert split_schema("\n\n   \n") == []


def test_chunks_align_to_type_boundaries():
    names = [f"Entity{i}" for i in range(10)]
    chunks = split_schema(schema_of(names))

    assert len(chunks) == 10
    for name, chunk in zip(names, chunks):
        assert chunk.startswith(f"type {name} {{")
        assert chunk.endswith("}")


def test_chunks_respect_size_limit():
    chunks = split_schema(schema_of([f"Entity{i}" for i in range(6)]), chunk_size=300, chunk_overlap=30)
    assert chunks
    assert all(len(chunk) <= 300 for chunk in chunks)


def test_oversized_definition_is_split_with_overlap():
    chunks = split_schema(type_block("Huge", fields=120), chunk_size=800, chunk_overlap=80)

    assert len(chunks) > 1
    assert chunks[0].startswith("type Huge {")
    for previous, current in zip(chunks, chunks[1:]):
        assert current.splitlines()[0] in previous


def test_chunk_order_follows_schema_order():
    text = "\n\n".join(
        [
            type_block("Alpha"),
            "enum Color {\n  RED\n  GREEN\n}",
            type_block("Omega"),
        ]
    )
    chunks = split_schema(text, chunk_size=500, chunk_overlap=0)
    joined = "\n".join(chunks)
    assert joined.index("type Alpha") < joined.index("enum Color") < joined.index("type Omega")
