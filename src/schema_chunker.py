from __future__ import annotations

from langchain_text_splitters import RecursiveCharacterTextSplitter

DEFAULT_CHUNK_SIZE = 800
DEFAULT_CHUNK_OVERLAP = 80

# Definition boundaries first, then generic whitespace.
SCHEMA_SEPARATORS = [
    "\n\ntype ",
    "\n\ninterface ",
    "\n\nenum ",
    "\n\ninput ",
    "\n\nscalar ",
    "\n\ndirective ",
    "\n\nunion ",
    "\n\n",
    "\n",
    " ",
    "",
]


def build_splitter(
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> RecursiveCharacterTextSplitter:
    # keep_separator="start" carries "type Foo" etc. into the chunk it introduces
    return RecursiveCharacterTextSplitter(
        separators=SCHEMA_SEPARATORS,
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        keep_separator="start",
    )


def split_schema(
    schema_text: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """Split SDL into ordered, overlapping chunks aligned to definition boundaries."""
    splitter = build_splitter(chunk_size, chunk_overlap)
    return [chunk for chunk in splitter.split_text(schema_text) if chunk.strip()]
