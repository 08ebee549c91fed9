from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

DEFAULT_EMBED_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
DEFAULT_EMBED_TIMEOUT_S = 30.0
DEFAULT_QDRANT_URL = "http://localhost:6333"
DEFAULT_COLLECTION = "graphql-schema"
DEFAULT_ENDPOINT = "http://localhost:4000/graphql"
DEFAULT_SERVER_NAME = "mcp-graphql-srv"
DEFAULT_SESSION_IDLE_TIMEOUT_S = 60 * 60
REINDEX_POLICIES = ("stale", "fail-fast", "retry")
_REPO_ROOT = Path(__file__).resolve().parent.parent
ENV_PATHS = [Path.cwd() / ".env", _REPO_ROOT / ".env"]
for _path in ENV_PATHS:
    if _path.exists():
        load_dotenv(_path, override=True)


@dataclass(frozen=True)
class EmbedderConfig:
    embeddings_url: str | None
    api_key: str | None
    api_key_header: str
    api_key_prefix: str
    model: str
    timeout_s: float
    headers: dict[str, str]

    def resolved_headers(self) -> dict[str, str]:
        headers = dict(self.headers)
        if self.api_key and self.api_key_header not in headers:
            headers[self.api_key_header] = f"{self.api_key_prefix}{self.api_key}"
        return headers


@dataclass(frozen=True)
class VectorStoreConfig:
    url: str
    api_key: str | None
    collection: str


@dataclass(frozen=True)
class IndexConfig:
    chunk_size: int = 800
    chunk_overlap: int = 80
    embed_concurrency: int = 3
    reindex_policy: str = "stale"
    reindex_retries: int = 3
    reindex_backoff_s: float = 2.0


@dataclass(frozen=True)
class ServerConfig:
    name: str
    endpoint: str
    allow_mutations: bool
    headers: dict[str, str]
    schema_path: Path | None
    api_key: str | None
    host: str
    port: int
    session_idle_timeout_s: float
    json_response: bool
    graphql_timeout_s: float
    log_level: str
    instructions: str | None = None
    allowed_hosts: tuple[str, ...] = ()
    allowed_origins: tuple[str, ...] = ()
    embedder: EmbedderConfig | None = field(default=None, compare=False)
    vector_store: VectorStoreConfig | None = field(default=None, compare=False)
    index: IndexConfig = field(default_factory=IndexConfig, compare=False)


def parse_json_headers(raw_headers: str | None, variable: str) -> dict[str, str]:
    if not raw_headers:
        return {}
    try:
        parsed = json.loads(raw_headers)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{variable} must be valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{variable} must be a JSON object")
    return {str(key): str(val) for key, val in parsed.items()}


def parse_header_args(raw_headers: list[str] | None) -> dict[str, str]:
    """Parse repeatable `Name: Value` command-line headers."""
    headers: dict[str, str] = {}
    for raw in raw_headers or []:
        if ":" not in raw:
            raise ValueError(f"Invalid header (expected 'Name: Value'): {raw}")
        name, value = raw.split(":", 1)
        name = name.strip()
        value = value.strip()
        if not name:
            raise ValueError(f"Invalid header name in: {raw}")
        headers[name] = value
    return headers


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name) or default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {name} value") from exc


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    value = os.environ.get(name) or default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {name} value") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return parsed


def _env_list(name: str) -> tuple[str, ...]:
    value = os.environ.get(name) or ""
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    if value not in ("true", "false"):
        raise ValueError(f"{name} must be 'true' or 'false'")
    return value == "true"


def load_embedder_config() -> EmbedderConfig:
    headers = parse_json_headers(os.environ.get("GRAPHQL_EMBED_HEADERS"), "GRAPHQL_EMBED_HEADERS")

    embeddings_url = os.environ.get("GRAPHQL_EMBEDDINGS_URL") or DEFAULT_EMBEDDINGS_URL
    api_key = os.environ.get("GRAPHQL_EMBED_API_KEY") or os.environ.get("OPENAI_API_KEY")
    api_key_header = os.environ.get("GRAPHQL_EMBED_API_KEY_HEADER") or "Authorization"
    api_key_prefix = os.environ.get("GRAPHQL_EMBED_API_KEY_PREFIX")
    if api_key_prefix is None:
        api_key_prefix = "Bearer "
    model = (
        os.environ.get("GRAPHQL_EMBED_MODEL")
        or os.environ.get("EMBED_MODEL")
        or DEFAULT_EMBED_MODEL
    )

    return EmbedderConfig(
        embeddings_url=embeddings_url,
        api_key=api_key,
        api_key_header=api_key_header,
        api_key_prefix=api_key_prefix,
        model=model,
        timeout_s=_env_float("GRAPHQL_EMBED_TIMEOUT_S", DEFAULT_EMBED_TIMEOUT_S),
        headers=headers,
    )


def load_vector_store_config() -> VectorStoreConfig:
    return VectorStoreConfig(
        url=os.environ.get("QDRANT_URL") or DEFAULT_QDRANT_URL,
        api_key=os.environ.get("QDRANT_API_KEY") or None,
        collection=os.environ.get("QDRANT_COLLECTION") or DEFAULT_COLLECTION,
    )


def load_index_config() -> IndexConfig:
    policy = (os.environ.get("REINDEX_POLICY") or "stale").strip().lower()
    if policy not in REINDEX_POLICIES:
        raise ValueError(
            f"REINDEX_POLICY must be one of {', '.join(REINDEX_POLICIES)} (got {policy!r})"
        )
    chunk_size = _env_int("CHUNK_SIZE", 800, minimum=1)
    chunk_overlap = _env_int("CHUNK_OVERLAP", 80)
    if chunk_overlap >= chunk_size:
        raise ValueError("CHUNK_OVERLAP must be smaller than CHUNK_SIZE")
    return IndexConfig(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        embed_concurrency=_env_int("EMBED_CONCURRENCY", 3, minimum=1),
        reindex_policy=policy,
        reindex_retries=_env_int("REINDEX_RETRIES", 3),
        reindex_backoff_s=_env_float("REINDEX_BACKOFF_S", 2.0),
    )


def _validate_endpoint(endpoint: str) -> str:
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"ENDPOINT must be an http(s) URL (got {endpoint!r})")
    return endpoint


def load_server_config() -> ServerConfig:
    schema = os.environ.get("SCHEMA")
    allowed_hosts = _env_list("MCP_ALLOWED_HOSTS")
    allowed_origins = _env_list("MCP_ALLOWED_ORIGINS")
    if allowed_origins and not allowed_hosts:
        raise ValueError("MCP_ALLOWED_ORIGINS requires MCP_ALLOWED_HOSTS")
    return ServerConfig(
        name=os.environ.get("NAME") or DEFAULT_SERVER_NAME,
        endpoint=_validate_endpoint(os.environ.get("ENDPOINT") or DEFAULT_ENDPOINT),
        allow_mutations=_env_bool("ALLOW_MUTATIONS", False),
        headers=parse_json_headers(os.environ.get("HEADERS"), "HEADERS"),
        schema_path=Path(schema) if schema else None,
        api_key=os.environ.get("MCP_API_KEY") or None,
        host=os.environ.get("HOST") or "0.0.0.0",
        port=_env_int("PORT", 3000, minimum=1),
        session_idle_timeout_s=_env_float("SESSION_IDLE_TIMEOUT_S", DEFAULT_SESSION_IDLE_TIMEOUT_S),
        json_response=_env_bool("MCP_JSON_RESPONSE", False),
        graphql_timeout_s=_env_float("GRAPHQL_TIMEOUT_S", 30.0),
        log_level=(os.environ.get("LOG_LEVEL") or "INFO").upper(),
        instructions=os.environ.get("MCP_INSTRUCTIONS") or None,
        allowed_hosts=allowed_hosts,
        allowed_origins=allowed_origins,
        embedder=load_embedder_config(),
        vector_store=load_vector_store_config(),
        index=load_index_config(),
    )
