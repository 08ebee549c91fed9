import pytest

import config
from config import (
    load_embedder_config,
    load_index_config,
    load_server_config,
    parse_header_args,
    parse_json_headers,
)

ENV_VARS = [
    "NAME",
    "ENDPOINT",
    "ALLOW_MUTATIONS",
    "HEADERS",
    "SCHEMA",
    "MCP_API_KEY",
    "HOST",
    "PORT",
    "SESSION_IDLE_TIMEOUT_S",
    "MCP_JSON_RESPONSE",
    "GRAPHQL_TIMEOUT_S",
    "LOG_LEVEL",
    "MCP_INSTRUCTIONS",
    "MCP_ALLOWED_HOSTS",
    "MCP_ALLOWED_ORIGINS",
    "CHUNK_SIZE",
    "CHUNK_OVERLAP",
    "EMBED_CONCURRENCY",
    "REINDEX_POLICY",
    "REINDEX_RETRIES",
    "REINDEX_BACKOFF_S",
    "QDRANT_URL",
    "QDRANT_API_KEY",
    "QDRANT_COLLECTION",
    "GRAPHQL_EMBEDDINGS_URL",
    "GRAPHQL_EMBED_API_KEY",
    "GRAPHQL_EMBED_API_KEY_HEADER",
    "GRAPHQL_EMBED_API_KEY_PREFIX",
    "GRAPHQL_EMBED_HEADERS",
    "GRAPHQL_EMBED_MODEL",
    "EMBED_MODEL",
    "OPENAI_API_KEY",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_server_defaults():
    cfg = load_server_config()

    assert cfg.name == config.DEFAULT_SERVER_NAME
    assert cfg.endpoint == config.DEFAULT_ENDPOINT
    assert cfg.allow_mutations is False
    assert cfg.headers == {}
    assert cfg.schema_path is None
    assert cfg.api_key is None
    assert cfg.port == 3000
    assert cfg.session_idle_timeout_s == 3600
    assert cfg.vector_store.collection == "graphql-schema"
    assert cfg.index.reindex_policy == "stale"
    assert cfg.index.embed_concurrency == 3


def test_server_config_from_environment(monkeypatch):
    monkeypatch.setenv("ENDPOINT", "https://api.example.com/graphql")
    monkeypatch.setenv("ALLOW_MUTATIONS", "true")
    monkeypatch.setenv("HEADERS", '{"Authorization": "Bearer abc"}')
    monkeypatch.setenv("SCHEMA", "schema.graphql")
    monkeypatch.setenv("MCP_API_KEY", "secret")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("REINDEX_POLICY", "Fail-Fast")
    monkeypatch.setenv("MCP_ALLOWED_HOSTS", "localhost:3000, mcp.example.com")

    cfg = load_server_config()

    assert cfg.endpoint == "https://api.example.com/graphql"
    assert cfg.allow_mutations is True
    assert cfg.headers == {"Authorization": "Bearer abc"}
    assert str(cfg.schema_path) == "schema.graphql"
    assert cfg.api_key == "secret"
    assert cfg.port == 8080
    assert cfg.index.reindex_policy == "fail-fast"
    assert cfg.allowed_hosts == ("localhost:3000", "mcp.example.com")
    assert cfg.allowed_origins == ()


@pytest.mark.parametrize(
    "name,value",
    [
        ("ALLOW_MUTATIONS", "yes"),
        ("HEADERS", "{not json"),
        ("HEADERS", '["a", "b"]'),
        ("ENDPOINT", "ftp://example.com/graphql"),
        ("PORT", "eighty"),
        ("REINDEX_POLICY", "sometimes"),
        ("EMBED_CONCURRENCY", "0"),
        ("MCP_ALLOWED_ORIGINS", "http://agent.example"),
    ],
)
def test_invalid_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_server_config()


def test_overlap_must_be_smaller_than_chunk_size(monkeypatch):
    monkeypatch.setenv("CHUNK_SIZE", "100")
    monkeypatch.setenv("CHUNK_OVERLAP", "100")
    with pytest.raises(ValueError, match="CHUNK_OVERLAP"):
        load_index_config()


def test_embedder_api_key_becomes_authorization_header(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("EMBED_MODEL", "nomic-embed-text")

    cfg = load_embedder_config()

    assert cfg.model == "nomic-embed-text"
    assert cfg.resolved_headers() == {"Authorization": "Bearer sk-test"}


def test_explicit_embed_headers_win(monkeypatch):
    monkeypatch.setenv("GRAPHQL_EMBED_API_KEY", "sk-test")
    monkeypatch.setenv("GRAPHQL_EMBED_HEADERS", '{"Authorization": "Token xyz"}')

    assert load_embedder_config().resolved_headers() == {"Authorization": "Token xyz"}


def test_parse_json_headers_stringifies_values():
    assert parse_json_headers('{"X-Retries": 3}', "HEADERS") == {"X-Retries": "3"}
    assert parse_json_headers(None, "HEADERS") == {}


def test_parse_header_args():
    assert parse_header_args(["Authorization: Bearer a:b", "X-Team:core"]) == {
        "Authorization": "Bearer a:b",
        "X-Team": "core",
    }
    with pytest.raises(ValueError):
        parse_header_args(["no-colon"])
    with pytest.raises(ValueError):
        parse_header_args([": value"])
