"""
Configuration validation and component factories.
"""

from catalog_match.core import config
from catalog_match.indexing.pipeline import IndexingPipeline
from catalog_match.query.engine import QueryEngine
from catalog_match.vector.embeddings import DeterministicHashEmbedding, EmbeddingClient, HttpEmbeddingProvider


def test_validate_config_flags_bad_values(monkeypatch):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "bogus")
    monkeypatch.setattr(config, "ANN_BACKEND", "lsh")
    monkeypatch.setattr(config, "INDEX_MAX_FAILURE_RATE", 1.5)
    monkeypatch.setattr(config, "QUERY_DEFAULT_TOP_K", 100)
    monkeypatch.setattr(config, "QUERY_MAX_TOP_K", 50)

    issues = config.validate_config()

    assert "Invalid EMBED_PROVIDER: bogus" in issues
    assert "Invalid ANN_BACKEND: lsh" in issues
    assert any("INDEX_MAX_FAILURE_RATE" in issue for issue in issues)
    assert any("QUERY_DEFAULT_TOP_K" in issue for issue in issues)


def test_http_provider_requires_endpoint(monkeypatch):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "http")
    monkeypatch.setattr(config, "EMBED_ENDPOINT", "")

    assert "EMBED_PROVIDER=http requires EMBED_ENDPOINT" in config.validate_config()


def test_open_admin_surface_is_flagged(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_ENABLED", True)
    monkeypatch.setattr(config, "ADMIN_AUTH_TOKEN", None)

    assert any("ADMIN_AUTH_TOKEN" in issue for issue in config.validate_config())


def test_embedding_provider_factory(monkeypatch):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "hash")
    monkeypatch.setattr(config, "EMBED_DIM", 64)
    provider = config.get_embedding_provider()
    assert isinstance(provider, DeterministicHashEmbedding)
    assert provider.get_dimension() == 64

    monkeypatch.setattr(config, "EMBED_PROVIDER", "http")
    monkeypatch.setattr(config, "EMBED_ENDPOINT", "http://embed.local/v1")
    assert isinstance(config.get_embedding_provider(), HttpEmbeddingProvider)


def test_component_factories_share_store(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "hash")
    monkeypatch.setattr(config, "EMBED_DIM", 32)
    monkeypatch.setattr(config, "EMBED_CACHE_PERSIST", True)

    store = config.get_vector_store(str(tmp_path / "catalog.db"))
    try:
        client = config.get_embedding_client(store)
        assert isinstance(client, EmbeddingClient)
        assert store.dimension == client.dimension == 32

        client.embed("persist me")
        rows = store.conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]
        assert rows == 1

        assert isinstance(config.get_indexing_pipeline(store, client), IndexingPipeline)
        assert isinstance(config.get_query_engine(store, client), QueryEngine)
    finally:
        store.close()


def test_query_pool_matches_provider_concurrency(monkeypatch, store, client):
    monkeypatch.setattr(config, "EMBED_MAX_CONCURRENCY", 3)
    engine = config.get_query_engine(store, client)
    try:
        assert engine.max_workers == 3
    finally:
        engine.shutdown()

    monkeypatch.setattr(config, "EMBED_MAX_CONCURRENCY", 0)
    engine = config.get_query_engine(store, client)
    try:
        assert engine.max_workers == 8
    finally:
        engine.shutdown()
