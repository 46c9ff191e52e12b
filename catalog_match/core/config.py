"""
Runtime configuration read from environment variables, plus factories that
assemble the configured components.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/catalog_match.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Embedding provider
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence-transformers|http
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-mpnet-base-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_ENDPOINT = os.getenv("EMBED_ENDPOINT", "")
EMBED_API_KEY = os.getenv("EMBED_API_KEY")
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "10"))
EMBED_MAX_CHARS = int(os.getenv("EMBED_MAX_CHARS", "2000"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "32"))
EMBED_MAX_ATTEMPTS = int(os.getenv("EMBED_MAX_ATTEMPTS", "4"))
EMBED_BACKOFF_BASE_SEC = float(os.getenv("EMBED_BACKOFF_BASE_SEC", "0.5"))
EMBED_BACKOFF_MAX_SEC = float(os.getenv("EMBED_BACKOFF_MAX_SEC", "30"))
EMBED_RATE_LIMIT_PER_SEC = float(os.getenv("EMBED_RATE_LIMIT_PER_SEC", "0"))  # 0 = unlimited
EMBED_MAX_CONCURRENCY = int(os.getenv("EMBED_MAX_CONCURRENCY", "4"))
EMBED_CACHE_SIZE = int(os.getenv("EMBED_CACHE_SIZE", "10000"))
EMBED_CACHE_PERSIST = os.getenv("EMBED_CACHE_PERSIST", "true").lower() == "true"

# Vector store / ANN index
ANN_BACKEND = os.getenv("ANN_BACKEND", "hnsw")  # hnsw|exact
ANN_HNSW_M = int(os.getenv("ANN_HNSW_M", "32"))
ANN_EF_CONSTRUCTION = int(os.getenv("ANN_EF_CONSTRUCTION", "200"))
ANN_EF_SEARCH = int(os.getenv("ANN_EF_SEARCH", "128"))
ANN_MIN_ENTRIES = int(os.getenv("ANN_MIN_ENTRIES", "256"))
ANN_FILTER_OVERFETCH = int(os.getenv("ANN_FILTER_OVERFETCH", "4"))

# Indexing pipeline
INDEX_BATCH_SIZE = int(os.getenv("INDEX_BATCH_SIZE", "64"))
INDEX_CONCURRENCY = int(os.getenv("INDEX_CONCURRENCY", "4"))
INDEX_MAX_FAILURE_RATE = float(os.getenv("INDEX_MAX_FAILURE_RATE", "0.1"))
INDEX_AUTO_COMPACT = os.getenv("INDEX_AUTO_COMPACT", "false").lower() == "true"
INDEX_RETAIN_VERSIONS = int(os.getenv("INDEX_RETAIN_VERSIONS", "2"))

# Query engine
QUERY_DEFAULT_TOP_K = int(os.getenv("QUERY_DEFAULT_TOP_K", "5"))
QUERY_MAX_TOP_K = int(os.getenv("QUERY_MAX_TOP_K", "50"))
QUERY_OVERFETCH = int(os.getenv("QUERY_OVERFETCH", "5"))
QUERY_TIMEOUT_SEC = float(os.getenv("QUERY_TIMEOUT_SEC", "2.0"))

# Ranking
RANK_SUPPORT_WEIGHT = float(os.getenv("RANK_SUPPORT_WEIGHT", "0.15"))
RANK_SUPPORT_CAP = int(os.getenv("RANK_SUPPORT_CAP", "10"))
RANK_HALF_LIFE_DAYS = float(os.getenv("RANK_HALF_LIFE_DAYS", "0"))  # 0 disables recency decay
RANK_MIN_SIMILARITY = float(os.getenv("RANK_MIN_SIMILARITY", "-1.0"))

# Admin surface
ADMIN_API_ENABLED = os.getenv("ADMIN_API_ENABLED", "false").lower() == "true"
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN")

VERSION = "1.0.0"

EMBED_PROVIDERS = ["hash", "sentence-transformers", "http"]
ANN_BACKENDS = ["hnsw", "exact"]


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def admin_api_enabled():
    """Check if the administrative endpoints are enabled."""
    return os.getenv("ADMIN_API_ENABLED", "false").lower() == "true"


def admin_auth_token():
    return os.getenv("ADMIN_AUTH_TOKEN") or None


def get_embedding_provider():
    """Get the configured embedding provider implementation."""
    from ..vector.embeddings import (
        DeterministicHashEmbedding,
        HttpEmbeddingProvider,
        SentenceTransformerEmbedding,
    )
    if EMBED_PROVIDER == "sentence-transformers":
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)
    if EMBED_PROVIDER == "http":
        return HttpEmbeddingProvider(
            endpoint=EMBED_ENDPOINT,
            api_key=EMBED_API_KEY,
            dimension=EMBED_DIM,
            timeout=EMBED_TIMEOUT_SEC,
            model_name=EMBED_MODEL_NAME,
        )
    return DeterministicHashEmbedding(EMBED_DIM)


def get_vector_store(db_path: str = None):
    """Open the configured versioned vector store."""
    from ..vector.store import VersionedVectorStore
    return VersionedVectorStore(
        db_path=db_path or DB_PATH,
        dimension=EMBED_DIM,
        ann_backend=ANN_BACKEND,
        hnsw_m=ANN_HNSW_M,
        ef_construction=ANN_EF_CONSTRUCTION,
        ef_search=ANN_EF_SEARCH,
        ann_min_entries=ANN_MIN_ENTRIES,
        filter_overfetch=ANN_FILTER_OVERFETCH,
    )


def get_embedding_client(store=None, provider=None):
    """
    Build the embedding client around the configured provider.

    When a store is given and EMBED_CACHE_PERSIST is on, the cache writes
    through to the store's SQLite database.
    """
    from ..vector.cache import EmbeddingCache
    from ..vector.embeddings import EmbeddingClient
    from ..vector.rate_limit import ConcurrencyLimiter, RateLimiter

    if store is not None and EMBED_CACHE_PERSIST:
        cache = EmbeddingCache(EMBED_CACHE_SIZE, conn=store.conn, db_lock=store.db_lock)
    else:
        cache = EmbeddingCache(EMBED_CACHE_SIZE)

    return EmbeddingClient(
        provider or get_embedding_provider(),
        max_chars=EMBED_MAX_CHARS,
        batch_size=EMBED_BATCH_SIZE,
        max_attempts=EMBED_MAX_ATTEMPTS,
        backoff_base=EMBED_BACKOFF_BASE_SEC,
        backoff_max=EMBED_BACKOFF_MAX_SEC,
        rate_limiter=RateLimiter(EMBED_RATE_LIMIT_PER_SEC),
        concurrency=ConcurrencyLimiter(EMBED_MAX_CONCURRENCY),
        cache=cache,
        expected_dimension=EMBED_DIM,
    )


def get_ranking_policy():
    from ..query.ranking import RankingPolicy
    return RankingPolicy(
        support_weight=RANK_SUPPORT_WEIGHT,
        support_cap=RANK_SUPPORT_CAP,
        half_life_days=RANK_HALF_LIFE_DAYS or None,
        min_similarity=RANK_MIN_SIMILARITY,
    )


def get_indexing_pipeline(store, client):
    from ..indexing.pipeline import IndexingPipeline
    return IndexingPipeline(
        store,
        client,
        batch_size=INDEX_BATCH_SIZE,
        concurrency=INDEX_CONCURRENCY,
        max_failure_rate=INDEX_MAX_FAILURE_RATE,
        auto_compact=INDEX_AUTO_COMPACT,
        retain_versions=INDEX_RETAIN_VERSIONS,
    )


def get_query_engine(store, client):
    from ..query.engine import QueryEngine
    return QueryEngine(
        store,
        client,
        default_top_k=QUERY_DEFAULT_TOP_K,
        max_top_k=QUERY_MAX_TOP_K,
        overfetch=QUERY_OVERFETCH,
        timeout=QUERY_TIMEOUT_SEC,
        policy=get_ranking_policy(),
        max_workers=EMBED_MAX_CONCURRENCY or 8,
    )


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if EMBED_PROVIDER not in EMBED_PROVIDERS:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if EMBED_PROVIDER == "http" and not EMBED_ENDPOINT:
        issues.append("EMBED_PROVIDER=http requires EMBED_ENDPOINT")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if EMBED_MAX_ATTEMPTS < 1:
        issues.append("EMBED_MAX_ATTEMPTS must be >= 1")

    if EMBED_RATE_LIMIT_PER_SEC < 0:
        issues.append("EMBED_RATE_LIMIT_PER_SEC must be >= 0")

    if ANN_BACKEND not in ANN_BACKENDS:
        issues.append(f"Invalid ANN_BACKEND: {ANN_BACKEND}")

    if ANN_EF_SEARCH < 1:
        issues.append("ANN_EF_SEARCH must be >= 1")

    if not 0.0 <= INDEX_MAX_FAILURE_RATE <= 1.0:
        issues.append("INDEX_MAX_FAILURE_RATE must be within [0, 1]")

    if INDEX_RETAIN_VERSIONS < 1:
        issues.append("INDEX_RETAIN_VERSIONS must be >= 1")

    if not 1 <= QUERY_DEFAULT_TOP_K <= QUERY_MAX_TOP_K:
        issues.append("QUERY_DEFAULT_TOP_K must be between 1 and QUERY_MAX_TOP_K")

    if QUERY_OVERFETCH < 1:
        issues.append("QUERY_OVERFETCH must be >= 1")

    if QUERY_TIMEOUT_SEC <= 0:
        issues.append("QUERY_TIMEOUT_SEC must be > 0")

    if ADMIN_API_ENABLED and not ADMIN_AUTH_TOKEN:
        issues.append("ADMIN_API_ENABLED without ADMIN_AUTH_TOKEN leaves admin endpoints open")

    return issues
