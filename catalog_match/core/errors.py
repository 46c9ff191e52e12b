"""
Error taxonomy for the recommendation engine.
Every error carries a stable machine-readable code and the HTTP status the
search API answers with.
"""

from typing import Any, Dict, Optional


class CatalogMatchError(Exception):
    """Base class for all engine errors."""

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to the API error payload."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# Embedding Client

class ProviderUnavailable(CatalogMatchError):
    """Embedding provider unreachable or answering 5xx."""
    code = "PROVIDER_UNAVAILABLE"
    http_status = 503
    retryable = True


class ProviderRejected(CatalogMatchError):
    """Embedding provider refused the input (4xx, malformed response)."""
    code = "PROVIDER_REJECTED"
    http_status = 502


class RateLimited(CatalogMatchError):
    """Embedding provider asked us to slow down."""
    code = "RATE_LIMITED"
    http_status = 429
    retryable = True

    def __init__(self, message: str = "", retry_after: Optional[float] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details.setdefault("retry_after", retry_after)


# Vector Store

class StorageUnavailable(CatalogMatchError):
    """Vector store backend cannot be read or written."""
    code = "STORAGE_UNAVAILABLE"
    http_status = 503
    retryable = True


class VersionConflict(CatalogMatchError):
    """Operation collides with the lifecycle of an index version."""
    code = "VERSION_CONFLICT"
    http_status = 409


class IndexRunInProgress(VersionConflict):
    """Another indexing run already owns the target index."""
    code = "INDEX_RUN_IN_PROGRESS"


# Query Engine

class InvalidQuery(CatalogMatchError, ValueError):
    """Client supplied an unusable query."""
    code = "INVALID_QUERY"
    http_status = 400


class QueryTimeout(CatalogMatchError):
    """Query did not finish within its deadline."""
    code = "QUERY_TIMEOUT"
    http_status = 504


class IndexNotReady(CatalogMatchError):
    """No index version has been activated yet."""
    code = "INDEX_NOT_READY"
    http_status = 503


# Indexing Pipeline

class IndexRunFailed(CatalogMatchError):
    """Indexing run aborted on a fatal condition."""
    code = "INDEX_RUN_FAILED"
    http_status = 500


# Configuration

class ConfigurationError(CatalogMatchError):
    """Deployment is misconfigured; retrying will not help."""
    code = "CONFIGURATION_ERROR"
    http_status = 500


class EmbeddingDimensionMismatch(ConfigurationError):
    """Provider returned vectors of an unexpected dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension {actual} does not match expected dimension {expected}",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual

