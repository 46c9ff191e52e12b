"""
Embedding providers and the client that adapts text to unit-length vectors.
Indexing and querying share one normalization/truncation rule so their
vectors stay comparable.
"""

from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
import hashlib
import re
import time
import unicodedata
from typing import Callable, List, Optional, Sequence, Union

import numpy as np
import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.errors import (
    EmbeddingDimensionMismatch,
    InvalidQuery,
    ProviderRejected,
    ProviderUnavailable,
    RateLimited,
)
from ..util.logging import logger, sanitize_details
from .cache import EmbeddingCache, content_key
from .rate_limit import ConcurrencyLimiter, RateLimiter

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def normalize_text(text: str, max_chars: int = 2000) -> str:
    """
    Normalize and truncate text before embedding.

    NFKC-normalizes, collapses whitespace and trims. Text longer than
    `max_chars` is cut to `max_chars`, then back to the last space if one
    falls within the final tenth of the window.

    Raises:
        InvalidQuery: if nothing is left after trimming
    """
    if text is None:
        raise InvalidQuery("text cannot be empty")
    normalized = " ".join(unicodedata.normalize("NFKC", str(text)).split())
    if not normalized:
        raise InvalidQuery("text cannot be empty")
    if max_chars and len(normalized) > max_chars:
        cut = normalized[:max_chars]
        boundary = cut.rfind(" ")
        if boundary >= int(max_chars * 0.9):
            cut = cut[:boundary]
        normalized = cut.rstrip()
    return normalized


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    # Largest number of texts the provider accepts per call
    max_batch_size = 64

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate one embedding per text, in input order."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    @property
    def identity(self) -> str:
        """Stable name of the provider configuration, used in cache keys."""
        return f"{type(self).__name__}:{self.get_dimension()}"

    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        return self.embed_batch([text])[0]


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic feature-hashing embedding provider.

    Every word token is hashed (md5) to one signed dimension, so texts that
    share words get a positive cosine similarity. Needs no model download,
    which makes it the provider for tests and local development.
    """

    max_batch_size = 256

    def __init__(self, dimension: int = 384):
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self.dimension = dimension

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=np.float32)
        tokens = _TOKEN_RE.findall(text.lower()) or [text]
        for token in tokens:
            index, sign = self._bucket(token)
            vector[index] += sign
        if not vector.any():
            # signed tokens cancelled out; fall back to the whole text
            index, sign = self._bucket(text)
            vector[index] = sign
        return vector.tolist()

    def _bucket(self, token: str):
        digest = hashlib.md5(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "little") % self.dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        return index, sign

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension

    @property
    def identity(self) -> str:
        return f"hash:{self.dimension}"


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models."""

    def __init__(self, model_name: str = "all-mpnet-base-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        embeddings = self.model.encode(list(texts), convert_to_numpy=True, normalize_embeddings=True)
        return embeddings.tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension

    @property
    def identity(self) -> str:
        return f"st:{self.model_name}"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class HttpEmbeddingProvider(IEmbeddingProvider):
    """Remote embedding service speaking `{text} -> {vector, dimension}`."""

    max_batch_size = 1

    def __init__(self, endpoint: str, api_key: Optional[str] = None, dimension: Optional[int] = None,
                 timeout: float = 10.0, model_name: str = "remote",
                 session: Optional[requests.Session] = None):
        if not endpoint:
            raise ValueError("endpoint is required")
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.model_name = model_name
        self._dimension = dimension
        self.session = session or requests.Session()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self._post(text) for text in texts]

    def get_dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self._post("dimension check"))
        return self._dimension

    @property
    def identity(self) -> str:
        return f"http:{self.model_name}:{self.get_dimension()}"

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, text: str) -> List[float]:
        try:
            response = self.session.post(
                self.endpoint, json={"text": text}, headers=self._headers(), timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ProviderUnavailable(f"Embedding provider unreachable: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimited(
                "Embedding provider rate limit hit",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise ProviderUnavailable(f"Embedding provider returned {status}", details={"status": status})
        if status >= 400:
            raise ProviderRejected(
                f"Embedding provider rejected input with {status}",
                details=sanitize_details({"status": status, "body": response.text}),
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderRejected("Embedding provider returned a non-JSON body") from e

        vector = payload.get("vector") if isinstance(payload, dict) else None
        if not isinstance(vector, list) or not vector:
            raise ProviderRejected("Embedding provider response has no vector")
        declared = payload.get("dimension", len(vector))
        if declared != len(vector):
            raise ProviderRejected(
                f"Embedding provider declared dimension {declared} but sent {len(vector)} components"
            )
        return vector


class EmbeddingClient:
    """
    Adapts text to unit-length float32 vectors through one provider.

    Retries transient provider failures with exponential backoff, honors
    provider rate-limit hints across all callers, batches and caches calls.
    """

    def __init__(self, provider: IEmbeddingProvider, max_chars: int = 2000, batch_size: int = 32,
                 max_attempts: int = 4, backoff_base: float = 0.5, backoff_max: float = 30.0,
                 rate_limiter: Optional[RateLimiter] = None,
                 concurrency: Optional[ConcurrencyLimiter] = None,
                 cache: Optional[EmbeddingCache] = None,
                 expected_dimension: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.provider = provider
        self.max_chars = max_chars
        self.batch_size = max(1, min(batch_size, provider.max_batch_size))
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.rate_limiter = rate_limiter or RateLimiter()
        self.concurrency = concurrency or ConcurrencyLimiter()
        self.cache = cache if cache is not None else EmbeddingCache()
        self._expected_dimension = expected_dimension
        self._dimension = None
        self._sleep = sleep

    @property
    def dimension(self) -> int:
        """Dimension of every vector this client returns."""
        if self._dimension is None:
            actual = self.provider.get_dimension()
            if self._expected_dimension and actual != self._expected_dimension:
                raise EmbeddingDimensionMismatch(self._expected_dimension, actual)
            self._dimension = actual
        return self._dimension

    def prepare(self, text: str) -> str:
        """Apply the shared normalization/truncation rule."""
        return normalize_text(text, self.max_chars)

    def embed(self, text: str) -> np.ndarray:
        """Embed one text; raises on failure."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str],
                    return_exceptions: bool = False) -> List[Union[np.ndarray, Exception]]:
        """
        Embed texts preserving input order.

        Args:
            texts: Texts to embed
            return_exceptions: Put per-item failures in the result list instead
                of raising the first one

        Returns:
            One vector (or exception) per input text

        Raises:
            EmbeddingDimensionMismatch: always, regardless of return_exceptions
        """
        results: List[Union[np.ndarray, Exception, None]] = [None] * len(texts)
        pending = {}  # cache key -> (normalized text, [positions])
        dimension = self.dimension
        identity = self.provider.identity

        for position, text in enumerate(texts):
            try:
                normalized = self.prepare(text)
            except InvalidQuery as e:
                results[position] = e
                continue
            key = content_key(normalized, identity)
            cached = self.cache.get(key)
            if cached is not None and cached.shape[0] == dimension:
                results[position] = cached
                continue
            pending.setdefault(key, (normalized, []))[1].append(position)

        keys = list(pending)
        for start in range(0, len(keys), self.batch_size):
            chunk = keys[start:start + self.batch_size]
            outcomes = self._embed_chunk([pending[key][0] for key in chunk])
            for key, outcome in zip(chunk, outcomes):
                if not isinstance(outcome, Exception):
                    self.cache.put(key, outcome)
                for position in pending[key][1]:
                    results[position] = outcome

        if not return_exceptions:
            for outcome in results:
                if isinstance(outcome, Exception):
                    raise outcome
        return results

    def _embed_chunk(self, texts: List[str]) -> List[Union[np.ndarray, Exception]]:
        try:
            raw = self._call_with_retry(texts)
        except (ProviderRejected, ProviderUnavailable, RateLimited) as e:
            if len(texts) == 1:
                return [e]
            # isolate the failing input(s); each item gets its own retry budget
            return [self._embed_chunk([text])[0] for text in texts]

        if len(raw) != len(texts):
            error = ProviderRejected(f"Provider returned {len(raw)} vectors for {len(texts)} texts")
            return [error] * len(texts)
        return [self._to_vector(values) for values in raw]

    def _to_vector(self, values) -> Union[np.ndarray, Exception]:
        vector = np.asarray(values, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise EmbeddingDimensionMismatch(self.dimension, int(vector.shape[0]))
        norm = float(np.linalg.norm(vector))
        if not np.isfinite(norm) or norm == 0.0:
            return ProviderRejected("Provider returned a zero or non-finite vector")
        vector = vector / norm
        vector.setflags(write=False)
        return vector

    def _call_with_retry(self, texts: List[str]) -> List[List[float]]:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_provider_hint(wait_exponential(multiplier=self.backoff_base, max=self.backoff_max)),
            retry=retry_if_exception_type((ProviderUnavailable, RateLimited)),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._call_provider, texts)

    def _call_provider(self, texts: List[str]) -> List[List[float]]:
        with self.concurrency:
            self.rate_limiter.acquire()
            started = time.perf_counter()
            try:
                raw = self.provider.embed_batch(texts)
            except (ProviderUnavailable, RateLimited, ProviderRejected) as e:
                logger.log_embedding_call(
                    self.provider.identity, len(texts), (time.perf_counter() - started) * 1000,
                    status="retry" if e.retryable else "failed", details={"code": e.code},
                )
                raise
        logger.log_embedding_call(self.provider.identity, len(texts), (time.perf_counter() - started) * 1000)
        return raw

    def _before_sleep(self, retry_state):
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if isinstance(error, RateLimited):
            self.rate_limiter.penalize(delay)
        logger.warning(
            f"Retrying embedding call in {delay:.2f}s after attempt {retry_state.attempt_number}: {error.code}",
        )


class wait_provider_hint:
    """Tenacity wait strategy that never waits less than a RateLimited hint."""

    def __init__(self, fallback):
        self.fallback = fallback

    def __call__(self, retry_state) -> float:
        delay = self.fallback(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)
        return delay
