"""
Online query path: embed the query, search the active index version, and
aggregate record-level hits into ranked catalog recommendations.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import IndexNotReady, InvalidQuery, QueryTimeout
from ..core.schema import Recommendation
from ..util.logging import logger
from ..vector.embeddings import EmbeddingClient
from ..vector.store import VersionedVectorStore
from .ranking import DEFAULT_POLICY, RankingPolicy, aggregate_hits


@dataclass
class SearchResult:
    """Ranked recommendations for one query."""
    recommendations: List[Recommendation]
    index_version: Optional[int]
    hit_count: int
    latency_ms: float
    degraded: bool = False
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendations": [r.to_dict() for r in self.recommendations],
            "index_version": self.index_version,
            "hit_count": self.hit_count,
            "latency_ms": self.latency_ms,
            "degraded": self.degraded,
            "notes": self.notes,
        }


class _Cancelled(Exception):
    pass


class QueryEngine:
    """Serves concurrent, independent queries against the active index version.

    Queries run on a pool of `max_workers` threads. A query that times out
    still holds its worker until the embedding call returns, so a hung
    provider can fill the pool; later queries then time out while queued.
    Size the pool to the provider concurrency limit.
    """

    def __init__(self, store: VersionedVectorStore, client: EmbeddingClient,
                 default_top_k: int = 5, max_top_k: int = 50, overfetch: int = 5,
                 timeout: Optional[float] = 2.0, policy: RankingPolicy = DEFAULT_POLICY,
                 max_workers: int = 8, exact: bool = False):
        if overfetch < 1:
            raise ValueError("overfetch must be >= 1")
        self.store = store
        self.client = client
        self.default_top_k = default_top_k
        self.max_top_k = max_top_k
        self.overfetch = overfetch
        self.timeout = timeout
        self.policy = policy
        self.exact = exact
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="query")

    def search(self, query_text: str, top_k: Optional[int] = None,
               filters: Optional[Mapping[str, Any]] = None,
               timeout: Optional[float] = None) -> SearchResult:
        """
        Recommend catalog items for a free-text query.

        Args:
            query_text: Free-text request; blank text is an error
            top_k: Number of recommendations (default: configured)
            filters: Metadata filter applied to the historical records
            timeout: Seconds before QueryTimeout (default: configured)

        Raises:
            InvalidQuery, IndexNotReady, QueryTimeout, and embedding errors
        """
        started = time.perf_counter()
        top_k = self._validate_top_k(top_k)
        if not isinstance(query_text, str):
            raise InvalidQuery("queryText must be a string")
        if filters is not None and not isinstance(filters, Mapping) and not callable(filters):
            raise InvalidQuery("filters must be a mapping")
        normalized = self.client.prepare(query_text)

        if self.store.active_version is None:
            raise IndexNotReady("No index version is active yet")

        timeout = self.timeout if timeout is None else timeout
        cancelled = threading.Event()
        future = self._executor.submit(self._execute, normalized, top_k, filters, cancelled)
        try:
            result = future.result(timeout=timeout)
        except FuturesTimeout:
            cancelled.set()
            future.cancel()
            latency_ms = (time.perf_counter() - started) * 1000
            logger.log_query(normalized, top_k, latency_ms, status="failed", details={"code": QueryTimeout.code})
            raise QueryTimeout(
                f"Query exceeded {timeout:.3f}s",
                details={"timeout_sec": timeout},
            ) from None

        result.latency_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.log_query(
            normalized, top_k, result.latency_ms,
            status="degraded" if result.degraded else "success",
            details={"version": result.index_version, "hits": result.hit_count,
                     "recommendations": len(result.recommendations)},
        )
        return result

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _validate_top_k(self, top_k: Optional[int]) -> int:
        if top_k is None:
            return self.default_top_k
        if isinstance(top_k, bool) or not isinstance(top_k, int):
            raise InvalidQuery("topK must be an integer")
        if top_k < 1 or top_k > self.max_top_k:
            raise InvalidQuery(f"topK must be between 1 and {self.max_top_k}", details={"top_k": top_k})
        return top_k

    def _execute(self, normalized: str, top_k: int, filters, cancelled: threading.Event) -> SearchResult:
        vector = self.client.embed(normalized)
        if cancelled.is_set():
            raise _Cancelled()

        k = top_k * self.overfetch
        hits = self.store.search(vector, k, filter=filters, exact=self.exact)
        if cancelled.is_set():
            raise _Cancelled()

        recommendations = aggregate_hits(hits, top_k, self.policy)
        version = hits[0].index_version if hits else self.store.active_version

        notes = []
        degraded = False
        if len(recommendations) < top_k and len(hits) >= k:
            # raw hits were cut off before enough distinct items were seen
            degraded = True
            notes.append(f"only {len(recommendations)} distinct catalog items among {len(hits)} hits")

        return SearchResult(
            recommendations=recommendations,
            index_version=version,
            hit_count=len(hits),
            latency_ms=0.0,
            degraded=degraded,
            notes=notes,
        )
