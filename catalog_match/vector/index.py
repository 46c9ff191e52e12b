"""
Vector store contract and the nearest-neighbor index interface behind it.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .types import IndexEntry, SearchHit

MetadataFilter = Union[Mapping[str, object], Callable[[Mapping[str, object]], bool]]


class IVectorStore(ABC):
    """Abstract interface for versioned vector storage operations."""

    @abstractmethod
    def upsert(self, entries: Sequence[IndexEntry], version: int) -> None:
        """Add entries to a version; replaces an existing entry with the same record_id."""
        pass

    @abstractmethod
    def activate(self, version: int, expected_active: Optional[int] = None) -> None:
        """Atomically make a version the one queries read."""
        pass

    @abstractmethod
    def search(self, vector: np.ndarray, k: int, filter: Optional[MetadataFilter] = None,
               exact: bool = False) -> List[SearchHit]:
        """Search the active version and return at most k ranked hits."""
        pass

    @abstractmethod
    def compact(self, retain: Iterable[int]) -> List[int]:
        """Drop entries of versions not in retain; returns the dropped versions."""
        pass


class IAnnIndex(ABC):
    """Nearest-neighbor structure over unit vectors addressed by row position."""

    @abstractmethod
    def add(self, vectors: np.ndarray) -> None:
        """Append rows; their positions continue from the current size."""
        pass

    @abstractmethod
    def search(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (scores, positions) of up to k best rows by inner product."""
        pass

    @property
    @abstractmethod
    def size(self) -> int:
        pass


class ExactIndex(IAnnIndex):
    """Brute-force inner-product index; the correctness reference for ANN backends."""

    def __init__(self, dimension: int):
        self.dimension = dimension
        self._matrix = np.zeros((0, dimension), dtype=np.float32)

    def add(self, vectors: np.ndarray) -> None:
        vectors = np.asarray(vectors, dtype=np.float32).reshape(-1, self.dimension)
        self._matrix = np.vstack([self._matrix, vectors])

    def search(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        return top_k_by_dot(self._matrix, query, k)

    @property
    def size(self) -> int:
        return self._matrix.shape[0]


def top_k_by_dot(matrix: np.ndarray, query: np.ndarray, k: int,
                 positions: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Exact top-k rows of `matrix` by dot product with `query`.

    Args:
        matrix: (n, d) float32 rows
        query: (d,) float32 vector
        k: Number of rows wanted
        positions: Optional subset of row positions to consider

    Returns:
        (scores, positions) sorted by descending score
    """
    if positions is None:
        positions = np.arange(matrix.shape[0])
    n = positions.shape[0]
    if n == 0 or k <= 0:
        return np.zeros(0, dtype=np.float32), np.zeros(0, dtype=np.int64)
    scores = matrix[positions] @ query
    k = min(k, n)
    if k < n:
        best = np.argpartition(-scores, k - 1)[:k]
    else:
        best = np.arange(n)
    order = best[np.argsort(-scores[best], kind="stable")]
    return scores[order], positions[order]


def matches_filter(catalog_item_id: str, metadata: Mapping[str, object],
                   metadata_filter: Optional[MetadataFilter]) -> bool:
    """
    Check one entry against a metadata filter.

    A mapping filter requires equality per key; a list/tuple/set value means
    membership. The key `catalog_item_id` filters on the entry label. A
    callable filter receives the metadata (with `catalog_item_id` added).
    """
    if metadata_filter is None:
        return True
    if callable(metadata_filter):
        return bool(metadata_filter({**metadata, "catalog_item_id": catalog_item_id}))
    for key, expected in metadata_filter.items():
        actual = catalog_item_id if key == "catalog_item_id" else metadata.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def describe_filter(metadata_filter: Optional[MetadataFilter]) -> Optional[Dict[str, object]]:
    """Loggable form of a filter."""
    if metadata_filter is None:
        return None
    if callable(metadata_filter):
        return {"predicate": getattr(metadata_filter, "__name__", "callable")}
    return dict(metadata_filter)
