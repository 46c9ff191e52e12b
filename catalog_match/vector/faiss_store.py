"""
FAISS-backed approximate nearest-neighbor index (HNSW graph, inner product).
"""

from typing import Tuple

import faiss
import numpy as np

from .index import IAnnIndex


class FaissHnswIndex(IAnnIndex):
    """HNSW graph over unit vectors; inner product equals cosine similarity.

    `ef_search` is the recall/latency knob: the size of the candidate list
    kept while walking the graph. Larger values raise recall towards the
    exact result at the cost of query time. Build is O(n log n), each insert
    O(log n) amortized.
    """

    def __init__(self, dimension: int, m: int = 32, ef_construction: int = 200, ef_search: int = 128):
        """
        Initialize the HNSW index.

        Args:
            dimension: Dimension of the vectors
            m: Graph neighbors per node
            ef_construction: Candidate list size while inserting
            ef_search: Candidate list size while searching
        """
        self.dimension = dimension
        self.ef_search = ef_search
        self.index = faiss.IndexHNSWFlat(dimension, m, faiss.METRIC_INNER_PRODUCT)
        self.index.hnsw.efConstruction = ef_construction
        self.index.hnsw.efSearch = ef_search

    def add(self, vectors: np.ndarray) -> None:
        """Add unit vectors to the graph."""
        vectors = np.ascontiguousarray(vectors, dtype=np.float32).reshape(-1, self.dimension)
        if vectors.shape[0]:
            self.index.add(vectors)

    def search(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Search for the k most similar rows."""
        if not self.index.ntotal or k <= 0:
            return np.zeros(0, dtype=np.float32), np.zeros(0, dtype=np.int64)

        k = min(k, self.index.ntotal)
        query_array = np.ascontiguousarray(query, dtype=np.float32).reshape(1, -1)
        params = faiss.SearchParametersHNSW(efSearch=max(self.ef_search, k))
        scores, positions = self.index.search(query_array, k, params=params)

        # FAISS pads with -1 when fewer than k neighbors were reached
        valid = positions[0] >= 0
        return scores[0][valid], positions[0][valid].astype(np.int64)

    @property
    def size(self) -> int:
        return int(self.index.ntotal)
