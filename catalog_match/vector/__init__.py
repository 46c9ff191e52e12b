"""
Embedding and vector storage layer: text -> unit vectors -> versioned,
searchable index snapshots.
"""

# Package initialization for vector module
from .index import IVectorStore, ExactIndex
from .faiss_store import FaissHnswIndex
from .store import VersionedVectorStore
from .types import IndexEntry, SearchHit
from .embeddings import (
    IEmbeddingProvider,
    DeterministicHashEmbedding,
    SentenceTransformerEmbedding,
    HttpEmbeddingProvider,
    EmbeddingClient,
)

__all__ = [
    'IVectorStore',
    'ExactIndex',
    'FaissHnswIndex',
    'VersionedVectorStore',
    'IndexEntry',
    'SearchHit',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'HttpEmbeddingProvider',
    'EmbeddingClient',
]
