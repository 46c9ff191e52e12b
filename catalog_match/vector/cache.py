"""
Embedding cache keyed by a content hash of the normalized source text.
"""

import hashlib
import sqlite3
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Optional

import numpy as np

from ..core.errors import StorageUnavailable
from ..util.logging import logger


def content_key(text: str, provider_identity: str) -> str:
    """
    Cache key for a normalized text under one provider configuration.

    Args:
        text: Normalized, truncated text
        provider_identity: Model name and dimension of the provider

    Returns:
        SHA-256 hex digest
    """
    return hashlib.sha256(f"{provider_identity}\n{text}".encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Thread-safe LRU cache with optional write-through to SQLite."""

    def __init__(self, max_entries: int = 10000, conn: Optional[sqlite3.Connection] = None,
                 db_lock: Optional[threading.RLock] = None):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._lock = threading.Lock()
        self._conn = conn
        self._db_lock = db_lock or threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[np.ndarray]:
        with self._lock:
            vector = self._entries.get(key)
            if vector is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                return vector

        vector = self._load(key)
        with self._lock:
            if vector is None:
                self.misses += 1
                return None
            self.hits += 1
            self._remember(key, vector)
        return vector

    def put(self, key: str, vector: np.ndarray):
        vector = np.asarray(vector, dtype=np.float32)
        vector.setflags(write=False)
        with self._lock:
            self._remember(key, vector)
        self._store(key, vector)

    def __len__(self) -> int:
        return len(self._entries)

    def _remember(self, key: str, vector: np.ndarray):
        if self.max_entries <= 0:
            return
        self._entries[key] = vector
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def _load(self, key: str) -> Optional[np.ndarray]:
        if self._conn is None:
            return None
        try:
            with self._db_lock:
                row = self._conn.execute(
                    "SELECT vector FROM embedding_cache WHERE cache_key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Embedding cache read failed: {e}") from e
        if row is None:
            return None
        vector = np.frombuffer(row[0], dtype=np.float32).copy()
        vector.setflags(write=False)
        return vector

    def _store(self, key: str, vector: np.ndarray):
        if self._conn is None:
            return
        try:
            with self._db_lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO embedding_cache (cache_key, dimension, vector, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (key, int(vector.shape[0]), vector.tobytes(), datetime.now().isoformat()),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            # best-effort
            logger.warning(f"Embedding cache write failed for {key[:12]}: {e}")
