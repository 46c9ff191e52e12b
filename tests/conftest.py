"""
Shared fixtures: an in-memory store and a deterministic embedding client.
"""

from datetime import datetime, timedelta

import numpy as np
import pytest

from catalog_match.core.schema import HistoricalRecord
from catalog_match.vector.embeddings import DeterministicHashEmbedding, EmbeddingClient
from catalog_match.vector.rate_limit import RateLimiter
from catalog_match.vector.store import VersionedVectorStore
from catalog_match.vector.types import IndexEntry

DIM = 1024


def no_sleep(seconds):
    pass


@pytest.fixture
def store():
    store = VersionedVectorStore(":memory:", dimension=DIM, ann_backend="exact", sleep=no_sleep)
    yield store
    store.close()


@pytest.fixture
def client():
    return EmbeddingClient(
        DeterministicHashEmbedding(DIM),
        expected_dimension=DIM,
        rate_limiter=RateLimiter(sleep=no_sleep),
        sleep=no_sleep,
    )


def unit(*values):
    vector = np.asarray(values, dtype=np.float32)
    return vector / np.linalg.norm(vector)


def entry(record_id, vector, catalog_item_id="ITEM", **metadata):
    return IndexEntry(record_id=record_id, vector=np.asarray(vector, dtype=np.float32),
                      catalog_item_id=catalog_item_id, metadata=metadata)


def make_record(record_id, text, catalog_item_id, days_ago=0, **metadata):
    return HistoricalRecord(
        id=record_id,
        text=text,
        catalog_item_id=catalog_item_id,
        timestamp=datetime(2024, 6, 1) - timedelta(days=days_ago),
        metadata=metadata,
    )


SUPPORT_RECORDS = [
    ("r1", "Reset my password please", "PWD_RESET", {"region": "emea"}),
    ("r2", "I forgot my password and cannot sign in", "PWD_RESET", {"region": "amer"}),
    ("r3", "Password expired, need a reset", "PWD_RESET", {"region": "emea"}),
    ("r4", "Laptop screen is broken", "HW_LAPTOP", {"region": "emea"}),
    ("r5", "Need a new laptop for onboarding", "HW_LAPTOP", {"region": "amer"}),
    ("r6", "VPN client keeps disconnecting", "VPN_ACCESS", {"region": "emea"}),
    ("r7", "Request VPN access for contractor", "VPN_ACCESS", {"region": "apac"}),
]


@pytest.fixture
def support_records():
    return [make_record(rid, text, item, **meta) for rid, text, item, meta in SUPPORT_RECORDS]
