"""
Versioned vector store: upsert, activation, search ordering, filters,
compaction, persistence and ANN recall.
"""

import threading

import numpy as np
import pytest

from catalog_match.core.errors import EmbeddingDimensionMismatch, VersionConflict
from catalog_match.vector.faiss_store import FaissHnswIndex
from catalog_match.vector.index import ExactIndex, matches_filter
from catalog_match.vector.store import ACTIVE, COMPACTED, FAILED, RETIRED, VersionedVectorStore

from conftest import entry, no_sleep, unit


@pytest.fixture
def small_store():
    store = VersionedVectorStore(":memory:", dimension=3, ann_backend="exact", sleep=no_sleep)
    yield store
    store.close()


def build(store, entries, base_version=None):
    version = store.begin_version(base_version=base_version)
    store.upsert(entries, version)
    store.activate(version)
    return version


def test_search_without_active_version_is_empty(small_store):
    assert small_store.active_version is None
    assert small_store.search(unit(1, 0, 0), k=5) == []


def test_upsert_is_idempotent_within_a_version(small_store):
    version = small_store.begin_version()
    small_store.upsert([entry("r1", unit(1, 0, 0), "A")], version)
    small_store.upsert([entry("r1", unit(0, 1, 0), "B")], version)

    assert small_store.count(version) == 1
    small_store.activate(version)
    hits = small_store.search(unit(0, 1, 0), k=5)
    assert [(h.record_id, h.catalog_item_id) for h in hits] == [("r1", "B")]
    assert hits[0].similarity_score == pytest.approx(1.0)


def test_search_orders_by_similarity(small_store):
    build(small_store, [
        entry("near", unit(1, 0.1, 0), "A"),
        entry("far", unit(0, 0, 1), "B"),
        entry("mid", unit(1, 1, 0), "C"),
    ])

    hits = small_store.search(unit(1, 0, 0), k=3)

    assert [h.record_id for h in hits] == ["near", "mid", "far"]
    assert all(h.index_version == small_store.active_version for h in hits)


def test_ties_break_by_record_id(small_store):
    vector = unit(1, 1, 0)
    build(small_store, [entry(rid, vector) for rid in ["r3", "r1", "r2"]])

    hits = small_store.search(vector, k=2)

    assert [h.record_id for h in hits] == ["r1", "r2"]


def test_search_is_deterministic(small_store):
    rng = np.random.default_rng(7)
    build(small_store, [entry(f"r{i}", rng.normal(size=3)) for i in range(50)])
    query = rng.normal(size=3)

    first = small_store.search(query, k=10)
    second = small_store.search(query, k=10)

    assert [(h.record_id, h.similarity_score) for h in first] == \
        [(h.record_id, h.similarity_score) for h in second]


def test_zero_vector_and_wrong_dimension_rejected(small_store):
    version = small_store.begin_version()
    with pytest.raises(ValueError):
        small_store.upsert([entry("r1", np.zeros(3))], version)
    with pytest.raises(EmbeddingDimensionMismatch):
        small_store.upsert([entry("r1", np.ones(4))], version)


def test_sealed_versions_reject_writes(small_store):
    version = build(small_store, [entry("r1", unit(1, 0, 0))])

    with pytest.raises(VersionConflict):
        small_store.upsert([entry("r2", unit(0, 1, 0))], version)


def test_activation_swaps_versions_and_retires_previous(small_store):
    v1 = build(small_store, [entry("old", unit(1, 0, 0), "OLD")])
    v2 = build(small_store, [entry("new", unit(1, 0, 0), "NEW")])

    statuses = {v["version"]: v["status"] for v in small_store.versions()}
    assert statuses == {v1: RETIRED, v2: ACTIVE}
    assert [h.catalog_item_id for h in small_store.search(unit(1, 0, 0), k=5)] == ["NEW"]


def test_activation_compare_and_swap(small_store):
    v1 = build(small_store, [entry("r1", unit(1, 0, 0))])
    v2 = small_store.begin_version()
    small_store.upsert([entry("r2", unit(0, 1, 0))], v2)

    with pytest.raises(VersionConflict):
        small_store.activate(v2, expected_active=None)
    assert small_store.active_version == v1

    small_store.activate(v2, expected_active=v1)
    assert small_store.active_version == v2


def test_empty_version_cannot_be_activated(small_store):
    version = small_store.begin_version()
    with pytest.raises(VersionConflict):
        small_store.activate(version)


def test_retired_version_can_be_reactivated(small_store):
    v1 = build(small_store, [entry("r1", unit(1, 0, 0), "A")])
    build(small_store, [entry("r2", unit(1, 0, 0), "B")])

    small_store.activate(v1)

    assert small_store.active_version == v1
    assert small_store.search(unit(1, 0, 0), k=1)[0].catalog_item_id == "A"


def test_incremental_version_copies_base_entries(small_store):
    v1 = build(small_store, [entry("r1", unit(1, 0, 0), "A"), entry("r2", unit(0, 1, 0), "B")])
    v2 = small_store.begin_version(base_version=v1)
    small_store.upsert([entry("r2", unit(0, 1, 0), "B2"), entry("r3", unit(0, 0, 1), "C")], v2)
    small_store.activate(v2)

    assert small_store.count() == 3
    assert small_store.get_entry("r2").catalog_item_id == "B2"
    assert small_store.get_entry("r2", version=v1).catalog_item_id == "B"


def test_discard_marks_version_failed(small_store):
    version = small_store.begin_version()
    small_store.upsert([entry("r1", unit(1, 0, 0))], version)
    small_store.discard(version)

    statuses = {v["version"]: v["status"] for v in small_store.versions()}
    assert statuses[version] == FAILED
    with pytest.raises(VersionConflict):
        small_store.activate(version)


def test_compaction_keeps_active_and_retained(small_store):
    v1 = build(small_store, [entry("r1", unit(1, 0, 0))])
    v2 = build(small_store, [entry("r1", unit(0, 1, 0))])
    v3 = build(small_store, [entry("r1", unit(0, 0, 1))])

    with pytest.raises(VersionConflict):
        small_store.compact(retain={v1})

    dropped = small_store.compact(retain={v2, v3})

    assert dropped == [v1]
    statuses = {v["version"]: v["status"] for v in small_store.versions()}
    assert statuses == {v1: COMPACTED, v2: RETIRED, v3: ACTIVE}
    assert small_store.count(v1) == 0


def test_metadata_filters(small_store):
    build(small_store, [
        entry("r1", unit(1, 0, 0), "A", region="emea"),
        entry("r2", unit(1, 0.1, 0), "B", region="amer"),
        entry("r3", unit(1, 0.2, 0), "C", region="apac"),
    ])
    query = unit(1, 0, 0)

    assert [h.record_id for h in small_store.search(query, 5, filter={"region": "amer"})] == ["r2"]
    assert [h.record_id for h in small_store.search(query, 5, filter={"region": ["apac", "emea"]})] == ["r1", "r3"]
    assert [h.record_id for h in small_store.search(query, 5, filter={"catalog_item_id": "C"})] == ["r3"]
    assert [h.record_id for h in small_store.search(query, 5, filter=lambda m: m["region"] != "emea")] == ["r2", "r3"]


def test_matches_filter_missing_key_fails():
    assert matches_filter("A", {}, {"region": "emea"}) is False
    assert matches_filter("A", {"region": "emea"}, None) is True


def test_persistence_restores_active_version(tmp_path):
    db_path = str(tmp_path / "index.db")
    store = VersionedVectorStore(db_path, dimension=3, ann_backend="exact", sleep=no_sleep)
    version = build(store, [entry("r1", unit(1, 0, 0), "A", region="emea")])
    interrupted = store.begin_version()
    store.close()

    reopened = VersionedVectorStore(db_path, dimension=3, ann_backend="exact", sleep=no_sleep)
    try:
        assert reopened.active_version == version
        hit = reopened.search(unit(1, 0, 0), k=1)[0]
        assert (hit.record_id, hit.catalog_item_id, hit.metadata) == ("r1", "A", {"region": "emea"})
        statuses = {v["version"]: v["status"] for v in reopened.versions()}
        assert statuses[interrupted] == FAILED
    finally:
        reopened.close()


def test_reopening_with_different_dimension_fails(tmp_path):
    db_path = str(tmp_path / "index.db")
    store = VersionedVectorStore(db_path, dimension=3, ann_backend="exact", sleep=no_sleep)
    build(store, [entry("r1", unit(1, 0, 0))])
    store.close()

    with pytest.raises(EmbeddingDimensionMismatch):
        VersionedVectorStore(db_path, dimension=4, ann_backend="exact", sleep=no_sleep)


def test_readers_never_see_a_mixed_version():
    dim = 8
    rng = np.random.default_rng(3)
    store = VersionedVectorStore(":memory:", dimension=dim, ann_backend="exact", sleep=no_sleep)
    vectors = rng.normal(size=(40, dim))
    build(store, [entry(f"r{i}", v, "OLD") for i, v in enumerate(vectors)])

    stop = threading.Event()
    problems = []

    def reader(seed):
        query = np.random.default_rng(seed).normal(size=dim)
        while not stop.is_set():
            hits = store.search(query, k=10)
            versions = {h.index_version for h in hits}
            labels = {h.catalog_item_id for h in hits}
            if len(hits) != 10 or len(versions) != 1 or len(labels) != 1:
                problems.append((versions, labels))

    threads = [threading.Thread(target=reader, args=(seed,)) for seed in range(4)]
    for thread in threads:
        thread.start()
    try:
        for round_number in range(5):
            build(store, [entry(f"r{i}", v, f"NEW{round_number}") for i, v in enumerate(vectors)])
    finally:
        stop.set()
        for thread in threads:
            thread.join()
        store.close()

    assert problems == []


def test_exact_index_returns_best_rows():
    index = ExactIndex(2)
    index.add(np.array([unit(1, 0), unit(0, 1), unit(1, 1)]))

    scores, positions = index.search(unit(1, 0.2), k=2)

    assert positions.tolist() == [0, 2]
    assert scores[0] >= scores[1]
    assert index.size == 3


def test_hnsw_index_returns_positions():
    rng = np.random.default_rng(11)
    vectors = rng.normal(size=(200, 16)).astype(np.float32)
    vectors /= np.linalg.norm(vectors, axis=1, keepdims=True)
    index = FaissHnswIndex(16, m=16, ef_construction=100, ef_search=64)
    index.add(vectors)

    scores, positions = index.search(vectors[42], k=5)

    assert index.size == 200
    assert positions[0] == 42
    assert scores[0] == pytest.approx(1.0, abs=1e-4)


def test_hnsw_recall_against_exact_search():
    dim, n, k = 32, 3000, 10
    rng = np.random.default_rng(1234)
    store = VersionedVectorStore(":memory:", dimension=dim, ann_backend="hnsw", ann_min_entries=0,
                                 sleep=no_sleep)
    build(store, [entry(f"r{i:05d}", v, f"C{i % 50}") for i, v in enumerate(rng.normal(size=(n, dim)))])

    overlaps = []
    for query in rng.normal(size=(25, dim)):
        approximate = {h.record_id for h in store.search(query, k)}
        exact = {h.record_id for h in store.search(query, k, exact=True)}
        overlaps.append(len(approximate & exact) / k)
    store.close()

    assert np.mean(overlaps) >= 0.95


def test_filtered_hnsw_search_falls_back_to_exact():
    dim = 16
    rng = np.random.default_rng(5)
    store = VersionedVectorStore(":memory:", dimension=dim, ann_backend="hnsw", ann_min_entries=0,
                                 sleep=no_sleep)
    entries = [entry(f"r{i:04d}", v, "A", rare=(i % 100 == 0)) for i, v in enumerate(rng.normal(size=(1000, dim)))]
    build(store, entries)

    hits = store.search(rng.normal(size=dim), k=10, filter={"rare": True})
    store.close()

    assert len(hits) == 10
    assert all(h.metadata["rare"] is True for h in hits)
