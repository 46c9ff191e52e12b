"""
Query engine: end-to-end recommendations, validation, timeouts and
degraded results.
"""

import time

import pytest

from catalog_match.core.errors import IndexNotReady, InvalidQuery, QueryTimeout
from catalog_match.indexing.pipeline import IndexingPipeline
from catalog_match.query.engine import QueryEngine
from catalog_match.vector.embeddings import DeterministicHashEmbedding, EmbeddingClient

from conftest import DIM, make_record, no_sleep


class SlowProvider(DeterministicHashEmbedding):
    def embed_batch(self, texts):
        time.sleep(0.5)
        return super().embed_batch(texts)


@pytest.fixture
def indexed_store(store, client, support_records):
    report = IndexingPipeline(store, client).run(support_records)
    assert report.indexed == len(support_records)
    return store


@pytest.fixture
def engine(indexed_store, client):
    engine = QueryEngine(indexed_store, client, default_top_k=3, timeout=5.0)
    yield engine
    engine.shutdown()


def test_password_query_recommends_password_reset(engine, indexed_store):
    result = engine.search("I forgot my login password")

    top = result.recommendations[0]
    assert top.catalog_item_id == "PWD_RESET"
    assert top.rank == 1
    assert top.supporting_hit_count == 3
    assert 0.0 < top.confidence_score <= 1.0
    assert result.index_version == indexed_store.active_version
    assert result.latency_ms >= 0
    assert result.degraded is False


def test_results_are_ranked_and_bounded(engine):
    result = engine.search("vpn access for a contractor", top_k=2)

    assert len(result.recommendations) == 2
    assert [r.rank for r in result.recommendations] == [1, 2]
    assert result.recommendations[0].catalog_item_id == "VPN_ACCESS"
    scores = [r.confidence_score for r in result.recommendations]
    assert scores == sorted(scores, reverse=True)


def test_repeated_queries_are_deterministic(engine):
    first = engine.search("laptop screen cracked")
    second = engine.search("laptop screen cracked")

    assert first.recommendations == second.recommendations


def test_filters_restrict_supporting_records(engine):
    result = engine.search("I forgot my login password", filters={"region": "amer"})

    assert {r.catalog_item_id for r in result.recommendations} <= {"PWD_RESET", "HW_LAPTOP"}
    assert result.recommendations[0].supporting_hit_count == 1


@pytest.mark.parametrize("text", ["", "   ", "\n"])
def test_empty_query_is_invalid(engine, text):
    with pytest.raises(InvalidQuery):
        engine.search(text)


@pytest.mark.parametrize("top_k", [0, -1, 1000, "5", True])
def test_bad_top_k_is_invalid(engine, top_k):
    with pytest.raises(InvalidQuery):
        engine.search("password", top_k=top_k)


def test_bad_filters_are_invalid(engine):
    with pytest.raises(InvalidQuery):
        engine.search("password", filters=["region"])


def test_no_active_version_is_not_ready(store, client):
    engine = QueryEngine(store, client)
    try:
        with pytest.raises(IndexNotReady):
            engine.search("password")
    finally:
        engine.shutdown()


def test_slow_query_times_out(indexed_store):
    slow_client = EmbeddingClient(SlowProvider(DIM), expected_dimension=DIM, sleep=no_sleep)
    engine = QueryEngine(indexed_store, slow_client, timeout=0.05)
    try:
        with pytest.raises(QueryTimeout):
            engine.search("I forgot my login password")
    finally:
        engine.shutdown()


def test_truncated_hits_mark_result_degraded(indexed_store, client):
    engine = QueryEngine(indexed_store, client, overfetch=1)
    try:
        result = engine.search("password reset", top_k=3, filters={"region": "emea"})
    finally:
        engine.shutdown()

    assert result.hit_count == 3
    assert len(result.recommendations) < 3
    assert result.degraded is True
    assert result.notes


def test_result_serializes_to_plain_dict(engine):
    data = engine.search("I forgot my login password", top_k=1).to_dict()

    assert data["recommendations"][0]["catalog_item_id"] == "PWD_RESET"
    assert data["recommendations"][0]["rank"] == 1
    assert data["index_version"] is not None
    assert data["degraded"] is False


def test_three_record_catalog_recommends_password_reset(store, client):
    feed = [
        make_record("h1", "reset my password", "PWD_RESET"),
        make_record("h2", "cannot access email", "EMAIL_ACCESS"),
        make_record("h3", "printer not working", "PRINTER_FIX"),
    ]
    assert IndexingPipeline(store, client).run(feed).indexed == 3

    engine = QueryEngine(store, client, timeout=5.0)
    try:
        result = engine.search("I forgot my login password", top_k=1)
    finally:
        engine.shutdown()

    assert [r.catalog_item_id for r in result.recommendations] == ["PWD_RESET"]
    assert result.recommendations[0].rank == 1
