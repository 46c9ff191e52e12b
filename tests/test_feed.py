"""
Extraction feed loading, validation and supersession.
"""

import json

import pytest

from catalog_match.indexing.feed import FeedFormatError, extract, iter_feed_file, parse_record


def raw(record_id, text="some text", item="ITEM", timestamp="2024-05-01T10:00:00Z", **extra):
    return {"id": record_id, "text": text, "catalogItemId": item, "timestamp": timestamp, **extra}


def test_parse_record_accepts_both_spellings():
    camel = parse_record(raw("r1", metadata={"region": "emea"}))
    snake = parse_record({"id": "r2", "text": "t", "catalog_item_id": "X", "timestamp": "2024-05-01T00:00:00"})

    assert camel.catalog_item_id == "ITEM"
    assert camel.metadata == {"region": "emea"}
    assert snake.catalog_item_id == "X"
    assert snake.metadata == {}


def test_extract_rejects_invalid_records():
    result = extract([
        raw("r1"),
        {"id": "r2", "text": "missing label", "timestamp": "2024-05-01T00:00:00"},
        raw("r3", text="   "),
        raw("r4", timestamp="not a date"),
        "not an object",
    ])

    assert result.received == 5
    assert [r.id for r in result.records] == ["r1"]
    assert [record_id for record_id, _ in result.rejected] == ["r2", "r3", "r4", "#4"]


def test_later_timestamp_supersedes_earlier():
    result = extract([
        raw("r1", item="NEW", timestamp="2024-05-02T00:00:00Z"),
        raw("r1", item="OLD", timestamp="2024-05-01T00:00:00Z"),
    ])

    assert [r.catalog_item_id for r in result.records] == ["NEW"]
    assert result.superseded == 1


def test_equal_timestamps_later_position_wins():
    result = extract([raw("r1", item="FIRST"), raw("r1", item="SECOND")])

    assert [r.catalog_item_id for r in result.records] == ["SECOND"]


def test_naive_and_aware_timestamps_compare():
    result = extract([
        raw("r1", item="AWARE", timestamp="2024-05-01T12:00:00+02:00"),
        raw("r1", item="NAIVE", timestamp="2024-05-01T11:00:00"),
    ])

    # 12:00+02:00 is 10:00 UTC, so the naive 11:00 record is later
    assert [r.catalog_item_id for r in result.records] == ["NAIVE"]


def test_records_come_out_sorted_by_id():
    result = extract([raw("b"), raw("c"), raw("a")])
    assert [r.id for r in result.records] == ["a", "b", "c"]


def test_iter_jsonl_file_with_bad_line(tmp_path):
    path = tmp_path / "feed.jsonl"
    path.write_text(json.dumps(raw("r1")) + "\n{broken\n\n" + json.dumps(raw("r2")) + "\n")

    result = extract(iter_feed_file(path))

    assert [r.id for r in result.records] == ["r1", "r2"]
    assert len(result.rejected) == 1
    assert "line 2" in result.rejected[0][1]


def test_iter_json_array_and_records_object(tmp_path):
    array_path = tmp_path / "feed.json"
    array_path.write_text(json.dumps([raw("r1"), raw("r2")]))
    object_path = tmp_path / "wrapped.json"
    object_path.write_text(json.dumps({"records": [raw("r3")]}))

    assert [r["id"] for r in iter_feed_file(array_path)] == ["r1", "r2"]
    assert [r["id"] for r in iter_feed_file(object_path)] == ["r3"]


def test_iter_feed_file_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        list(iter_feed_file(tmp_path / "missing.jsonl"))

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(FeedFormatError):
        list(iter_feed_file(bad))

    scalar = tmp_path / "scalar.json"
    scalar.write_text("42")
    with pytest.raises(FeedFormatError):
        list(iter_feed_file(scalar))
