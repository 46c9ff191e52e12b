"""
Extraction feed input: read historical records from JSON Lines / JSON files
or any iterable of mappings, validate them, and supersede duplicate ids.
"""

import json
from datetime import timezone
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Tuple, Union

from pydantic import ValidationError

from ..core.schema import HistoricalRecord

FeedItem = Union[HistoricalRecord, Mapping[str, Any]]


class FeedFormatError(ValueError):
    """The feed file cannot be parsed at all."""
    pass


@dataclass
class ExtractionResult:
    """Validated, deduplicated records of one feed snapshot."""
    records: List[HistoricalRecord] = field(default_factory=list)
    rejected: List[Tuple[str, str]] = field(default_factory=list)
    received: int = 0
    superseded: int = 0


def iter_feed_file(path: Union[str, Path]) -> Iterator[Dict[str, Any]]:
    """
    Yield raw record mappings from a feed file.

    `.jsonl`/`.ndjson` files hold one object per line; other files hold a
    JSON array or an object with a `records` array.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Feed file not found: {path}")

    if path.suffix.lower() in (".jsonl", ".ndjson"):
        with path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError as e:
                    # one bad line becomes one rejected record
                    yield {"_parse_error": f"line {line_number}: {e.msg}"}
        return

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise FeedFormatError(f"Feed file {path} is not valid JSON: {e}") from e
    if isinstance(payload, dict):
        payload = payload.get("records")
    if not isinstance(payload, list):
        raise FeedFormatError(f"Feed file {path} must contain a list of records")
    yield from payload


def parse_record(raw: FeedItem) -> HistoricalRecord:
    """Validate one feed item into a HistoricalRecord."""
    if isinstance(raw, HistoricalRecord):
        return raw
    if not isinstance(raw, Mapping):
        raise ValueError(f"record must be an object, got {type(raw).__name__}")
    if "_parse_error" in raw:
        raise ValueError(raw["_parse_error"])
    return HistoricalRecord.model_validate(dict(raw))


def _record_label(raw: FeedItem, position: int) -> str:
    if isinstance(raw, HistoricalRecord):
        return raw.id
    if isinstance(raw, Mapping) and raw.get("id"):
        return str(raw["id"])
    return f"#{position}"


def extract(feed: Iterable[FeedItem]) -> ExtractionResult:
    """
    Validate a feed snapshot and keep one record per id.

    A later timestamp supersedes an earlier one; on equal timestamps the later
    feed position wins.
    """
    result = ExtractionResult()
    latest: Dict[str, HistoricalRecord] = {}

    for position, raw in enumerate(feed):
        result.received += 1
        try:
            record = parse_record(raw)
        except (ValidationError, ValueError) as e:
            result.rejected.append((_record_label(raw, position), _short_error(e)))
            continue

        current = latest.get(record.id)
        if current is not None:
            result.superseded += 1
            if _sortable(record.timestamp) < _sortable(current.timestamp):
                continue
        latest[record.id] = record

    result.records = sorted(latest.values(), key=lambda r: r.id)
    return result


def _sortable(timestamp):
    # compare naive and aware timestamps on the same footing
    if timestamp.tzinfo is not None:
        return timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    return timestamp


def _short_error(error: Exception) -> str:
    if isinstance(error, ValidationError):
        first = error.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return str(error)
