#!/usr/bin/env python3
"""
Index Rebuild Utility
Runs the indexing pipeline over an extraction feed file and activates the new
index version. With --interval the run repeats periodically.
"""

import argparse
import json
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog_match.core import config
from catalog_match.indexing.feed import iter_feed_file
from catalog_match.indexing.pipeline import IndexRunReport, RunState


def format_report(report: IndexRunReport) -> str:
    """Format a run report for display."""
    lines = [f"Run: {report.run_id} ({report.mode})"]
    if report.completed_at and report.started_at:
        duration = report.completed_at - report.started_at
        lines.append(f"Duration: {duration.total_seconds():.2f} seconds")

    if report.state == RunState.COMPLETED:
        lines.append(f"Status: SUCCESS (version {report.version} active)")
    else:
        lines.append(f"Status: FAILED ({report.error['message'] if report.error else 'unknown error'})")

    lines.append(f"Received: {report.received}")
    lines.append(f"Indexed: {report.indexed}")
    if report.superseded:
        lines.append(f"Superseded: {report.superseded}")
    if report.rejected:
        lines.append(f"Rejected: {report.rejected}")
    if report.failed:
        lines.append(f"Embedding failures: {report.failed}")

    # Don't flood output
    if report.failures and len(report.failures) <= 10:
        lines.append("Failures:")
        for failure in report.failures:
            lines.append(f"  - {failure.record_id}: {failure.code} {failure.message}")
    if report.compacted:
        lines.append(f"Compacted versions: {report.compacted}")

    return "\n".join(lines)


def run_once(pipeline, feed_path: str, mode: str, as_json: bool) -> bool:
    report = pipeline.run(iter_feed_file(feed_path), mode=mode)
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(format_report(report))
    return report.state == RunState.COMPLETED


def main():
    parser = argparse.ArgumentParser(
        description="Build and activate a new index version from an extraction feed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --feed data/records.jsonl                  # Full rebuild
  %(prog)s --feed data/delta.jsonl --mode incremental # Apply a delta on top of the active version
  %(prog)s --feed data/records.jsonl --interval 3600  # Rebuild every hour

Environment variables:
- DB_PATH=./data/catalog_match.db (store location)
- EMBED_PROVIDER=hash|sentence-transformers|http
        """
    )
    parser.add_argument("--feed", required=True, help="Feed file (.jsonl/.ndjson or JSON array)")
    parser.add_argument("--mode", choices=["full", "incremental"], default="full")
    parser.add_argument("--interval", type=float, default=0,
                        help="Repeat every N seconds (default: run once)")
    parser.add_argument("--json", "-j", action="store_true", help="Output run reports as JSON")
    args = parser.parse_args()

    issues = config.validate_config()
    if issues:
        for issue in issues:
            print(f"WARNING: {issue}")

    if not Path(args.feed).exists():
        print(f"ERROR: Feed file not found: {args.feed}")
        sys.exit(1)

    store = config.get_vector_store()
    client = config.get_embedding_client(store)
    pipeline = config.get_indexing_pipeline(store, client)

    try:
        ok = run_once(pipeline, args.feed, args.mode, args.json)
        while args.interval > 0:
            time.sleep(args.interval)
            ok = run_once(pipeline, args.feed, args.mode, args.json)
    except KeyboardInterrupt:
        print("Interrupted")
        ok = True
    finally:
        pipeline.shutdown()
        store.close()

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
