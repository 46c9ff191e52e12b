#!/usr/bin/env python3
"""
Command-line maintenance utility for the versioned index: inspect versions and
compact retired ones.
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog_match.core import config
from catalog_match.core.errors import CatalogMatchError


def format_status(stats: dict) -> str:
    """Format store statistics for display."""
    lines = [
        f"Active version: {stats['active_version']}",
        f"Records: {stats['record_count']}",
        f"Dimension: {stats['dimension']}",
        f"ANN backend: {stats['ann_backend']} (ef_search={stats['ef_search']})",
        "Versions:",
    ]
    for version in stats["versions"]:
        lines.append(
            f"  {version['version']:>4}  {version['status']:<10} created {version['created_at']}"
        )
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(
        description="Index version maintenance utilities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s status                 # Show active version and version history
  %(prog)s compact                # Drop all but the newest INDEX_RETAIN_VERSIONS versions
  %(prog)s compact --retain 3 4   # Keep exactly versions 3 and 4 (must include the active one)
        """
    )
    parser.add_argument("--json", "-j", action="store_true",
                        help="Output results as JSON instead of human-readable text")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show index versions")
    compact_parser = subparsers.add_parser("compact", help="Drop retired and failed versions")
    compact_parser.add_argument("--retain", type=int, nargs="+", help="Versions to keep")
    args = parser.parse_args()

    store = config.get_vector_store()
    try:
        if args.command == "status":
            stats = store.stats()
            print(json.dumps(stats, indent=2, default=str) if args.json else format_status(stats))
        else:
            client = config.get_embedding_client(store)
            pipeline = config.get_indexing_pipeline(store, client)
            dropped = pipeline.compact(args.retain)
            pipeline.shutdown()
            if args.json:
                print(json.dumps({"dropped": dropped}))
            else:
                print(f"✓ Compacted {len(dropped)} version(s): {dropped}")
    except CatalogMatchError as e:
        print(f"ERROR: {e.code}: {e.message}")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
