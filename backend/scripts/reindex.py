"""CLI helper for indexing a results folder into the local result store."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from lmu_core import Indexer, ResultStore, Settings
from lmu_core.scanner import DEFAULT_WORKERS


def _format_summary(summary: Dict[str, object]) -> str:
    lines = [
        f"Indexed: {summary.get('indexed', 0)}, unchanged: {summary.get('skipped', 0)}, failed: {summary.get('failed', 0)}"
    ]
    errors = summary.get("errors", [])
    if isinstance(errors, list):
        for item in errors:
            lines.append(f"  - {item}")
    return "\n".join(lines)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("command", choices=["index", "prune", "reset", "stats"])
    parser.add_argument("--folder", help="Results folder (defaults to the configured one)")
    parser.add_argument("--db", type=Path, help="Database path (defaults to the configured one)")
    parser.add_argument("--settings", type=Path, help="Settings file to read")
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = Settings.load(args.settings)
    with ResultStore(args.db or settings.db_path) as store:
        if store.degraded:
            print(f"WARNING: using in-memory store ({store.open_error})", file=sys.stderr)
        indexer = Indexer(store, settings.pilot_names(), settings.session_types)

        if args.command == "index":
            folder = args.folder or settings.results_folder
            if not folder:
                print("ERROR: no results folder configured", file=sys.stderr)
                return 1
            if not settings.pilot_names():
                print("WARNING: no driver name configured, only file rows will be stored", file=sys.stderr)
            try:
                summary = indexer.index_folder(folder, max_workers=args.workers)
            except FileNotFoundError as exc:
                print(f"ERROR: {exc}", file=sys.stderr)
                return 1
            print(_format_summary(summary))
            return 1 if summary["failed"] else 0

        if args.command == "prune":
            result = indexer.prune()
        elif args.command == "reset":
            result = indexer.reset()
        else:
            stats = store.get_stats()
            if stats is None:
                print("ERROR: could not read store statistics", file=sys.stderr)
                return 1
            for key, value in stats.items():
                print(f"{key}: {value}")
            return 0

    if not result.ok:
        print(f"ERROR: {result.error}", file=sys.stderr)
        return 1
    print(result.message or f"Removed {result.deleted} missing file(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
