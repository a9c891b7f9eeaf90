"""Re-apply raw ledger events that were stored but never processed."""

from __future__ import annotations

import argparse
import json

from loguru import logger

from app.db import init_db

from .service import IngestionService, IngestSummary


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reprocess unprocessed ledger events")
    parser.add_argument("--limit", type=int, default=100, help="Maximum events to reprocess")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> IngestSummary:
    args = _parse_args(argv)
    init_db()
    summary = IngestionService().reprocess_pending(limit=args.limit)
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        logger.info(
            "Backfill complete: applied={}, skipped={}, failed={}",
            summary.applied,
            summary.skipped,
            summary.failed,
        )
    return summary


if __name__ == "__main__":
    main()
