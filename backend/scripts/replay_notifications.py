import argparse
import json
from pathlib import Path

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from ingestion.decoder import decode_notification, parse_notification
from ingestion.service import IngestionService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay captured ledger webhook payloads into the replica"
    )
    parser.add_argument("path", type=Path, help="JSON file holding one notification or a list")
    parser.add_argument("--limit", type=int, default=None, help="Replay at most N notifications")
    parser.add_argument(
        "--decode-only",
        action="store_true",
        help="Print decoded events without writing to the database",
    )
    return parser.parse_args()


def _load(path: Path) -> list[dict]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        return [raw]
    if not isinstance(raw, list):
        raise SystemExit(f"{path} must contain a JSON object or array")
    return raw


def main() -> None:
    args = parse_args()
    settings = get_settings()
    payloads = _load(args.path)
    if args.limit:
        payloads = payloads[: args.limit]

    if args.decode_only:
        for payload in payloads:
            events = decode_notification(
                parse_notification(payload), program_id=settings.ledger_program_id
            )
            for event in events:
                print(json.dumps(event.to_dict(), default=str))
        return

    init_db()
    service = IngestionService(settings=settings)
    totals = {"applied": 0, "skipped": 0, "failed": 0}
    for payload in payloads:
        summary = service.ingest_notification(payload)
        totals["applied"] += summary.applied
        totals["skipped"] += summary.skipped
        totals["failed"] += summary.failed

    logger.info(
        "Replayed {} notifications: applied={}, skipped={}, failed={}",
        len(payloads),
        totals["applied"],
        totals["skipped"],
        totals["failed"],
    )


if __name__ == "__main__":
    main()
