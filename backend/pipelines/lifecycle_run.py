"""Standalone entry point for the vote aggregation and finalization jobs."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
from pathlib import Path
from typing import Any

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import init_db
from app.services.ledger import HttpLedgerClient

from .context import LifecycleContext, build_lifecycle

JOB_CHOICES = {
    "proposals": ("proposal-aggregation",),
    "disputes": ("dispute-aggregation",),
    "finalization": ("finalization-monitor",),
    "all": ("proposal-aggregation", "dispute-aggregation", "finalization-monitor"),
}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run market lifecycle jobs once, or continuously with --loop",
    )
    parser.add_argument("--job", choices=sorted(JOB_CHOICES), default="all")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running on the configured intervals until interrupted",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary of a single run is written",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the ledger writes a pass would make without submitting them",
    )
    return parser.parse_args(argv)


async def run_once(context: LifecycleContext, job_names: tuple[str, ...]) -> dict[str, Any]:
    results: dict[str, Any] = {}
    for name in job_names:
        summary = await context.runner(name).run_now()
        results[name] = summary.to_dict()
    return results


async def run_forever(context: LifecycleContext, job_names: tuple[str, ...]) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass

    for name in job_names:
        await context.runner(name).start()
    logger.info("Lifecycle jobs running: {}", ", ".join(job_names))
    await stop.wait()
    logger.info("Shutdown requested; draining in-flight passes")
    for name in job_names:
        await context.runner(name).stop()


def _write_summary(summary: dict[str, Any], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary, default=str, indent=2))
    logger.info("Lifecycle summary written to {}", path)


async def _main(args: argparse.Namespace, settings: Settings) -> dict[str, Any] | None:
    init_db()
    job_names = JOB_CHOICES[args.job]
    async with HttpLedgerClient(settings=settings) as ledger:
        context = build_lifecycle(settings, ledger=ledger)
        await context.monitor.validate()
        if args.loop:
            await run_forever(context, job_names)
            return None
        return await run_once(context, job_names)


def main(argv: list[str] | None = None) -> dict[str, Any] | None:
    args = _parse_args(argv)
    settings = get_settings()
    if args.dry_run:
        settings = settings.model_copy(update={"lifecycle_dry_run": True})
    summary = asyncio.run(_main(args, settings))
    if summary is not None and args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
