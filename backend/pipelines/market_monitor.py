"""Finalize resolving markets whose dispute window passed without a dispute."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import text

from app.core.config import Settings, get_settings
from app.db import SessionFactory, session_scope
from app.domain import finalization_cutoff
from app.errors import IncompleteResolutionError, LedgerConfigurationError, MarketNotFoundError
from app.models import MarketState, Outcome, ensure_utc, utcnow
from app.repositories import FinalizationErrorRepository, MarketRepository
from app.services.guard import SingleFlightGuard
from app.services.ledger import (
    DRY_RUN_SIGNATURE,
    FINALIZE_MARKET,
    LedgerClient,
    finalize_market_args,
    market_accounts,
)
from app.services.retry import RetryPolicy, Sleep, with_retry


@dataclass(slots=True)
class FinalizationAttempt:
    market_id: str
    address: str
    success: bool
    signature: str | None = None
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "address": self.address,
            "success": self.success,
            "signature": self.signature,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class FinalizationSummary:
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = False
    attempts: list[FinalizationAttempt] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


@dataclass(slots=True, frozen=True)
class _DueMarket:
    market_id: str
    address: str
    proposed_outcome: str | None
    resolution_proposed_at: datetime | None


class MarketMonitor:
    """Lifecycle timer: finalize undisputed markets in FIFO batches."""

    name = "finalization-monitor"

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._ledger = ledger
        self._session_factory = session_factory
        self._retry_policy = retry_policy or RetryPolicy.for_finalization(self.settings)
        self._sleep = sleep
        self._clock = clock
        self._guard = SingleFlightGuard(self.name)

    @property
    def is_running(self) -> bool:
        return self._guard.is_running

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            **self._guard.snapshot(),
            "dispute_window_hours": self.settings.dispute_window_hours,
            "safety_buffer_seconds": self.settings.finalization_safety_buffer_seconds,
            "batch_size": self.settings.finalization_batch_size,
            "timeout_seconds": self.settings.finalization_timeout_seconds,
            "dry_run": self.settings.lifecycle_dry_run,
        }

    async def validate(self) -> None:
        """Check replica connectivity and the ledger's signing authority before the first pass.

        Raises ``LedgerConfigurationError`` when the global config names a different
        backend authority than the one this process signs with.
        """

        logger.info("Validating {} configuration", self.name)
        await asyncio.to_thread(self._ping_replica)
        on_chain = await self._ledger.get_global_config_authority()
        local = self.settings.ledger_authority_address
        if on_chain != local:
            raise LedgerConfigurationError(
                f"Backend authority mismatch: on-chain {on_chain}, local {local}"
            )
        logger.info("Backend authority validated: {}", local)

    def _ping_replica(self) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(text("SELECT 1"))

    async def run(self) -> FinalizationSummary:
        if not self._guard.try_acquire():
            logger.warning("{} pass already in progress; skipping", self.name)
            return FinalizationSummary(skipped=True)
        try:
            return await self._run_pass()
        finally:
            self._guard.release()

    async def _run_pass(self) -> FinalizationSummary:
        summary = FinalizationSummary()
        due = await asyncio.to_thread(self._load_due_markets)
        summary.found = len(due)
        if not due:
            logger.info("No markets ready for finalization")
            return summary

        logger.info("Finalizing {} markets", len(due))
        for market in due:
            attempt = await self._process_with_timeout(market)
            summary.attempts.append(attempt)
            if attempt.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

        logger.info(
            "Finalization pass finished: found={}, succeeded={}, failed={}",
            summary.found,
            summary.succeeded,
            summary.failed,
        )
        return summary

    def _load_due_markets(self) -> list[_DueMarket]:
        cutoff = finalization_cutoff(
            self._clock(),
            window_seconds=self.settings.dispute_window_seconds,
            buffer_seconds=self.settings.finalization_safety_buffer_seconds,
        )
        with session_scope(self._session_factory) as session:
            markets = MarketRepository(session).list_due_for_finalization(
                cutoff=cutoff, limit=self.settings.finalization_batch_size
            )
            return [
                _DueMarket(
                    market_id=m.market_id,
                    address=m.on_chain_address,
                    proposed_outcome=m.proposed_outcome,
                    resolution_proposed_at=ensure_utc(m.resolution_proposed_at),
                )
                for m in markets
            ]

    async def _process_with_timeout(self, market: _DueMarket) -> FinalizationAttempt:
        started = time.monotonic()
        timeout = self.settings.finalization_timeout_seconds
        try:
            signature = await asyncio.wait_for(self._finalize(market), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"Finalization of market {market.market_id} timed out after {timeout:g}s"
            logger.error(error)
            await asyncio.to_thread(self._record_error, market, error)
            return self._attempt(market, started, error=error)
        except Exception as exc:
            logger.exception("Failed to finalize market {}", market.market_id)
            error = f"{exc.__class__.__name__}: {exc}"
            await asyncio.to_thread(self._record_error, market, error)
            return self._attempt(market, started, error=error)

        logger.info("Finalized market {} in {}", market.market_id, signature)
        return self._attempt(market, started, signature=signature)

    async def _finalize(self, market: _DueMarket) -> str:
        if market.proposed_outcome is None:
            raise IncompleteResolutionError(f"Market {market.market_id} has no proposed outcome")
        outcome = Outcome(market.proposed_outcome)
        accounts = market_accounts(market.address, self.settings)
        args = finalize_market_args(outcome.value, None, None)

        if self.settings.lifecycle_dry_run:
            logger.warning("Dry run: would finalize market {} as {}", market.address, outcome.value)
            return DRY_RUN_SIGNATURE

        signature = await with_retry(
            lambda: self._ledger.submit_and_confirm(FINALIZE_MARKET, accounts, args),
            policy=self._retry_policy,
            sleep=self._sleep,
            label=f"{FINALIZE_MARKET} {market.address}",
        )
        await asyncio.to_thread(self._write_finalization, market, outcome, signature)
        return signature

    def _write_finalization(self, market: _DueMarket, outcome: Outcome, signature: str) -> None:
        with session_scope(self._session_factory) as session:
            repo = MarketRepository(session)
            record = repo.get(market.market_id)
            if record is None:
                raise MarketNotFoundError(market.market_id)
            if record.state == MarketState.RESOLVING.value or record.state == MarketState.FINALIZED.value:
                repo.record_finalization(
                    record,
                    final_outcome=outcome,
                    agree=None,
                    disagree=None,
                    finalized_at=self._clock(),
                    signature=signature,
                )
            else:
                logger.warning(
                    "Market {} moved to {} while finalizing; leaving it for ingestion",
                    record.market_id,
                    record.state,
                )

    def _record_error(self, market: _DueMarket, message: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                record = MarketRepository(session).get(market.market_id)
                if record is None:
                    logger.error("Cannot record finalization error for missing market {}", market.market_id)
                    return
                error = FinalizationErrorRepository(session).record_failure(record, message)
                logger.warning(
                    "Recorded finalization error #{} for market {} (attempt {})",
                    error.error_id,
                    market.market_id,
                    error.attempt_count,
                )
        except Exception:
            logger.exception("Failed to record finalization error for market {}", market.market_id)

    @staticmethod
    def _attempt(
        market: _DueMarket,
        started: float,
        *,
        signature: str | None = None,
        error: str | None = None,
    ) -> FinalizationAttempt:
        return FinalizationAttempt(
            market_id=market.market_id,
            address=market.address,
            success=error is None,
            signature=signature,
            error=error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
