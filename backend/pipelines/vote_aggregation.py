"""Scheduled vote aggregation: approve proposals and settle disputes on the ledger."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, session_scope
from app.domain import VoteTally, dispute_window_elapsed, resolve_final_outcome
from app.errors import IncompleteResolutionError, MarketNotFoundError
from app.models import MarketState, Outcome, VoteKind, ensure_utc, utcnow
from app.repositories import FinalizationErrorRepository, MarketRepository, VoteRepository
from app.services.guard import SingleFlightGuard
from app.services.ledger import (
    APPROVE_MARKET,
    DRY_RUN_SIGNATURE,
    FINALIZE_MARKET,
    LedgerClient,
    approve_market_args,
    finalize_market_args,
    market_accounts,
)
from app.services.retry import RetryPolicy, Sleep, with_retry


@dataclass(slots=True)
class AggregationSummary:
    scanned: int = 0
    decided: int = 0
    errored: int = 0
    skipped: bool = False
    tallies: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "decided": self.decided,
            "errored": self.errored,
            "skipped": self.skipped,
            "tallies": self.tallies,
            "failures": self.failures,
        }


@dataclass(slots=True, frozen=True)
class _Candidate:
    market_id: str
    address: str
    proposed_outcome: str | None = None
    resolution_proposed_at: datetime | None = None


class _VoteAggregator:
    """Shared single-flight pass over markets awaiting a vote-driven decision."""

    name = "vote-aggregation"
    kind: VoteKind

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
        self._retry_policy = retry_policy or RetryPolicy.for_ledger_writes(self.settings)
        self._sleep = sleep
        self._clock = clock
        self._guard = SingleFlightGuard(self.name)

    @property
    def threshold_bps(self) -> int:
        raise NotImplementedError

    @property
    def is_running(self) -> bool:
        return self._guard.is_running

    @property
    def dry_run(self) -> bool:
        return self.settings.lifecycle_dry_run

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            **self._guard.snapshot(),
            "threshold_bps": self.threshold_bps,
            "dry_run": self.dry_run,
        }

    async def run(self) -> AggregationSummary:
        if not self._guard.try_acquire():
            logger.warning("{} pass already in progress; skipping", self.name)
            return AggregationSummary(skipped=True)
        try:
            return await self._run_pass()
        finally:
            self._guard.release()

    async def _run_pass(self) -> AggregationSummary:
        summary = AggregationSummary()
        candidates = await asyncio.to_thread(self._load_candidates)
        logger.info("{} evaluating {} markets", self.name, len(candidates))

        for candidate in candidates:
            summary.scanned += 1
            try:
                decided = await self._evaluate(candidate, summary)
            except Exception as exc:
                logger.exception("{} failed for market {}", self.name, candidate.market_id)
                summary.errored += 1
                summary.failures.append({"market_id": candidate.market_id, "error": str(exc)})
                continue
            if decided:
                summary.decided += 1

        logger.info(
            "{} finished: scanned={}, decided={}, errored={}",
            self.name,
            summary.scanned,
            summary.decided,
            summary.errored,
        )
        return summary

    def _load_candidates(self) -> list[_Candidate]:
        raise NotImplementedError

    async def _evaluate(self, candidate: _Candidate, summary: AggregationSummary) -> bool:
        raise NotImplementedError

    def _tally(self, market_id: str) -> VoteTally:
        with session_scope(self._session_factory) as session:
            positive, negative = VoteRepository(session).count_choices(market_id, self.kind)
        return VoteTally(positive=positive, negative=negative, threshold_bps=self.threshold_bps)

    async def _submit(self, method: str, address: str, args: dict[str, Any]) -> str:
        accounts = market_accounts(address, self.settings)
        if self.dry_run:
            logger.warning("Dry run: would submit {} for {} with {}", method, address, args)
            return DRY_RUN_SIGNATURE
        return await with_retry(
            lambda: self._ledger.submit_and_confirm(method, accounts, args),
            policy=self._retry_policy,
            sleep=self._sleep,
            label=f"{method} {address}",
        )


class ProposalAggregator(_VoteAggregator):
    """Approve proposed markets whose like ratio reaches the approval threshold."""

    name = "proposal-aggregation"
    kind = VoteKind.PROPOSAL

    @property
    def threshold_bps(self) -> int:
        return self.settings.proposal_approval_threshold_bps

    def _load_candidates(self) -> list[_Candidate]:
        with session_scope(self._session_factory) as session:
            markets = MarketRepository(session).list_in_state(MarketState.PROPOSED)
            return [_Candidate(m.market_id, m.on_chain_address) for m in markets]

    async def _evaluate(self, candidate: _Candidate, summary: AggregationSummary) -> bool:
        tally = await asyncio.to_thread(self._tally, candidate.market_id)
        summary.tallies.append({"market_id": candidate.market_id, **tally.to_dict()})
        if not tally.meets_threshold:
            logger.debug(
                "Proposal {} at {} bp (need {}); waiting",
                candidate.market_id,
                tally.rate_bps,
                tally.threshold_bps,
            )
            return False

        signature = await self._submit(
            APPROVE_MARKET,
            candidate.address,
            approve_market_args(tally.positive, tally.negative),
        )

        if not self.dry_run:
            await asyncio.to_thread(self._write_approval, candidate.market_id, tally, signature)

        logger.info(
            "Approved market {} ({}/{} likes, {} bp) in {}",
            candidate.market_id,
            tally.positive,
            tally.total,
            tally.rate_bps,
            signature,
        )
        return True

    def _write_approval(self, market_id: str, tally: VoteTally, signature: str) -> None:
        with session_scope(self._session_factory) as session:
            repo = MarketRepository(session)
            market = repo.get(market_id)
            if market is None:
                raise MarketNotFoundError(market_id)
            if market.state in (MarketState.PROPOSED.value, MarketState.APPROVED.value):
                repo.record_approval(
                    market,
                    likes=tally.positive,
                    dislikes=tally.negative,
                    approved_at=self._clock(),
                    signature=signature,
                )
            else:
                logger.info("Market {} already {}; ledger event won the race", market.market_id, market.state)


class DisputeAggregator(_VoteAggregator):
    """Settle disputed markets once the dispute window has elapsed."""

    name = "dispute-aggregation"
    kind = VoteKind.DISPUTE

    @property
    def threshold_bps(self) -> int:
        return self.settings.dispute_threshold_bps

    def status(self) -> dict[str, Any]:
        status = super().status()
        status["dispute_window_hours"] = self.settings.dispute_window_hours
        status["safety_buffer_seconds"] = self.settings.finalization_safety_buffer_seconds
        return status

    def _load_candidates(self) -> list[_Candidate]:
        with session_scope(self._session_factory) as session:
            markets = MarketRepository(session).list_disputed()
            return [
                _Candidate(
                    m.market_id,
                    m.on_chain_address,
                    proposed_outcome=m.proposed_outcome,
                    resolution_proposed_at=ensure_utc(m.resolution_proposed_at),
                )
                for m in markets
            ]

    async def _evaluate(self, candidate: _Candidate, summary: AggregationSummary) -> bool:
        if candidate.resolution_proposed_at is None:
            raise IncompleteResolutionError(
                f"Disputed market {candidate.market_id} has no resolution timestamp"
            )
        if candidate.proposed_outcome is None:
            raise IncompleteResolutionError(
                f"Disputed market {candidate.market_id} has no proposed outcome"
            )

        tally = await asyncio.to_thread(self._tally, candidate.market_id)
        elapsed = dispute_window_elapsed(
            candidate.resolution_proposed_at,
            self._clock(),
            window_seconds=self.settings.dispute_window_seconds,
            buffer_seconds=self.settings.finalization_safety_buffer_seconds,
        )
        summary.tallies.append(
            {"market_id": candidate.market_id, "window_elapsed": elapsed, **tally.to_dict()}
        )
        if not elapsed:
            logger.debug("Dispute window still open for market {}", candidate.market_id)
            return False

        dispute_succeeded = tally.meets_threshold
        final_outcome = resolve_final_outcome(candidate.proposed_outcome, dispute_succeeded)
        if dispute_succeeded and final_outcome is Outcome.INVALID:
            logger.warning(
                "Dispute succeeded on invalid outcome for market {}; keeping invalid",
                candidate.market_id,
            )

        try:
            signature = await self._submit(
                FINALIZE_MARKET,
                candidate.address,
                finalize_market_args(final_outcome.value, tally.positive, tally.negative),
            )
        except Exception as exc:
            await asyncio.to_thread(self._record_error, candidate.market_id, exc)
            raise

        if not self.dry_run:
            await asyncio.to_thread(
                self._write_finalization, candidate.market_id, final_outcome, tally, signature
            )

        logger.info(
            "Finalized disputed market {} as {} (dispute {}, {} bp) in {}",
            candidate.market_id,
            final_outcome.value,
            "upheld" if dispute_succeeded else "rejected",
            tally.rate_bps,
            signature,
        )
        return True

    def _write_finalization(
        self, market_id: str, final_outcome: Outcome, tally: VoteTally, signature: str
    ) -> None:
        with session_scope(self._session_factory) as session:
            repo = MarketRepository(session)
            market = repo.get(market_id)
            if market is None:
                raise MarketNotFoundError(market_id)
            repo.record_finalization(
                market,
                final_outcome=final_outcome,
                agree=tally.positive,
                disagree=tally.negative,
                finalized_at=self._clock(),
                signature=signature,
            )

    def _record_error(self, market_id: str, exc: Exception) -> None:
        with session_scope(self._session_factory) as session:
            market = MarketRepository(session).get(market_id)
            if market is not None:
                FinalizationErrorRepository(session).record_failure(
                    market, f"{exc.__class__.__name__}: {exc}"
                )
