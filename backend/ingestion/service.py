from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import SessionFactory, session_scope
from app.domain import is_behind, resolve_final_outcome
from app.errors import IncompleteResolutionError
from app.models import LedgerEvent as LedgerEventRow
from app.models import Market, MarketState, Outcome, VoteKind, ensure_utc, utcnow
from app.repositories import LedgerEventRepository, MarketRepository

from .decoder import RawNotification, decode_notification, parse_notification
from .events import (
    DisputeRaised,
    DisputeResolved,
    EventEnvelope,
    EventType,
    LedgerEventBase,
    MarketActivated,
    MarketCreated,
    MarketResolved,
    ProposalApproved,
    TradeExecuted,
    VotesTallied,
    WinningsClaimed,
    event_from_record,
)


class IngestStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class IngestResult:
    status: IngestStatus
    event_type: str
    tx_signature: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "event_type": self.event_type,
            "tx_signature": self.tx_signature,
            "error": self.error,
        }


@dataclass(slots=True)
class IngestSummary:
    received: int = 0
    decoded: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[IngestResult] = field(default_factory=list)

    def add(self, result: IngestResult) -> None:
        self.results.append(result)
        if result.status is IngestStatus.APPLIED:
            self.applied += 1
        elif result.status is IngestStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "decoded": self.decoded,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [result.to_dict() for result in self.results],
        }


class IngestionService:
    """Apply decoded ledger events to the replica, once per (signature, event type).

    The raw event row is committed before the replica write so a failed write
    leaves an unprocessed row with its error text for a later backfill.
    The ledger is never written from here.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._appliers: dict[EventType, Callable[[MarketRepository, Any], bool]] = {
            EventType.MARKET_CREATED: self._apply_market_created,
            EventType.TRADE_EXECUTED: self._apply_trade,
            EventType.PROPOSAL_APPROVED: self._apply_proposal_approved,
            EventType.MARKET_ACTIVATED: self._apply_market_activated,
            EventType.MARKET_RESOLVED: self._apply_market_resolved,
            EventType.DISPUTE_RAISED: self._apply_dispute_raised,
            EventType.DISPUTE_RESOLVED: self._apply_dispute_resolved,
            EventType.VOTES_TALLIED: self._apply_votes_tallied,
            EventType.WINNINGS_CLAIMED: self._apply_winnings_claimed,
        }

    # ------------------------------------------------------------------
    # Entry points

    def ingest(self, event: LedgerEventBase) -> IngestResult:
        event_type = event.event_type.value
        signature = event.tx_signature

        with session_scope(self._session_factory) as session:
            row = LedgerEventRepository(session).record(
                tx_signature=signature,
                event_type=event_type,
                slot=event.envelope.slot,
                block_time=event.envelope.block_time,
                payload=event.payload(),
            )
            if row.processed:
                logger.debug("Skipping already processed {} {}", event_type, signature)
                return IngestResult(IngestStatus.SKIPPED, event_type, signature)
            row_id = row.event_id

        try:
            with session_scope(self._session_factory) as session:
                row = session.get(LedgerEventRow, row_id)
                if row is None or row.processed:
                    return IngestResult(IngestStatus.SKIPPED, event_type, signature)
                changed = self._apply(session, event)
                LedgerEventRepository(session).mark_processed(row)
        except Exception as exc:
            logger.exception("Failed to apply {} {}", event_type, signature)
            message = f"{exc.__class__.__name__}: {exc}"
            self._record_failure(row_id, message)
            return IngestResult(IngestStatus.FAILED, event_type, signature, error=message)

        status = IngestStatus.APPLIED if changed else IngestStatus.SKIPPED
        logger.info("Ingested {} {} ({})", event_type, signature, status.value)
        return IngestResult(status, event_type, signature)

    def ingest_notification(self, payload: Mapping[str, Any] | RawNotification) -> IngestSummary:
        notification = (
            payload if isinstance(payload, RawNotification) else parse_notification(payload)
        )
        summary = IngestSummary(received=len(notification.instructions))
        events = decode_notification(notification, program_id=self.settings.ledger_program_id)
        summary.decoded = len(events)
        for event in events:
            summary.add(self.ingest(event))
        return summary

    def reprocess_pending(self, *, limit: int = 100) -> IngestSummary:
        """Re-apply stored events that have not been processed yet, oldest slot first."""

        with session_scope(self._session_factory) as session:
            pending = [
                event_from_record(
                    row.event_type,
                    EventEnvelope(
                        tx_signature=row.tx_signature,
                        slot=row.slot,
                        block_time=ensure_utc(row.block_time),
                    ),
                    dict(row.payload or {}),
                )
                for row in LedgerEventRepository(session).list_pending(limit=limit)
            ]

        summary = IngestSummary(received=len(pending), decoded=len(pending))
        for event in pending:
            summary.add(self.ingest(event))
        logger.info(
            "Reprocessed {} pending events: applied={}, skipped={}, failed={}",
            summary.received,
            summary.applied,
            summary.skipped,
            summary.failed,
        )
        return summary

    # ------------------------------------------------------------------
    # Writes

    def _record_failure(self, row_id: int, message: str) -> None:
        with session_scope(self._session_factory) as session:
            row = session.get(LedgerEventRow, row_id)
            if row is not None:
                LedgerEventRepository(session).mark_failed(row, message)

    def _apply(self, session: Session, event: LedgerEventBase) -> bool:
        repo = MarketRepository(session)
        changed = self._appliers[event.event_type](repo, event)
        market = repo.get_by_address(event.market_address) if changed else None
        if market is not None:
            _reconcile(market, event.tx_signature)
        return changed

    def _advance(self, repo: MarketRepository, market: Market, target: MarketState, event: LedgerEventBase) -> bool:
        if is_behind(market.state, target):
            logger.warning(
                "Ignoring stale {} for market {}: already {}",
                event.event_type.value,
                market.market_id,
                market.state,
            )
            return False
        repo.transition(market, target)
        return True

    def _apply_market_created(self, repo: MarketRepository, event: MarketCreated) -> bool:
        if repo.get_by_address(event.market_address) is not None:
            logger.debug("Market {} already present", event.market_address)
            return False
        repo.create_market(
            on_chain_address=event.market_address,
            question=event.question,
            creator_wallet=event.creator,
            initial_liquidity=event.initial_liquidity,
            created_at=event.envelope.block_time,
        )
        return True

    def _apply_trade(self, repo: MarketRepository, event: TradeExecuted) -> bool:
        market = repo.require_by_address(event.market_address)
        trade = repo.apply_trade(
            market,
            user_wallet=event.trader,
            side=event.side,
            outcome=event.outcome,
            shares=event.shares,
            amount=event.max_cost,
            tx_signature=event.tx_signature,
            executed_at=event.envelope.block_time,
        )
        return trade is not None

    def _apply_proposal_approved(self, repo: MarketRepository, event: ProposalApproved) -> bool:
        market = repo.require_by_address(event.market_address)
        if not self._advance(repo, market, MarketState.APPROVED, event):
            return False
        market.proposal_likes = event.likes
        market.proposal_dislikes = event.dislikes
        market.proposal_total_votes = event.likes + event.dislikes
        market.approved_at = _event_time(event, market.approved_at)
        return True

    def _apply_market_activated(self, repo: MarketRepository, event: MarketActivated) -> bool:
        market = repo.require_by_address(event.market_address)
        if not self._advance(repo, market, MarketState.ACTIVE, event):
            return False
        market.activated_at = _event_time(event, market.activated_at)
        return True

    def _apply_market_resolved(self, repo: MarketRepository, event: MarketResolved) -> bool:
        market = repo.require_by_address(event.market_address)
        if not self._advance(repo, market, MarketState.RESOLVING, event):
            return False
        market.proposed_outcome = event.outcome.value
        market.resolver_wallet = event.resolver
        market.resolution_proposed_at = _event_time(event, market.resolution_proposed_at)
        return True

    def _apply_dispute_raised(self, repo: MarketRepository, event: DisputeRaised) -> bool:
        market = repo.require_by_address(event.market_address)
        if not self._advance(repo, market, MarketState.DISPUTED, event):
            return False
        market.dispute_initiated_at = _event_time(event, market.dispute_initiated_at)
        return True

    def _apply_dispute_resolved(self, repo: MarketRepository, event: DisputeResolved) -> bool:
        market = repo.require_by_address(event.market_address)
        if market.proposed_outcome is None:
            raise IncompleteResolutionError(f"Market {market.market_id} has no proposed outcome to finalize")
        was_disputed = (
            market.state == MarketState.DISPUTED.value or market.dispute_initiated_at is not None
        )
        if not self._advance(repo, market, MarketState.FINALIZED, event):
            return False

        final_outcome = resolve_final_outcome(market.proposed_outcome, event.outcome_changed)
        if event.outcome_changed and final_outcome is Outcome.INVALID:
            logger.warning("Dispute on market {} changed an invalid outcome; keeping invalid", market.market_id)
        market.final_outcome = final_outcome.value
        if was_disputed:
            market.dispute_agree = event.support_votes
            market.dispute_disagree = event.reject_votes
            market.dispute_total_votes = event.support_votes + event.reject_votes
        market.finalized_at = _event_time(event, market.finalized_at)
        return True

    def _apply_votes_tallied(self, repo: MarketRepository, event: VotesTallied) -> bool:
        market = repo.require_by_address(event.market_address)
        if event.kind is VoteKind.PROPOSAL:
            market.proposal_likes = event.positive
            market.proposal_dislikes = event.negative
            market.proposal_total_votes = event.positive + event.negative
        else:
            market.dispute_agree = event.positive
            market.dispute_disagree = event.negative
            market.dispute_total_votes = event.positive + event.negative
        return True

    def _apply_winnings_claimed(self, repo: MarketRepository, event: WinningsClaimed) -> bool:
        market = repo.require_by_address(event.market_address)
        repo.mark_claimed(market, user_wallet=event.user, amount=event.amount)
        return True


def _event_time(event: LedgerEventBase, fallback):
    return event.envelope.block_time or fallback or utcnow()


def _reconcile(market: Market, signature: str) -> None:
    market.last_event_signature = signature
    if market.pending_tx_signature == signature:
        market.pending_tx_signature = None
