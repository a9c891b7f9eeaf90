from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from app.db import session_scope
from app.models import LedgerEvent, Market, MarketState, Outcome, Trade, TradeSide, VoteKind
from conftest import address
from ingestion.events import (
    DisputeRaised,
    DisputeResolved,
    EventEnvelope,
    MarketActivated,
    MarketCreated,
    MarketResolved,
    ProposalApproved,
    TradeExecuted,
    VotesTallied,
)
from ingestion.service import IngestionService, IngestStatus

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
CREATOR = "Creator1111111111111111111111111"


def _env(sig: str, minutes: int = 0) -> EventEnvelope:
    return EventEnvelope(sig, 100 + minutes, T0 + timedelta(minutes=minutes))


def _created(n: int = 1, sig: str = "sig-create") -> MarketCreated:
    return MarketCreated(
        envelope=_env(sig),
        market_address=address(n),
        creator=CREATOR,
        question="Will it rain?",
        initial_liquidity=500,
    )


def _market(session_factory, n: int = 1) -> Market:
    with session_scope(session_factory) as session:
        return session.execute(
            select(Market).where(Market.on_chain_address == address(n))
        ).scalar_one()


def _walk_to_resolving(service: IngestionService, n: int = 1, outcome: Outcome = Outcome.YES) -> None:
    addr = address(n)
    service.ingest(_created(n, sig=f"c{n}"))
    service.ingest(ProposalApproved(envelope=_env(f"a{n}", 1), market_address=addr, proposal_id="p", likes=7, dislikes=3))
    service.ingest(MarketActivated(envelope=_env(f"act{n}", 2), market_address=addr))
    service.ingest(MarketResolved(envelope=_env(f"r{n}", 3), market_address=addr, resolver=CREATOR, outcome=outcome))


def test_reingesting_same_event_is_a_noop(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)

    first = service.ingest(_created())
    before = _market(session_factory)
    second = service.ingest(_created())
    after = _market(session_factory)

    assert first.status is IngestStatus.APPLIED
    assert second.status is IngestStatus.SKIPPED
    assert before.updated_at == after.updated_at
    with session_scope(session_factory) as session:
        assert session.execute(select(func.count()).select_from(LedgerEvent)).scalar_one() == 1
        assert session.execute(select(func.count()).select_from(Market)).scalar_one() == 1


def test_lifecycle_events_advance_replica(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)

    _walk_to_resolving(service, outcome=Outcome.NO)
    market = _market(session_factory)

    assert market.state == MarketState.RESOLVING.value
    assert market.proposed_outcome == Outcome.NO.value
    assert market.proposal_total_votes == 10
    assert market.resolution_proposed_at.replace(tzinfo=timezone.utc) == T0 + timedelta(minutes=3)
    assert market.final_outcome is None


def test_undisputed_finalization_keeps_dispute_counts_null(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)
    _walk_to_resolving(service)

    result = service.ingest(
        DisputeResolved(envelope=_env("fin", 10), market_address=address(1), outcome_changed=False, support_votes=0, reject_votes=0)
    )
    market = _market(session_factory)

    assert result.status is IngestStatus.APPLIED
    assert market.state == MarketState.FINALIZED.value
    assert market.final_outcome == Outcome.YES.value
    assert market.dispute_total_votes is None
    assert market.finalized_at is not None


def test_successful_dispute_flips_outcome(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)
    _walk_to_resolving(service)
    service.ingest(DisputeRaised(envelope=_env("d", 5), market_address=address(1), disputer=CREATOR))

    service.ingest(
        DisputeResolved(envelope=_env("dr", 10), market_address=address(1), outcome_changed=True, support_votes=8, reject_votes=2)
    )
    market = _market(session_factory)

    assert market.final_outcome == Outcome.NO.value
    assert (market.dispute_agree, market.dispute_disagree, market.dispute_total_votes) == (8, 2, 10)


def test_finalization_without_proposed_outcome_fails(session_factory, test_settings, make_market):
    make_market(1, state=MarketState.RESOLVING)
    service = IngestionService(session_factory=session_factory, settings=test_settings)

    result = service.ingest(
        DisputeResolved(envelope=_env("fin", 10), market_address=address(1), outcome_changed=False, support_votes=0, reject_votes=0)
    )

    assert result.status is IngestStatus.FAILED
    assert _market(session_factory).state == MarketState.RESOLVING.value
    with session_scope(session_factory) as session:
        row = session.execute(select(LedgerEvent)).scalar_one()
        assert row.processed is False
        assert "IncompleteResolutionError" in row.error


def test_failed_write_is_recorded_and_reprocessed(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)
    early = MarketResolved(envelope=_env("early", 3), market_address=address(5), resolver=CREATOR, outcome=Outcome.YES)

    failed = service.ingest(early)

    assert failed.status is IngestStatus.FAILED
    with session_scope(session_factory) as session:
        row = session.execute(select(LedgerEvent)).scalar_one()
        assert row.processed is False
        assert "MarketNotFoundError" in row.error

    with session_scope(session_factory) as session:
        market = Market(
            market_id="market-5",
            on_chain_address=address(5),
            question="q",
            state=MarketState.ACTIVE.value,
        )
        session.add(market)

    summary = service.reprocess_pending()

    assert summary.applied == 1
    market = _market(session_factory, 5)
    assert market.state == MarketState.RESOLVING.value
    with session_scope(session_factory) as session:
        row = session.execute(select(LedgerEvent)).scalar_one()
        assert row.processed is True
        assert row.error is None


def test_stale_event_does_not_move_state_backwards(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)
    _walk_to_resolving(service)
    service.ingest(
        DisputeResolved(envelope=_env("fin", 10), market_address=address(1), outcome_changed=False, support_votes=0, reject_votes=0)
    )

    result = service.ingest(
        MarketResolved(envelope=_env("late", 4), market_address=address(1), resolver=CREATOR, outcome=Outcome.NO)
    )
    market = _market(session_factory)

    assert result.status is IngestStatus.SKIPPED
    assert market.state == MarketState.FINALIZED.value
    assert market.proposed_outcome == Outcome.YES.value


def test_matching_event_clears_optimistic_signature(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)
    service.ingest(_created())
    with session_scope(session_factory) as session:
        market = session.execute(select(Market)).scalar_one()
        market.state = MarketState.APPROVED.value
        market.pending_tx_signature = "sig-approve"

    service.ingest(
        ProposalApproved(envelope=_env("sig-approve", 1), market_address=address(1), proposal_id="p", likes=9, dislikes=1)
    )
    market = _market(session_factory)

    assert market.pending_tx_signature is None
    assert market.last_event_signature == "sig-approve"
    assert market.proposal_likes == 9


def test_trade_and_tally_events(session_factory, test_settings):
    service = IngestionService(session_factory=session_factory, settings=test_settings)
    service.ingest(_created())
    trade = TradeExecuted(
        envelope=_env("trade", 1),
        market_address=address(1),
        trader=CREATOR,
        side=TradeSide.BUY,
        outcome=Outcome.YES,
        shares=40,
        max_cost=25,
    )

    service.ingest(trade)
    service.ingest(
        VotesTallied(envelope=_env("tally", 2), market_address=address(1), kind=VoteKind.PROPOSAL, positive=3, negative=1)
    )
    market = _market(session_factory)

    assert market.shares_yes == 40
    assert market.proposal_total_votes == 4
    with session_scope(session_factory) as session:
        assert session.execute(select(func.count()).select_from(Trade)).scalar_one() == 1


def test_ingest_notification_counts(session_factory, test_settings):
    import base64
    import struct

    service = IngestionService(session_factory=session_factory, settings=test_settings)
    question = b"Rain?"
    data = bytes([0]) + struct.pack("<I", len(question)) + question + struct.pack("<Q", 10)
    payload = {
        "signature": "sig-batch",
        "slot": 9,
        "timestamp": 1_700_000_000,
        "instructions": [
            {"programId": test_settings.ledger_program_id, "accounts": [CREATOR, address(3)], "data": base64.b64encode(data).decode()},
            {"programId": "Other111111111111111111111111111", "accounts": [], "data": ""},
        ],
    }

    first = service.ingest_notification(payload)
    second = service.ingest_notification(payload)

    assert (first.received, first.decoded, first.applied) == (2, 1, 1)
    assert (second.applied, second.skipped) == (0, 1)
