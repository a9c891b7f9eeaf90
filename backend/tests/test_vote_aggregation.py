from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.db import session_scope
from app.models import FinalizationError, Market, MarketState, Outcome, VoteKind
from app.services.ledger import APPROVE_MARKET, FINALIZE_MARKET
from conftest import NOW, FakeLedger, address, no_sleep
from pipelines.context import build_lifecycle
from pipelines.lifecycle_run import JOB_CHOICES, run_once
from pipelines.vote_aggregation import DisputeAggregator, ProposalAggregator

WINDOW_ELAPSED = NOW - timedelta(hours=49)


def _proposals(ledger, session_factory, settings, retry_policy) -> ProposalAggregator:
    return ProposalAggregator(
        ledger=ledger,
        session_factory=session_factory,
        settings=settings,
        retry_policy=retry_policy,
        sleep=no_sleep,
        clock=lambda: NOW,
    )


def _disputes(ledger, session_factory, settings, retry_policy) -> DisputeAggregator:
    return DisputeAggregator(
        ledger=ledger,
        session_factory=session_factory,
        settings=settings,
        retry_policy=retry_policy,
        sleep=no_sleep,
        clock=lambda: NOW,
    )


def _load(session_factory, market_id: str) -> Market:
    with session_scope(session_factory) as session:
        return session.get(Market, market_id)


@pytest.mark.asyncio
async def test_proposal_with_seventy_percent_likes_is_approved(
    session_factory, test_settings, make_market, add_votes, no_retry
):
    market_id = make_market(1)
    add_votes(market_id, VoteKind.PROPOSAL, positive=7, negative=3)
    ledger = FakeLedger()

    summary = await _proposals(ledger, session_factory, test_settings, no_retry).run()

    assert summary.decided == 1
    assert ledger.calls == [(APPROVE_MARKET, address(1), {"likes": 7, "dislikes": 3})]
    market = _load(session_factory, market_id)
    assert market.state == MarketState.APPROVED.value
    assert (market.proposal_likes, market.proposal_dislikes, market.proposal_total_votes) == (7, 3, 10)
    assert market.pending_tx_signature == "sig-approve_market-1"


@pytest.mark.asyncio
async def test_proposal_below_threshold_or_without_votes_waits(
    session_factory, test_settings, make_market, add_votes, no_retry
):
    below = make_market(1)
    make_market(2)
    add_votes(below, VoteKind.PROPOSAL, positive=6, negative=4)
    ledger = FakeLedger()

    summary = await _proposals(ledger, session_factory, test_settings, no_retry).run()

    assert (summary.scanned, summary.decided) == (2, 0)
    assert ledger.calls == []
    assert _load(session_factory, below).state == MarketState.PROPOSED.value


@pytest.mark.asyncio
async def test_rejected_dispute_keeps_proposed_outcome(
    session_factory, test_settings, make_market, add_votes, no_retry
):
    market_id = make_market(
        1, state=MarketState.DISPUTED, proposed_outcome="yes", resolution_proposed_at=WINDOW_ELAPSED
    )
    add_votes(market_id, VoteKind.DISPUTE, positive=4, negative=6)
    ledger = FakeLedger()

    summary = await _disputes(ledger, session_factory, test_settings, no_retry).run()

    assert summary.decided == 1
    method, market_address, args = ledger.calls[0]
    assert (method, market_address) == (FINALIZE_MARKET, address(1))
    assert args == {"final_outcome": "yes", "dispute_agree": 4, "dispute_disagree": 6}
    market = _load(session_factory, market_id)
    assert market.state == MarketState.FINALIZED.value
    assert market.final_outcome == Outcome.YES.value
    assert (market.dispute_agree, market.dispute_disagree, market.dispute_total_votes) == (4, 6, 10)


@pytest.mark.asyncio
async def test_upheld_dispute_flips_outcome(
    session_factory, test_settings, make_market, add_votes, no_retry
):
    market_id = make_market(
        1, state=MarketState.DISPUTED, proposed_outcome="yes", resolution_proposed_at=WINDOW_ELAPSED
    )
    add_votes(market_id, VoteKind.DISPUTE, positive=7, negative=3)
    ledger = FakeLedger()

    await _disputes(ledger, session_factory, test_settings, no_retry).run()

    assert ledger.calls[0][2]["final_outcome"] == "no"
    assert _load(session_factory, market_id).final_outcome == Outcome.NO.value


@pytest.mark.asyncio
async def test_open_dispute_window_makes_no_ledger_call(
    session_factory, test_settings, make_market, add_votes, no_retry
):
    market_id = make_market(
        1,
        state=MarketState.DISPUTED,
        proposed_outcome="no",
        resolution_proposed_at=NOW - timedelta(hours=47),
    )
    add_votes(market_id, VoteKind.DISPUTE, positive=9, negative=1)
    ledger = FakeLedger()

    summary = await _disputes(ledger, session_factory, test_settings, no_retry).run()

    assert ledger.calls == []
    assert summary.decided == 0
    assert summary.tallies[0]["window_elapsed"] is False
    assert _load(session_factory, market_id).state == MarketState.DISPUTED.value


@pytest.mark.asyncio
async def test_failed_dispute_write_is_logged_and_batch_continues(
    session_factory, test_settings, make_market, no_retry
):
    failing = make_market(
        1, state=MarketState.DISPUTED, proposed_outcome="yes", resolution_proposed_at=WINDOW_ELAPSED
    )
    healthy = make_market(
        2,
        state=MarketState.DISPUTED,
        proposed_outcome="no",
        resolution_proposed_at=WINDOW_ELAPSED + timedelta(minutes=1),
    )
    ledger = FakeLedger(fail_addresses=[address(1)])

    summary = await _disputes(ledger, session_factory, test_settings, no_retry).run()

    assert (summary.scanned, summary.decided, summary.errored) == (2, 1, 1)
    assert _load(session_factory, failing).state == MarketState.DISPUTED.value
    assert _load(session_factory, healthy).state == MarketState.FINALIZED.value
    with session_scope(session_factory) as session:
        errors = session.execute(select(FinalizationError)).scalars().all()
        assert [(e.market_id, e.attempt_count) for e in errors] == [(failing, 1)]


@pytest.mark.asyncio
async def test_missing_resolution_timestamp_is_reported_per_market(
    session_factory, test_settings, make_market, no_retry
):
    make_market(1, state=MarketState.DISPUTED, proposed_outcome="yes")
    ledger = FakeLedger()

    summary = await _disputes(ledger, session_factory, test_settings, no_retry).run()

    assert summary.errored == 1
    assert "resolution timestamp" in summary.failures[0]["error"]
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_overlapping_pass_is_skipped(
    session_factory, test_settings, make_market, add_votes, no_retry
):
    market_id = make_market(1)
    add_votes(market_id, VoteKind.PROPOSAL, positive=10, negative=0)
    ledger = FakeLedger(delay=0.05)
    aggregator = _proposals(ledger, session_factory, test_settings, no_retry)

    first, second = await asyncio.gather(aggregator.run(), aggregator.run())

    assert sorted([first.skipped, second.skipped]) == [False, True]
    assert len(ledger.calls) == 1
    assert aggregator.is_running is False


@pytest.mark.asyncio
async def test_lifecycle_run_settles_proposals_before_disputes(
    session_factory, test_settings, make_market, add_votes
):
    proposal = make_market(1)
    add_votes(proposal, VoteKind.PROPOSAL, positive=8, negative=2)
    make_market(
        2, state=MarketState.DISPUTED, proposed_outcome="yes", resolution_proposed_at=WINDOW_ELAPSED
    )
    ledger = FakeLedger()
    context = build_lifecycle(test_settings, ledger=ledger, session_factory=session_factory)

    results = await run_once(context, JOB_CHOICES["all"])

    assert [call[0] for call in ledger.calls] == [APPROVE_MARKET, FINALIZE_MARKET]
    assert results["proposal-aggregation"]["decided"] == 1
    assert results["dispute-aggregation"]["decided"] == 1
    assert results["finalization-monitor"]["found"] == 0


@pytest.mark.asyncio
async def test_dry_run_skips_ledger_and_replica_writes(
    session_factory, test_settings, make_market, add_votes, no_retry
):
    proposal = make_market(1)
    add_votes(proposal, VoteKind.PROPOSAL, positive=9, negative=1)
    disputed = make_market(
        2, state=MarketState.DISPUTED, proposed_outcome="no", resolution_proposed_at=WINDOW_ELAPSED
    )
    settings = test_settings.model_copy(update={"lifecycle_dry_run": True})
    ledger = FakeLedger()

    approvals = await _proposals(ledger, session_factory, settings, no_retry).run()
    settlements = await _disputes(ledger, session_factory, settings, no_retry).run()

    assert (approvals.decided, settlements.decided) == (1, 1)
    assert ledger.calls == []
    assert _load(session_factory, proposal).state == MarketState.PROPOSED.value
    assert _load(session_factory, proposal).pending_tx_signature is None
    assert _load(session_factory, disputed).state == MarketState.DISPUTED.value
