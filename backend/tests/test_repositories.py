from __future__ import annotations

import pytest

from app.db import session_scope
from app.errors import DuplicateVoteError, InvalidTransitionError
from app.models import MarketState, VoteKind
from app.repositories import FinalizationErrorRepository, MarketRepository, VoteRepository


def test_duplicate_vote_is_rejected_without_losing_session(session_factory, make_market):
    market_id = make_market(1)

    with session_scope(session_factory) as session:
        votes = VoteRepository(session)
        votes.cast_vote(market_id, "wallet-a", VoteKind.PROPOSAL, True)
        with pytest.raises(DuplicateVoteError):
            votes.cast_vote(market_id, "wallet-a", VoteKind.PROPOSAL, False)
        votes.cast_vote(market_id, "wallet-a", VoteKind.DISPUTE, False)
        votes.cast_vote(market_id, "wallet-b", VoteKind.PROPOSAL, False)

    with session_scope(session_factory) as session:
        votes = VoteRepository(session)
        assert votes.count_choices(market_id, VoteKind.PROPOSAL) == (1, 1)
        assert votes.count_choices(market_id, VoteKind.DISPUTE) == (0, 1)


def test_count_choices_without_votes(session_factory, make_market):
    market_id = make_market(1)

    with session_scope(session_factory) as session:
        assert VoteRepository(session).count_choices(market_id, VoteKind.PROPOSAL) == (0, 0)


def test_transition_rejects_illegal_moves(session_factory, make_market):
    market_id = make_market(1)

    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        market = repo.get(market_id)
        with pytest.raises(InvalidTransitionError) as excinfo:
            repo.transition(market, MarketState.RESOLVING)
        assert excinfo.value.current == MarketState.PROPOSED.value
        assert repo.transition(market, MarketState.APPROVED) is True
        assert repo.transition(market, MarketState.APPROVED) is False


def test_list_in_state_is_oldest_first(session_factory, make_market):
    for n in (3, 1, 2):
        make_market(n)

    with session_scope(session_factory) as session:
        markets = MarketRepository(session).list_in_state(MarketState.PROPOSED)
        assert [m.market_id for m in markets] == ["market-1", "market-2", "market-3"]


def test_resolving_errors_resets_attempt_streak(session_factory, make_market):
    market_id = make_market(1, state=MarketState.RESOLVING, proposed_outcome="no")

    with session_scope(session_factory) as session:
        market = MarketRepository(session).get(market_id)
        errors = FinalizationErrorRepository(session)
        first = errors.record_failure(market, "boom")
        errors.mark_resolved(first.error_id, notes="retried by hand", resolved_by="ops")
        second = errors.record_failure(market, "boom again")
        assert second.attempt_count == 1
        items, total = errors.list_errors(unresolved_only=True)
        assert total == 1
        assert items[0].error_id == second.error_id
        _, everything = errors.list_errors(unresolved_only=False)
        assert everything == 2
