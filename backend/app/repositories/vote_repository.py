"""Vote storage; uniqueness of (market, voter, kind) is enforced by the table."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import DuplicateVoteError
from app.models import Vote, VoteKind, utcnow


class VoteRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def cast_vote(
        self, market_id: str, voter_wallet: str, kind: VoteKind, choice: bool
    ) -> Vote:
        vote = Vote(
            market_id=market_id,
            voter_wallet=voter_wallet,
            kind=kind.value,
            choice=choice,
            created_at=utcnow(),
        )
        try:
            with self._session.begin_nested():
                self._session.add(vote)
        except IntegrityError as exc:
            raise DuplicateVoteError(
                f"{voter_wallet} already cast a {kind.value} vote on market {market_id}"
            ) from exc
        return vote

    def count_choices(self, market_id: str, kind: VoteKind) -> tuple[int, int]:
        """Return ``(true_votes, false_votes)`` for one market and vote kind."""

        stmt = (
            select(Vote.choice, func.count())
            .where(Vote.market_id == market_id, Vote.kind == kind.value)
            .group_by(Vote.choice)
        )
        positive = 0
        negative = 0
        for choice, count in self._session.execute(stmt):
            if choice:
                positive = int(count)
            else:
                negative = int(count)
        return positive, negative
