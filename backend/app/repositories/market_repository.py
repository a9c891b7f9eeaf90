"""Market persistence and lifecycle write helpers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import asc, select
from sqlalchemy.orm import Session

from app.domain import can_transition
from app.errors import InvalidTransitionError, MarketNotFoundError
from app.models import Market, MarketState, Outcome, Position, Trade, TradeSide, utcnow


class MarketRepository:
    """Encapsulate market reads and the forward-only state machine writes."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Lookups

    def get(self, market_id: str) -> Market | None:
        return self._session.get(Market, market_id)

    def get_by_address(self, address: str) -> Market | None:
        stmt = select(Market).where(Market.on_chain_address == address)
        return self._session.execute(stmt).scalar_one_or_none()

    def require_by_address(self, address: str) -> Market:
        market = self.get_by_address(address)
        if market is None:
            raise MarketNotFoundError(f"No market with on-chain address {address}")
        return market

    def list_in_state(self, state: MarketState, *, limit: int | None = None) -> list[Market]:
        """Markets in ``state``, oldest first."""

        stmt = (
            select(Market)
            .where(Market.state == state.value)
            .order_by(asc(Market.created_at), asc(Market.market_id))
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars())

    def list_disputed(self, *, limit: int | None = None) -> list[Market]:
        stmt = (
            select(Market)
            .where(Market.state == MarketState.DISPUTED.value)
            .order_by(
                asc(Market.resolution_proposed_at),
                asc(Market.created_at),
                asc(Market.market_id),
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars())

    def list_due_for_finalization(self, *, cutoff: datetime, limit: int) -> list[Market]:
        """Undisputed resolving markets whose resolution was proposed at or before ``cutoff``."""

        stmt = (
            select(Market)
            .where(
                Market.state == MarketState.RESOLVING.value,
                Market.resolution_proposed_at.is_not(None),
                Market.resolution_proposed_at <= cutoff,
            )
            .order_by(asc(Market.resolution_proposed_at), asc(Market.market_id))
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Mutations

    def create_market(
        self,
        *,
        on_chain_address: str,
        question: str,
        creator_wallet: str | None = None,
        initial_liquidity: int = 0,
        description: str | None = None,
        created_at: datetime | None = None,
        market_id: str | None = None,
    ) -> Market:
        market = Market(
            on_chain_address=on_chain_address,
            question=question,
            creator_wallet=creator_wallet,
            initial_liquidity=initial_liquidity,
            description=description,
            state=MarketState.PROPOSED.value,
            created_at=created_at or utcnow(),
        )
        if market_id:
            market.market_id = market_id
        self._session.add(market)
        self._session.flush()
        return market

    def transition(self, market: Market, target: MarketState) -> bool:
        """Move ``market`` to ``target``; returns False when it is already there."""

        if market.state == target.value:
            return False
        if not can_transition(market.state, target):
            raise InvalidTransitionError(market.market_id, market.state, target.value)
        market.state = target.value
        return True

    def record_approval(
        self,
        market: Market,
        *,
        likes: int,
        dislikes: int,
        approved_at: datetime | None = None,
        signature: str | None = None,
    ) -> Market:
        self.transition(market, MarketState.APPROVED)
        market.proposal_likes = likes
        market.proposal_dislikes = dislikes
        market.proposal_total_votes = likes + dislikes
        market.approved_at = market.approved_at or approved_at or utcnow()
        if signature:
            market.pending_tx_signature = signature
        return market

    def record_finalization(
        self,
        market: Market,
        *,
        final_outcome: Outcome,
        agree: int | None,
        disagree: int | None,
        finalized_at: datetime | None = None,
        signature: str | None = None,
    ) -> Market:
        self.transition(market, MarketState.FINALIZED)
        market.final_outcome = final_outcome.value
        if agree is not None and disagree is not None:
            market.dispute_agree = agree
            market.dispute_disagree = disagree
            market.dispute_total_votes = agree + disagree
        market.finalized_at = market.finalized_at or finalized_at or utcnow()
        if signature:
            market.pending_tx_signature = signature
        return market

    def apply_trade(
        self,
        market: Market,
        *,
        user_wallet: str,
        side: TradeSide,
        outcome: Outcome,
        shares: int,
        amount: int,
        tx_signature: str,
        executed_at: datetime | None = None,
    ) -> Trade | None:
        stmt = select(Trade).where(Trade.tx_signature == tx_signature)
        if self._session.execute(stmt).scalar_one_or_none() is not None:
            return None

        trade = Trade(
            market_id=market.market_id,
            user_wallet=user_wallet,
            side=side.value,
            outcome=outcome.value,
            shares=shares,
            amount=amount,
            tx_signature=tx_signature,
            executed_at=executed_at or utcnow(),
        )
        self._session.add(trade)

        delta = shares if side is TradeSide.BUY else -shares
        position = self.get_or_create_position(market.market_id, user_wallet)
        if outcome is Outcome.YES:
            market.shares_yes = max((market.shares_yes or 0) + delta, 0)
            position.shares_yes = max((position.shares_yes or 0) + delta, 0)
        else:
            market.shares_no = max((market.shares_no or 0) + delta, 0)
            position.shares_no = max((position.shares_no or 0) + delta, 0)
        return trade

    def get_or_create_position(self, market_id: str, user_wallet: str) -> Position:
        stmt = select(Position).where(
            Position.market_id == market_id, Position.user_wallet == user_wallet
        )
        position = self._session.execute(stmt).scalar_one_or_none()
        if position is None:
            position = Position(market_id=market_id, user_wallet=user_wallet, shares_yes=0, shares_no=0)
            self._session.add(position)
        return position

    def mark_claimed(self, market: Market, *, user_wallet: str, amount: int) -> Position:
        position = self.get_or_create_position(market.market_id, user_wallet)
        position.claimed = True
        position.claimed_amount = amount
        return position
