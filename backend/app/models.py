from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class MarketState(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    ACTIVE = "active"
    RESOLVING = "resolving"
    DISPUTED = "disputed"
    FINALIZED = "finalized"


class Outcome(str, Enum):
    YES = "yes"
    NO = "no"
    INVALID = "invalid"


class VoteKind(str, Enum):
    PROPOSAL = "proposal"
    DISPUTE = "dispute"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""

    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _new_market_id() -> str:
    return str(uuid.uuid4())


class Market(Base):
    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_market_id)
    on_chain_address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    creator_wallet: Mapped[str | None] = mapped_column(String(64), nullable=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=MarketState.PROPOSED.value)

    initial_liquidity: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shares_yes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shares_no: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    proposed_outcome: Mapped[str | None] = mapped_column(String(8), nullable=True)
    final_outcome: Mapped[str | None] = mapped_column(String(8), nullable=True)
    resolver_wallet: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolution_proposed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_initiated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    proposal_likes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    proposal_dislikes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    proposal_total_votes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dispute_agree: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dispute_disagree: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dispute_total_votes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    pending_tx_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_event_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    votes: Mapped[list["Vote"]] = relationship(
        "Vote", back_populates="market", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "(state = 'finalized') = (final_outcome IS NOT NULL)",
            name="ck_market_final_outcome_iff_finalized",
        ),
        Index("ix_markets_state_created", "state", "created_at"),
        Index("ix_markets_state_resolution", "state", "resolution_proposed_at"),
    )


class Vote(Base):
    __tablename__ = "votes"

    vote_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.market_id"), nullable=False)
    voter_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    choice: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    market: Mapped[Market] = relationship("Market", back_populates="votes")

    __table_args__ = (
        UniqueConstraint("market_id", "voter_wallet", "kind", name="uq_vote_scope"),
    )


class LedgerEvent(Base):
    __tablename__ = "ledger_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tx_signature", "event_type", name="uq_ledger_event_key"),
        Index("ix_ledger_events_pending", "processed", "created_at"),
    )


class FinalizationError(Base):
    __tablename__ = "finalization_errors"

    error_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.market_id"), nullable=False)
    market_on_chain_address: Mapped[str] = mapped_column(String(64), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    resolution_proposed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Trade(Base):
    __tablename__ = "trades"

    trade_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.market_id"), nullable=False)
    user_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    outcome: Mapped[str] = mapped_column(String(8), nullable=False)
    shares: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Position(Base):
    __tablename__ = "positions"

    position_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.market_id"), nullable=False)
    user_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    shares_yes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shares_no: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("market_id", "user_wallet", name="uq_position_scope"),
    )
