"""Typed ledger events and their binary instruction layouts.

``INSTRUCTION_LAYOUTS`` maps each discriminator byte to the ``(field, FieldKind)``
pairs read in order after it. Integers are little-endian; strings carry a
u32 little-endian byte length prefix.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from app.models import Outcome, TradeSide, VoteKind


class FieldKind(str, Enum):
    U8 = "u8"
    U32 = "u32"
    U64 = "u64"
    STRING = "string"


class EventType(str, Enum):
    MARKET_CREATED = "MarketCreated"
    TRADE_EXECUTED = "TradeExecuted"
    PROPOSAL_APPROVED = "ProposalApproved"
    MARKET_ACTIVATED = "MarketActivated"
    MARKET_RESOLVED = "MarketResolved"
    DISPUTE_RAISED = "DisputeRaised"
    DISPUTE_RESOLVED = "DisputeResolved"
    VOTES_TALLIED = "VotesTallied"
    WINNINGS_CLAIMED = "WinningsClaimed"


def outcome_from_byte(value: int) -> Outcome:
    if value == 0:
        return Outcome.YES
    if value == 1:
        return Outcome.NO
    return Outcome.INVALID


@dataclass(slots=True, frozen=True)
class EventEnvelope:
    """Transaction context shared by every instruction in one notification."""

    tx_signature: str
    slot: int
    block_time: datetime | None

    @classmethod
    def from_timestamp(cls, tx_signature: str, slot: int, timestamp: float | None) -> "EventEnvelope":
        block_time = (
            datetime.fromtimestamp(timestamp, tz=timezone.utc) if timestamp is not None else None
        )
        return cls(tx_signature=tx_signature, slot=int(slot), block_time=block_time)


@dataclass(slots=True, frozen=True)
class LedgerEventBase:
    envelope: EventEnvelope
    market_address: str

    EVENT_TYPE: ClassVar[EventType]

    @property
    def event_type(self) -> EventType:
        return self.EVENT_TYPE

    @property
    def tx_signature(self) -> str:
        return self.envelope.tx_signature

    def payload(self) -> dict[str, Any]:
        """JSON-safe body stored on the raw event row."""

        data: dict[str, Any] = {}
        for item in fields(self):
            if item.name == "envelope":
                continue
            value = getattr(self, item.name)
            data[item.name] = value.value if isinstance(value, Enum) else value
        return data

    def to_dict(self) -> dict[str, Any]:
        body = asdict(self.envelope)
        block_time = body.get("block_time")
        body["block_time"] = block_time.isoformat() if block_time else None
        body["event_type"] = self.EVENT_TYPE.value
        body["payload"] = self.payload()
        return body


@dataclass(slots=True, frozen=True)
class MarketCreated(LedgerEventBase):
    creator: str
    question: str
    initial_liquidity: int

    EVENT_TYPE: ClassVar[EventType] = EventType.MARKET_CREATED


@dataclass(slots=True, frozen=True)
class TradeExecuted(LedgerEventBase):
    trader: str
    side: TradeSide
    outcome: Outcome
    shares: int
    max_cost: int

    EVENT_TYPE: ClassVar[EventType] = EventType.TRADE_EXECUTED


@dataclass(slots=True, frozen=True)
class ProposalApproved(LedgerEventBase):
    proposal_id: str
    likes: int
    dislikes: int

    EVENT_TYPE: ClassVar[EventType] = EventType.PROPOSAL_APPROVED


@dataclass(slots=True, frozen=True)
class MarketActivated(LedgerEventBase):
    EVENT_TYPE: ClassVar[EventType] = EventType.MARKET_ACTIVATED


@dataclass(slots=True, frozen=True)
class MarketResolved(LedgerEventBase):
    resolver: str
    outcome: Outcome

    EVENT_TYPE: ClassVar[EventType] = EventType.MARKET_RESOLVED


@dataclass(slots=True, frozen=True)
class DisputeRaised(LedgerEventBase):
    disputer: str

    EVENT_TYPE: ClassVar[EventType] = EventType.DISPUTE_RAISED


@dataclass(slots=True, frozen=True)
class DisputeResolved(LedgerEventBase):
    outcome_changed: bool
    support_votes: int
    reject_votes: int

    EVENT_TYPE: ClassVar[EventType] = EventType.DISPUTE_RESOLVED


@dataclass(slots=True, frozen=True)
class VotesTallied(LedgerEventBase):
    kind: VoteKind
    positive: int
    negative: int
    proposal_id: str | None = None

    EVENT_TYPE: ClassVar[EventType] = EventType.VOTES_TALLIED


@dataclass(slots=True, frozen=True)
class WinningsClaimed(LedgerEventBase):
    user: str
    amount: int
    shares_yes: int
    shares_no: int

    EVENT_TYPE: ClassVar[EventType] = EventType.WINNINGS_CLAIMED


DecodedEvent = (
    MarketCreated
    | TradeExecuted
    | ProposalApproved
    | MarketActivated
    | MarketResolved
    | DisputeRaised
    | DisputeResolved
    | VotesTallied
    | WinningsClaimed
)


@dataclass(slots=True, frozen=True)
class InstructionLayout:
    discriminator: int
    instruction: str
    args: tuple[tuple[str, FieldKind], ...]


INSTRUCTION_LAYOUTS: dict[int, InstructionLayout] = {
    layout.discriminator: layout
    for layout in (
        InstructionLayout(0, "create_market", (("question", FieldKind.STRING), ("liquidity", FieldKind.U64))),
        InstructionLayout(
            1,
            "buy_shares",
            (("outcome", FieldKind.U8), ("shares", FieldKind.U64), ("max_cost", FieldKind.U64)),
        ),
        InstructionLayout(
            2,
            "sell_shares",
            (("outcome", FieldKind.U8), ("shares", FieldKind.U64), ("min_proceeds", FieldKind.U64)),
        ),
        InstructionLayout(
            3,
            "approve_proposal",
            (("proposal_id", FieldKind.STRING), ("likes", FieldKind.U32), ("dislikes", FieldKind.U32)),
        ),
        InstructionLayout(4, "resolve_market", (("outcome", FieldKind.U8),)),
        InstructionLayout(5, "raise_dispute", ()),
        InstructionLayout(
            6,
            "resolve_dispute",
            (("outcome_changed", FieldKind.U8), ("support", FieldKind.U32), ("reject", FieldKind.U32)),
        ),
        InstructionLayout(
            7,
            "claim_winnings",
            (("amount", FieldKind.U64), ("shares_yes", FieldKind.U64), ("shares_no", FieldKind.U64)),
        ),
        InstructionLayout(
            8,
            "aggregate_proposal_votes",
            (("proposal_id", FieldKind.STRING), ("likes", FieldKind.U32), ("dislikes", FieldKind.U32)),
        ),
        InstructionLayout(
            9,
            "aggregate_dispute_votes",
            (("support", FieldKind.U32), ("reject", FieldKind.U32)),
        ),
        InstructionLayout(10, "activate_market", ()),
    )
}


EVENT_CLASSES: dict[str, type[LedgerEventBase]] = {
    cls.EVENT_TYPE.value: cls
    for cls in (
        MarketCreated,
        TradeExecuted,
        ProposalApproved,
        MarketActivated,
        MarketResolved,
        DisputeRaised,
        DisputeResolved,
        VotesTallied,
        WinningsClaimed,
    )
}

_ENUM_FIELDS: dict[str, type[Enum]] = {
    "side": TradeSide,
    "outcome": Outcome,
    "kind": VoteKind,
}


def event_from_record(
    event_type: str, envelope: EventEnvelope, payload: dict[str, Any]
) -> LedgerEventBase:
    """Rebuild a typed event from a stored raw event row."""

    cls = EVENT_CLASSES[event_type]
    kwargs: dict[str, Any] = {}
    for item in fields(cls):
        if item.name == "envelope" or item.name not in payload:
            continue
        value = payload[item.name]
        enum_cls = _ENUM_FIELDS.get(item.name)
        kwargs[item.name] = enum_cls(value) if enum_cls and value is not None else value
    return cls(envelope=envelope, **kwargs)
