"""Pure decoding of ledger transaction notifications into typed events."""

from __future__ import annotations

import base64
import binascii
import struct
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any

from dateutil import parser as date_parser
from loguru import logger

from app.errors import DecodeError
from app.models import TradeSide, VoteKind

from .events import (
    DisputeRaised,
    DisputeResolved,
    EventEnvelope,
    FieldKind,
    INSTRUCTION_LAYOUTS,
    InstructionLayout,
    LedgerEventBase,
    MarketActivated,
    MarketCreated,
    MarketResolved,
    ProposalApproved,
    TradeExecuted,
    VotesTallied,
    WinningsClaimed,
    outcome_from_byte,
)

_FIXED_WIDTH = {
    FieldKind.U8: struct.Struct("<B"),
    FieldKind.U32: struct.Struct("<I"),
    FieldKind.U64: struct.Struct("<Q"),
}


@dataclass(slots=True)
class RawInstruction:
    program_id: str
    accounts: list[str]
    data: bytes


@dataclass(slots=True)
class RawNotification:
    signature: str
    slot: int
    timestamp: float | None
    instructions: list[RawInstruction] = field(default_factory=list)

    @property
    def envelope(self) -> EventEnvelope:
        return EventEnvelope.from_timestamp(self.signature, self.slot, self.timestamp)


def _parse_timestamp(value: Any) -> float | None:
    """Unix seconds, or an ISO-8601 string (naive values are UTC)."""

    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        parsed = date_parser.isoparse(text)
    except (ValueError, TypeError):
        logger.warning("Ignoring unparseable notification timestamp {!r}", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def parse_notification(payload: Mapping[str, Any]) -> RawNotification:
    """Build a notification from webhook JSON; instruction data is base64."""

    instructions: list[RawInstruction] = []
    for item in payload.get("instructions") or []:
        raw_data = item.get("data") or ""
        try:
            data = base64.b64decode(raw_data, validate=True)
        except (binascii.Error, ValueError):
            logger.warning(
                "Undecodable instruction data in {} for program {}",
                payload.get("signature"),
                item.get("programId"),
            )
            data = b""
        instructions.append(
            RawInstruction(
                program_id=str(item.get("programId") or item.get("program_id") or ""),
                accounts=[str(account) for account in item.get("accounts") or []],
                data=data,
            )
        )
    return RawNotification(
        signature=str(payload["signature"]),
        slot=int(payload.get("slot") or 0),
        timestamp=_parse_timestamp(payload.get("timestamp") or payload.get("blockTime")),
        instructions=instructions,
    )


def read_fields(layout: InstructionLayout, data: bytes) -> dict[str, Any]:
    """Read ``layout.args`` positionally from ``data`` (discriminator excluded)."""

    values: dict[str, Any] = {}
    offset = 1
    for name, kind in layout.args:
        if kind is FieldKind.STRING:
            length_struct = _FIXED_WIDTH[FieldKind.U32]
            if offset + length_struct.size > len(data):
                raise DecodeError(f"{layout.instruction}: missing length prefix for {name}")
            (length,) = length_struct.unpack_from(data, offset)
            offset += length_struct.size
            if offset + length > len(data):
                raise DecodeError(
                    f"{layout.instruction}: {name} declares {length} bytes, "
                    f"{len(data) - offset} available"
                )
            try:
                values[name] = data[offset : offset + length].decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError(f"{layout.instruction}: {name} is not valid UTF-8") from exc
            offset += length
            continue

        codec = _FIXED_WIDTH[kind]
        if offset + codec.size > len(data):
            raise DecodeError(f"{layout.instruction}: truncated before {name}")
        (values[name],) = codec.unpack_from(data, offset)
        offset += codec.size
    return values


def _account(accounts: Sequence[str], index: int, instruction: str) -> str:
    if index >= len(accounts):
        raise DecodeError(f"{instruction}: expected account #{index}, got {len(accounts)}")
    return accounts[index]


Builder = Callable[[EventEnvelope, Sequence[str], dict[str, Any]], LedgerEventBase]


def _market_created(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return MarketCreated(
        envelope=env,
        market_address=_account(accounts, 1, "create_market"),
        creator=_account(accounts, 0, "create_market"),
        question=v["question"],
        initial_liquidity=v["liquidity"],
    )


def _trade(side: TradeSide) -> Builder:
    def build(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
        return TradeExecuted(
            envelope=env,
            market_address=_account(accounts, 1, f"{side.value}_shares"),
            trader=_account(accounts, 0, f"{side.value}_shares"),
            side=side,
            outcome=outcome_from_byte(0 if v["outcome"] == 0 else 1),
            shares=v["shares"],
            max_cost=v.get("max_cost", v.get("min_proceeds", 0)),
        )

    return build


def _proposal_approved(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return ProposalApproved(
        envelope=env,
        market_address=_account(accounts, 1, "approve_proposal"),
        proposal_id=v["proposal_id"],
        likes=v["likes"],
        dislikes=v["dislikes"],
    )


def _market_activated(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return MarketActivated(envelope=env, market_address=_account(accounts, 1, "activate_market"))


def _market_resolved(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return MarketResolved(
        envelope=env,
        market_address=_account(accounts, 1, "resolve_market"),
        resolver=_account(accounts, 0, "resolve_market"),
        outcome=outcome_from_byte(v["outcome"]),
    )


def _dispute_raised(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return DisputeRaised(
        envelope=env,
        market_address=_account(accounts, 1, "raise_dispute"),
        disputer=_account(accounts, 0, "raise_dispute"),
    )


def _dispute_resolved(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return DisputeResolved(
        envelope=env,
        market_address=_account(accounts, 1, "resolve_dispute"),
        outcome_changed=v["outcome_changed"] == 1,
        support_votes=v["support"],
        reject_votes=v["reject"],
    )


def _winnings_claimed(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return WinningsClaimed(
        envelope=env,
        market_address=_account(accounts, 1, "claim_winnings"),
        user=_account(accounts, 0, "claim_winnings"),
        amount=v["amount"],
        shares_yes=v["shares_yes"],
        shares_no=v["shares_no"],
    )


def _proposal_votes(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return VotesTallied(
        envelope=env,
        market_address=_account(accounts, 1, "aggregate_proposal_votes"),
        kind=VoteKind.PROPOSAL,
        positive=v["likes"],
        negative=v["dislikes"],
        proposal_id=v["proposal_id"],
    )


def _dispute_votes(env: EventEnvelope, accounts: Sequence[str], v: dict[str, Any]) -> LedgerEventBase:
    return VotesTallied(
        envelope=env,
        market_address=_account(accounts, 1, "aggregate_dispute_votes"),
        kind=VoteKind.DISPUTE,
        positive=v["support"],
        negative=v["reject"],
    )


BUILDERS: dict[int, Builder] = {
    0: _market_created,
    1: _trade(TradeSide.BUY),
    2: _trade(TradeSide.SELL),
    3: _proposal_approved,
    4: _market_resolved,
    5: _dispute_raised,
    6: _dispute_resolved,
    7: _winnings_claimed,
    8: _proposal_votes,
    9: _dispute_votes,
    10: _market_activated,
}


def decode_instruction(
    instruction: RawInstruction, envelope: EventEnvelope
) -> LedgerEventBase | None:
    """Decode one instruction; ``None`` for discriminators this build does not know."""

    if not instruction.data:
        raise DecodeError("instruction has no data")

    discriminator = instruction.data[0]
    layout = INSTRUCTION_LAYOUTS.get(discriminator)
    builder = BUILDERS.get(discriminator)
    if layout is None or builder is None:
        logger.warning(
            "Skipping unknown instruction discriminator {} in {}",
            discriminator,
            envelope.tx_signature,
        )
        return None

    values = read_fields(layout, instruction.data)
    return builder(envelope, instruction.accounts, values)


def decode_notification(
    notification: RawNotification, *, program_id: str
) -> list[LedgerEventBase]:
    """Decode every tracked-program instruction; malformed ones are skipped individually."""

    envelope = notification.envelope
    events: list[LedgerEventBase] = []
    for index, instruction in enumerate(notification.instructions):
        if instruction.program_id != program_id:
            continue
        try:
            event = decode_instruction(instruction, envelope)
        except DecodeError as exc:
            logger.warning(
                "Malformed instruction #{} in {}: {}", index, notification.signature, exc
            )
            continue
        if event is not None:
            events.append(event)
    return events
