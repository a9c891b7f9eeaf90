from __future__ import annotations

import base64
import struct
from datetime import datetime, timezone

import pytest

from app.errors import DecodeError
from app.models import Outcome, TradeSide, VoteKind
from conftest import PROGRAM_ID, address
from ingestion.decoder import (
    RawInstruction,
    RawNotification,
    decode_instruction,
    decode_notification,
    parse_notification,
)
from ingestion.events import (
    DisputeResolved,
    EventEnvelope,
    EventType,
    MarketCreated,
    MarketResolved,
    TradeExecuted,
    VotesTallied,
    event_from_record,
)

CREATOR = "Creator1111111111111111111111111"
ENVELOPE = EventEnvelope("sig-1", 42, datetime(2025, 1, 1, tzinfo=timezone.utc))


def _string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _create_market(question: str = "Will it rain?", liquidity: int = 1_000_000) -> bytes:
    return bytes([0]) + _string(question) + struct.pack("<Q", liquidity)


def _instruction(data: bytes, program_id: str = PROGRAM_ID) -> RawInstruction:
    return RawInstruction(program_id=program_id, accounts=[CREATOR, address(1)], data=data)


def test_decode_market_created():
    event = decode_instruction(_instruction(_create_market()), ENVELOPE)

    assert isinstance(event, MarketCreated)
    assert event.market_address == address(1)
    assert event.creator == CREATOR
    assert event.question == "Will it rain?"
    assert event.initial_liquidity == 1_000_000
    assert event.event_type is EventType.MARKET_CREATED


def test_decode_large_u64_is_little_endian():
    data = bytes([1, 0]) + struct.pack("<QQ", 2**63 + 5, 7)
    event = decode_instruction(_instruction(data), ENVELOPE)

    assert isinstance(event, TradeExecuted)
    assert event.side is TradeSide.BUY
    assert event.outcome is Outcome.YES
    assert event.shares == 2**63 + 5
    assert event.max_cost == 7


@pytest.mark.parametrize(
    "byte, expected",
    [(0, Outcome.YES), (1, Outcome.NO), (2, Outcome.INVALID), (255, Outcome.INVALID)],
)
def test_decode_resolved_outcome_mapping(byte, expected):
    event = decode_instruction(_instruction(bytes([4, byte])), ENVELOPE)

    assert isinstance(event, MarketResolved)
    assert event.outcome is expected


def test_decode_dispute_resolved_and_dispute_tally():
    resolved = decode_instruction(_instruction(bytes([6, 1]) + struct.pack("<II", 12, 3)), ENVELOPE)
    tally = decode_instruction(_instruction(bytes([9]) + struct.pack("<II", 4, 6)), ENVELOPE)

    assert isinstance(resolved, DisputeResolved)
    assert resolved.outcome_changed is True
    assert (resolved.support_votes, resolved.reject_votes) == (12, 3)
    assert isinstance(tally, VotesTallied)
    assert tally.kind is VoteKind.DISPUTE
    assert (tally.positive, tally.negative) == (4, 6)


def test_unknown_discriminator_yields_no_event():
    assert decode_instruction(_instruction(bytes([200, 1, 2, 3])), ENVELOPE) is None


def test_truncated_string_raises_decode_error():
    data = bytes([0]) + struct.pack("<I", 50) + b"short"
    with pytest.raises(DecodeError):
        decode_instruction(_instruction(data), ENVELOPE)


def test_notification_filters_unrelated_program():
    notification = RawNotification(
        signature="sig-1",
        slot=42,
        timestamp=1_700_000_000,
        instructions=[
            _instruction(_create_market()),
            _instruction(_create_market(), program_id="Other111111111111111111111111111"),
        ],
    )

    events = decode_notification(notification, program_id=PROGRAM_ID)

    assert len(events) == 1
    assert events[0].envelope.block_time == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)


def test_malformed_instruction_does_not_abort_siblings():
    notification = RawNotification(
        signature="sig-2",
        slot=43,
        timestamp=None,
        instructions=[
            _instruction(bytes([7, 1, 2])),
            _instruction(bytes([99])),
            _instruction(bytes([4, 1])),
        ],
    )

    events = decode_notification(notification, program_id=PROGRAM_ID)

    assert [event.event_type for event in events] == [EventType.MARKET_RESOLVED]


def test_parse_notification_decodes_base64_and_iso_timestamp():
    payload = {
        "signature": "sig-3",
        "slot": 7,
        "timestamp": "2025-02-01T00:00:00Z",
        "instructions": [
            {
                "programId": PROGRAM_ID,
                "accounts": [CREATOR, address(2)],
                "data": base64.b64encode(bytes([5])).decode(),
            }
        ],
    }

    notification = parse_notification(payload)

    assert notification.instructions[0].data == bytes([5])
    assert notification.envelope.block_time == datetime(2025, 2, 1, tzinfo=timezone.utc)
    events = decode_notification(notification, program_id=PROGRAM_ID)
    assert events[0].event_type is EventType.DISPUTE_RAISED
    assert events[0].market_address == address(2)


def test_event_round_trips_through_stored_payload():
    event = decode_instruction(_instruction(bytes([2, 1]) + struct.pack("<QQ", 10, 9)), ENVELOPE)

    rebuilt = event_from_record(event.event_type.value, ENVELOPE, event.payload())

    assert rebuilt == event
    assert rebuilt.side is TradeSide.SELL
    assert rebuilt.outcome is Outcome.NO
