"""Domain exceptions shared by ingestion, aggregation and the lifecycle monitor."""

from __future__ import annotations


class DecodeError(Exception):
    """Raised when an instruction payload is shorter than its declared layout."""


class MarketNotFoundError(Exception):
    """Raised when an event or job references a market absent from the replica."""


class InvalidTransitionError(Exception):
    """Raised when a market state change is not a permitted forward step."""

    def __init__(self, market_id: str, current: str, requested: str) -> None:
        super().__init__(f"Market {market_id} cannot move from {current} to {requested}")
        self.market_id = market_id
        self.current = current
        self.requested = requested


class DuplicateVoteError(Exception):
    """Raised when a voter already cast a vote of the same kind on a market."""


class LedgerSubmissionError(Exception):
    """Raised when the ledger RPC rejects or fails to confirm a write."""


class LedgerConfigurationError(Exception):
    """Raised when the ledger's global config does not name the local signing authority."""


class InvalidLedgerAddressError(ValueError):
    """Raised when an on-chain address is not a well-formed base58 key."""


class IncompleteResolutionError(Exception):
    """Raised when a resolving or disputed market lacks its resolution timestamp or proposed outcome."""
