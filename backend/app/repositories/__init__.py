"""Repository abstractions for database interactions."""

from .finalization_error_repository import FinalizationErrorRepository
from .ledger_event_repository import LedgerEventRepository
from .market_repository import MarketRepository
from .vote_repository import VoteRepository

__all__ = [
    "FinalizationErrorRepository",
    "LedgerEventRepository",
    "MarketRepository",
    "VoteRepository",
]
