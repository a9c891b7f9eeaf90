"""Vote tallies and lifecycle rules shared by ingestion and the scheduled jobs."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.models import MarketState, Outcome, ensure_utc

BASIS_POINTS = 10_000


@dataclass(slots=True, frozen=True)
class VoteTally:
    """Counts for one aggregation pass; never persisted."""

    positive: int
    negative: int
    threshold_bps: int

    @property
    def total(self) -> int:
        return self.positive + self.negative

    @property
    def rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.positive / self.total

    @property
    def rate_bps(self) -> int:
        # Integer floor avoids float drift at exact boundaries (7/10 -> 7000).
        if self.total == 0:
            return 0
        return (self.positive * BASIS_POINTS) // self.total

    @property
    def meets_threshold(self) -> bool:
        if self.total == 0:
            return False
        return self.rate_bps >= self.threshold_bps

    def to_dict(self) -> dict[str, Any]:
        return {
            "positive": self.positive,
            "negative": self.negative,
            "total": self.total,
            "rate": self.rate,
            "rate_bps": self.rate_bps,
            "threshold_bps": self.threshold_bps,
            "meets_threshold": self.meets_threshold,
        }


def tally_votes(choices: Iterable[bool], threshold_bps: int) -> VoteTally:
    positive = 0
    negative = 0
    for choice in choices:
        if choice:
            positive += 1
        else:
            negative += 1
    return VoteTally(positive=positive, negative=negative, threshold_bps=threshold_bps)


def resolve_final_outcome(proposed: Outcome | str, dispute_succeeded: bool) -> Outcome:
    """Return the outcome a finalized market settles on.

    A successful dispute flips yes/no. ``invalid`` has no complement and is kept.
    """

    proposed = Outcome(proposed)
    if not dispute_succeeded:
        return proposed
    if proposed is Outcome.YES:
        return Outcome.NO
    if proposed is Outcome.NO:
        return Outcome.YES
    return Outcome.INVALID


ALLOWED_TRANSITIONS: dict[MarketState, frozenset[MarketState]] = {
    MarketState.PROPOSED: frozenset({MarketState.APPROVED}),
    MarketState.APPROVED: frozenset({MarketState.ACTIVE}),
    MarketState.ACTIVE: frozenset({MarketState.RESOLVING}),
    MarketState.RESOLVING: frozenset({MarketState.DISPUTED, MarketState.FINALIZED}),
    MarketState.DISPUTED: frozenset({MarketState.FINALIZED}),
    MarketState.FINALIZED: frozenset(),
}

_STATE_RANK = {
    MarketState.PROPOSED: 0,
    MarketState.APPROVED: 1,
    MarketState.ACTIVE: 2,
    MarketState.RESOLVING: 3,
    MarketState.DISPUTED: 4,
    MarketState.FINALIZED: 5,
}


def can_transition(current: MarketState | str, target: MarketState | str) -> bool:
    return MarketState(target) in ALLOWED_TRANSITIONS[MarketState(current)]


def is_behind(current: MarketState | str, target: MarketState | str) -> bool:
    """True when ``target`` is a state the market has already moved past."""

    return _STATE_RANK[MarketState(target)] < _STATE_RANK[MarketState(current)]


def finalization_cutoff(
    now: datetime, *, window_seconds: float, buffer_seconds: float
) -> datetime:
    """Latest ``resolution_proposed_at`` whose dispute window has fully elapsed."""

    return now - timedelta(seconds=window_seconds + buffer_seconds)


def dispute_window_elapsed(
    resolution_proposed_at: datetime,
    now: datetime,
    *,
    window_seconds: float,
    buffer_seconds: float,
) -> bool:
    cutoff = finalization_cutoff(now, window_seconds=window_seconds, buffer_seconds=buffer_seconds)
    return ensure_utc(resolution_proposed_at) <= cutoff
