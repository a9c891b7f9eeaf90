"""Pure domain rules: vote tallies, outcome resolution and state transitions."""

from .models import (
    ALLOWED_TRANSITIONS,
    VoteTally,
    can_transition,
    dispute_window_elapsed,
    finalization_cutoff,
    is_behind,
    resolve_final_outcome,
    tally_votes,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "VoteTally",
    "can_transition",
    "dispute_window_elapsed",
    "finalization_cutoff",
    "is_behind",
    "resolve_final_outcome",
    "tally_votes",
]
