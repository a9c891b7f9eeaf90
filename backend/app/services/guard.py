"""In-process mutual exclusion for scheduled passes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from app.models import utcnow


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class SingleFlightGuard:
    """Idle/Running state machine owned by one job instance.

    Protects a single process only; two processes can still race the same market.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = RunState.IDLE
        self._started_at: datetime | None = None
        self._last_finished_at: datetime | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is RunState.RUNNING

    def try_acquire(self) -> bool:
        # Single event loop: check-and-set has no await in between.
        if self._state is RunState.RUNNING:
            return False
        self._state = RunState.RUNNING
        self._started_at = utcnow()
        return True

    def release(self) -> None:
        self._state = RunState.IDLE
        self._started_at = None
        self._last_finished_at = utcnow()

    def snapshot(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "is_running": self.is_running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "last_finished_at": (
                self._last_finished_at.isoformat() if self._last_finished_at else None
            ),
        }
