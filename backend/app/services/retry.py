"""Retry-with-backoff wrapper used by every outward ledger call."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from app.core.config import Settings

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""

        backoff = self.initial_delay * (self.backoff_factor ** max(attempt - 1, 0))
        return min(backoff, self.max_delay)

    @classmethod
    def for_ledger_writes(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.ledger_retry_max_attempts,
            initial_delay=settings.ledger_retry_initial_delay_seconds,
            max_delay=settings.ledger_retry_max_delay_seconds,
            backoff_factor=settings.ledger_retry_backoff_factor,
        )

    @classmethod
    def for_finalization(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.ledger_retry_max_attempts,
            initial_delay=settings.finalization_retry_initial_delay_seconds,
            max_delay=settings.finalization_retry_max_delay_seconds,
            backoff_factor=settings.ledger_retry_backoff_factor,
        )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Await ``fn`` until it succeeds or ``policy.max_attempts`` is exhausted.

    The last exception is re-raised unchanged. Cancellation is never retried.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "{} failed after {} attempt(s): {}", label, attempt, exc
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "{} attempt {}/{} failed ({}); retrying in {:.2f}s",
                label,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            await sleep(delay)
