"""Fixed-interval asyncio runner for the lifecycle jobs."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from app.models import utcnow


class PeriodicJob(Protocol):
    name: str

    @property
    def is_running(self) -> bool: ...

    async def run(self) -> Any: ...

    def status(self) -> dict[str, Any]: ...


class PeriodicRunner:
    """Fire ``job.run()`` every ``interval_seconds`` until stopped.

    ``stop()`` lets an in-flight pass finish before the loop exits. Errors that
    escape a pass are logged and the next tick runs as usual.
    """

    def __init__(
        self,
        job: PeriodicJob,
        *,
        interval_seconds: float,
        run_on_start: bool = True,
        drain_timeout_seconds: float | None = 120.0,
    ) -> None:
        self.job = job
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self.drain_timeout_seconds = drain_timeout_seconds
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._passes = 0
        self._last_error: str | None = None
        self._last_run_at = None

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("Started {} every {:.0f}s", self.name, self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self.drain_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("{} did not drain in time; cancelling", self.name)
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        logger.info("Stopped {}", self.name)

    async def run_now(self) -> Any:
        """Run one pass immediately, outside the schedule."""

        return await self._run_once()

    def status(self) -> dict[str, Any]:
        return {
            **self.job.status(),
            "scheduled": self._running,
            "interval_seconds": self.interval_seconds,
            "passes": self._passes,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_error": self._last_error,
        }

    async def _run_once(self) -> Any:
        self._last_run_at = utcnow()
        try:
            result = await self.job.run()
        except Exception as exc:
            self._last_error = f"{exc.__class__.__name__}: {exc}"
            raise
        self._passes += 1
        self._last_error = None
        return result

    async def _loop(self) -> None:
        if not self.run_on_start and await self._wait_or_stop():
            return
        while self._running:
            try:
                await self._run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("{} pass failed; retrying on next tick", self.name)
            if await self._wait_or_stop():
                return

    async def _wait_or_stop(self) -> bool:
        """Sleep one interval; True when a stop was requested meanwhile."""

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return not self._running
        return True
