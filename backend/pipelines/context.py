from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.core.config import Settings
from app.db import SessionFactory
from app.services.ledger import LedgerClient

from .market_monitor import MarketMonitor
from .scheduler import PeriodicRunner
from .vote_aggregation import DisputeAggregator, ProposalAggregator


class UnknownJobError(KeyError):
    """Raised when a manual trigger names a job that is not registered."""


@dataclass(slots=True)
class LifecycleContext:
    """The three scheduled jobs and their runners, sharing one ledger client."""

    settings: Settings
    ledger: LedgerClient
    proposals: ProposalAggregator
    disputes: DisputeAggregator
    monitor: MarketMonitor
    runners: dict[str, PeriodicRunner] = field(default_factory=dict)

    def runner(self, job_name: str) -> PeriodicRunner:
        try:
            return self.runners[job_name]
        except KeyError:
            raise UnknownJobError(job_name) from None

    async def start(self) -> None:
        for runner in self.runners.values():
            await runner.start()

    async def stop(self) -> None:
        for runner in self.runners.values():
            await runner.stop()

    def status(self) -> dict[str, Any]:
        return {name: runner.status() for name, runner in self.runners.items()}


def build_lifecycle(
    settings: Settings,
    *,
    ledger: LedgerClient,
    session_factory: SessionFactory | None = None,
) -> LifecycleContext:
    proposals = ProposalAggregator(ledger=ledger, session_factory=session_factory, settings=settings)
    disputes = DisputeAggregator(ledger=ledger, session_factory=session_factory, settings=settings)
    monitor = MarketMonitor(ledger=ledger, session_factory=session_factory, settings=settings)
    runners = {
        proposals.name: PeriodicRunner(proposals, interval_seconds=settings.aggregation_interval_seconds),
        disputes.name: PeriodicRunner(disputes, interval_seconds=settings.aggregation_interval_seconds),
        monitor.name: PeriodicRunner(monitor, interval_seconds=settings.monitor_interval_seconds),
    }
    return LifecycleContext(
        settings=settings,
        ledger=ledger,
        proposals=proposals,
        disputes=disputes,
        monitor=monitor,
        runners=runners,
    )
