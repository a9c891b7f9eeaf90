from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db, session_scope
from app.models import Market, MarketState, Vote, VoteKind
from app.services.retry import RetryPolicy

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
PROGRAM_ID = "PredMkt1111111111111111111111111111111111111"
AUTHORITY = "Auth111111111111111111111111111111111111111"


def address(n: int) -> str:
    """Deterministic base58-shaped address, unique per ``n``."""

    return f"Mkt{str(n).replace('0', 'z')}X".ljust(32, "1")


class FakeLedger:
    """Records submissions; ``fail_addresses`` raise, ``delay`` slows each call."""

    def __init__(
        self,
        *,
        fail_addresses=(),
        delay: float = 0.0,
        error: Exception | None = None,
        authority: str = AUTHORITY,
    ) -> None:
        self.calls: list[tuple[str, str, dict]] = []
        self.fail_addresses = set(fail_addresses)
        self.delay = delay
        self.error = error
        self.authority = authority
        self._counter = 0

    async def get_global_config_authority(self) -> str:
        return self.authority

    async def submit_and_confirm(self, method, accounts, args):
        market = next(account.address for account in accounts if account.name == "market")
        self.calls.append((method, market, dict(args)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if market in self.fail_addresses:
            raise RuntimeError(f"ledger rejected {market}")
        self._counter += 1
        return f"sig-{method}-{self._counter}"


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'replica.db'}",
        ledger_program_id=PROGRAM_ID,
        ledger_authority_address=AUTHORITY,
        webhook_secret="test-secret",
        webhook_dev_mode=False,
        scheduler_enabled=False,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine = create_db_engine(test_settings.resolved_database_url)
    init_db(bind=engine)
    factory = create_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def no_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=1, initial_delay=0, max_delay=0)


@pytest.fixture
def make_market(session_factory):
    def _make(
        n: int,
        *,
        state: MarketState = MarketState.PROPOSED,
        proposed_outcome: str | None = None,
        resolution_proposed_at: datetime | None = None,
        created_at: datetime | None = None,
        final_outcome: str | None = None,
    ) -> str:
        with session_scope(session_factory) as session:
            market = Market(
                market_id=f"market-{n}",
                on_chain_address=address(n),
                question=f"Question {n}?",
                state=state.value,
                proposed_outcome=proposed_outcome,
                resolution_proposed_at=resolution_proposed_at,
                final_outcome=final_outcome,
                created_at=created_at or NOW - timedelta(days=10) + timedelta(minutes=n),
            )
            session.add(market)
        return f"market-{n}"

    return _make


@pytest.fixture
def add_votes(session_factory):
    def _add(market_id: str, kind: VoteKind, positive: int, negative: int) -> None:
        with session_scope(session_factory) as session:
            for index in range(positive + negative):
                session.add(
                    Vote(
                        market_id=market_id,
                        voter_wallet=f"voter-{kind.value}-{index}",
                        kind=kind.value,
                        choice=index < positive,
                    )
                )

    return _add
