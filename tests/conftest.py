"""Shared fixtures: a throwaway SQLite database, a frozen clock and the service container."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from chatpay.config import Settings
from chatpay.container import Services
from chatpay.database import create_engine, create_session_factory, init_db
from chatpay.schemas import ChatTimeTierInput, MonetizationSettingsUpdate


class FrozenClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'chatpay.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def services(engine, clock) -> Services:
    config = Settings(request_expiry_days=7, inactivity_pause_minutes=5, _env_file=None)
    return Services(create_session_factory(engine), clock=clock, config=config)


@pytest.fixture
def fund(services):
    """Deposit money for a user through the gateway path."""

    async def _fund(user_id: str, amount: int) -> None:
        await services.ledger.credit_deposit(user_id, amount, f"test-{uuid.uuid4()}")

    return _fund


@pytest.fixture
def publish_pricing(services):
    """Enable monetization for a user. Defaults to one 10 minute tier at 100."""

    async def _publish(user_id: str, tiers: dict[int, int] | None = None, **prices):
        update = MonetizationSettingsUpdate(
            is_enabled=True,
            chat_time_tiers=[
                ChatTimeTierInput(duration_minutes=duration, price=price)
                for duration, price in (tiers or {10: 100}).items()
            ],
            **prices,
        )
        return await services.pricing.set_settings(user_id, update)

    return _publish


@pytest.fixture
def balance_of(services):
    """``(available, pending)`` for a user."""

    async def _balance_of(user_id: str) -> tuple[int, int]:
        balance = await services.ledger.get_balance(user_id)
        return balance.available, balance.pending

    return _balance_of
