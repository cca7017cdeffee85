import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from stockloyal_api.app import create_app  # noqa: E402
from stockloyal_api.db.base import Base  # noqa: E402
from stockloyal_api.db.session import get_session  # noqa: E402
from stockloyal_api.models import Broker, BrokerTypeEnum, MemberStockPick, Merchant, Wallet  # noqa: E402
from stockloyal_api.observability.pipeline import get_pipeline_store  # noqa: E402
from stockloyal_api.services.market import MarketStatus  # noqa: E402

# 2026-10-19 is a Monday; 15:00 UTC is 11:00 in New York.
PIPELINE_NOW = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)
BROKER_WEBHOOK_URL = "https://broker.test/sweeps"


class StaticPriceFeed:
    def __init__(self, prices: dict[str, str]) -> None:
        self.prices = {symbol: Decimal(price) for symbol, price in prices.items()}
        self.requested: list[list[str]] = []

    async def fetch_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        wanted = sorted(symbols)
        self.requested.append(wanted)
        return {symbol: self.prices[symbol] for symbol in wanted if symbol in self.prices}


class FixedMarket:
    def __init__(self, *, is_open: bool) -> None:
        self.is_open = is_open
        self.calls: list[bool] = []

    async def status(self, *, now: datetime | None = None, refresh: bool = False) -> MarketStatus:
        self.calls.append(refresh)
        checked_at = now or PIPELINE_NOW
        return MarketStatus(
            is_open=self.is_open,
            is_trading_day=True,
            checked_at=checked_at,
            next_open=None if self.is_open else checked_at + timedelta(hours=20),
            delay_reason=None if self.is_open else "after_close",
        )

    def is_stale(self, status: MarketStatus, *, now: datetime | None = None) -> bool:
        return False


@pytest.fixture(autouse=True)
def reset_pipeline_store():
    store = get_pipeline_store()
    store.reset()
    yield store
    store.reset()


@pytest.fixture
def pipeline_now() -> datetime:
    return PIPELINE_NOW


@pytest.fixture
def broker_webhook_url() -> str:
    return BROKER_WEBHOOK_URL


@pytest.fixture
def price_feed() -> StaticPriceFeed:
    return StaticPriceFeed({"AAPL": "250", "NVDA": "125", "TSLA": "200", "AMZN": "100"})


@pytest.fixture
def open_market() -> FixedMarket:
    return FixedMarket(is_open=True)


@pytest.fixture
def closed_market() -> FixedMarket:
    return FixedMarket(is_open=False)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def seeded_program(session_factory):
    """Two merchants, one webhook broker and four members with basket elections.

    acme (1 point = $0.01, "Gold" tier at 2%):
      m-001: 10000 points, sweeps 50%, picks AAPL + MSFT (MSFT has no quote)
      m-002: 100 points, below a 500 point minimum
      m-003: 0 points
      m-004: Gold, 20000 points, sweeps 100%, picks NVDA + TSLA + AMZN
    globex:
      g-001: 5000 points, sweeps 100%, picks AAPL
    """

    async with session_factory() as session:
        session.add_all(
            [
                Merchant(
                    merchant_id="acme",
                    merchant_name="Acme Rewards",
                    conversion_rate=Decimal("0.01"),
                    tier1_name="Gold",
                    tier1_conversion_rate=Decimal("2"),
                    sweep_day=19,
                ),
                Merchant(merchant_id="globex", merchant_name="Globex", conversion_rate=Decimal("1"), sweep_day=5),
                Broker(
                    broker_id="BRK-1",
                    broker_name="acme-broker",
                    broker_type=BrokerTypeEnum.WEBHOOK,
                    webhook_url=BROKER_WEBHOOK_URL,
                    api_key="broker-secret",
                    ach_bank_name="First Bank",
                    ach_routing_num="021000021",
                    ach_account_num="000123456",
                    ach_account_type="checking",
                ),
            ]
        )
        await session.flush()
        session.add_all(
            [
                Wallet(member_id="m-001", merchant_id="acme", points=10000, sweep_percentage=Decimal("50"), broker="acme-broker"),
                Wallet(member_id="m-002", merchant_id="acme", points=100, broker="acme-broker"),
                Wallet(member_id="m-003", merchant_id="acme", points=0, broker="acme-broker"),
                Wallet(
                    member_id="m-004",
                    merchant_id="acme",
                    points=20000,
                    member_tier="gold",
                    sweep_percentage=Decimal("0"),
                    broker="acme-broker",
                ),
                Wallet(member_id="g-001", merchant_id="globex", points=5000, sweep_percentage=Decimal("100"), broker="acme-broker"),
            ]
        )
        await session.flush()
        session.add_all(
            [
                MemberStockPick(member_id="m-001", symbol="AAPL"),
                MemberStockPick(member_id="m-001", symbol="msft"),
                MemberStockPick(member_id="m-002", symbol="AAPL"),
                MemberStockPick(member_id="m-003", symbol="AAPL"),
                MemberStockPick(member_id="m-004", symbol="NVDA"),
                MemberStockPick(member_id="m-004", symbol="TSLA"),
                MemberStockPick(member_id="m-004", symbol="AMZN"),
                MemberStockPick(member_id="m-004", symbol="GME", is_active=False),
                MemberStockPick(member_id="g-001", symbol="AAPL"),
            ]
        )
        await session.commit()
    return session_factory


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
