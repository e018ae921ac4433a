"""Pytest configuration and fixtures."""

from decimal import Decimal
from typing import List, Optional

import pytest

from bump_bot.activity import ActivityLog
from bump_bot.aggregator import SwapQuote
from bump_bot.app import create_app
from bump_bot.config import Config
from bump_bot.custody import DryRunCustody
from bump_bot.ledger import CreditLedger
from bump_bot.sessions import SessionStore
from bump_bot.storage import create_db_engine, create_session_factory, init_db
from bump_bot.utils import PriceFeedError
from bump_bot.wallets import WalletRegistry

OWNER = "0x1234567890abcdef1234567890abcdef12345678"
OTHER_OWNER = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
TARGET = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
ROUTER = "0x0000000000001ff3684f28c67538d4d072c22734"

# At $2000 per WETH, $2 buys 0.001 WETH = 1_000_000 credit units
ETH_PRICE = Decimal("2000")
NOTIONAL = Decimal("2")
TRADE_UNITS = 1_000_000


class FakePriceFeed:
    """Fixed price, or a raised error."""

    def __init__(self, price: Decimal = ETH_PRICE, error: Optional[Exception] = None):
        self.value = price
        self.error = error
        self.calls = 0

    async def price(self, asset: str) -> Decimal:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


class FakeAggregator:
    """Quotes a swap to a fixed router; approval optional."""

    def __init__(self, needs_approval: bool = False, error: Optional[Exception] = None):
        self.needs_approval = needs_approval
        self.error = error
        self.requests: List[tuple] = []

    async def quote(self, sell_token: str, buy_token: str, sell_amount: int, taker: str) -> SwapQuote:
        self.requests.append((sell_token, buy_token, sell_amount, taker))
        if self.error is not None:
            raise self.error
        return SwapQuote(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=sell_amount,
            target=ROUTER,
            call_data="0xdeadbeef",
            value=0,
            estimated_out=12345,
            allowance_target=ROUTER,
            needs_approval=self.needs_approval,
            slippage_bps=500,
        )


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bump.db'}",
        poll_interval_seconds=1,
        price_timeout_seconds=2,
        quote_timeout_seconds=2,
        submit_timeout_seconds=2,
        confirmation_timeout_seconds=2,
        log_file=None,
    )


@pytest.fixture
async def async_engine(config):
    """File-backed SQLite so concurrent connections share one database."""
    engine = create_db_engine(config.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return create_session_factory(async_engine)


@pytest.fixture
def ledger(session_factory) -> CreditLedger:
    return CreditLedger(session_factory)


@pytest.fixture
def store(session_factory) -> SessionStore:
    return SessionStore(session_factory)


@pytest.fixture
def activity(session_factory) -> ActivityLog:
    return ActivityLog(session_factory)


@pytest.fixture
def custody() -> DryRunCustody:
    return DryRunCustody()


@pytest.fixture
def wallets(session_factory, custody) -> WalletRegistry:
    return WalletRegistry(session_factory, custody, wallet_count=5)


@pytest.fixture
def price_feed() -> FakePriceFeed:
    return FakePriceFeed()


@pytest.fixture
def aggregator() -> FakeAggregator:
    return FakeAggregator()


@pytest.fixture
async def app(config, custody, price_feed, aggregator):
    """Fully wired application on a temporary database."""
    application = await create_app(
        config,
        custody=custody,
        price_feed=price_feed,
        aggregator=aggregator,
        interval_scale=0.01,
    )
    yield application
    await application.close()


@pytest.fixture
def failing_price_feed() -> FakePriceFeed:
    return FakePriceFeed(error=PriceFeedError("CoinGecko error 503: unavailable"))
