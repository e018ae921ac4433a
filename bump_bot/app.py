"""Component wiring shared by the CLI and tests."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from bump_bot.activity import ActivityLog
from bump_bot.aggregator import ZeroXAggregator
from bump_bot.config import Config
from bump_bot.custody import CustodyService, create_custody
from bump_bot.executor import SwapExecutor
from bump_bot.funding import FundingVerifier
from bump_bot.ledger import CreditLedger
from bump_bot.logging_utils import TradeMetrics
from bump_bot.price_feed import CoinGeckoPriceFeed
from bump_bot.scheduler import Scheduler
from bump_bot.service import BumpService
from bump_bot.sessions import SessionStore
from bump_bot.storage import create_db_engine, create_session_factory, init_db
from bump_bot.wallets import WalletRegistry


@dataclass
class BumpApp:
    config: Config
    engine: AsyncEngine
    ledger: CreditLedger
    store: SessionStore
    wallets: WalletRegistry
    activity: ActivityLog
    executor: SwapExecutor
    scheduler: Scheduler
    service: BumpService
    metrics: TradeMetrics

    async def close(self):
        await self.scheduler.shutdown()
        await self.engine.dispose()


async def create_app(
    config: Config,
    password: Optional[str] = None,
    custody: Optional[CustodyService] = None,
    price_feed=None,
    aggregator=None,
    verifier: Optional[FundingVerifier] = None,
    create_schema: bool = True,
    interval_scale: float = 1.0,
) -> BumpApp:
    """Build every component from ``config``. Collaborators may be injected."""
    engine = create_db_engine(config.database_url)
    if create_schema:
        await init_db(engine)
    session_factory = create_session_factory(engine)

    custody = custody or create_custody(config, password)
    price_feed = price_feed or CoinGeckoPriceFeed(
        api_key=config.coingecko_api_key,
        api_base=config.coingecko_api_url,
        cache_seconds=config.price_cache_seconds,
        request_timeout=config.price_timeout_seconds,
    )
    aggregator = aggregator or ZeroXAggregator(
        api_key=config.zerox_api_key,
        api_base=config.zerox_api_url,
        chain_id=config.chain_id,
        slippage_bps=config.slippage_bps,
        request_timeout=config.quote_timeout_seconds,
    )
    if verifier is None and not config.dry_run:
        verifier = FundingVerifier(config)

    metrics = TradeMetrics()
    ledger = CreditLedger(session_factory)
    store = SessionStore(session_factory)
    wallets = WalletRegistry(session_factory, custody, config.wallet_count)
    activity = ActivityLog(session_factory)
    executor = SwapExecutor(config, ledger, wallets, price_feed, aggregator, custody, activity, metrics)
    scheduler = Scheduler(config, store, executor, activity, interval_scale=interval_scale)
    service = BumpService(config, ledger, store, wallets, executor, activity, custody, verifier, scheduler)

    return BumpApp(
        config=config,
        engine=engine,
        ledger=ledger,
        store=store,
        wallets=wallets,
        activity=activity,
        executor=executor,
        scheduler=scheduler,
        service=service,
        metrics=metrics,
    )
