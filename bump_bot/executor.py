"""
Swap Executor
=============

Performs one trade for one worker wallet:

    price -> credit check -> quote -> (approve +) swap -> confirm -> debit

Returns an outcome instead of raising: ``Success``, ``InsufficientBalance``
or ``Failed``. The ledger is only touched after a confirmed trade, and then
by the amount actually spent.
"""

import asyncio
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from bump_bot.activity import ActivityLog
from bump_bot.aggregator import ZeroXAggregator
from bump_bot.config import Config
from bump_bot.custody import CustodyService
from bump_bot.ledger import CreditLedger
from bump_bot.logging_utils import TradeMetrics
from bump_bot.models import (
    ActivityStatus,
    Batch,
    Failed,
    InsufficientBalance,
    Outcome,
    Session,
    Success,
    worker_scope,
)
from bump_bot.price_feed import CoinGeckoPriceFeed
from bump_bot.utils import (
    CREDIT_DECIMALS,
    ConfirmationTimeout,
    LedgerConflictError,
    format_address,
    format_tx_hash,
    format_units,
    logger,
    sanitize_error_message,
)
from bump_bot.wallets import WalletRegistry

# Extra wait on top of the timeout handed to custody
CONFIRMATION_GRACE_SECONDS = 5


def usd_to_units(notional_usd: Decimal, price_usd: Decimal) -> int:
    """Credit units (1e-9 of the funding asset) bought by ``notional_usd``."""
    if price_usd <= 0:
        raise ValueError("Price must be positive")
    amount = Decimal(notional_usd) / Decimal(price_usd) * (Decimal(10) ** CREDIT_DECIMALS)
    return int(amount.to_integral_value(rounding=ROUND_DOWN))


def units_to_base(units: int, token_decimals: int) -> int:
    """Credit units to the funding token's base units."""
    return units * 10 ** (token_decimals - CREDIT_DECIMALS)


def base_to_units(amount: int, token_decimals: int) -> int:
    """Funding token base units to credit units, rounded up."""
    scale = 10 ** (token_decimals - CREDIT_DECIMALS)
    return -(-amount // scale)


class SwapExecutor:
    """Executes trades against one custody backend."""

    def __init__(
        self,
        config: Config,
        ledger: CreditLedger,
        wallets: WalletRegistry,
        price_feed: CoinGeckoPriceFeed,
        aggregator: ZeroXAggregator,
        custody: CustodyService,
        activity: ActivityLog,
        metrics: Optional[TradeMetrics] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.wallets = wallets
        self.price_feed = price_feed
        self.aggregator = aggregator
        self.custody = custody
        self.activity = activity
        self.metrics = metrics or TradeMetrics()

    async def required_units(self, notional_usd: Decimal, owner: Optional[str] = None) -> int:
        """Fetch a fresh price and convert the notional; raises on feed failure."""
        async with self.metrics.track("price", owner=owner):
            price = await asyncio.wait_for(
                self.price_feed.price(self.config.funding_token),
                timeout=self.config.price_timeout_seconds,
            )
        return usd_to_units(notional_usd, price)

    async def execute(self, owner: str, wallet_index: int, session: Session) -> Outcome:
        scope = worker_scope(wallet_index)

        try:
            required = await self.required_units(session.notional_usd, owner)
        except Exception as e:
            reason = f"Price feed unavailable: {sanitize_error_message(e)}"
            logger.warning(f"{owner} wallet {wallet_index}: {reason}")
            await self.activity.record(
                owner, ActivityStatus.FAILED, reason,
                session_id=session.session_id, wallet_index=wallet_index,
            )
            return Failed(reason)

        if required <= 0:
            reason = f"Notional ${session.notional_usd} is below one credit unit"
            await self.activity.record(
                owner, ActivityStatus.FAILED, reason,
                session_id=session.session_id, wallet_index=wallet_index,
            )
            return Failed(reason)

        balance = await self.ledger.balance(owner, scope)
        if balance < required:
            logger.info(
                f"{owner} wallet {wallet_index}: credit {format_units(balance)} "
                f"below {format_units(required)}, skipping"
            )
            await self.activity.record(
                owner, ActivityStatus.SKIPPED,
                f"Insufficient credit: {format_units(balance)} available, {format_units(required)} needed",
                amount=required, session_id=session.session_id, wallet_index=wallet_index,
            )
            return InsufficientBalance(balance=balance, required=required)

        wallet = await self.wallets.get_wallet(owner, wallet_index)
        if wallet is None:
            reason = "Worker wallet not provisioned"
            await self.activity.record(
                owner, ActivityStatus.FAILED, reason,
                session_id=session.session_id, wallet_index=wallet_index,
            )
            return Failed(reason)

        sell_amount = units_to_base(required, self.config.funding_token_decimals)
        entry_id = await self.activity.record(
            owner, ActivityStatus.PENDING,
            f"Swapping {format_units(required)} for {format_address(session.target_asset)}",
            amount=required, session_id=session.session_id, wallet_index=wallet_index,
        )

        try:
            async with self.metrics.track("quote", owner=owner, wallet_index=wallet_index):
                quote = await asyncio.wait_for(
                    self.aggregator.quote(
                        self.config.funding_token, session.target_asset, sell_amount, wallet.address
                    ),
                    timeout=self.config.quote_timeout_seconds,
                )

            batch = Batch(
                calls=quote.calls(),
                sell_token=self.config.funding_token,
                sell_amount=sell_amount,
                description=f"swap {format_units(required)} -> {format_address(session.target_asset)}",
            )

            async with self.metrics.track("submit", owner=owner, wallet_index=wallet_index) as timing:
                tx_ref = await asyncio.wait_for(
                    self.custody.submit(wallet.address, batch),
                    timeout=self.config.submit_timeout_seconds,
                )
                timing.tx_ref = tx_ref

            async with self.metrics.track("confirm", owner=owner, wallet_index=wallet_index, tx_ref=tx_ref):
                try:
                    confirmation = await asyncio.wait_for(
                        self.custody.await_confirmation(tx_ref, self.config.confirmation_timeout_seconds),
                        timeout=self.config.confirmation_timeout_seconds + CONFIRMATION_GRACE_SECONDS,
                    )
                except asyncio.TimeoutError:
                    raise ConfirmationTimeout(f"Transaction {format_tx_hash(tx_ref)} not confirmed in time")
        except Exception as e:
            reason = sanitize_error_message(e)
            logger.warning(f"{owner} wallet {wallet_index}: trade failed: {reason}",
                           extra={"owner": owner, "session_id": session.session_id, "wallet_index": wallet_index})
            await self.activity.finalize(entry_id, ActivityStatus.FAILED, f"Swap failed: {reason}")
            return Failed(reason)

        if not confirmation.status:
            reason = f"Transaction {format_tx_hash(tx_ref)} reverted"
            logger.warning(f"{owner} wallet {wallet_index}: {reason}")
            await self.activity.finalize(entry_id, ActivityStatus.FAILED, reason, tx_ref=tx_ref)
            return Failed(reason)

        spent = base_to_units(confirmation.spent_amount, self.config.funding_token_decimals)
        try:
            result = await self.ledger.debit(owner, scope, spent, reference=f"trade:{tx_ref}")
        except LedgerConflictError as e:
            # Trade is on chain but not debited; tx_ref and amount on the activity row identify the debit to reconcile
            logger.error(f"{owner} wallet {wallet_index}: ledger debit for {format_tx_hash(tx_ref)} failed: {e}",
                         extra={"owner": owner, "session_id": session.session_id, "wallet_index": wallet_index, "tx_ref": tx_ref})
            await self.activity.finalize(
                entry_id, ActivityStatus.FAILED,
                f"Swap confirmed but {format_units(spent)} was not debited; needs reconciling",
                tx_ref=tx_ref, amount=spent,
            )
            return Failed("ledger update failed")

        if not result.applied and not result.duplicate:
            logger.warning(
                f"{owner} wallet {wallet_index}: spent {format_units(spent)} exceeded credit by "
                f"{format_units(result.shortfall)}"
            )

        await self.activity.finalize(
            entry_id, ActivityStatus.SUCCESS,
            f"Bought {format_address(session.target_asset)} with {format_units(spent)}",
            tx_ref=tx_ref, amount=spent,
        )
        logger.info(f"{owner} wallet {wallet_index}: swap confirmed {format_tx_hash(tx_ref)}",
                    extra={"owner": owner, "session_id": session.session_id, "wallet_index": wallet_index, "tx_ref": tx_ref})
        return Success(tx_ref=tx_ref, spent_amount=spent)
