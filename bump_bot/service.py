"""
Bump Service
============

Entry points used by the CLI (and any API layer): start/stop/inspect a
session, deposit and distribute credit, withdraw, and read balances.

Requests are validated here, synchronously, so bad parameters never reach
the scheduler.
"""

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from web3 import Web3

from bump_bot.activity import ActivityLog
from bump_bot.config import Config
from bump_bot.custody import CustodyService
from bump_bot.erc20 import encode_transfer
from bump_bot.executor import CONFIRMATION_GRACE_SECONDS, SwapExecutor, units_to_base
from bump_bot.funding import FundingVerifier
from bump_bot.ledger import CreditLedger
from bump_bot.models import (
    MAIN_SCOPE,
    ActivityRecord,
    ActivityStatus,
    Batch,
    ContractCall,
    CreditEntry,
    DebitResult,
    ReceiptKind,
    Session,
    StopReason,
    WorkerWallet,
    worker_scope,
)
from bump_bot.scheduler import STOP_MESSAGES, Scheduler
from bump_bot.sessions import SessionStore
from bump_bot.utils import (
    CREDIT_DECIMALS,
    ConfirmationTimeout,
    InsufficientFundsError,
    InsufficientTotalCreditError,
    SessionNotFoundError,
    TransactionError,
    ValidationError,
    format_duration,
    format_tx_hash,
    format_units,
    logger,
    validate_address,
)
from bump_bot.wallets import WalletRegistry


def _parse_int_amount(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer number of credit units")
    if value < 0:
        raise ValidationError(f"{name} must be non-negative")
    return value


class BumpService:

    def __init__(
        self,
        config: Config,
        ledger: CreditLedger,
        store: SessionStore,
        wallets: WalletRegistry,
        executor: SwapExecutor,
        activity: ActivityLog,
        custody: CustodyService,
        verifier: Optional[FundingVerifier] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.store = store
        self.wallets = wallets
        self.executor = executor
        self.activity = activity
        self.custody = custody
        self.verifier = verifier
        self.scheduler = scheduler

    # Sessions

    def _validate_interval(self, interval_seconds) -> int:
        if isinstance(interval_seconds, bool) or not isinstance(interval_seconds, int):
            raise ValidationError("Interval must be a whole number of seconds")
        low, high = self.config.min_interval_seconds, self.config.max_interval_seconds
        if not low <= interval_seconds <= high:
            raise ValidationError(f"Interval must be between {low} and {high} seconds")
        return interval_seconds

    def _validate_notional(self, notional_usd) -> Decimal:
        try:
            notional = Decimal(str(notional_usd))
        except InvalidOperation:
            raise ValidationError(f"Invalid notional: {notional_usd!r}")
        if not notional.is_finite():
            raise ValidationError(f"Invalid notional: {notional_usd!r}")
        minimum = Decimal(str(self.config.min_notional_usd))
        if notional < minimum:
            raise ValidationError(f"Notional must be at least ${minimum}")
        return notional

    def _validate_target(self, target_asset: str) -> str:
        if not validate_address(target_asset):
            raise ValidationError(f"Invalid target asset address: {target_asset}")
        target = Web3.to_checksum_address(target_asset)
        if target == Web3.to_checksum_address(self.config.funding_token):
            raise ValidationError("Target asset cannot be the funding token")
        return target

    async def start_session(
        self,
        owner: str,
        target_asset: str,
        notional_usd,
        interval_seconds: int,
    ) -> Session:
        """
        Start bumping ``target_asset`` for ``owner``.

        Raises ValidationError for bad parameters, InsufficientTotalCreditError
        when the owner's combined credit is below one trade at the current
        price, and SessionConflictError if a session is already running.
        """
        interval = self._validate_interval(interval_seconds)
        notional = self._validate_notional(notional_usd)
        target = self._validate_target(target_asset)

        wallets = await self.wallets.ensure_wallets(owner)
        if len(wallets) < self.config.wallet_count:
            raise ValidationError(f"Only {len(wallets)} of {self.config.wallet_count} worker wallets available")

        required = await self.executor.required_units(notional, owner)
        if required <= 0:
            raise ValidationError(f"Notional ${notional} is below one credit unit")
        available = await self.ledger.total_credit(owner)
        if available < required:
            raise InsufficientTotalCreditError(available, required)

        session = await self.store.create(owner, target, notional, interval, self.config.wallet_count)
        await self.activity.record(
            owner, ActivityStatus.INFO,
            f"Session started: ${notional} per trade every {format_duration(interval)}",
            session_id=session.session_id,
        )
        if self.scheduler is not None and self.scheduler.is_running:
            self.scheduler.adopt(session)
        return session

    async def stop_session(self, owner: str) -> Session:
        running = await self.store.get_running(owner)
        if running is None:
            raise SessionNotFoundError(f"No running session for {owner}")

        stopped = await self.store.stop(running.session_id, StopReason.USER)
        if stopped.stop_reason is StopReason.USER:
            await self.activity.record(
                owner, ActivityStatus.INFO, STOP_MESSAGES[StopReason.USER],
                session_id=running.session_id,
            )
        if self.scheduler is not None:
            self.scheduler.release(owner)
        return stopped

    async def get_session(self, owner: str) -> Optional[Session]:
        return await self.store.get_latest(owner)

    # Credit

    async def ensure_wallets(self, owner: str) -> List[WorkerWallet]:
        return await self.wallets.ensure_wallets(owner)

    async def fund(self, owner: str, amounts: List[int], reference: str) -> List[CreditEntry]:
        """Distribute main credit across the worker wallets, one amount per wallet."""
        if not reference:
            raise ValidationError("Funding requires a reference")
        if len(amounts) != self.config.wallet_count:
            raise ValidationError(f"Expected {self.config.wallet_count} amounts, got {len(amounts)}")
        parsed = [_parse_int_amount(a, f"amounts[{i}]") for i, a in enumerate(amounts)]

        await self.wallets.ensure_wallets(owner)
        duplicate = await self.ledger.has_receipt(owner, f"fund:{reference}")
        entries = await self.ledger.distribute(
            owner,
            {worker_scope(i): amount for i, amount in enumerate(parsed)},
            reference=f"fund:{reference}",
        )
        if not duplicate:
            await self.activity.record(
                owner, ActivityStatus.INFO,
                f"Distributed {format_units(sum(parsed))} across {len(parsed)} worker wallets",
                amount=sum(parsed),
            )
        return entries

    async def deposit(self, owner: str, amount: int, reference: str, verified: bool = True) -> CreditEntry:
        """Credit the owner's main balance once per reference."""
        if not reference:
            raise ValidationError("Deposits require a reference")
        amount = _parse_int_amount(amount, "amount")

        key = f"deposit:{reference}"
        duplicate = await self.ledger.has_receipt(owner, key)
        entry = await self.ledger.credit(owner, MAIN_SCOPE, amount, reference=key, verified=verified)
        if not duplicate:
            label = "Deposit credited" if verified else "Deposit credited (UNVERIFIED)"
            await self.activity.record(
                owner, ActivityStatus.INFO, f"{label}: {format_units(amount)}",
                amount=amount, tx_ref=reference if reference.startswith("0x") else None,
                verified=verified,
            )
        return entry

    async def deposit_from_transaction(
        self,
        owner: str,
        tx_hash: str,
        expected_amount: Optional[int] = None,
    ) -> CreditEntry:
        """Verify a deposit transaction on chain and credit what it transferred."""
        if self.verifier is None:
            raise ValidationError("On-chain deposit verification is not configured")
        deposit = await self.verifier.verify_async(tx_hash, owner, expected_amount)
        scale = 10 ** (self.config.funding_token_decimals - CREDIT_DECIMALS)
        units = deposit.amount // scale
        return await self.deposit(owner, units, tx_hash, verified=deposit.verified)

    async def withdraw(
        self,
        owner: str,
        wallet_index: int,
        amount: int,
        reference: str,
        to_address: Optional[str] = None,
    ) -> DebitResult:
        """
        Send funding token out of a worker wallet and debit its credit.

        The transfer is sent through custody first; the ledger is debited
        only once it confirms.
        """
        if not reference:
            raise ValidationError("Withdrawals require a reference")
        amount = _parse_int_amount(amount, "amount")
        if not 0 <= wallet_index < self.config.wallet_count:
            raise ValidationError(f"Invalid wallet index: {wallet_index}")
        recipient = to_address or owner
        if not validate_address(recipient):
            raise ValidationError(f"Invalid withdrawal address: {recipient}")

        key = f"withdraw:{reference}"
        scope = worker_scope(wallet_index)
        if await self.ledger.has_receipt(owner, key):
            return await self.ledger.withdraw(owner, scope, amount, key)

        available = await self.ledger.balance(owner, scope)
        if available < amount:
            raise InsufficientFundsError(
                f"Wallet {wallet_index} holds {format_units(available)}, cannot withdraw {format_units(amount)}"
            )
        wallet = await self.wallets.get_wallet(owner, wallet_index)
        if wallet is None:
            raise ValidationError(f"Worker wallet {wallet_index} not provisioned")

        base_amount = units_to_base(amount, self.config.funding_token_decimals)
        batch = Batch(
            calls=[ContractCall(
                target=self.config.funding_token,
                data=encode_transfer(Web3.to_checksum_address(recipient), base_amount),
            )],
            sell_token=self.config.funding_token,
            sell_amount=base_amount,
            description=f"withdraw {format_units(amount)}",
        )
        tx_ref = await asyncio.wait_for(
            self.custody.submit(wallet.address, batch),
            timeout=self.config.submit_timeout_seconds,
        )
        try:
            confirmation = await asyncio.wait_for(
                self.custody.await_confirmation(tx_ref, self.config.confirmation_timeout_seconds),
                timeout=self.config.confirmation_timeout_seconds + CONFIRMATION_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            raise ConfirmationTimeout(f"Withdrawal {format_tx_hash(tx_ref)} not confirmed in time")
        if not confirmation.status:
            raise TransactionError(f"Withdrawal {format_tx_hash(tx_ref)} reverted")

        # Funds have left on chain; a trade that debited meanwhile clamps this to zero
        result = await self.ledger.debit(owner, scope, amount, reference=key, kind=ReceiptKind.WITHDRAWAL)
        message = f"Withdrew {format_units(amount)}"
        if not result.applied and not result.duplicate:
            logger.error(
                f"Withdrawal {reference} for {owner} exceeded wallet {wallet_index} credit "
                f"by {format_units(result.shortfall)}"
            )
            message += f" (credit short by {format_units(result.shortfall)})"
        await self.activity.record(
            owner, ActivityStatus.SUCCESS, message,
            amount=amount, wallet_index=wallet_index, tx_ref=tx_ref,
        )
        logger.info(f"Withdrawal {reference} for {owner}: {format_units(amount)} from wallet {wallet_index}")
        return result

    async def balances(self, owner: str) -> Dict[str, int]:
        """Balance per scope, including zero rows for unfunded wallets."""
        result = {MAIN_SCOPE: 0}
        for i in range(self.config.wallet_count):
            result[worker_scope(i)] = 0
        for entry in await self.ledger.entries(owner):
            result[entry.scope] = entry.balance
        return result

    async def total_credit(self, owner: str) -> int:
        return await self.ledger.total_credit(owner)

    async def recent_activity(self, owner: str, limit: int = 50) -> List[ActivityRecord]:
        return await self.activity.recent(owner, limit)
