"""
Credit Ledger
=============

Authoritative balance bookkeeping for an owner's main account and worker
wallets. Amounts are integer credit units (1e-9 of the funding asset).

Every mutation is either a conditional ``UPDATE ... SET balance = balance ± x``
or a version compare-and-set, executed in a single transaction. Mutations
carrying a reference are recorded in ``credit_receipts`` first, so replaying a
reference is a no-op.
"""

from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from bump_bot.models import (
    MAIN_SCOPE,
    CreditEntry,
    DebitResult,
    ReceiptKind,
    parse_scope,
)
from bump_bot.storage import (
    CreditEntryModel,
    CreditReceiptModel,
    insert_ignore,
    utcnow,
)
from bump_bot.utils import (
    InsufficientFundsError,
    LedgerConflictError,
    ValidationError,
    format_units,
    logger,
)

LEDGER_RETRY_ATTEMPTS = 5


def _ledger_retry(func):
    return retry(
        stop=stop_after_attempt(LEDGER_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=retry_if_exception_type(LedgerConflictError),
        reraise=True,
    )(func)


def _check_amount(amount: int):
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError(f"Ledger amounts must be integers, got {amount!r}")
    if amount < 0:
        raise ValidationError(f"Ledger amounts must be non-negative, got {amount}")


def _check_scope(scope: str):
    try:
        parse_scope(scope)
    except ValueError as e:
        raise ValidationError(str(e))


class CreditLedger:
    """Per-owner credit balances backed by the relational store."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    # Reads

    async def balance(self, owner: str, scope: str) -> int:
        async with self._session_factory() as session:
            return await self._read_balance(session, owner, scope)

    async def entries(self, owner: str) -> List[CreditEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditEntryModel)
                .where(CreditEntryModel.owner == owner)
                .order_by(CreditEntryModel.scope)
            )
            return [CreditEntry.from_row(row) for row in result.scalars()]

    async def total_credit(self, owner: str) -> int:
        """Main balance plus every worker balance."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(CreditEntryModel.balance), 0))
                .where(CreditEntryModel.owner == owner)
            )
            return int(result.scalar_one())

    async def has_receipt(self, owner: str, reference: str) -> bool:
        async with self._session_factory() as session:
            row = await session.get(CreditReceiptModel, (owner, reference))
            return row is not None

    # Mutations

    @_ledger_retry
    async def credit(
        self,
        owner: str,
        scope: str,
        amount: int,
        reference: Optional[str] = None,
        verified: bool = True,
        kind: ReceiptKind = ReceiptKind.DEPOSIT,
    ) -> CreditEntry:
        """Add ``amount`` to a scope, creating the row on first use."""
        _check_amount(amount)
        _check_scope(scope)
        try:
            return await self._credit_once(owner, scope, amount, reference, verified, kind)
        except OperationalError as e:
            raise LedgerConflictError(f"Credit of {scope} failed: {e}") from e

    async def _credit_once(self, owner, scope, amount, reference, verified, kind) -> CreditEntry:
        async with self._session_factory() as session:
            async with session.begin():
                if reference is not None:
                    inserted = await self._record_receipt(
                        session, owner, reference, kind, scope, amount, verified
                    )
                    if not inserted:
                        logger.info(f"Ledger: duplicate credit reference {reference} ignored")
                        return await self._read_entry(session, owner, scope)

                await self._apply_credit(session, owner, scope, amount)
                entry = await self._read_entry(session, owner, scope)

        logger.debug(f"Ledger: +{format_units(amount)} to {owner}/{scope}")
        return entry

    @_ledger_retry
    async def debit(
        self,
        owner: str,
        scope: str,
        amount: int,
        reference: Optional[str] = None,
        kind: ReceiptKind = ReceiptKind.TRADE,
    ) -> DebitResult:
        """
        Remove ``amount`` from a scope.

        A balance below ``amount`` is clamped to zero and reported as
        ``applied=False`` with the shortfall; it is never an exception.
        """
        _check_amount(amount)
        _check_scope(scope)
        try:
            return await self._debit_once(owner, scope, amount, reference, kind)
        except OperationalError as e:
            raise LedgerConflictError(f"Debit of {scope} failed: {e}") from e

    async def _debit_once(self, owner, scope, amount, reference, kind) -> DebitResult:
        async with self._session_factory() as session:
            async with session.begin():
                if reference is not None:
                    inserted = await self._record_receipt(
                        session, owner, reference, kind, scope, amount, True
                    )
                    if not inserted:
                        return await self._duplicate_debit(session, owner, scope, amount, reference)

                if amount == 0:
                    return DebitResult(applied=True, remaining=await self._read_balance(session, owner, scope))

                result = await session.execute(
                    update(CreditEntryModel)
                    .where(
                        CreditEntryModel.owner == owner,
                        CreditEntryModel.scope == scope,
                        CreditEntryModel.balance >= amount,
                    )
                    .values(
                        balance=CreditEntryModel.balance - amount,
                        version=CreditEntryModel.version + 1,
                        updated_at=utcnow(),
                    )
                )
                if result.rowcount == 1:
                    remaining = await self._read_balance(session, owner, scope)
                    logger.debug(f"Ledger: -{format_units(amount)} from {owner}/{scope}")
                    return DebitResult(applied=True, remaining=remaining)

                # Not enough: clamp to zero with a compare-and-set on version
                row = (await session.execute(
                    select(CreditEntryModel.balance, CreditEntryModel.version).where(
                        CreditEntryModel.owner == owner,
                        CreditEntryModel.scope == scope,
                    )
                )).first()

                if row is None:
                    removed = 0
                else:
                    if row.balance >= amount:
                        raise LedgerConflictError(f"Balance of {owner}/{scope} changed during debit")
                    removed = row.balance
                    if removed > 0:
                        clamp = await session.execute(
                            update(CreditEntryModel)
                            .where(
                                CreditEntryModel.owner == owner,
                                CreditEntryModel.scope == scope,
                                CreditEntryModel.version == row.version,
                            )
                            .values(balance=0, version=row.version + 1, updated_at=utcnow())
                        )
                        if clamp.rowcount != 1:
                            raise LedgerConflictError(f"Concurrent update on {owner}/{scope}")

                if reference is not None:
                    await session.execute(
                        update(CreditReceiptModel)
                        .where(
                            CreditReceiptModel.owner == owner,
                            CreditReceiptModel.reference == reference,
                        )
                        .values(amount=removed)
                    )

        shortfall = amount - removed
        logger.warning(
            f"Ledger: {owner}/{scope} short by {format_units(shortfall)}, clamped to zero"
        )
        return DebitResult(applied=False, remaining=0, shortfall=shortfall)

    async def withdraw(self, owner: str, scope: str, amount: int, reference: str) -> DebitResult:
        """Debit for funds leaving the system. Over-withdrawal is rejected."""
        _check_amount(amount)
        _check_scope(scope)
        available = await self.balance(owner, scope)
        if available < amount and not await self.has_receipt(owner, reference):
            raise InsufficientFundsError(
                f"{scope} holds {format_units(available)}, cannot withdraw {format_units(amount)}"
            )
        result = await self.debit(owner, scope, amount, reference=reference, kind=ReceiptKind.WITHDRAWAL)
        if not result.applied and not result.duplicate:
            logger.error(f"Ledger: withdrawal {reference} raced a trade and was clamped")
        return result

    @_ledger_retry
    async def distribute(
        self,
        owner: str,
        amounts_by_scope: Dict[str, int],
        reference: str,
    ) -> List[CreditEntry]:
        """
        Move credit from ``main`` into worker scopes in one transaction.

        Raises InsufficientFundsError, changing nothing, when ``main`` cannot
        cover the total. Replaying ``reference`` returns current entries.
        """
        if not reference:
            raise ValidationError("Distribution requires a reference")
        for scope, amount in amounts_by_scope.items():
            _check_amount(amount)
            _check_scope(scope)
            if scope == MAIN_SCOPE:
                raise ValidationError("Cannot distribute into the main scope")
        total = sum(amounts_by_scope.values())

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    inserted = await self._record_receipt(
                        session, owner, reference, ReceiptKind.DISTRIBUTION, MAIN_SCOPE, total, True
                    )
                    if inserted:
                        if total > 0:
                            result = await session.execute(
                                update(CreditEntryModel)
                                .where(
                                    CreditEntryModel.owner == owner,
                                    CreditEntryModel.scope == MAIN_SCOPE,
                                    CreditEntryModel.balance >= total,
                                )
                                .values(
                                    balance=CreditEntryModel.balance - total,
                                    version=CreditEntryModel.version + 1,
                                    updated_at=utcnow(),
                                )
                            )
                            if result.rowcount != 1:
                                available = await self._read_balance(session, owner, MAIN_SCOPE)
                                raise InsufficientFundsError(
                                    f"Main balance {format_units(available)} cannot cover "
                                    f"distribution of {format_units(total)}"
                                )
                        for scope, amount in amounts_by_scope.items():
                            await self._apply_credit(session, owner, scope, amount)
                    else:
                        logger.info(f"Ledger: duplicate distribution {reference} ignored")

                    result = await session.execute(
                        select(CreditEntryModel)
                        .where(CreditEntryModel.owner == owner)
                        .order_by(CreditEntryModel.scope)
                    )
                    entries = [CreditEntry.from_row(row) for row in result.scalars()]
        except OperationalError as e:
            raise LedgerConflictError(f"Distribution {reference} failed: {e}") from e

        if inserted:
            logger.info(f"Ledger: distributed {format_units(total)} for {owner} ({reference})")
        return entries

    # Internals

    async def _record_receipt(self, session, owner, reference, kind, scope, amount, verified) -> bool:
        return await insert_ignore(
            session,
            CreditReceiptModel,
            {
                "owner": owner,
                "reference": reference,
                "kind": kind.value,
                "scope": scope,
                "amount": amount,
                "verified": verified,
                "created_at": utcnow(),
            },
            ["owner", "reference"],
        )

    async def _apply_credit(self, session, owner: str, scope: str, amount: int):
        await insert_ignore(
            session,
            CreditEntryModel,
            {"owner": owner, "scope": scope, "balance": 0, "version": 1, "updated_at": utcnow()},
            ["owner", "scope"],
        )
        if amount:
            await session.execute(
                update(CreditEntryModel)
                .where(CreditEntryModel.owner == owner, CreditEntryModel.scope == scope)
                .values(
                    balance=CreditEntryModel.balance + amount,
                    version=CreditEntryModel.version + 1,
                    updated_at=utcnow(),
                )
            )

    async def _duplicate_debit(self, session, owner, scope, amount, reference) -> DebitResult:
        receipt = await session.get(CreditReceiptModel, (owner, reference))
        removed = receipt.amount if receipt is not None else amount
        logger.info(f"Ledger: duplicate debit reference {reference} ignored")
        return DebitResult(
            applied=removed >= amount,
            remaining=await self._read_balance(session, owner, scope),
            shortfall=max(0, amount - removed),
            duplicate=True,
        )

    async def _read_balance(self, session, owner: str, scope: str) -> int:
        result = await session.execute(
            select(CreditEntryModel.balance).where(
                CreditEntryModel.owner == owner,
                CreditEntryModel.scope == scope,
            )
        )
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else 0

    async def _read_entry(self, session, owner: str, scope: str) -> CreditEntry:
        row = (await session.execute(
            select(CreditEntryModel).where(
                CreditEntryModel.owner == owner,
                CreditEntryModel.scope == scope,
            )
        )).scalar_one_or_none()
        if row is None:
            return CreditEntry(owner=owner, scope=scope, balance=0, version=0)
        return CreditEntry.from_row(row)
