"""
Worker Wallet Registry

Get-or-create the owner's worker wallets through custody and persist their
addresses. Wallets belong to the owner, not to a session, so a new session
reuses the same pool.
"""

from typing import List, Optional

from sqlalchemy import select

from bump_bot.custody import CustodyService
from bump_bot.models import WorkerWallet
from bump_bot.storage import WorkerWalletModel, insert_ignore, utcnow
from bump_bot.utils import format_address, logger


class WalletRegistry:

    def __init__(self, session_factory, custody: CustodyService, wallet_count: int = 5):
        self._session_factory = session_factory
        self.custody = custody
        self.wallet_count = wallet_count

    async def ensure_wallets(self, owner: str, count: Optional[int] = None) -> List[WorkerWallet]:
        """Create any missing wallets in ``0..count-1`` and return the full pool."""
        count = count or self.wallet_count
        existing = {w.wallet_index: w for w in await self.list_wallets(owner)}

        created = 0
        for index in range(count):
            if index in existing:
                continue
            address = await self.custody.get_or_create_wallet(owner, index)
            async with self._session_factory() as session:
                async with session.begin():
                    inserted = await insert_ignore(
                        session,
                        WorkerWalletModel,
                        {"owner": owner, "wallet_index": index, "address": address, "created_at": utcnow()},
                        ["owner", "wallet_index"],
                    )
            if inserted:
                created += 1
                logger.info(f"Registered worker wallet {index} for {owner}: {format_address(address)}")

        if created:
            logger.info(f"Created {created} worker wallets for {owner}")
        return [w for w in await self.list_wallets(owner) if w.wallet_index < count]

    async def list_wallets(self, owner: str) -> List[WorkerWallet]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkerWalletModel)
                .where(WorkerWalletModel.owner == owner)
                .order_by(WorkerWalletModel.wallet_index)
            )
            return [WorkerWallet.from_row(row) for row in result.scalars()]

    async def get_wallet(self, owner: str, wallet_index: int) -> Optional[WorkerWallet]:
        async with self._session_factory() as session:
            row = await session.get(WorkerWalletModel, (owner, wallet_index))
            return WorkerWallet.from_row(row) if row else None
