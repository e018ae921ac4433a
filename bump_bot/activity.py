"""
Activity Log

User-visible feed of trades and session events. Writes are best effort: a
failing write is logged and swallowed so it can never abort a trade or a
session transition.
"""

from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from bump_bot.models import ActivityRecord, ActivityStatus
from bump_bot.storage import ActivityModel, utcnow
from bump_bot.utils import logger, sanitize_error_message


def bot_prefix(wallet_index: Optional[int]) -> str:
    return f"[Bot #{wallet_index + 1}]" if wallet_index is not None else "[System]"


class ActivityLog:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def record(
        self,
        owner: str,
        status: ActivityStatus,
        message: str,
        amount: int = 0,
        session_id: Optional[str] = None,
        wallet_index: Optional[int] = None,
        tx_ref: Optional[str] = None,
        verified: bool = True,
    ) -> Optional[int]:
        """Append an entry; returns its id, or None if the write failed."""
        text = f"{bot_prefix(wallet_index)} {sanitize_error_message(message)}"
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = ActivityModel(
                        owner=owner,
                        session_id=session_id,
                        wallet_index=wallet_index,
                        amount=amount,
                        status=status.value,
                        tx_ref=tx_ref,
                        message=text,
                        verified=verified,
                        created_at=utcnow(),
                    )
                    session.add(row)
                    await session.flush()
                    return row.id
        except SQLAlchemyError as e:
            logger.error(f"Activity log write failed for {owner}: {e.__class__.__name__}: {e}")
            return None

    async def finalize(
        self,
        entry_id: Optional[int],
        status: ActivityStatus,
        message: Optional[str] = None,
        tx_ref: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> bool:
        """Move a pending entry to its final status. Only pending entries change."""
        if entry_id is None:
            return False
        values = {"status": status.value}
        if message is not None:
            values["message"] = message
        if tx_ref is not None:
            values["tx_ref"] = tx_ref
        if amount is not None:
            values["amount"] = amount
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if message is not None:
                        row = await session.get(ActivityModel, entry_id)
                        if row is not None:
                            values["message"] = f"{bot_prefix(row.wallet_index)} {sanitize_error_message(message)}"
                    result = await session.execute(
                        update(ActivityModel)
                        .where(
                            ActivityModel.id == entry_id,
                            ActivityModel.status == ActivityStatus.PENDING.value,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Activity log update failed for entry {entry_id}: {e.__class__.__name__}: {e}")
            return False

    async def recent(
        self,
        owner: str,
        limit: int = 50,
        session_id: Optional[str] = None,
    ) -> List[ActivityRecord]:
        """Newest entries first."""
        query = select(ActivityModel).where(ActivityModel.owner == owner)
        if session_id is not None:
            query = query.where(ActivityModel.session_id == session_id)
        query = query.order_by(ActivityModel.id.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [ActivityRecord.from_row(row) for row in result.scalars()]
