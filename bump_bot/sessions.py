"""
Session Store
=============

Durable record of bump sessions. At most one session per owner is
``running``; the partial unique index on ``bump_sessions`` enforces it.

Writes are optimistic: every state change is conditioned on the version the
caller read, and a concurrent stop always wins over a scheduler update.
"""

import uuid
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from bump_bot.models import Session, SessionStatus, StopReason
from bump_bot.rotation import RotationDecision
from bump_bot.storage import SessionModel, utcnow
from bump_bot.utils import SessionConflictError, StaleWriteError, logger


class SessionStore:
    """CRUD and compare-and-set updates for bump sessions."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def create(
        self,
        owner: str,
        target_asset: str,
        notional_usd: Decimal,
        interval_seconds: int,
        wallet_count: int,
    ) -> Session:
        """Insert a running session; raises SessionConflictError if one exists."""
        row = SessionModel(
            session_id=str(uuid.uuid4()),
            owner=owner,
            target_asset=target_asset,
            notional_usd=str(notional_usd),
            interval_seconds=interval_seconds,
            rotation_index=0,
            wallet_count=wallet_count,
            status=SessionStatus.RUNNING.value,
            consecutive_failures=0,
            consecutive_skips=0,
            version=1,
            started_at=utcnow(),
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
        except IntegrityError:
            raise SessionConflictError(f"Owner {owner} already has a running session")

        logger.info(f"Session {row.session_id} started for {owner}")
        return Session.from_row(row)

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._session_factory() as session:
            row = await session.get(SessionModel, session_id)
            return Session.from_row(row) if row else None

    async def get_running(self, owner: str) -> Optional[Session]:
        async with self._session_factory() as session:
            row = (await session.execute(
                select(SessionModel).where(
                    SessionModel.owner == owner,
                    SessionModel.status == SessionStatus.RUNNING.value,
                )
            )).scalar_one_or_none()
            return Session.from_row(row) if row else None

    async def get_latest(self, owner: str) -> Optional[Session]:
        """Running session if any, else the most recently started one."""
        async with self._session_factory() as session:
            row = (await session.execute(
                select(SessionModel)
                .where(SessionModel.owner == owner)
                .order_by(
                    (SessionModel.status == SessionStatus.RUNNING.value).desc(),
                    SessionModel.started_at.desc(),
                )
                .limit(1)
            )).scalar_one_or_none()
            return Session.from_row(row) if row else None

    async def list_running(self) -> List[Session]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionModel)
                .where(SessionModel.status == SessionStatus.RUNNING.value)
                .order_by(SessionModel.started_at)
            )
            return [Session.from_row(row) for row in result.scalars()]

    async def apply_decision(
        self,
        current: Session,
        decision: RotationDecision,
        traded: bool = False,
    ) -> Session:
        """
        Persist a rotation decision against the version ``current`` was read at.

        A stop decision moves the session to ``stopped`` in the same write. If
        the session was stopped meanwhile, the stopped row is returned
        unchanged; any other concurrent change raises StaleWriteError.
        """
        now = utcnow()
        values = {
            "rotation_index": decision.next_index,
            "consecutive_failures": decision.consecutive_failures,
            "consecutive_skips": decision.consecutive_skips,
            "version": SessionModel.version + 1,
        }
        if traded:
            values["last_trade_at"] = now
        stop_reason = decision.action.stop_reason
        if stop_reason is not None:
            values.update(
                status=SessionStatus.STOPPED.value,
                stop_reason=stop_reason.value,
                stopped_at=now,
                lease_holder=None,
                lease_expires_at=None,
            )

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SessionModel)
                    .where(
                        SessionModel.session_id == current.session_id,
                        SessionModel.version == current.version,
                        SessionModel.status == SessionStatus.RUNNING.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                updated = result.rowcount == 1

        latest = await self.get(current.session_id)
        if updated:
            if stop_reason is not None:
                logger.info(f"Session {current.session_id} stopped: {stop_reason.value}")
            return latest
        if latest is not None and not latest.is_running:
            return latest
        raise StaleWriteError(
            f"Session {current.session_id} changed since version {current.version}"
        )

    async def stop(self, session_id: str, reason: StopReason = StopReason.USER) -> Optional[Session]:
        """Stop a session. Stopping an already stopped session is a no-op."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SessionModel)
                    .where(
                        SessionModel.session_id == session_id,
                        SessionModel.status == SessionStatus.RUNNING.value,
                    )
                    .values(
                        status=SessionStatus.STOPPED.value,
                        stop_reason=reason.value,
                        stopped_at=utcnow(),
                        version=SessionModel.version + 1,
                        lease_holder=None,
                        lease_expires_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    logger.info(f"Session {session_id} stopped: {reason.value}")
        return await self.get(session_id)

    async def stop_for_owner(self, owner: str, reason: StopReason = StopReason.USER) -> Optional[Session]:
        running = await self.get_running(owner)
        if running is None:
            return None
        return await self.stop(running.session_id, reason)

    async def claim_lease(self, session_id: str, holder: str, ttl_seconds: float) -> bool:
        """
        Take or renew the driver lease on a running session.

        Succeeds when the lease is free, expired, or already held by
        ``holder``. Only the lease holder may drive the session.
        """
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SessionModel)
                    .where(
                        SessionModel.session_id == session_id,
                        SessionModel.status == SessionStatus.RUNNING.value,
                        or_(
                            SessionModel.lease_holder.is_(None),
                            SessionModel.lease_holder == holder,
                            SessionModel.lease_expires_at < now,
                        ),
                    )
                    .values(
                        lease_holder=holder,
                        lease_expires_at=now + timedelta(seconds=ttl_seconds),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def release_lease(self, session_id: str, holder: str):
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(SessionModel)
                    .where(
                        SessionModel.session_id == session_id,
                        SessionModel.lease_holder == holder,
                    )
                    .values(lease_holder=None, lease_expires_at=None)
                    .execution_options(synchronize_session=False)
                )
