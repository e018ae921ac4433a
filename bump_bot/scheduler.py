"""
Scheduler
=========

Drives every running session: one asyncio task per owner, each looping

    claim lease -> run_iteration -> sleep(interval)

until its session stops. ``run_iteration`` is shared with the
request-scoped ``run_session_loop`` so both drivers apply identical
rotation rules.

Single-flight per session is enforced by the session lease, which also
keeps two scheduler processes from driving the same session.
"""

import asyncio
import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from bump_bot.activity import ActivityLog
from bump_bot.config import Config
from bump_bot.executor import SwapExecutor
from bump_bot.models import ActivityStatus, Session, StopReason, Success
from bump_bot.rotation import DEFAULT_MAX_FAILURES, next_rotation
from bump_bot.sessions import SessionStore
from bump_bot.utils import format_duration, logger

STOP_MESSAGES = {
    StopReason.USER: "Session stopped by user",
    StopReason.ALL_DEPLETED: "Session stopped: all worker wallets are out of credit",
    StopReason.TOO_MANY_FAILURES: "Session stopped after too many consecutive failures",
    StopReason.NO_WALLETS: "Session stopped: no worker wallets",
}

# Lease margin on top of the interval, covering one full executor call
LEASE_MARGIN_SECONDS = 300


def make_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


async def run_iteration(
    session_id: str,
    store: SessionStore,
    executor: SwapExecutor,
    activity: ActivityLog,
    max_failures: int = DEFAULT_MAX_FAILURES,
) -> Optional[Session]:
    """
    One scheduler tick for one session.

    Re-reads the session so an external stop is honoured before trading,
    executes one trade on the wallet at the rotation cursor, and persists
    the rotation decision. Returns the session as stored afterwards.
    """
    session = await store.get(session_id)
    if session is None or not session.is_running:
        return session

    if session.wallet_count < 1:
        stopped = await store.stop(session_id, StopReason.NO_WALLETS)
        await activity.record(session.owner, ActivityStatus.INFO, STOP_MESSAGES[StopReason.NO_WALLETS],
                              session_id=session_id)
        return stopped

    index = session.rotation_index
    outcome = await executor.execute(session.owner, index, session)

    decision = next_rotation(
        index,
        session.wallet_count,
        outcome,
        session.consecutive_failures,
        session.consecutive_skips,
        max_failures,
    )
    updated = await store.apply_decision(session, decision, traded=isinstance(outcome, Success))

    reason = decision.action.stop_reason
    if reason is not None and updated is not None and updated.stop_reason is reason:
        logger.warning(f"Session {session_id} for {session.owner}: {STOP_MESSAGES[reason]}")
        await activity.record(session.owner, ActivityStatus.INFO, STOP_MESSAGES[reason], session_id=session_id)
    return updated


async def run_session_loop(
    session_id: str,
    store: SessionStore,
    executor: SwapExecutor,
    activity: ActivityLog,
    max_failures: int = DEFAULT_MAX_FAILURES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    max_iterations: Optional[int] = None,
    holder: Optional[str] = None,
    lease_seconds: float = 900,
) -> Optional[Session]:
    """
    Request-scoped driver: loop one session in the caller's task.

    Exits when the session stops, when another driver holds the lease, or
    after ``max_iterations`` ticks. A tick that raises is logged and the
    loop carries on after the interval.
    """
    holder = holder or make_holder_id()
    iterations = 0
    session = await store.get(session_id)
    try:
        while session is not None and session.is_running:
            interval = session.interval_seconds
            ttl = max(lease_seconds, interval + LEASE_MARGIN_SECONDS)
            try:
                if not await store.claim_lease(session_id, holder, ttl):
                    logger.info(f"Session {session_id} is driven elsewhere, leaving")
                    break
                session = await run_iteration(session_id, store, executor, activity, max_failures)
            except Exception as e:
                logger.exception(f"Iteration failed for session {session_id}: {e.__class__.__name__}: {e}")
            else:
                if session is None or not session.is_running:
                    break
                interval = session.interval_seconds

            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            await sleep(interval)
            session = await store.get(session_id)
    finally:
        await store.release_lease(session_id, holder)
    return session


@dataclass
class DriverHandle:
    """A session driver owned by the Scheduler."""
    owner: str
    session_id: str
    interval_seconds: int
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    released: bool = False
    iterations: int = 0


class Scheduler:
    """
    Long-lived poller owning one driver per running session.

    The driver map belongs to this instance; construct one per process and
    call ``shutdown()`` on exit. An exception in one owner's iteration is
    logged and retried on the next interval without touching other owners.
    """

    def __init__(
        self,
        config: Config,
        store: SessionStore,
        executor: SwapExecutor,
        activity: ActivityLog,
        holder_id: Optional[str] = None,
        interval_scale: float = 1.0,
    ):
        self.config = config
        self.store = store
        self.executor = executor
        self.activity = activity
        self.holder_id = holder_id or make_holder_id()
        self.interval_scale = interval_scale
        self._drivers: Dict[str, DriverHandle] = {}
        self._shutdown = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and not self._shutdown.is_set()

    @property
    def drivers(self) -> Dict[str, DriverHandle]:
        return dict(self._drivers)

    @property
    def active_owners(self) -> List[str]:
        return [owner for owner, handle in self._drivers.items() if not handle.released]

    async def poll_once(self) -> int:
        """Adopt new running sessions and release stale drivers. Returns drivers adopted."""
        running = await self.store.list_running()
        by_owner = {session.owner: session for session in running}

        for owner, handle in list(self._drivers.items()):
            current = by_owner.get(owner)
            if handle.task is not None and handle.task.done():
                del self._drivers[owner]
            elif current is None or current.session_id != handle.session_id:
                self.release(owner)

        adopted = 0
        for session in running:
            if session.owner in self._drivers or self._shutdown.is_set():
                continue
            self.adopt(session)
            adopted += 1

        if adopted:
            logger.info(f"Scheduler adopted {adopted} session(s), {len(self.active_owners)} active")
        return adopted

    def adopt(self, session: Session) -> DriverHandle:
        """Start a driver for ``session``; adopting an owner twice is a no-op."""
        existing = self._drivers.get(session.owner)
        if existing is not None:
            return existing

        handle = DriverHandle(
            owner=session.owner,
            session_id=session.session_id,
            interval_seconds=session.interval_seconds,
        )
        handle.task = asyncio.create_task(self._drive(handle), name=f"bump-{session.owner}")
        self._drivers[session.owner] = handle
        logger.info(
            f"Driving session {session.session_id} for {session.owner} "
            f"every {format_duration(session.interval_seconds)}"
        )
        return handle

    def release(self, owner: str):
        """
        Ask an owner's driver to exit.

        The driver leaves its sleep at once; an in-flight trade finishes and
        its outcome is applied first.
        """
        handle = self._drivers.get(owner)
        if handle is None:
            return
        handle.released = True
        handle.wake.set()

    def wake(self, owner: str):
        """Cut the owner's current sleep short so it re-reads its session."""
        handle = self._drivers.get(owner)
        if handle is not None:
            handle.wake.set()

    async def _sleep(self, handle: DriverHandle, seconds: float):
        try:
            await asyncio.wait_for(handle.wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        handle.wake.clear()

    async def _drive(self, handle: DriverHandle):
        interval = handle.interval_seconds
        try:
            while not handle.released and not self._shutdown.is_set():
                ttl = max(self.config.lease_seconds, interval * self.interval_scale + LEASE_MARGIN_SECONDS)
                try:
                    if not await self.store.claim_lease(handle.session_id, self.holder_id, ttl):
                        logger.info(f"Session {handle.session_id} stopped or leased by another driver")
                        break
                    session = await run_iteration(
                        handle.session_id,
                        self.store,
                        self.executor,
                        self.activity,
                        self.config.max_consecutive_failures,
                    )
                except Exception as e:
                    logger.exception(f"Iteration failed for {handle.owner}: {e.__class__.__name__}: {e}")
                else:
                    handle.iterations += 1
                    if session is None or not session.is_running:
                        break
                    interval = session.interval_seconds

                if handle.released or self._shutdown.is_set():
                    break
                await self._sleep(handle, interval * self.interval_scale)
        finally:
            try:
                await self.store.release_lease(handle.session_id, self.holder_id)
            except SQLAlchemyError as e:
                logger.error(f"Could not release lease on {handle.session_id}: {e}")
            logger.info(f"Driver for {handle.owner} exited after {handle.iterations} iteration(s)")

    async def run(self):
        """Poll for sessions until ``shutdown()`` is called."""
        logger.info(f"Scheduler {self.holder_id} started, polling every {format_duration(self.config.poll_interval_seconds)}")
        self._running = True
        while not self._shutdown.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"Session poll failed: {e.__class__.__name__}: {e}")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        self._running = False
        await self._drain()

    async def shutdown(self):
        """Stop polling, release every driver and wait for in-flight trades."""
        if not self._shutdown.is_set():
            logger.info("Scheduler shutting down")
        self._shutdown.set()
        await self._drain()

    def request_shutdown(self):
        """Signal-handler friendly variant of ``shutdown()``."""
        self._shutdown.set()
        for owner in list(self._drivers):
            self.release(owner)

    async def _drain(self):
        for owner in list(self._drivers):
            self.release(owner)
        tasks = [h.task for h in self._drivers.values() if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drivers.clear()
