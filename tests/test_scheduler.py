"""Tests for the session scheduler and its drivers."""

import asyncio
from collections import defaultdict
from decimal import Decimal

from bump_bot.models import Failed, InsufficientBalance, SessionStatus, StopReason, Success
from bump_bot.scheduler import Scheduler, run_iteration, run_session_loop

from conftest import OTHER_OWNER, OWNER, TARGET

SKIP = InsufficientBalance(balance=0, required=100)


class ScriptedExecutor:
    """Returns scripted outcomes and tracks how many trades overlap per owner."""

    def __init__(self, outcomes=None, default=None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.default = default or Success(tx_ref="0xok", spent_amount=1)
        self.delay = delay
        self.calls = []
        self.in_flight = defaultdict(int)
        self.max_in_flight = 0
        self.gate = None

    async def execute(self, owner, wallet_index, session):
        self.calls.append((owner, wallet_index))
        self.in_flight[owner] += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight[owner])
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else self.default
            if callable(outcome):
                outcome = outcome(owner)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight[owner] -= 1

    def calls_for(self, owner):
        return [index for o, index in self.calls if o == owner]


async def no_sleep(seconds):
    await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 5.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout=timeout)


async def create_session(store, owner=OWNER, interval=2):
    return await store.create(owner, TARGET, Decimal("2"), interval, 5)


class TestRunIteration:

    async def test_success_advances_cursor(self, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor()

        updated = await run_iteration(session.session_id, store, executor, activity)

        assert executor.calls == [(OWNER, 0)]
        assert updated.rotation_index == 1
        assert updated.last_trade_at is not None

    async def test_stopped_session_does_not_trade(self, store, activity):
        session = await create_session(store)
        await store.stop(session.session_id)
        executor = ScriptedExecutor()

        result = await run_iteration(session.session_id, store, executor, activity)

        assert executor.calls == []
        assert result.status is SessionStatus.STOPPED

    async def test_stop_during_trade_wins(self, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor(outcomes=[Success(tx_ref="0xlate", spent_amount=1)])
        executor.gate = asyncio.Event()
        task = asyncio.create_task(run_iteration(session.session_id, store, executor, activity))
        await wait_until(lambda: executor.calls)

        await store.stop(session.session_id, StopReason.USER)
        executor.gate.set()
        result = await task

        assert result.status is SessionStatus.STOPPED
        assert result.stop_reason is StopReason.USER
        assert result.rotation_index == 0


class TestSessionLoop:

    async def test_all_depleted_after_one_full_pass(self, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor(default=SKIP)

        result = await run_session_loop(session.session_id, store, executor, activity, sleep=no_sleep)

        assert executor.calls_for(OWNER) == [0, 1, 2, 3, 4]
        assert result.status is SessionStatus.STOPPED
        assert result.stop_reason is StopReason.ALL_DEPLETED
        assert result.rotation_index == 4
        messages = [e.message for e in await activity.recent(OWNER)]
        assert any("out of credit" in m for m in messages)

    async def test_depletion_from_middle_of_rotation(self, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor(outcomes=[Success("0x1", 1), Success("0x2", 1)], default=SKIP)

        result = await run_session_loop(session.session_id, store, executor, activity, sleep=no_sleep)

        assert executor.calls_for(OWNER) == [0, 1, 2, 3, 4, 0, 1]
        assert result.stop_reason is StopReason.ALL_DEPLETED
        assert result.rotation_index == 1

    async def test_too_many_failures(self, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor(default=Failed("quote failed"))

        result = await run_session_loop(session.session_id, store, executor, activity, sleep=no_sleep)

        assert len(executor.calls) == 5
        assert result.stop_reason is StopReason.TOO_MANY_FAILURES

    async def test_iteration_error_does_not_end_loop(self, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor(outcomes=[RuntimeError("database is locked")])
        slept = []

        async def record_sleep(seconds):
            slept.append(seconds)

        result = await run_session_loop(
            session.session_id, store, executor, activity, sleep=record_sleep, max_iterations=3
        )

        # The failed tick never applied a decision, so wallet 0 is retried
        assert executor.calls_for(OWNER) == [0, 0, 1]
        assert slept == [2, 2]
        assert result.status is SessionStatus.RUNNING
        assert result.rotation_index == 2
        assert (await store.get(session.session_id)).lease_holder is None

    async def test_four_failures_then_success_keeps_running(self, store, activity):
        session = await create_session(store)
        outcomes = [Failed("x")] * 4 + [Success("0x1", 1)] + [Failed("y")] * 4
        executor = ScriptedExecutor(outcomes=outcomes)

        result = await run_session_loop(
            session.session_id, store, executor, activity, sleep=no_sleep, max_iterations=9
        )

        assert result.is_running
        assert result.consecutive_failures == 4
        assert len(executor.calls) == 9

    async def test_stop_during_sleep_prevents_next_trade(self, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor()

        async def stop_while_sleeping(seconds):
            await store.stop(session.session_id, StopReason.USER)

        result = await run_session_loop(
            session.session_id, store, executor, activity, sleep=stop_while_sleeping
        )

        assert len(executor.calls) == 1
        assert result.stop_reason is StopReason.USER

    async def test_leaves_when_leased_elsewhere(self, store, activity):
        session = await create_session(store)
        await store.claim_lease(session.session_id, "other-process", 600)
        executor = ScriptedExecutor()

        result = await run_session_loop(
            session.session_id, store, executor, activity, sleep=no_sleep, holder="me"
        )

        assert executor.calls == []
        assert result.is_running


class TestScheduler:

    async def test_adopts_running_sessions(self, config, store, activity):
        await create_session(store)
        await create_session(store, owner=OTHER_OWNER)
        executor = ScriptedExecutor()
        scheduler = Scheduler(config, store, executor, activity, interval_scale=0.001)

        assert await scheduler.poll_once() == 2
        assert await scheduler.poll_once() == 0
        await wait_until(lambda: executor.calls_for(OWNER) and executor.calls_for(OTHER_OWNER))
        assert sorted(scheduler.active_owners) == sorted([OWNER, OTHER_OWNER])
        await scheduler.shutdown()

    async def test_single_flight_per_session(self, config, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor(delay=0.02)
        scheduler = Scheduler(config, store, executor, activity, interval_scale=0.001)

        scheduler.adopt(session)
        scheduler.adopt(session)
        for _ in range(5):
            await scheduler.poll_once()
            scheduler.wake(OWNER)
            await asyncio.sleep(0.01)
        await wait_until(lambda: len(executor.calls) >= 5)
        await scheduler.shutdown()

        assert executor.max_in_flight == 1

    async def test_two_schedulers_share_one_session(self, config, store, activity):
        await create_session(store)
        executor = ScriptedExecutor(delay=0.02)
        first = Scheduler(config, store, executor, activity, holder_id="a", interval_scale=0.001)
        second = Scheduler(config, store, executor, activity, holder_id="b", interval_scale=0.001)

        await first.poll_once()
        await wait_until(lambda: executor.calls)
        await second.poll_once()
        await wait_until(lambda: len(executor.calls) >= 3)
        await asyncio.gather(first.shutdown(), second.shutdown())

        assert executor.max_in_flight == 1

    async def test_stop_mid_interval(self, config, store, activity):
        session = await create_session(store, interval=60)
        executor = ScriptedExecutor()
        scheduler = Scheduler(config, store, executor, activity)

        handle = scheduler.adopt(session)
        await wait_until(lambda: executor.calls)
        await store.stop(session.session_id, StopReason.USER)
        scheduler.wake(OWNER)
        await asyncio.wait_for(handle.task, timeout=5)

        assert len(executor.calls) == 1
        await scheduler.shutdown()

    async def test_failing_owner_does_not_affect_others(self, config, store, activity):
        await create_session(store)
        await create_session(store, owner=OTHER_OWNER)

        def by_owner(owner):
            if owner == OWNER:
                return RuntimeError("database exploded")
            return Success("0xok", 1)

        executor = ScriptedExecutor(default=by_owner)
        scheduler = Scheduler(config, store, executor, activity, interval_scale=0.001)

        await scheduler.poll_once()
        await wait_until(lambda: len(executor.calls_for(OWNER)) >= 3 and len(executor.calls_for(OTHER_OWNER)) >= 3)
        await scheduler.shutdown()

        stuck = await store.get_running(OWNER)
        assert stuck.rotation_index == 0
        assert stuck.consecutive_failures == 0
        assert (await store.get_running(OTHER_OWNER)).is_running

    async def test_shutdown_waits_for_in_flight_trade(self, config, store, activity):
        session = await create_session(store)
        executor = ScriptedExecutor()
        executor.gate = asyncio.Event()
        scheduler = Scheduler(config, store, executor, activity)

        scheduler.adopt(session)
        await wait_until(lambda: executor.calls)
        shutdown = asyncio.create_task(scheduler.shutdown())
        await asyncio.sleep(0.05)
        assert not shutdown.done()

        executor.gate.set()
        await asyncio.wait_for(shutdown, timeout=5)

        updated = await store.get(session.session_id)
        assert updated.rotation_index == 1
        assert updated.lease_holder is None
        assert scheduler.drivers == {}

    async def test_run_loop_exits_on_shutdown(self, config, store, activity):
        await create_session(store)
        executor = ScriptedExecutor()
        scheduler = Scheduler(config, store, executor, activity, interval_scale=0.001)

        runner = asyncio.create_task(scheduler.run())
        await wait_until(lambda: executor.calls)
        assert scheduler.is_running
        scheduler.request_shutdown()
        await asyncio.wait_for(runner, timeout=5)

        assert not scheduler.is_running
        assert scheduler.drivers == {}

    async def test_stopped_session_driver_released_on_poll(self, config, store, activity):
        session = await create_session(store, interval=60)
        executor = ScriptedExecutor()
        scheduler = Scheduler(config, store, executor, activity)

        handle = scheduler.adopt(session)
        await wait_until(lambda: handle.iterations == 1)
        await store.stop(session.session_id)
        await scheduler.poll_once()
        await asyncio.wait_for(handle.task, timeout=5)

        assert handle.released
        assert scheduler.active_owners == []
        await scheduler.shutdown()
