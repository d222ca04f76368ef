import asyncio
from decimal import Decimal

import pytest

from dca_bot.exceptions import PersistenceError, SchedulingError
from dca_bot.executor import PlanExecutor
from dca_bot.models import Frequency
from dca_bot.scheduler import PlanScheduler

from conftest import FakeOracle


class TestScheduleRegistry:
    @pytest.mark.asyncio
    async def test_schedule_registers_timer(self, store, user, scheduler):
        plan = await store.create_plan(user.user_id, 10, "hour", "addrX")

        timer = scheduler.schedule_plan(plan)

        assert scheduler.is_scheduled(plan.plan_id)
        assert timer.frequency is Frequency.HOUR
        assert timer.cron_expression == "0 * * * *"

    @pytest.mark.asyncio
    async def test_invalid_frequency_raises_synchronously(self, store, user, scheduler):
        plan = await store.create_plan(user.user_id, 10, "hour", "addrX")
        plan.frequency = "fortnightly"

        with pytest.raises(SchedulingError):
            scheduler.schedule_plan(plan)
        assert not scheduler.is_scheduled(plan.plan_id)

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(self, store, user, scheduler, clock, transactor, wait_until):
        """Should keep a single timer per plan, so one period fires once."""
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        first = scheduler.schedule_plan(plan)
        second = scheduler.schedule_plan(plan)

        assert first is not second
        assert scheduler.get_timer(plan.plan_id) is second
        assert scheduler.scheduled_plan_ids == [plan.plan_id]

        await wait_until(lambda: clock.waiting == 1)
        await clock.advance(30)
        await wait_until(lambda: len(transactor.calls) == 1 and clock.waiting == 1)
        assert first.task.done()
        assert len(transactor.calls) == 1

    @pytest.mark.asyncio
    async def test_unschedule_is_idempotent(self, store, user, scheduler):
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        timer = scheduler.schedule_plan(plan)

        assert scheduler.unschedule_plan(plan.plan_id) is True
        assert scheduler.unschedule_plan(plan.plan_id) is False
        assert scheduler.unschedule_plan("never-scheduled") is False
        assert not scheduler.is_scheduled(plan.plan_id)
        await asyncio.sleep(0)
        assert timer.task.cancelled() or timer.task.done()


class TestInitializeFromStore:
    @pytest.mark.asyncio
    async def test_schedules_only_active_plans(self, store, user, scheduler):
        active = await store.create_plan(user.user_id, 10, "minute", "addrX")
        stopped = await store.create_plan(user.user_id, 5, "day", "addrY")
        await store.stop_plan(stopped.plan_id)

        count = await scheduler.initialize_from_store()

        assert count == 1
        assert scheduler.scheduled_plan_ids == [active.plan_id]

    @pytest.mark.asyncio
    async def test_store_failure_starts_empty(self, store, scheduler):
        """Should log and start with zero timers when the store cannot be read."""
        async def broken():
            raise PersistenceError("database locked")

        store.find_active_plans = broken

        assert await scheduler.initialize_from_store() == 0
        assert scheduler.scheduled_plan_ids == []

    @pytest.mark.asyncio
    async def test_bad_plan_is_skipped(self, store, user, scheduler):
        good = await store.create_plan(user.user_id, 10, "minute", "addrX")
        bad = await store.create_plan(user.user_id, 10, "minute", "addrY")
        plans = await store.find_active_plans()
        next(p for p in plans if p.plan_id == bad.plan_id).frequency = "yearly"

        async def loaded():
            return plans

        store.find_active_plans = loaded

        assert await scheduler.initialize_from_store() == 1
        assert scheduler.scheduled_plan_ids == [good.plan_id]


class TestTicks:
    @pytest.mark.asyncio
    async def test_fires_once_per_period_boundary(self, store, user, scheduler, clock, transactor, wait_until):
        plan = await store.create_plan(user.user_id, 1, "minute", "addrX")
        scheduler.schedule_plan(plan)
        await wait_until(lambda: clock.waiting == 1)

        await clock.advance(29)
        await asyncio.sleep(0.05)
        assert transactor.calls == []

        for expected in (1, 2, 3):
            await clock.advance(60 if expected > 1 else 1)
            await wait_until(lambda: len(transactor.calls) == expected and clock.waiting == 1)

        assert (await store.get_plan(plan.plan_id)).execution_count == 3

    @pytest.mark.asyncio
    async def test_hourly_plan_waits_for_the_hour(self, store, user, scheduler, clock, transactor, wait_until):
        plan = await store.create_plan(user.user_id, 1, "hour", "addrX")
        scheduler.schedule_plan(plan)
        await wait_until(lambda: clock.waiting == 1)

        await clock.advance(59 * 60)
        await asyncio.sleep(0.05)
        assert transactor.calls == []

        await clock.advance(60)
        await wait_until(lambda: len(transactor.calls) == 1)

    @pytest.mark.asyncio
    async def test_failing_plan_does_not_block_other_plan(self, store, user, scheduler, clock, transactor, wait_until):
        """Should commit plan B's tick while plan A's send fails in the same period."""
        plan_a = await store.create_plan(user.user_id, 10, "minute", "addrA")
        plan_b = await store.create_plan(user.user_id, 3, "minute", "addrB")
        before_a = (await store.get_plan(plan_a.plan_id)).to_dict()
        transactor.fail_for.add("addrA")
        scheduler.schedule_plan(plan_a)
        scheduler.schedule_plan(plan_b)
        await wait_until(lambda: clock.waiting == 2)

        await clock.advance(30)
        await wait_until(lambda: len(transactor.calls) == 1 and clock.waiting == 2)

        assert (await store.get_plan(plan_a.plan_id)).to_dict() == before_a
        loaded_b = await store.get_plan(plan_b.plan_id)
        assert loaded_b.execution_count == 1
        assert loaded_b.total_invested == Decimal("3")

    @pytest.mark.asyncio
    async def test_timer_survives_unexpected_executor_error(self, store, user, scheduler, clock, executor, transactor, wait_until):
        plan = await store.create_plan(user.user_id, 1, "minute", "addrX")
        real_execute = executor.execute
        attempts = []

        async def flaky(plan_id):
            attempts.append(plan_id)
            if len(attempts) == 1:
                raise RuntimeError("boom")
            return await real_execute(plan_id)

        executor.execute = flaky
        scheduler.schedule_plan(plan)
        await wait_until(lambda: clock.waiting == 1)

        await clock.advance(30)
        await wait_until(lambda: len(attempts) == 1 and clock.waiting == 1)
        await clock.advance(60)
        await wait_until(lambda: len(transactor.calls) == 1)

    @pytest.mark.asyncio
    async def test_stop_during_in_flight_tick(self, store, user, scheduler, clock, transactor, wait_until):
        """Should let the running tick commit and fire no further ticks."""
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        timer = scheduler.schedule_plan(plan)
        transactor.gate = asyncio.Event()
        await wait_until(lambda: clock.waiting == 1)

        await clock.advance(30)
        await asyncio.wait_for(transactor.started.wait(), timeout=5)
        await store.stop_plan(plan.plan_id)
        scheduler.unschedule_plan(plan.plan_id)
        transactor.gate.set()

        await asyncio.wait_for(timer.task, timeout=5)
        loaded = await store.get_plan(plan.plan_id)
        assert loaded.is_active is False
        assert loaded.execution_count == 1

        await clock.advance(600)
        await asyncio.sleep(0.05)
        assert len(transactor.calls) == 1

    @pytest.mark.asyncio
    async def test_shutdown_stops_all_timers(self, store, user, scheduler, clock, wait_until):
        for address in ("addrX", "addrY"):
            scheduler.schedule_plan(await store.create_plan(user.user_id, 1, "day", address))
        await wait_until(lambda: clock.waiting == 2)

        await scheduler.shutdown()

        assert scheduler.scheduled_plan_ids == []
        assert clock.waiting == 0


class TestScenario:
    @pytest.mark.asyncio
    async def test_ten_then_half_then_stop(self, store, user, transactor, clock, wait_until):
        executor = PlanExecutor(store, transactor, FakeOracle([0.5]), clock=clock)
        scheduler = PlanScheduler(store, executor, clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        scheduler.schedule_plan(plan)
        await wait_until(lambda: clock.waiting == 1)

        await clock.advance(30)
        await wait_until(lambda: len(transactor.calls) == 1 and clock.waiting == 1)
        assert transactor.calls[0] == (Decimal("10"), "addrU", "addrX")
        loaded = await store.get_plan(plan.plan_id)
        assert (loaded.execution_count, loaded.total_invested, loaded.amount, loaded.initial_amount) == (
            1, Decimal("10"), Decimal("10"), Decimal("10"),
        )

        await clock.advance(60)
        await wait_until(lambda: len(transactor.calls) == 2 and clock.waiting == 1)
        assert transactor.calls[1] == (Decimal("5"), "addrU", "addrX")
        loaded = await store.get_plan(plan.plan_id)
        assert (loaded.execution_count, loaded.total_invested) == (2, Decimal("15"))

        stopped = await store.stop_plan(plan.plan_id)
        scheduler.unschedule_plan(plan.plan_id)
        assert stopped.is_active is False

        await clock.advance(60)
        await asyncio.sleep(0.05)
        assert len(transactor.calls) == 2
        await scheduler.shutdown()
