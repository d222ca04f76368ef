import asyncio
import logging
from decimal import Decimal

import pytest

from dca_bot.exceptions import OracleError, PersistenceError, TransactorError
from dca_bot.executor import PlanExecutor
from dca_bot.models import ExecutionStatus

from conftest import FakeOracle, RaisingOracle, SlowOracle


async def _execute_twice(executor, plan_id):
    first = await executor.execute(plan_id)
    second = await executor.execute(plan_id)
    return first, second


class TestFirstTick:
    @pytest.mark.asyncio
    async def test_first_tick_sends_plan_amount_without_oracle(self, store, user, transactor, clock):
        """Should send exactly the plan amount and leave the oracle unconsulted."""
        oracle = FakeOracle([1.7])
        executor = PlanExecutor(store, transactor, oracle, clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        outcome = await executor.execute(plan.plan_id)

        assert outcome.status is ExecutionStatus.SUCCESS
        assert outcome.price_factor is None
        assert transactor.calls == [(Decimal("10"), "addrU", "addrX")]
        assert oracle.calls == 0

        loaded = await store.get_plan(plan.plan_id)
        assert loaded.execution_count == 1
        assert loaded.total_invested == Decimal("10")
        assert loaded.amount == Decimal("10")
        assert loaded.last_execution_time == clock.now()


class TestAdjustedTicks:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("factor,expected", [
        (1.3, Decimal("13")),
        (0.5, Decimal("5")),
        (2.0, Decimal("20")),
        (1.0, Decimal("10")),
    ])
    async def test_amount_is_initial_amount_times_factor(self, store, user, transactor, clock, factor, expected):
        executor = PlanExecutor(store, transactor, FakeOracle([factor]), clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        _, second = await _execute_twice(executor, plan.plan_id)

        assert second.price_factor == factor
        assert transactor.calls[1][0] == expected
        loaded = await store.get_plan(plan.plan_id)
        assert loaded.amount == expected
        assert loaded.initial_amount == Decimal("10")
        assert loaded.total_invested == Decimal("10") + expected

    @pytest.mark.asyncio
    async def test_factor_applies_to_initial_not_current_amount(self, store, user, transactor, clock):
        """Should never compound factors across ticks."""
        executor = PlanExecutor(store, transactor, FakeOracle([0.5, 0.5, 1.5]), clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        for _ in range(4):
            await executor.execute(plan.plan_id)

        assert [c[0] for c in transactor.calls] == [Decimal("10"), Decimal("5"), Decimal("5"), Decimal("15")]
        loaded = await store.get_plan(plan.plan_id)
        assert loaded.execution_count == 4
        assert loaded.total_invested == Decimal("35")

    @pytest.mark.asyncio
    async def test_out_of_range_factor_is_clamped(self, store, user, transactor, clock):
        oracle = FakeOracle([3.5])
        oracle.get_price_factor = _raw_factor(3.5)
        executor = PlanExecutor(store, transactor, oracle, clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        _, second = await _execute_twice(executor, plan.plan_id)

        assert second.price_factor == 2.0
        assert transactor.calls[1][0] == Decimal("20")

    @pytest.mark.asyncio
    async def test_zero_factor_skips_without_transacting(self, store, user, transactor, clock):
        executor = PlanExecutor(store, transactor, FakeOracle([0.0]), clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        _, second = await _execute_twice(executor, plan.plan_id)

        assert second.status is ExecutionStatus.SKIPPED
        assert len(transactor.calls) == 1
        assert (await store.get_plan(plan.plan_id)).execution_count == 1


def _raw_factor(value):
    async def get_price_factor(asset_id=None):
        return value
    return get_price_factor


class TestOracleFallback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("oracle", [
        FakeOracle(error=OracleError("no data")),
        FakeOracle(error=ValueError("bad json")),
        RaisingOracle(),
        SlowOracle(),
    ], ids=["oracle-error", "unexpected-error", "raises-through", "timeout"])
    async def test_failure_means_neutral_factor(self, store, user, transactor, clock, oracle):
        """Should use exactly 1.0 and still complete the tick."""
        executor = PlanExecutor(store, transactor, oracle, clock=clock, oracle_timeout=0.05)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        _, second = await _execute_twice(executor, plan.plan_id)

        assert second.status is ExecutionStatus.SUCCESS
        assert second.price_factor == 1.0
        assert transactor.calls[1][0] == Decimal("10")
        assert (await store.get_plan(plan.plan_id)).execution_count == 2

    @pytest.mark.asyncio
    async def test_non_finite_factor_is_neutral(self, store, user, transactor, clock):
        oracle = FakeOracle()
        oracle.get_price_factor = _raw_factor(float("nan"))
        executor = PlanExecutor(store, transactor, oracle, clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        _, second = await _execute_twice(executor, plan.plan_id)

        assert second.price_factor == 1.0


class TestFailedTicks:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        TransactorError("insufficient funds"),
        RuntimeError("socket closed"),
    ])
    async def test_transactor_failure_leaves_plan_untouched(self, store, user, transactor, executor, error):
        """Should not change counters, totals or amount when the send fails."""
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        before = (await store.get_plan(plan.plan_id)).to_dict()
        transactor.error = error

        outcome = await executor.execute(plan.plan_id)

        assert outcome.status is ExecutionStatus.FAILED
        assert outcome.tx_hash is None
        assert (await store.get_plan(plan.plan_id)).to_dict() == before
        assert await store.get_execution_history(plan.plan_id) == []

    @pytest.mark.asyncio
    async def test_transactor_timeout(self, store, user, transactor, oracle, clock):
        executor = PlanExecutor(store, transactor, oracle, clock=clock, send_timeout=0.05)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        transactor.gate = asyncio.Event()

        outcome = await executor.execute(plan.plan_id)

        assert outcome.status is ExecutionStatus.FAILED
        assert (await store.get_plan(plan.plan_id)).execution_count == 0

    @pytest.mark.asyncio
    async def test_retry_happens_on_next_tick(self, store, user, transactor, executor):
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        transactor.error = TransactorError("node down")
        await executor.execute(plan.plan_id)
        transactor.error = None

        outcome = await executor.execute(plan.plan_id)

        assert outcome.succeeded
        assert outcome.price_factor is None
        assert (await store.get_plan(plan.plan_id)).execution_count == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_is_logged_critical(self, store, user, transactor, executor, caplog):
        """Should report the sent transaction when its result cannot be recorded."""
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        async def broken_update(*args, **kwargs):
            raise PersistenceError("disk full")

        store.update_execution_result = broken_update

        with caplog.at_level(logging.CRITICAL, logger="dca_bot.executor"):
            outcome = await executor.execute(plan.plan_id)

        assert outcome.tx_hash == "tx_1"
        assert outcome.recorded is False
        assert any("tx_1" in r.getMessage() and r.levelno == logging.CRITICAL for r in caplog.records)


class TestSkippedTicks:
    @pytest.mark.asyncio
    async def test_missing_plan(self, executor, transactor):
        outcome = await executor.execute("missing")
        assert outcome.status is ExecutionStatus.SKIPPED
        assert transactor.calls == []

    @pytest.mark.asyncio
    async def test_stopped_plan(self, store, user, executor, transactor):
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        await store.stop_plan(plan.plan_id)

        outcome = await executor.execute(plan.plan_id)

        assert outcome.status is ExecutionStatus.SKIPPED
        assert transactor.calls == []

    @pytest.mark.asyncio
    async def test_missing_user(self, store, user, transactor, executor):
        """Should neither transact nor mutate when the owner cannot be resolved."""
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")
        before = (await store.get_plan(plan.plan_id)).to_dict()

        async def no_user(user_id):
            return None

        store.get_user = no_user
        outcome = await executor.execute(plan.plan_id)

        assert outcome.status is ExecutionStatus.SKIPPED
        assert transactor.calls == []
        assert (await store.get_plan(plan.plan_id)).to_dict() == before


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_plan_ticks_are_serialised(self, store, user, transactor, executor):
        """Should never let two ticks of one plan read the same execution count."""
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        outcomes = await asyncio.gather(*(executor.execute(plan.plan_id) for _ in range(3)))

        assert all(o.succeeded and o.recorded for o in outcomes)
        loaded = await store.get_plan(plan.plan_id)
        assert loaded.execution_count == 3
        assert loaded.total_invested == Decimal("30")

    @pytest.mark.asyncio
    async def test_failure_in_one_plan_does_not_affect_another(self, store, user, transactor, executor):
        """Should commit plan B even though plan A's send fails at the same time."""
        plan_a = await store.create_plan(user.user_id, 10, "minute", "addrA")
        plan_b = await store.create_plan(user.user_id, 4, "minute", "addrB")
        before_a = (await store.get_plan(plan_a.plan_id)).to_dict()
        transactor.fail_for.add("addrA")

        outcome_a, outcome_b = await asyncio.gather(
            executor.execute(plan_a.plan_id),
            executor.execute(plan_b.plan_id),
        )

        assert outcome_a.status is ExecutionStatus.FAILED
        assert outcome_b.succeeded
        assert (await store.get_plan(plan_a.plan_id)).to_dict() == before_a
        assert (await store.get_plan(plan_b.plan_id)).total_invested == Decimal("4")

    @pytest.mark.asyncio
    async def test_plan_locks_are_released(self, store, user, executor):
        """Should keep no lock for unknown ids or for plans between ticks."""
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        for n in range(50):
            await executor.execute(f"missing-{n}")
            await store.stop_plan(f"missing-{n}")
        await asyncio.gather(*(executor.execute(plan.plan_id) for _ in range(3)))

        assert len(executor._plan_locks) == 0
        assert len(store._plan_locks) == 0


class TestScenario:
    @pytest.mark.asyncio
    async def test_ten_then_half(self, store, user, transactor, clock):
        executor = PlanExecutor(store, transactor, FakeOracle([0.5]), clock=clock)
        plan = await store.create_plan(user.user_id, 10, "minute", "addrX")

        await executor.execute(plan.plan_id)
        after_first = await store.get_plan(plan.plan_id)
        assert transactor.calls[0] == (Decimal("10"), "addrU", "addrX")
        assert after_first.execution_count == 1
        assert after_first.total_invested == Decimal("10")
        assert after_first.amount == Decimal("10")
        assert after_first.initial_amount == Decimal("10")

        await executor.execute(plan.plan_id)
        after_second = await store.get_plan(plan.plan_id)
        assert transactor.calls[1] == (Decimal("5"), "addrU", "addrX")
        assert after_second.execution_count == 2
        assert after_second.total_invested == Decimal("15")
