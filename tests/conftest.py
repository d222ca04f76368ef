"""
Shared fixtures: a temporary SQLite plan store, a virtual clock and
scriptable fakes for the chain transactor and the price oracle.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple

import pytest

from dca_bot.clock import ManualClock
from dca_bot.database import SQLitePlanStore
from dca_bot.exceptions import OracleError, TransactorError
from dca_bot.executor import PlanExecutor
from dca_bot.price_oracle import PriceOracle
from dca_bot.scheduler import PlanScheduler
from dca_bot.transactor import AssetKind, ChainTransactor


class FakeTransactor(ChainTransactor):
    """Records sends; can be told to fail or to block until released."""

    name = "fake"

    def __init__(self):
        self.calls: List[Tuple[Decimal, str, str]] = []
        self.fail_for: set = set()
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.balances = {}

    async def send_transaction(self, amount, from_address, to_address) -> str:
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None or to_address in self.fail_for:
            raise self.error or TransactorError("node rejected transaction", backend=self.name)
        self.calls.append((amount, from_address, to_address))
        return f"tx_{len(self.calls)}"

    async def get_balance(self, address, asset_kind=AssetKind.NATIVE) -> float:
        return self.balances.get((address, asset_kind), 0.0)


class FakeOracle(PriceOracle):
    """Returns scripted factors in order, repeating the last one."""

    def __init__(self, factors: Sequence[float] = (1.0,), error: Optional[Exception] = None):
        super().__init__("solana")
        self.factors = list(factors)
        self.error = error
        self.calls = 0

    async def _compute_factor(self, asset_id: str) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        index = min(self.calls - 1, len(self.factors) - 1)
        return self.factors[index]


class RaisingOracle(PriceOracle):
    """Breaks the never-raise contract, to exercise the executor's own guard."""

    async def _compute_factor(self, asset_id: str) -> float:
        raise OracleError("unreachable")

    async def get_price_factor(self, asset_id=None) -> float:
        raise RuntimeError("oracle crashed")


class SlowOracle(PriceOracle):
    async def _compute_factor(self, asset_id: str) -> float:
        await asyncio.sleep(10)
        return 2.0


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
async def store(tmp_path):
    plan_store = SQLitePlanStore(tmp_path / "dca.db")
    await plan_store.initialize()
    yield plan_store
    await plan_store.close()


@pytest.fixture
async def user(store):
    return await store.find_or_create_user("addrU")


@pytest.fixture
def transactor():
    return FakeTransactor()


@pytest.fixture
def oracle():
    return FakeOracle([1.0])


@pytest.fixture
def clock():
    return ManualClock(datetime(2025, 1, 1, 0, 0, 30, tzinfo=timezone.utc))


@pytest.fixture
def executor(store, transactor, oracle, clock):
    return PlanExecutor(store, transactor, oracle, clock=clock, send_timeout=1.0, oracle_timeout=1.0)


@pytest.fixture
async def scheduler(store, executor, clock):
    plan_scheduler = PlanScheduler(store, executor, clock=clock)
    yield plan_scheduler
    await plan_scheduler.shutdown()
