"""
DCA service facade used by the HTTP layer and the process entry point.
"""

import logging
from decimal import Decimal
from typing import Any, List, Optional

from .clock import Clock, SystemClock
from .config import Settings
from .database import PlanStore, SQLitePlanStore
from .exceptions import PlanNotFoundError, UserNotFoundError, ValidationError
from .executor import PlanExecutor
from .models import ExecutionOutcome, ExecutionRecord, ExecutionStatus, InvestmentPlan, User
from .price_oracle import PriceOracle, create_oracle
from .scheduler import PlanScheduler
from .transactor import AssetKind, ChainTransactor, create_transactor

logger = logging.getLogger(__name__)


class DCAService:
    def __init__(
        self,
        store: PlanStore,
        transactor: ChainTransactor,
        oracle: PriceOracle,
        clock: Optional[Clock] = None,
        asset_id: Optional[str] = None,
        send_timeout: float = 30.0,
        oracle_timeout: float = 20.0,
    ):
        self.store = store
        self.transactor = transactor
        self.oracle = oracle
        self.clock = clock or SystemClock()
        self.executor = PlanExecutor(
            store,
            transactor,
            oracle,
            clock=self.clock,
            asset_id=asset_id,
            send_timeout=send_timeout,
            oracle_timeout=oracle_timeout,
        )
        self.scheduler = PlanScheduler(store, self.executor, clock=self.clock)
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "DCAService":
        store = SQLitePlanStore(
            settings.database.path,
            busy_timeout_ms=settings.database.busy_timeout_ms,
            enable_wal=settings.database.enable_wal,
        )
        return cls(
            store=store,
            transactor=create_transactor(settings.chain),
            oracle=create_oracle(settings.oracle),
            clock=clock,
            asset_id=settings.oracle.asset_id,
            send_timeout=settings.chain.timeout,
            oracle_timeout=settings.oracle.timeout,
        )

    async def start(self) -> None:
        if self._started:
            return
        await self.store.initialize()
        await self.scheduler.initialize_from_store()
        self._started = True
        logger.info("DCA service started")

    async def stop(self) -> None:
        await self.scheduler.shutdown()
        await self.oracle.close()
        await self.transactor.close()
        await self.store.close()
        self._started = False
        logger.info("DCA service stopped")

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def connect_wallet(self, address: str) -> User:
        return await self.store.find_or_create_user(address)

    async def get_user(self, user_id: str) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found", context={"user_id": user_id})
        return user

    async def get_user_plans(self, user_id: str) -> List[InvestmentPlan]:
        return await self.store.find_user_plans(user_id)

    async def get_total_investment(self, user_id: str) -> Decimal:
        return await self.store.sum_user_investment(user_id)

    async def get_balance(self, user_id: str, asset: Any = AssetKind.NATIVE) -> dict:
        try:
            asset_kind = AssetKind.parse(asset)
        except ValueError:
            raise ValidationError(f"Unknown asset kind: {asset!r}", field_name="asset") from None
        user = await self.get_user(user_id)
        balance = await self.transactor.get_balance(user.address, asset_kind)
        return {"address": user.address, "asset": asset_kind.value, "balance": balance}

    # -------------------------------------------------------------------------
    # Plans
    # -------------------------------------------------------------------------

    async def create_plan(
        self,
        user_id: str,
        amount: Any,
        frequency: Any,
        to_address: Any,
    ) -> InvestmentPlan:
        plan = await self.store.create_plan(user_id, amount, frequency, to_address)
        try:
            self.scheduler.schedule_plan(plan)
        except Exception:
            # no plan row without a timer
            await self.store.delete_plan(plan.plan_id)
            raise
        return plan

    async def stop_plan(self, plan_id: str) -> InvestmentPlan:
        plan = await self.store.stop_plan(plan_id)
        self.scheduler.unschedule_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", context={"plan_id": plan_id})
        return plan

    async def get_plan(self, plan_id: str) -> InvestmentPlan:
        plan = await self.store.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", context={"plan_id": plan_id})
        return plan

    async def execute_now(self, plan_id: str) -> ExecutionOutcome:
        """Run one tick immediately, outside the timer, under the same plan lock."""
        plan = await self.get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError(f"Plan {plan_id} is stopped", field_name="planId")
        outcome = await self.executor.execute(plan_id)
        if outcome.status is ExecutionStatus.FAILED:
            logger.warning(f"Manual execution of plan {plan_id} failed: {outcome.error_message}")
        return outcome

    async def get_execution_history(self, plan_id: str, limit: int = 50) -> List[ExecutionRecord]:
        await self.get_plan(plan_id)
        return await self.store.get_execution_history(plan_id, limit)

    def health(self) -> dict:
        status = {
            "status": "ok" if self._started else "starting",
            "scheduledPlans": len(self.scheduler.scheduled_plan_ids),
        }
        if self.oracle.last_analysis is not None:
            status["priceSignal"] = self.oracle.last_analysis.to_dict()
        return status
