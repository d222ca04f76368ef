"""
Per-tick plan execution.

One call to PlanExecutor.execute() is one tick of one plan:

    load plan -> resolve owner -> pick amount -> send -> commit

A failed send leaves the plan untouched so the next tick simply tries
again. A send that succeeds but cannot be committed is logged at
CRITICAL with the transaction id; on-chain state and the store then
disagree until an operator reconciles them.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from .clock import Clock, SystemClock
from .database import PlanStore
from .exceptions import DCABotError, TransactorError
from .locks import KeyedLocks
from .models import ExecutionOutcome, ExecutionStatus
from .price_oracle import MAX_FACTOR, MIN_FACTOR, NEUTRAL_FACTOR, PriceOracle, clamp_factor
from .transactor import ChainTransactor

logger = logging.getLogger(__name__)


class PlanExecutor:
    """Runs ticks. Ticks of the same plan never overlap."""

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
        self.asset_id = asset_id
        self.send_timeout = send_timeout
        self.oracle_timeout = oracle_timeout
        self._plan_locks = KeyedLocks()

    async def execute(self, plan_id: str) -> ExecutionOutcome:
        async with self._plan_locks.hold(plan_id):
            return await self._execute_locked(plan_id)

    async def _execute_locked(self, plan_id: str) -> ExecutionOutcome:
        plan = await self.store.get_plan(plan_id)
        if plan is None:
            logger.warning(f"Plan {plan_id} not found, skipping tick")
            return ExecutionOutcome(plan_id, ExecutionStatus.SKIPPED, error_message="plan not found")
        if not plan.is_active:
            logger.info(f"Plan {plan_id} is stopped, skipping tick")
            return ExecutionOutcome(plan_id, ExecutionStatus.SKIPPED, error_message="plan is stopped", plan=plan)

        user = await self.store.get_user(plan.user_id)
        if user is None:
            logger.error(f"User {plan.user_id} for plan {plan_id} not found, skipping tick")
            return ExecutionOutcome(plan_id, ExecutionStatus.SKIPPED, error_message="user not found", plan=plan)

        if plan.execution_count == 0:
            factor = None
            amount = plan.amount
        else:
            factor = await self._price_factor()
            amount = plan.initial_amount * Decimal(str(factor))

        if amount <= 0:
            logger.info(f"Plan {plan_id}: price factor {factor} gives zero amount, skipping tick")
            return ExecutionOutcome(
                plan_id, ExecutionStatus.SKIPPED,
                amount=amount, price_factor=factor,
                error_message="computed amount is zero", plan=plan,
            )

        logger.info(
            f"Executing plan {plan_id}: {amount} -> {plan.to_address} "
            f"(factor={factor}, run #{plan.execution_count + 1})"
        )

        try:
            tx_hash = await asyncio.wait_for(
                self.transactor.send_transaction(amount, user.address, plan.to_address),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Plan {plan_id}: transaction timed out after {self.send_timeout}s")
            return ExecutionOutcome(
                plan_id, ExecutionStatus.FAILED,
                amount=amount, price_factor=factor,
                error_message="transaction timed out", plan=plan,
            )
        except TransactorError as e:
            logger.error(f"Plan {plan_id}: transaction failed: {e}")
            return ExecutionOutcome(
                plan_id, ExecutionStatus.FAILED,
                amount=amount, price_factor=factor,
                error_message=e.message, plan=plan,
            )
        except Exception as e:
            logger.exception(f"Plan {plan_id}: unexpected transactor error: {e}")
            return ExecutionOutcome(
                plan_id, ExecutionStatus.FAILED,
                amount=amount, price_factor=factor,
                error_message=str(e), plan=plan,
            )

        try:
            updated = await self.store.update_execution_result(
                plan_id,
                last_execution_time=self.clock.now(),
                delta_invested=amount,
                new_execution_count=plan.execution_count + 1,
                amount=amount,
                tx_hash=tx_hash,
                price_factor=factor,
            )
        except DCABotError as e:
            logger.critical(
                f"INCONSISTENT STATE: plan {plan_id} sent {amount} in tx {tx_hash} "
                f"but the result was not recorded: {e}"
            )
            return ExecutionOutcome(
                plan_id, ExecutionStatus.SUCCESS,
                amount=amount, price_factor=factor, tx_hash=tx_hash,
                error_message=e.message, recorded=False, plan=plan,
            )

        logger.info(
            f"Plan {plan_id} executed: tx {tx_hash}, "
            f"total invested {updated.total_invested} over {updated.execution_count} runs"
        )
        return ExecutionOutcome(
            plan_id, ExecutionStatus.SUCCESS,
            amount=amount, price_factor=factor, tx_hash=tx_hash,
            recorded=True, plan=updated,
        )

    async def _price_factor(self) -> float:
        try:
            raw = await asyncio.wait_for(
                self.oracle.get_price_factor(self.asset_id),
                timeout=self.oracle_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Price oracle timed out after {self.oracle_timeout}s, using neutral factor")
            return NEUTRAL_FACTOR
        except Exception as e:
            logger.warning(f"Price oracle failed, using neutral factor: {e}")
            return NEUTRAL_FACTOR

        factor = clamp_factor(raw)
        if factor != raw:
            logger.warning(f"Price factor {raw} outside [{MIN_FACTOR}, {MAX_FACTOR}], using {factor}")
        return factor
