"""
Recurring timers for active plans.

Each active plan owns one asyncio task that sleeps until the next period
boundary of its frequency, runs one tick through the executor, and loops.
Timers live only in memory and are rebuilt from the store at startup.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .clock import Clock, SystemClock
from .database import PlanStore
from .exceptions import is_retryable
from .executor import PlanExecutor
from .models import Frequency, InvestmentPlan

logger = logging.getLogger(__name__)


class ScheduledTimer:
    """The running timer of one plan."""

    def __init__(self, plan_id: str, frequency: Frequency):
        self.plan_id = plan_id
        self.frequency = frequency
        self.cron_expression = frequency.cron_expression
        self.task: Optional[asyncio.Task] = None
        self.executing = False
        self.stopped = False

    def stop(self) -> None:
        """
        Prevent further ticks.

        A sleeping timer is cancelled at once. A tick that is already
        running is left to finish and commit; the loop exits after it.
        """
        self.stopped = True
        if self.task and not self.task.done() and not self.executing:
            self.task.cancel()

    def __repr__(self) -> str:
        return f"ScheduledTimer(plan_id={self.plan_id!r}, cron={self.cron_expression!r})"


class PlanScheduler:
    """Owns the timer map: at most one timer per plan id."""

    def __init__(
        self,
        store: PlanStore,
        executor: PlanExecutor,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.executor = executor
        self.clock = clock or SystemClock()
        self._timers: Dict[str, ScheduledTimer] = {}

    @property
    def scheduled_plan_ids(self) -> List[str]:
        return list(self._timers)

    def is_scheduled(self, plan_id: str) -> bool:
        return plan_id in self._timers

    def get_timer(self, plan_id: str) -> Optional[ScheduledTimer]:
        return self._timers.get(plan_id)

    def schedule_plan(self, plan: InvestmentPlan) -> ScheduledTimer:
        """
        Start the recurring timer for ``plan``.

        Scheduling a plan that already has a timer replaces that timer.

        Raises:
            SchedulingError: frequency is not minute, hour or day
        """
        frequency = Frequency.parse(plan.frequency)

        previous = self._timers.pop(plan.plan_id, None)
        if previous:
            previous.stop()
            logger.debug(f"Replacing timer for plan {plan.plan_id}")

        timer = ScheduledTimer(plan.plan_id, frequency)
        timer.task = asyncio.create_task(
            self._run_timer(timer),
            name=f"plan-timer-{plan.plan_id}",
        )
        self._timers[plan.plan_id] = timer

        logger.info(f"Scheduled plan {plan.plan_id} ({frequency.value}, cron '{timer.cron_expression}')")
        return timer

    def unschedule_plan(self, plan_id: str) -> bool:
        """Stop and forget the timer of ``plan_id``. Returns False if there was none."""
        timer = self._timers.pop(plan_id, None)
        if timer is None:
            return False
        timer.stop()
        logger.info(f"Unscheduled plan {plan_id}")
        return True

    async def initialize_from_store(self) -> int:
        """Schedule every active plan. Returns how many timers were started."""
        try:
            plans = await self.store.find_active_plans()
        except Exception as e:
            logger.error(f"Could not load active plans, starting with none scheduled: {e}")
            return 0

        scheduled = 0
        for plan in plans:
            try:
                self.schedule_plan(plan)
                scheduled += 1
            except Exception as e:
                logger.error(f"Failed to schedule plan {plan.plan_id}: {e}")

        logger.info(f"Restored {scheduled}/{len(plans)} active plan timers")
        return scheduled

    async def shutdown(self) -> None:
        """Stop every timer and wait for in-flight ticks to finish."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.stop()

        tasks = [t.task for t in timers if t.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Scheduler stopped ({len(timers)} timers)")

    async def _run_timer(self, timer: ScheduledTimer) -> None:
        while not timer.stopped:
            fire_at = timer.frequency.next_fire_time(self.clock.now())
            await self.clock.sleep_until(fire_at)
            if timer.stopped:
                break

            timer.executing = True
            try:
                outcome = await self.executor.execute(timer.plan_id)
                logger.debug(f"Tick for plan {timer.plan_id}: {outcome.status.value}")
            except Exception as e:
                if is_retryable(e):
                    logger.warning(f"Tick for plan {timer.plan_id} failed, retrying next period: {e}")
                else:
                    logger.exception(f"Tick for plan {timer.plan_id} raised: {e}")
            finally:
                timer.executing = False
