import aiosqlite
import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Union

from .exceptions import (
    PersistenceError,
    PlanNotFoundError,
    UserNotFoundError,
    ValidationError,
    wrap_exception,
)
from .locks import KeyedLocks
from .models import (
    ExecutionRecord,
    Frequency,
    InvestmentPlan,
    User,
    parse_address,
    utcnow,
)

logger = logging.getLogger(__name__)


class PlanStore(ABC):
    """
    Durable registry of users and investment plans.

    Implementations must serialise writes to the same plan so that two
    execution results for one plan can never interleave, and must report
    every storage failure as PersistenceError.
    """

    async def initialize(self) -> None:
        """Prepare the backing storage."""

    async def close(self) -> None:
        """Release the backing storage."""

    @abstractmethod
    async def find_or_create_user(self, address: str) -> User:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def create_plan(
        self,
        user_id: str,
        amount: Any,
        frequency: Union[str, Frequency],
        to_address: str,
    ) -> InvestmentPlan:
        ...

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[InvestmentPlan]:
        ...

    @abstractmethod
    async def stop_plan(self, plan_id: str) -> Optional[InvestmentPlan]:
        ...

    @abstractmethod
    async def delete_plan(self, plan_id: str) -> bool:
        """Remove a plan that never ran. Returns False if nothing was deleted."""

    @abstractmethod
    async def find_active_plans(self) -> List[InvestmentPlan]:
        ...

    @abstractmethod
    async def find_user_plans(self, user_id: str) -> List[InvestmentPlan]:
        ...

    @abstractmethod
    async def sum_user_investment(self, user_id: str) -> Decimal:
        ...

    @abstractmethod
    async def update_execution_result(
        self,
        plan_id: str,
        last_execution_time: datetime,
        delta_invested: Decimal,
        new_execution_count: int,
        amount: Optional[Decimal] = None,
        tx_hash: Optional[str] = None,
        price_factor: Optional[float] = None,
    ) -> InvestmentPlan:
        ...

    @abstractmethod
    async def get_execution_history(
        self,
        plan_id: str,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        ...


class SQLitePlanStore(PlanStore):
    """PlanStore on a local SQLite file through aiosqlite."""

    def __init__(
        self,
        db_path: Union[str, Path] = "data/dca_bot.db",
        busy_timeout_ms: int = 30000,
        enable_wal: bool = True,
    ):
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.enable_wal = enable_wal
        self._plan_locks = KeyedLocks()
        self._user_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with self._connect() as conn:
                if self.enable_wal:
                    await conn.execute("PRAGMA journal_mode=WAL")
                    await conn.execute("PRAGMA synchronous=NORMAL")
                await self._create_tables(conn)
                await conn.commit()
        except (OSError, aiosqlite.Error) as e:
            raise PersistenceError(
                f"Failed to initialize database: {e}",
                context={"db_path": str(self.db_path)},
            ) from e

        self._initialized = True
        logger.info(f"Plan store initialized: {self.db_path}")

    async def _create_tables(self, conn: aiosqlite.Connection) -> None:
        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                address TEXT UNIQUE NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS investment_plans (
                plan_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                initial_amount TEXT NOT NULL,
                frequency TEXT NOT NULL CHECK (frequency IN ('minute', 'hour', 'day')),
                to_address TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_execution_time TEXT,
                total_invested TEXT NOT NULL DEFAULT '0',
                execution_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(user_id)
            );

            CREATE TABLE IF NOT EXISTS plan_executions (
                execution_id TEXT PRIMARY KEY,
                plan_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                price_factor REAL,
                tx_hash TEXT NOT NULL,
                executed_at TEXT NOT NULL,
                FOREIGN KEY (plan_id) REFERENCES investment_plans(plan_id)
            );

            CREATE INDEX IF NOT EXISTS idx_plans_user ON investment_plans(user_id);
            CREATE INDEX IF NOT EXISTS idx_plans_active ON investment_plans(is_active);
            CREATE INDEX IF NOT EXISTS idx_executions_plan ON plan_executions(plan_id);
        """)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction taking the database write lock up front."""
        async with self._connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def _fetch_one(self, query: str, params: tuple) -> Optional[aiosqlite.Row]:
        try:
            async with self._connect() as conn:
                async with conn.execute(query, params) as cursor:
                    return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise wrap_exception(e, PersistenceError, f"Query failed: {e}") from e

    async def _fetch_all(self, query: str, params: tuple = ()) -> List[aiosqlite.Row]:
        try:
            async with self._connect() as conn:
                async with conn.execute(query, params) as cursor:
                    return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise wrap_exception(e, PersistenceError, f"Query failed: {e}") from e

    # =========================================================================
    # Users
    # =========================================================================

    async def find_or_create_user(self, address: str) -> User:
        address = parse_address(address, field_name="address")

        async with self._user_lock:
            row = await self._fetch_one(
                "SELECT user_id, address, created_at FROM users WHERE address = ?",
                (address,),
            )
            if row:
                return self._user_from_row(row)

            user = User(address=address)
            try:
                async with self._transaction() as conn:
                    await conn.execute(
                        "INSERT INTO users (user_id, address, created_at) VALUES (?, ?, ?)",
                        (user.user_id, user.address, user.created_at.isoformat()),
                    )
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to create user: {e}") from e

        logger.info(f"Registered user {user.user_id} for address {address}")
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        row = await self._fetch_one(
            "SELECT user_id, address, created_at FROM users WHERE user_id = ?",
            (user_id,),
        )
        return self._user_from_row(row) if row else None

    @staticmethod
    def _user_from_row(row: aiosqlite.Row) -> User:
        return User(
            user_id=row["user_id"],
            address=row["address"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # =========================================================================
    # Plans
    # =========================================================================

    async def create_plan(
        self,
        user_id: str,
        amount: Any,
        frequency: Union[str, Frequency],
        to_address: str,
    ) -> InvestmentPlan:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("userId must be a non-empty string", field_name="userId")
        plan = InvestmentPlan.new(user_id, amount, frequency, to_address)

        if await self.get_user(user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found", context={"user_id": user_id})

        try:
            async with self._transaction() as conn:
                await conn.execute("""
                    INSERT INTO investment_plans (
                        plan_id, user_id, amount, initial_amount, frequency,
                        to_address, is_active, last_execution_time,
                        total_invested, execution_count, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 1, NULL, ?, 0, ?, ?)
                """, (
                    plan.plan_id,
                    plan.user_id,
                    str(plan.amount),
                    str(plan.initial_amount),
                    plan.frequency.value,
                    plan.to_address,
                    str(plan.total_invested),
                    plan.created_at.isoformat(),
                    plan.updated_at.isoformat(),
                ))
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to create plan: {e}") from e

        logger.info(
            f"Created plan {plan.plan_id} for user {user_id}: "
            f"{plan.amount} -> {plan.to_address} ({plan.frequency.value})"
        )
        return plan

    async def get_plan(self, plan_id: str) -> Optional[InvestmentPlan]:
        row = await self._fetch_one(
            "SELECT * FROM investment_plans WHERE plan_id = ?",
            (plan_id,),
        )
        return InvestmentPlan.from_row(row) if row else None

    async def stop_plan(self, plan_id: str) -> Optional[InvestmentPlan]:
        if await self.get_plan(plan_id) is None:
            return None

        async with self._plan_locks.hold(plan_id):
            try:
                async with self._transaction() as conn:
                    await conn.execute("""
                        UPDATE investment_plans
                        SET is_active = 0, updated_at = ?
                        WHERE plan_id = ? AND is_active = 1
                    """, (utcnow().isoformat(), plan_id))
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to stop plan {plan_id}: {e}") from e

        plan = await self.get_plan(plan_id)
        if plan:
            logger.info(f"Stopped plan {plan_id}")
        return plan

    async def delete_plan(self, plan_id: str) -> bool:
        async with self._plan_locks.hold(plan_id):
            try:
                async with self._transaction() as conn:
                    cursor = await conn.execute(
                        "DELETE FROM investment_plans WHERE plan_id = ? AND execution_count = 0",
                        (plan_id,),
                    )
                    deleted = cursor.rowcount > 0
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to delete plan {plan_id}: {e}") from e

        if deleted:
            logger.info(f"Deleted plan {plan_id}")
        return deleted

    async def find_active_plans(self) -> List[InvestmentPlan]:
        rows = await self._fetch_all(
            "SELECT * FROM investment_plans WHERE is_active = 1 ORDER BY created_at"
        )
        return [InvestmentPlan.from_row(row) for row in rows]

    async def find_user_plans(self, user_id: str) -> List[InvestmentPlan]:
        rows = await self._fetch_all(
            "SELECT * FROM investment_plans WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        )
        return [InvestmentPlan.from_row(row) for row in rows]

    async def sum_user_investment(self, user_id: str) -> Decimal:
        # Amounts are stored as decimal strings, so sum in Python rather than SQL.
        rows = await self._fetch_all(
            "SELECT total_invested FROM investment_plans WHERE user_id = ?",
            (user_id,),
        )
        return sum((Decimal(row["total_invested"]) for row in rows), Decimal("0"))

    async def update_execution_result(
        self,
        plan_id: str,
        last_execution_time: datetime,
        delta_invested: Decimal,
        new_execution_count: int,
        amount: Optional[Decimal] = None,
        tx_hash: Optional[str] = None,
        price_factor: Optional[float] = None,
    ) -> InvestmentPlan:
        """
        Commit one successful execution.

        The stored execution_count must equal new_execution_count - 1;
        otherwise another writer got there first and nothing is written.
        """
        async with self._plan_locks.hold(plan_id):
            try:
                async with self._transaction() as conn:
                    async with conn.execute(
                        "SELECT * FROM investment_plans WHERE plan_id = ?",
                        (plan_id,),
                    ) as cursor:
                        row = await cursor.fetchone()
                    if row is None:
                        raise PlanNotFoundError(
                            f"Plan {plan_id} not found",
                            context={"plan_id": plan_id},
                        )

                    current = InvestmentPlan.from_row(row)
                    if current.execution_count != new_execution_count - 1:
                        raise PersistenceError(
                            "Execution count conflict",
                            context={
                                "plan_id": plan_id,
                                "stored": current.execution_count,
                                "proposed": new_execution_count,
                            },
                        )

                    total_invested = current.total_invested + delta_invested
                    new_amount = amount if amount is not None else current.amount
                    now = utcnow()

                    await conn.execute("""
                        UPDATE investment_plans
                        SET amount = ?, last_execution_time = ?, total_invested = ?,
                            execution_count = ?, updated_at = ?
                        WHERE plan_id = ?
                    """, (
                        str(new_amount),
                        last_execution_time.isoformat(),
                        str(total_invested),
                        new_execution_count,
                        now.isoformat(),
                        plan_id,
                    ))

                    if tx_hash is not None:
                        record = ExecutionRecord(
                            plan_id=plan_id,
                            amount=delta_invested,
                            tx_hash=tx_hash,
                            price_factor=price_factor,
                            executed_at=last_execution_time,
                        )
                        await conn.execute("""
                            INSERT INTO plan_executions
                            (execution_id, plan_id, amount, price_factor, tx_hash, executed_at)
                            VALUES (?, ?, ?, ?, ?, ?)
                        """, (
                            record.execution_id,
                            record.plan_id,
                            str(record.amount),
                            record.price_factor,
                            record.tx_hash,
                            record.executed_at.isoformat(),
                        ))
            except aiosqlite.Error as e:
                raise PersistenceError(
                    f"Failed to record execution for plan {plan_id}: {e}",
                    context={"plan_id": plan_id},
                ) from e

        current.amount = new_amount
        current.last_execution_time = last_execution_time
        current.total_invested = total_invested
        current.execution_count = new_execution_count
        current.updated_at = now
        return current

    async def get_execution_history(
        self,
        plan_id: str,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        rows = await self._fetch_all("""
            SELECT * FROM plan_executions
            WHERE plan_id = ?
            ORDER BY executed_at DESC, rowid DESC
            LIMIT ?
        """, (plan_id, limit))
        return [ExecutionRecord.from_row(row) for row in rows]
