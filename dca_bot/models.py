"""
Domain records for recurring DCA plans.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import SchedulingError, ValidationError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Frequency(Enum):
    """Plan execution frequency (closed set)."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @classmethod
    def parse(cls, value: Any) -> "Frequency":
        """Resolve user input into a Frequency, raising SchedulingError otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(f.value for f in cls)
            raise SchedulingError(
                f"Invalid frequency {value!r}; expected one of: {allowed}",
                field_name="frequency",
            ) from None

    @property
    def cron_expression(self) -> str:
        """Cron-equivalent expression of the period."""
        return _CRON_EXPRESSIONS[self]

    @property
    def period(self) -> timedelta:
        return _PERIODS[self]

    def next_fire_time(self, after: datetime) -> datetime:
        """
        First period boundary strictly after ``after``.

        minute -> second 0 of the next minute
        hour   -> minute 0 of the next hour
        day    -> 00:00 UTC of the next day
        """
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        after = after.astimezone(timezone.utc)

        if self is Frequency.MINUTE:
            boundary = after.replace(second=0, microsecond=0)
        elif self is Frequency.HOUR:
            boundary = after.replace(minute=0, second=0, microsecond=0)
        else:
            boundary = after.replace(hour=0, minute=0, second=0, microsecond=0)

        return boundary + self.period


_CRON_EXPRESSIONS = {
    Frequency.MINUTE: "* * * * *",
    Frequency.HOUR: "0 * * * *",
    Frequency.DAY: "0 0 * * *",
}

_PERIODS = {
    Frequency.MINUTE: timedelta(minutes=1),
    Frequency.HOUR: timedelta(hours=1),
    Frequency.DAY: timedelta(days=1),
}


def parse_amount(value: Any) -> Decimal:
    """Parse a strictly positive, finite amount."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}", field_name="amount")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {value!r}", field_name="amount") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(
            f"Amount must be a positive number, got {value!r}",
            field_name="amount",
        )
    return amount


def parse_address(value: Any, field_name: str = "toAddress") -> str:
    """Non-empty, whitespace-trimmed address."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string", field_name=field_name)
    return value.strip()


@dataclass
class User:
    """Wallet owner. Created on first wallet connection."""
    address: str
    user_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "address": self.address,
            "createdAt": _isoformat(self.created_at),
        }


@dataclass
class InvestmentPlan:
    """A user's recurring transfer configuration plus its running totals."""
    user_id: str
    amount: Decimal
    initial_amount: Decimal
    frequency: Frequency
    to_address: str
    plan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    last_execution_time: Optional[datetime] = None
    total_invested: Decimal = Decimal("0")
    execution_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        amount: Any,
        frequency: Any,
        to_address: Any,
    ) -> "InvestmentPlan":
        """Validate raw input and build a fresh, active plan."""
        parsed_amount = parse_amount(amount)
        return cls(
            user_id=user_id,
            amount=parsed_amount,
            initial_amount=parsed_amount,
            frequency=Frequency.parse(frequency),
            to_address=parse_address(to_address),
        )

    def to_dict(self) -> Dict[str, Any]:
        """API representation."""
        return {
            "id": self.plan_id,
            "userId": self.user_id,
            "amount": float(self.amount),
            "initialAmount": float(self.initial_amount),
            "frequency": self.frequency.value,
            "toAddress": self.to_address,
            "isActive": self.is_active,
            "lastExecutionTime": _isoformat(self.last_execution_time),
            "totalInvested": float(self.total_invested),
            "executionCount": self.execution_count,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> "InvestmentPlan":
        """Build from a database row (mapping access by column name)."""
        return cls(
            plan_id=row["plan_id"],
            user_id=row["user_id"],
            amount=Decimal(row["amount"]),
            initial_amount=Decimal(row["initial_amount"]),
            frequency=Frequency(row["frequency"]),
            to_address=row["to_address"],
            is_active=bool(row["is_active"]),
            last_execution_time=_parse_datetime(row["last_execution_time"]),
            total_invested=Decimal(row["total_invested"]),
            execution_count=int(row["execution_count"]),
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )


@dataclass
class ExecutionRecord:
    """One successful, committed execution of a plan."""
    plan_id: str
    amount: Decimal
    tx_hash: str
    price_factor: Optional[float] = None
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    executed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.execution_id,
            "planId": self.plan_id,
            "amount": float(self.amount),
            "priceFactor": self.price_factor,
            "txHash": self.tx_hash,
            "executedAt": _isoformat(self.executed_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> "ExecutionRecord":
        return cls(
            execution_id=row["execution_id"],
            plan_id=row["plan_id"],
            amount=Decimal(row["amount"]),
            price_factor=row["price_factor"],
            tx_hash=row["tx_hash"],
            executed_at=_parse_datetime(row["executed_at"]),
        )


class ExecutionStatus(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ExecutionOutcome:
    """What happened on one tick of one plan."""
    plan_id: str
    status: ExecutionStatus
    amount: Optional[Decimal] = None
    price_factor: Optional[float] = None
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    recorded: bool = False
    plan: Optional[InvestmentPlan] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "planId": self.plan_id,
            "status": self.status.value,
            "amount": float(self.amount) if self.amount is not None else None,
            "priceFactor": self.price_factor,
            "txHash": self.tx_hash,
            "error": self.error_message,
            "recorded": self.recorded,
            "plan": self.plan.to_dict() if self.plan else None,
        }
