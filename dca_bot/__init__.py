"""
DCA Bot

Recurring dollar-cost-averaging transfers on Solana with trend-adjusted amounts.
"""

__version__ = "1.0.0"
__author__ = "DCA Bot Team"

from .config import Settings, get_settings
from .exceptions import (
    DCABotError,
    NotFoundError,
    PersistenceError,
    SchedulingError,
    TransactorError,
    ValidationError,
)
from .models import ExecutionOutcome, ExecutionStatus, Frequency, InvestmentPlan, User
from .service import DCAService

__all__ = [
    "Settings",
    "get_settings",
    "DCABotError",
    "NotFoundError",
    "PersistenceError",
    "SchedulingError",
    "TransactorError",
    "ValidationError",
    "ExecutionOutcome",
    "ExecutionStatus",
    "Frequency",
    "InvestmentPlan",
    "User",
    "DCAService",
]
