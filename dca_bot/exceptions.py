"""
Error types raised by the DCA scheduler.

All of them derive from DCABotError, which carries a short code that the
HTTP layer returns to clients (``VAL_000``, ``NF_002``, ``DB_000``...), a
free-form context dict for log lines, and whether the next tick of the
plan can reasonably be expected to succeed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass
class DCABotError(Exception):
    """
    Base exception for all DCA bot errors.

    Attributes:
        message: What went wrong, safe to show to an API client
        error_code: Stable code, prefixed by error family
        context: Extra key/value pairs for logs (plan_id, db_path, ...)
        is_recoverable: True when retrying on the next tick may succeed
        timestamp: UTC time the error was created
    """
    message: str
    error_code: str = "GENERAL_001"
    context: dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        super().__init__(str(self))

    def __str__(self) -> str:
        text = f"[{self.error_code}] {self.message}"
        if self.context:
            details = ", ".join(f"{key}={value}" for key, value in self.context.items())
            text = f"{text} ({details})"
        return text

    def to_response(self) -> dict[str, str]:
        """Body returned by the HTTP API."""
        return {"error": self.message, "code": self.error_code}


@dataclass
class ConfigurationError(DCABotError):
    """Settings cannot produce a working backend (bad key, unknown provider)."""
    error_code: str = "CONFIG_001"


# --- input ------------------------------------------------------------------

@dataclass
class ValidationError(DCABotError):
    """Malformed plan input. The plan is never created."""
    error_code: str = "VAL_000"
    field_name: Optional[str] = None


@dataclass
class SchedulingError(ValidationError):
    """A plan could not be mapped onto a recurring timer."""
    error_code: str = "VAL_001"


# --- lookups ----------------------------------------------------------------

@dataclass
class NotFoundError(DCABotError):
    error_code: str = "NF_000"


@dataclass
class UserNotFoundError(NotFoundError):
    error_code: str = "NF_001"


@dataclass
class PlanNotFoundError(NotFoundError):
    error_code: str = "NF_002"


# --- capabilities -----------------------------------------------------------

@dataclass
class TransactorError(DCABotError):
    """On-chain send failed. The tick is aborted without state changes."""
    error_code: str = "TX_000"
    is_recoverable: bool = True
    backend: Optional[str] = None


@dataclass
class OracleError(DCABotError):
    """Price signal unavailable or malformed. Never leaves the oracle."""
    error_code: str = "ORACLE_000"
    is_recoverable: bool = True
    asset_id: Optional[str] = None


@dataclass
class PersistenceError(DCABotError):
    """Plan store read or write failed."""
    error_code: str = "DB_000"
    is_recoverable: bool = True


def is_retryable(error: Exception) -> bool:
    """True for bot errors the next tick may get past."""
    return isinstance(error, DCABotError) and error.is_recoverable


def wrap_exception(
    cause: Exception,
    wrapper_class: type[DCABotError] = DCABotError,
    message: Optional[str] = None,
    **kwargs: Any,
) -> DCABotError:
    """Build a ``wrapper_class`` error describing a library exception."""
    context = dict(kwargs.pop("context", {}))
    context.setdefault("cause", type(cause).__name__)
    return wrapper_class(message=message or str(cause), context=context, **kwargs)


__all__ = [
    "DCABotError", "ConfigurationError",
    "ValidationError", "SchedulingError",
    "NotFoundError", "UserNotFoundError", "PlanNotFoundError",
    "TransactorError", "OracleError", "PersistenceError",
    "is_retryable", "wrap_exception",
]
