"""
Configuration Module for the DCA plan scheduler

This module provides configuration management using Pydantic v2 BaseSettings.
All settings are loaded from environment variables (or a .env file) with
validation and type safety.

Usage:
    from dca_bot.config import get_settings
    print(get_settings().chain.backend)
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import (
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ENUMS
# =============================================================================

class Environment(str, Enum):
    """Deployment stage; production enables extra config checks."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Root logger levels accepted by LOG_LEVEL."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ChainBackend(str, Enum):
    """Available chain transactor backends."""
    SOLANA = "solana"
    SIMULATED = "simulated"


class OracleProvider(str, Enum):
    """Available price factor sources."""
    TREND = "trend"
    FIXED = "fixed"


# =============================================================================
# BASE CONFIGURATION
# =============================================================================

class BaseConfig(BaseSettings):
    """Shared .env handling for every settings section."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


# =============================================================================
# CHAIN CONFIGURATION
# =============================================================================

class ChainSettings(BaseConfig):
    """Chain transactor selection and credentials."""

    model_config = SettingsConfigDict(
        env_prefix="CHAIN_",
        env_file=".env",
        extra="ignore",
    )

    backend: ChainBackend = Field(
        default=ChainBackend.SIMULATED,
        description="Which transactor backend to instantiate",
    )

    rpc_url: str = Field(
        default="https://api.devnet.solana.com",
        description="RPC endpoint URL",
    )

    private_key: Optional[SecretStr] = Field(
        default=None,
        description="Base58 encoded secret key of the transacting wallet",
    )

    stable_mint: str = Field(
        default="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        description="SPL mint used for 'stable' balance lookups",
    )

    timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Seconds allowed for one send or balance call",
    )

    @model_validator(mode="after")
    def validate_credentials(self) -> "ChainSettings":
        """A real chain backend needs a signing key."""
        if self.backend == ChainBackend.SOLANA and not self.private_key:
            raise ValueError("private_key required when backend is 'solana'")
        return self


# =============================================================================
# PRICE ORACLE CONFIGURATION
# =============================================================================

class OracleSettings(BaseConfig):
    """Price-trend signal configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ORACLE_",
        env_file=".env",
        extra="ignore",
    )

    provider: OracleProvider = Field(
        default=OracleProvider.TREND,
        description="Price factor source",
    )

    api_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        description="Market data API base URL",
    )

    api_key: Optional[SecretStr] = Field(
        default=None,
        description="Market data API key (sent as x-cg-demo-api-key)",
    )

    asset_id: str = Field(
        default="solana",
        min_length=1,
        description="Asset whose price trend drives the factor",
    )

    short_window: int = Field(
        default=7,
        ge=1,
        description="Short moving average window in days",
    )

    long_window: int = Field(
        default=30,
        ge=2,
        description="Long moving average window in days",
    )

    fixed_factor: float = Field(
        default=1.0,
        ge=0.0,
        le=2.0,
        description="Factor returned by the 'fixed' provider",
    )

    timeout: float = Field(
        default=20.0,
        ge=1.0,
        le=120.0,
        description="Seconds allowed for one price factor lookup",
    )

    @model_validator(mode="after")
    def validate_windows(self) -> "OracleSettings":
        """Short window must be shorter than the long window."""
        if self.short_window >= self.long_window:
            raise ValueError("short_window must be smaller than long_window")
        return self


# =============================================================================
# DATABASE CONFIGURATION
# =============================================================================

class DatabaseSettings(BaseConfig):
    """Plan store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        extra="ignore",
    )

    path: Path = Field(
        default=Path("data/dca_bot.db"),
        description="SQLite database file",
    )

    busy_timeout_ms: int = Field(
        default=30000,
        ge=0,
        description="SQLite busy timeout in milliseconds",
    )

    enable_wal: bool = Field(
        default=True,
        description="Use WAL journal mode",
    )


# =============================================================================
# API CONFIGURATION
# =============================================================================

class ApiSettings(BaseConfig):
    """HTTP API configuration."""

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        extra="ignore",
    )

    host: str = Field(
        default="0.0.0.0",
        description="Bind address",
    )

    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Listen port",
    )

    cors_origins: str = Field(
        default="*",
        description="Comma-separated origins allowed to call the API",
    )

    @field_validator("cors_origins")
    @classmethod
    def normalize_origins(cls, v: str) -> str:
        """Strip whitespace around comma-separated origins."""
        return ",".join(o.strip() for o in v.split(",") if o.strip())

    @property
    def allowed_origins(self) -> list[str]:
        """Origins as a list."""
        return [o for o in self.cors_origins.split(",") if o]


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

class LoggingSettings(BaseConfig):
    """Log handlers written by main.ApplicationLogger."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )

    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Root logger level",
    )

    format: str = Field(
        default="%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
        description="Format of file log records",
    )

    date_format: str = Field(
        default="%Y-%m-%d %H:%M:%S",
        description="Timestamp format of file log records",
    )

    file_enabled: bool = Field(
        default=True,
        description="Write rotating log files next to console output",
    )

    directory: Path = Field(
        default=Path("logs"),
        description="Log directory",
    )

    file_name: str = Field(
        default="dca_bot.log",
        description="Main log file name",
    )

    file_max_bytes: int = Field(
        default=10_485_760,
        ge=1024,
        description="Rotate a log file once it reaches this size",
    )

    file_backup_count: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Rotated files kept per log",
    )


# =============================================================================
# ROOT SETTINGS
# =============================================================================

class Settings(BaseConfig):
    """
    Every section plus process-wide flags. Sections read their own
    prefixed variables, so CHAIN_BACKEND=solana lands in settings.chain.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field(
        default="DCA Bot",
        description="Name shown in the startup banner",
    )

    app_version: str = Field(
        default="1.0.0",
        description="Version shown in the startup banner",
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment stage",
    )

    debug: bool = Field(
        default=False,
        description="Console logs at DEBUG",
    )

    chain: ChainSettings = Field(default_factory=ChainSettings)
    oracle: OracleSettings = Field(default_factory=OracleSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_production(self) -> bool:
        """True for ENVIRONMENT=production."""
        return self.environment == Environment.PRODUCTION

    def mask_secrets(self) -> dict[str, Any]:
        """model_dump() with keys shortened to first and last four characters."""
        def masked(value: Any) -> Any:
            if isinstance(value, dict):
                return {key: masked(item) for key, item in value.items()}
            if not isinstance(value, SecretStr):
                return value
            raw = value.get_secret_value()
            return f"{raw[:4]}...{raw[-4:]}" if len(raw) > 8 else "***"

        return masked(self.model_dump())


# =============================================================================
# SINGLETON & CACHING
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings, read from the environment once."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment again."""
    get_settings.cache_clear()
    return get_settings()


def validate_settings(settings: Settings) -> list[str]:
    """
    Check settings for combinations that load fine but are risky.

    Returns:
        List of human-readable issues (empty when everything looks sane)
    """
    issues = []

    if settings.is_production:
        if settings.debug:
            issues.append("Debug mode should be disabled in production")
        if settings.chain.backend == ChainBackend.SIMULATED:
            issues.append("Simulated chain backend selected in production")
        if settings.oracle.provider == OracleProvider.FIXED:
            issues.append("Fixed price factor selected in production")

    if (
        settings.oracle.provider == OracleProvider.TREND
        and "pro-api" in settings.oracle.api_url
        and not settings.oracle.api_key
    ):
        issues.append("Pro market data API selected without an API key")

    return issues


__all__ = [
    "Settings",
    "ChainSettings",
    "OracleSettings",
    "DatabaseSettings",
    "ApiSettings",
    "LoggingSettings",
    "Environment",
    "LogLevel",
    "ChainBackend",
    "OracleProvider",
    "get_settings",
    "reload_settings",
    "validate_settings",
]
