"""Credit metering configuration and settings accessor."""

import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from src.constants import (
    DEFAULT_BALANCE_CACHE_TTL_SECONDS,
    DEFAULT_GUARD_TIMEOUT_SECONDS,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_MAX_SINGLE_REQUEST_COST,
    DEFAULT_MONTHLY_ALLOWANCE,
    DEFAULT_NOTIFY_CHANNEL,
    DEFAULT_RATE_LIMIT_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    DEFAULT_RECONNECT_BASE_DELAY_SECONDS,
    DEFAULT_RECONNECT_MAX_DELAY_SECONDS,
    DEFAULT_REFRESH_DEBOUNCE_SECONDS,
    DEFAULT_SECURITY_BUFFER,
)
from src.utils.env_utils import parse_float_env, parse_int_env, parse_str_env

logger = logging.getLogger(__name__)


class CreditSettings(BaseModel):
    """Credit metering settings from environment variables."""

    security_buffer: int = Field(
        default_factory=lambda: parse_int_env("SECURITY_BUFFER", DEFAULT_SECURITY_BUFFER),
        description="Spendable balance below which new requests are blocked",
    )

    max_single_request_cost: int = Field(
        default_factory=lambda: parse_int_env(
            "MAX_SINGLE_REQUEST_COST", DEFAULT_MAX_SINGLE_REQUEST_COST
        ),
        description="Largest ceiling cost a single metered request may carry",
    )

    default_monthly_allowance: int = Field(
        default_factory=lambda: parse_int_env(
            "DEFAULT_MONTHLY_ALLOWANCE", DEFAULT_MONTHLY_ALLOWANCE
        ),
        description="Plan default restored by the monthly reset",
    )

    guard_timeout_seconds: float = Field(
        default_factory=lambda: parse_float_env(
            "GUARD_TIMEOUT_SECONDS", DEFAULT_GUARD_TIMEOUT_SECONDS
        ),
    )

    rate_limit_requests: int = Field(
        default_factory=lambda: parse_int_env("RATE_LIMIT_REQUESTS", DEFAULT_RATE_LIMIT_REQUESTS),
    )

    rate_limit_window_seconds: int = Field(
        default_factory=lambda: parse_int_env(
            "RATE_LIMIT_WINDOW_SECONDS", DEFAULT_RATE_LIMIT_WINDOW_SECONDS
        ),
    )

    balance_cache_ttl_seconds: float = Field(
        default_factory=lambda: parse_float_env(
            "BALANCE_CACHE_TTL_SECONDS", DEFAULT_BALANCE_CACHE_TTL_SECONDS
        ),
    )

    refresh_debounce_seconds: float = Field(
        default_factory=lambda: parse_float_env(
            "BALANCE_REFRESH_DEBOUNCE_SECONDS", DEFAULT_REFRESH_DEBOUNCE_SECONDS
        ),
    )

    max_reconnect_attempts: int = Field(
        default_factory=lambda: parse_int_env(
            "SYNC_MAX_RECONNECT_ATTEMPTS", DEFAULT_MAX_RECONNECT_ATTEMPTS
        ),
    )

    reconnect_base_delay_seconds: float = Field(
        default_factory=lambda: parse_float_env(
            "SYNC_RECONNECT_BASE_DELAY_SECONDS", DEFAULT_RECONNECT_BASE_DELAY_SECONDS
        ),
    )

    reconnect_max_delay_seconds: float = Field(
        default_factory=lambda: parse_float_env(
            "SYNC_RECONNECT_MAX_DELAY_SECONDS", DEFAULT_RECONNECT_MAX_DELAY_SECONDS
        ),
    )

    operation_max_attempts: int = Field(
        default_factory=lambda: parse_int_env("OPERATION_MAX_ATTEMPTS", 1),
        description="Attempts for the costed call before giving up (1 = no retry)",
    )

    max_cumulative_shortfall: int = Field(
        default_factory=lambda: parse_int_env("MAX_CUMULATIVE_SHORTFALL", 0),
        description="Unrecovered shortfall after which the guard blocks (0 = disabled)",
    )

    ledger_backend: str = Field(
        default_factory=lambda: parse_str_env("LEDGER_BACKEND", "memory").lower(),
        description="'memory' or 'sql'",
    )

    notify_channel: str = Field(
        default_factory=lambda: parse_str_env("LEDGER_NOTIFY_CHANNEL", DEFAULT_NOTIFY_CHANNEL),
        description="LISTEN/NOTIFY channel used by the sql backend",
    )

    @field_validator("security_buffer", "max_single_request_cost", "max_cumulative_shortfall")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("operation_max_attempts", "rate_limit_requests", "rate_limit_window_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("ledger_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("memory", "sql"):
            raise ValueError("LEDGER_BACKEND must be 'memory' or 'sql'")
        return v


_settings: Optional[CreditSettings] = None


def get_credit_settings() -> CreditSettings:
    """Get credit settings (loaded once from the environment)."""
    global _settings
    if _settings is None:
        _settings = CreditSettings()
        logger.info(
            f"Credit settings loaded: backend={_settings.ledger_backend}, "
            f"security_buffer={_settings.security_buffer}, "
            f"max_single_request_cost={_settings.max_single_request_cost}"
        )
    return _settings


def reset_credit_settings() -> None:
    """Reset settings singleton (for testing)."""
    global _settings
    _settings = None


__all__ = [
    "CreditSettings",
    "get_credit_settings",
    "reset_credit_settings",
]
