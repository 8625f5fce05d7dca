"""Utility modules for the credit metering service."""

from .timer_utils import elapsed_ms, Timer
from .env_utils import (
    parse_bool_env,
    parse_bool_value,
    parse_float_env,
    parse_int_env,
    parse_str_env,
)

__all__ = [
    # Timer utilities
    "elapsed_ms",
    "Timer",
    # Environment utilities
    "parse_bool_env",
    "parse_bool_value",
    "parse_float_env",
    "parse_int_env",
    "parse_str_env",
]
