"""Environment variable and flag parsing.

Settings objects read their defaults through these helpers so that a
malformed value falls back to the documented default instead of failing
at import time.
"""

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes", "on")


def parse_bool_value(value: Optional[str], default: bool = False) -> bool:
    """Parse a textual flag such as an env value or a request header.

    Examples:
        >>> parse_bool_value("TRUE")
        True
        >>> parse_bool_value("0")
        False
        >>> parse_bool_value(None, default=True)
        True
    """
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def parse_bool_env(key: str, default: bool = False) -> bool:
    """Parse a boolean flag from an environment variable."""
    return parse_bool_value(os.getenv(key), default=default)


def parse_int_env(key: str, default: int) -> int:
    """Parse an integer from an environment variable.

    Returns:
        The parsed value, or ``default`` when unset or invalid.
    """
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {key}={value!r}, using default {default}")
        return default


def parse_float_env(key: str, default: float) -> float:
    """Parse a float from an environment variable.

    Returns:
        The parsed value, or ``default`` when unset or invalid.
    """
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {key}={value!r}, using default {default}")
        return default


def parse_str_env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()
