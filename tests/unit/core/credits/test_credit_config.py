"""Unit tests for credit metering configuration."""

import pytest
from pydantic import ValidationError

from src.core.credits import CreditSettings, get_credit_settings, reset_credit_settings


class TestCreditSettingsDefaults:
    """Tests for CreditSettings default values."""

    def test_default_security_buffer(self, clean_credit_env):
        """Test default security buffer is 2000."""
        assert CreditSettings().security_buffer == 2000

    def test_default_max_single_request_cost(self, clean_credit_env):
        """Test default single-request maximum is 8000."""
        assert CreditSettings().max_single_request_cost == 8000

    def test_default_rate_limit(self, clean_credit_env):
        """Test default rate limit is 10 calls per 60 seconds."""
        config = CreditSettings()
        assert config.rate_limit_requests == 10
        assert config.rate_limit_window_seconds == 60

    def test_default_backend_is_memory(self, clean_credit_env):
        assert CreditSettings().ledger_backend == "memory"

    def test_shortfall_cap_disabled_by_default(self, clean_credit_env):
        assert CreditSettings().max_cumulative_shortfall == 0


class TestCreditSettingsFromEnv:
    """Tests for environment overrides."""

    def test_env_overrides(self, clean_credit_env, monkeypatch):
        monkeypatch.setenv("SECURITY_BUFFER", "500")
        monkeypatch.setenv("GUARD_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("LEDGER_BACKEND", "SQL")

        config = CreditSettings()

        assert config.security_buffer == 500
        assert config.guard_timeout_seconds == 2.5
        assert config.ledger_backend == "sql"

    def test_malformed_value_uses_default(self, clean_credit_env, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_REQUESTS", "lots")

        assert CreditSettings().rate_limit_requests == 10

    def test_unknown_backend_rejected(self, clean_credit_env, monkeypatch):
        monkeypatch.setenv("LEDGER_BACKEND", "redis")

        with pytest.raises(ValidationError):
            CreditSettings()

    @pytest.mark.parametrize(
        "field,value",
        [("security_buffer", -1), ("operation_max_attempts", 0), ("rate_limit_window_seconds", 0)],
    )
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            CreditSettings(**{field: value})


class TestSettingsAccessor:
    def test_loaded_once(self, clean_credit_env):
        assert get_credit_settings() is get_credit_settings()

    def test_reset_reloads(self, clean_credit_env, monkeypatch):
        first = get_credit_settings()
        monkeypatch.setenv("SECURITY_BUFFER", "1")

        reset_credit_settings()

        assert get_credit_settings() is not first
        assert get_credit_settings().security_buffer == 1
