"""Shared test fixtures and configuration."""

import pytest

from src.core.credits import (
    BalanceTarget,
    CreditService,
    CreditSettings,
    InMemoryChangeNotifier,
    InMemoryLedgerStore,
    RetryPolicy,
    VirtualScheduler,
)
from src.core.credits.config import reset_credit_settings
from src.core.credits.retry import no_jitter
from src.core.credits.service import reset_credit_service

TEST_SUBSCRIBER_ID = "sub-123"
ADMIN_ACTOR = "admin-1"


# =============================================================================
# Singleton Reset
# =============================================================================

@pytest.fixture(autouse=True)
def reset_credit_singletons():
    """Reset settings and the process-wide credit service around each test."""
    reset_credit_settings()
    reset_credit_service()

    yield

    reset_credit_settings()
    reset_credit_service()


@pytest.fixture
def clean_credit_env(monkeypatch):
    """Clear credit environment variables."""
    for name in (
        "SECURITY_BUFFER",
        "MAX_SINGLE_REQUEST_COST",
        "DEFAULT_MONTHLY_ALLOWANCE",
        "GUARD_TIMEOUT_SECONDS",
        "RATE_LIMIT_REQUESTS",
        "RATE_LIMIT_WINDOW_SECONDS",
        "BALANCE_CACHE_TTL_SECONDS",
        "BALANCE_REFRESH_DEBOUNCE_SECONDS",
        "SYNC_MAX_RECONNECT_ATTEMPTS",
        "OPERATION_MAX_ATTEMPTS",
        "MAX_CUMULATIVE_SHORTFALL",
        "LEDGER_BACKEND",
        "LEDGER_NOTIFY_CHANNEL",
    ):
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# Ledger Fixtures
# =============================================================================

@pytest.fixture
def settings():
    """Credit settings with the documented defaults and the memory backend."""
    return CreditSettings(
        security_buffer=2000,
        max_single_request_cost=8000,
        default_monthly_allowance=100000,
        guard_timeout_seconds=1.0,
        rate_limit_requests=10,
        rate_limit_window_seconds=60,
        balance_cache_ttl_seconds=30.0,
        refresh_debounce_seconds=1.0,
        max_reconnect_attempts=3,
        reconnect_base_delay_seconds=1.0,
        reconnect_max_delay_seconds=30.0,
        operation_max_attempts=1,
        max_cumulative_shortfall=0,
        ledger_backend="memory",
    )


@pytest.fixture
def notifier():
    return InMemoryChangeNotifier()


@pytest.fixture
def store(notifier):
    return InMemoryLedgerStore(notifier=notifier, default_monthly_allowance=100000)


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def fast_policy():
    """Reconnect policy with fixed 1s, 2s, 4s... delays and three attempts."""
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=no_jitter)


@pytest.fixture
def seed_balance(store):
    """Create a subscriber and top up its purchased balance."""

    async def _seed(subscriber_id: str = TEST_SUBSCRIBER_ID, purchased: int = 0) -> None:
        await store.ensure_subscriber(subscriber_id)
        if purchased > 0:
            await store.credit(
                subscriber_id,
                purchased,
                BalanceTarget.PURCHASED_BALANCE,
                reason="test seed",
                actor=ADMIN_ACTOR,
            )

    return _seed


@pytest.fixture
def service(store, notifier, settings, scheduler, fast_policy):
    """CreditService on the in-memory ledger with deterministic timers."""
    return CreditService(
        store,
        notifier=notifier,
        settings=settings,
        scheduler=scheduler,
        reconnect_policy=fast_policy,
    )


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: tests needing a live PostgreSQL database")
