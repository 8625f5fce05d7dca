"""Unit tests for RetryPolicy."""

import pytest

from src.core.credits import InsufficientCreditError, RetryPolicy
from src.core.credits.retry import no_jitter, proportional_jitter


class TestDelays:
    """Backoff delay calculation."""

    def test_exponential_growth(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0, jitter=no_jitter)

        assert [policy.delay_for(a) for a in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=5.0, jitter=no_jitter)

        assert policy.delay_for(8) == 5.0

    def test_jitter_never_exceeds_cap(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=10.0, jitter=proportional_jitter)

        for attempt in range(1, 5):
            assert 0 <= policy.delay_for(attempt) <= 10.0

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(1) is True
        assert policy.should_retry(2) is True
        assert policy.should_retry(3) is False

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_delay": -1}, {"max_delay": -1}])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestCall:
    """Awaited calls under the policy."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def fake_sleep(self, sleeps):
        async def _sleep(delay):
            sleeps.append(delay)

        return _sleep

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleeps, fake_sleep):
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=no_jitter)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TimeoutError("slow provider")
            return "ok"

        assert await policy.call(flaky, sleep=fake_sleep) == "ok"
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_and_reraises(self, fake_sleep):
        policy = RetryPolicy(max_attempts=2, base_delay=1.0, jitter=no_jitter)

        async def always_fails():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await policy.call(always_fails, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_credit_errors_not_retried(self, sleeps, fake_sleep):
        policy = RetryPolicy(max_attempts=5, jitter=no_jitter)
        calls = []

        async def rejected():
            calls.append(1)
            raise InsufficientCreditError("sub-123", 10, 0)

        with pytest.raises(InsufficientCreditError):
            await policy.call(rejected, sleep=fake_sleep)

        assert len(calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retry_on_filters_exceptions(self, fake_sleep):
        policy = RetryPolicy(max_attempts=3, jitter=no_jitter, retry_on=(ConnectionError,))
        calls = []

        async def bad_input():
            calls.append(1)
            raise ValueError("bad prompt")

        with pytest.raises(ValueError):
            await policy.call(bad_input, sleep=fake_sleep)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_no_retry(self, fake_sleep):
        policy = RetryPolicy.no_retry()
        calls = []

        async def fails():
            calls.append(1)
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await policy.call(fails, sleep=fake_sleep)

        assert len(calls) == 1
