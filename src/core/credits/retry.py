"""
Retry policy values for the costed call and the real-time transport.

A RetryPolicy is a plain value injected into callers. It drives tenacity
for awaited calls and hands out reconnect delays for timer-based retries.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from .exceptions import CreditError

logger = logging.getLogger(__name__)

JitterFn = Callable[[float], float]


def no_jitter(delay: float) -> float:
    return delay


def proportional_jitter(delay: float) -> float:
    """Add up to 10% random extra delay."""
    return delay + random.uniform(0, delay * 0.1)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one (1 = no retry)
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound on any single delay
        jitter: Function applied to each computed delay
        retry_on: Exception types worth retrying; CreditError is never retried
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: JitterFn = field(default=proportional_jitter, compare=False)
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """
        Delay to wait after the given failed attempt (1-based).

        attempt=1 -> base_delay, attempt=2 -> 2 * base_delay, ...
        """
        raw = self.base_delay * (2 ** max(0, attempt - 1))
        return min(self.max_delay, max(0.0, self.jitter(min(raw, self.max_delay))))

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` failures."""
        return attempt < self.max_attempts

    def _is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on) and not isinstance(exc, CreditError)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number)

    def retrying(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> AsyncRetrying:
        """Build a tenacity AsyncRetrying configured from this policy."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self._is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=sleep,
            reraise=True,
        )

    async def call(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs: Any,
    ) -> Any:
        """Await ``fn(*args, **kwargs)`` under this policy."""
        async for attempt in self.retrying(sleep=sleep):
            with attempt:
                return await fn(*args, **kwargs)

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=no_jitter)


__all__ = [
    "JitterFn",
    "RetryPolicy",
    "no_jitter",
    "proportional_jitter",
]
