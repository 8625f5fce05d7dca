"""Thread-safe fixed-window rate limiter for metered calls.

Call frequency is gated independently of credit balance: a subscriber with
plenty of credit can still be throttled, and the limiter never looks at the
ledger.
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from src.constants import DEFAULT_RATE_LIMIT_REQUESTS, DEFAULT_RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)

# (identifier, window_seconds, window_index) -> calls seen in that window
BucketKey = Tuple[str, int, int]


class RateLimiter:
    """
    Thread-safe fixed-window rate limiter keyed by identifier.

    Each call falls into the bucket ``(identifier, floor(now / window))``.
    A bucket is created on first hit and discarded lazily once its window
    has elapsed; stale buckets are swept on access, so no background
    thread is needed.

    Attributes:
        max_requests: Default maximum calls allowed per window
        window_seconds: Default window size in seconds

    Example:
        >>> limiter = RateLimiter(max_requests=10, window_seconds=60)
        >>> if limiter.allow("subscriber-123"):
        ...     # Process request
        ...     pass
        >>> else:
        ...     retry_after = limiter.retry_after("subscriber-123")
        ...     print(f"Rate limited. Try again in {retry_after}s")
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT_REQUESTS,
        window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the rate limiter.

        Args:
            max_requests: Maximum calls per window (default: 10)
            window_seconds: Window size in seconds (default: 60)
            clock: Time source returning seconds; injectable for tests
        """
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("max_requests and window_seconds must be >= 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.buckets: Dict[BucketKey, int] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def _limits(self, max_calls: Optional[int], window_seconds: Optional[int]) -> Tuple[int, int]:
        """Apply defaults for omitted overrides. An explicit ``max_calls=0`` denies every call."""
        if max_calls is None:
            max_calls = self.max_requests
        if window_seconds is None:
            window_seconds = self.window_seconds
        if max_calls < 0 or window_seconds < 1:
            raise ValueError("max_calls must be >= 0 and window_seconds >= 1")
        return max_calls, window_seconds

    def _window_index(self, now: float, window_seconds: int) -> int:
        return math.floor(now / window_seconds)

    def _sweep(self, now: float) -> int:
        """Drop buckets whose window has elapsed. Caller holds the lock."""
        stale = [
            key for key in self.buckets
            if key[2] < self._window_index(now, key[1])
        ]
        for key in stale:
            del self.buckets[key]
        if stale:
            logger.debug(f"Swept {len(stale)} expired rate limit buckets")
        return len(stale)

    def allow(
        self,
        identifier: str,
        max_calls: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> bool:
        """
        Check whether a call is allowed for the identifier.

        Automatically counts the call if allowed.

        Args:
            identifier: Subscriber id or other caller key
            max_calls: Override of the default per-window maximum
            window_seconds: Override of the default window size

        Returns:
            True if allowed, False if the window's budget is spent
        """
        max_calls, window_seconds = self._limits(max_calls, window_seconds)

        with self._lock:
            now = self._clock()
            self._sweep(now)

            key = (identifier, window_seconds, self._window_index(now, window_seconds))
            count = self.buckets.get(key, 0)
            if count >= max_calls:
                logger.warning(f"Rate limit exceeded for {identifier} ({count}/{max_calls} in {window_seconds}s)")
                return False

            self.buckets[key] = count + 1
            return True

    def retry_after(self, identifier: str, window_seconds: Optional[int] = None) -> int:
        """
        Seconds until the identifier's current window ends.

        Returns:
            0 when the identifier has no calls in the current window
        """
        _, window_seconds = self._limits(None, window_seconds)

        with self._lock:
            now = self._clock()
            index = self._window_index(now, window_seconds)
            if (identifier, window_seconds, index) not in self.buckets:
                return 0
            window_end = (index + 1) * window_seconds
            return max(1, math.ceil(window_end - now))

    def remaining(
        self,
        identifier: str,
        max_calls: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> int:
        """Number of calls still allowed in the identifier's current window."""
        max_calls, window_seconds = self._limits(max_calls, window_seconds)

        with self._lock:
            now = self._clock()
            key = (identifier, window_seconds, self._window_index(now, window_seconds))
            return max(0, max_calls - self.buckets.get(key, 0))

    def cleanup(self) -> int:
        """
        Remove expired buckets.

        Returns:
            Number of buckets removed
        """
        with self._lock:
            return self._sweep(self._clock())

    def reset(self, identifier: str) -> None:
        """Forget every bucket for an identifier."""
        with self._lock:
            for key in [k for k in self.buckets if k[0] == identifier]:
                del self.buckets[key]

    def __repr__(self) -> str:
        return (
            f"RateLimiter(max_requests={self.max_requests}, "
            f"window_seconds={self.window_seconds}, "
            f"tracked_buckets={len(self.buckets)})"
        )
