"""Elapsed time measurement for request logging and metered calls."""

import time
from typing import Optional


def elapsed_ms(start_time: float) -> float:
    """
    Milliseconds elapsed since ``start_time`` (a ``time.perf_counter()`` value).

    Example:
        >>> start = time.perf_counter()
        >>> duration = elapsed_ms(start)
    """
    return (time.perf_counter() - start_time) * 1000


class Timer:
    """
    Context manager timing a block of code.

    Usage:
        >>> with Timer() as t:
        ...     pass
        >>> t.elapsed_ms >= 0
        True
    """

    def __init__(self):
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def start(self) -> "Timer":
        self.start_time = time.perf_counter()
        self.end_time = None
        return self

    def stop(self) -> float:
        """Stop the timer and return elapsed milliseconds."""
        if self.start_time is not None and self.end_time is None:
            self.end_time = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        """Elapsed milliseconds; keeps growing until ``stop()`` is called."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000

    def __enter__(self) -> "Timer":
        return self.start()

    def __exit__(self, *args) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"Timer(elapsed_ms={self.elapsed_ms:.2f})"
