"""Thread-safe singleton base class.

Process-wide holders (such as the default credit service registry) derive
from ThreadSafeSingleton so that concurrent first access from request
handlers and background jobs still builds exactly one instance.
"""

import logging
import threading
from abc import ABC
from typing import ClassVar, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T', bound='ThreadSafeSingleton')


class ThreadSafeSingleton(ABC):
    """Abstract base class for thread-safe singletons.

    Subclasses implement ``_initialize()`` for one-time setup and
    optionally ``_cleanup()`` to release resources on reset.

    Usage:
        class ServiceRegistry(ThreadSafeSingleton):
            def _initialize(self):
                self.service = build_service()

        service = ServiceRegistry.get_instance().service

    Note:
        Do NOT override `__new__` or `__init__` in subclasses.
    """

    _instance: ClassVar[Optional['ThreadSafeSingleton']] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()
    _initialized: bool = False

    def __new__(cls: type[T]) -> T:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._initialized = False
                    cls._instance = instance
        return cls._instance  # type: ignore

    def __init__(self) -> None:
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._initialize()
                    self._initialized = True
                    logger.debug(f"{type(self).__name__} initialized")

    def _initialize(self) -> None:
        """Called exactly once when the singleton is first created."""

    @classmethod
    def get_instance(cls: type[T]) -> T:
        """Get the singleton instance, creating it on first call."""
        return cls()

    @classmethod
    def has_instance(cls) -> bool:
        return cls._instance is not None

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton instance, running its cleanup first.

        Warning:
            Intended for tests and process shutdown.
        """
        with cls._lock:
            if cls._instance is not None:
                try:
                    cls._instance._cleanup()
                except Exception as e:
                    logger.warning(f"Cleanup failed for {cls.__name__}: {e}")
                cls._instance = None

    def _cleanup(self) -> None:
        """Release resources when reset_instance() is invoked."""
