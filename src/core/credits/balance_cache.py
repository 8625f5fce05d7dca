"""
Client-side balance cache with stale-while-revalidate reads.

The cache is advisory only. Entries are never mutated optimistically; a
refresh replaces the snapshot wholesale with a fresh ledger read.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from src.constants import DEFAULT_BALANCE_CACHE_TTL_SECONDS

from .exceptions import StoreUnavailableError
from .ledger_store import LedgerStore
from .scheduler import AsyncioScheduler, ScheduledTask, Scheduler
from .schemas import Balance

logger = logging.getLogger(__name__)

RefreshListener = Callable[[Balance], None]


@dataclass
class CacheEntry:
    balance: Balance
    fetched_at: float


class BalanceCache:
    """
    Per-subscriber TTL cache in front of the ledger store.

    Reads:
        - fresh entry: returned as is
        - stale entry: returned immediately, background refresh scheduled
        - missing entry: fetched synchronously
    """

    def __init__(
        self,
        store: LedgerStore,
        ttl_seconds: float = DEFAULT_BALANCE_CACHE_TTL_SECONDS,
        scheduler: Optional[Scheduler] = None,
    ):
        self._store = store
        self._ttl = ttl_seconds
        self._scheduler = scheduler or AsyncioScheduler()
        self._entries: Dict[str, CacheEntry] = {}
        self._pending_refresh: Dict[str, ScheduledTask] = {}
        self._listeners: List[RefreshListener] = []
        self._evictions: Dict[str, int] = {}

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return (self._scheduler.now() - entry.fetched_at) < self._ttl

    def add_listener(self, listener: RefreshListener) -> None:
        """Called with each newly fetched snapshot."""
        self._listeners.append(listener)

    def peek(self, subscriber_id: str) -> Optional[Balance]:
        """Cached snapshot without any refresh, or None."""
        entry = self._entries.get(subscriber_id)
        return entry.balance if entry else None

    def is_fresh(self, subscriber_id: str) -> bool:
        entry = self._entries.get(subscriber_id)
        return entry is not None and self._is_fresh(entry)

    async def get(self, subscriber_id: str) -> Balance:
        """
        Get a balance snapshot for a subscriber.

        Raises:
            SubscriberNotFoundError, StoreUnavailableError: only when nothing
                is cached yet and the synchronous fetch fails
        """
        entry = self._entries.get(subscriber_id)
        if entry is None:
            return await self._fetch(subscriber_id)

        if self._is_fresh(entry):
            logger.debug(f"Balance cache hit for {subscriber_id}")
            return entry.balance

        logger.debug(f"Balance cache stale for {subscriber_id}, serving stale and revalidating")
        self.schedule_refresh(subscriber_id)
        return entry.balance

    async def _fetch(self, subscriber_id: str, generation: Optional[int] = None) -> Balance:
        balance = await self._store.get_balance(subscriber_id)
        if generation is not None and generation != self._evictions.get(subscriber_id, 0):
            # evicted while the read was in flight
            return balance
        self._entries[subscriber_id] = CacheEntry(balance=balance, fetched_at=self._scheduler.now())
        for listener in list(self._listeners):
            try:
                listener(balance)
            except Exception as e:
                logger.warning(f"Balance cache listener failed for {subscriber_id}: {e}")
        return balance

    async def refresh(self, subscriber_id: str) -> Optional[Balance]:
        """
        Replace the snapshot with a fresh ledger read.

        When the store is unavailable the last snapshot keeps being served.

        Returns:
            The fresh balance, or the previous snapshot if the refresh failed
        """
        self._pending_refresh.pop(subscriber_id, None)
        generation = self._evictions.get(subscriber_id, 0)
        try:
            return await self._fetch(subscriber_id, generation=generation)
        except StoreUnavailableError as e:
            logger.warning(f"Balance refresh failed for {subscriber_id}, serving last snapshot: {e.message}")
            return self.peek(subscriber_id)

    def schedule_refresh(self, subscriber_id: str, delay: float = 0.0) -> ScheduledTask:
        """Schedule a background refresh unless one is already pending."""
        pending = self._pending_refresh.get(subscriber_id)
        if pending is not None and pending.pending:
            return pending

        task = self._scheduler.call_later(delay, lambda: self._background_refresh(subscriber_id))
        self._pending_refresh[subscriber_id] = task
        return task

    async def _background_refresh(self, subscriber_id: str) -> None:
        if subscriber_id not in self._entries:
            self._pending_refresh.pop(subscriber_id, None)
            return
        try:
            await self.refresh(subscriber_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Background balance refresh failed for {subscriber_id}: {e}")

    def evict(self, subscriber_id: str) -> bool:
        """
        Discard a subscriber's snapshot (e.g., on logout).

        Returns:
            True if an entry was removed
        """
        self._evictions[subscriber_id] = self._evictions.get(subscriber_id, 0) + 1
        pending = self._pending_refresh.pop(subscriber_id, None)
        if pending is not None:
            pending.cancel()
        removed = self._entries.pop(subscriber_id, None) is not None
        if removed:
            logger.debug(f"Evicted cached balance for {subscriber_id}")
        return removed

    def clear(self) -> None:
        for task in self._pending_refresh.values():
            task.cancel()
        self._pending_refresh.clear()
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["BalanceCache", "CacheEntry"]
