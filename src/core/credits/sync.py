"""
Real-time balance sync.

A BalanceSyncContext owns a reference-counted registry of BalanceChannels,
one per subscriber. The first consumer to attach opens the underlying change
subscription; the last one to detach closes it. Change notifications trigger
a debounced cache refresh, and every refreshed snapshot is fanned out to the
channel's consumers.

Timers (debounce, reconnect) come from an injected Scheduler and reconnect
delays from an injected RetryPolicy.
"""

import asyncio
import inspect
import itertools
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

from src.constants import DEFAULT_REFRESH_DEBOUNCE_SECONDS, EVENT_USAGE_THRESHOLD

from .balance_cache import BalanceCache
from .notifier import ChangeNotifier, ChangeSubscription
from .retry import RetryPolicy
from .scheduler import AsyncioScheduler, ScheduledTask, Scheduler
from .schemas import Balance, BalanceNotification, BalanceUpdate, SyncState

logger = logging.getLogger(__name__)

ConsumerCallback = Callable[[BalanceUpdate], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


class BalanceChannel:
    """
    One live change subscription for one subscriber, shared by many consumers.

    States: CONNECTING -> LIVE, LIVE -> RECONNECTING on disconnect,
    RECONNECTING -> LIVE or DEGRADED once reconnect attempts run out,
    any -> CLOSED when the last consumer detaches.
    """

    def __init__(
        self,
        subscriber_id: str,
        notifier: ChangeNotifier,
        cache: BalanceCache,
        scheduler: Scheduler,
        reconnect_policy: RetryPolicy,
        debounce_seconds: float = DEFAULT_REFRESH_DEBOUNCE_SECONDS,
    ):
        self.subscriber_id = subscriber_id
        self.state = SyncState.CONNECTING
        self._notifier = notifier
        self._cache = cache
        self._scheduler = scheduler
        self._reconnect_policy = reconnect_policy
        self._debounce_seconds = debounce_seconds

        self._consumers: Dict[int, ConsumerCallback] = {}
        self._tokens = itertools.count(1)
        self._subscription: Optional[ChangeSubscription] = None
        self._debounce_task: Optional[ScheduledTask] = None
        self._reconnect_task: Optional[ScheduledTask] = None
        self._reconnect_attempt = 0

    # =========================================================================
    # Consumers
    # =========================================================================

    @property
    def ref_count(self) -> int:
        return len(self._consumers)

    def add_consumer(self, callback: ConsumerCallback) -> int:
        token = next(self._tokens)
        self._consumers[token] = callback
        return token

    def remove_consumer(self, token: int) -> bool:
        return self._consumers.pop(token, None) is not None

    async def _emit(self, update: BalanceUpdate) -> None:
        for callback in list(self._consumers.values()):
            try:
                result = callback(update)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Balance consumer failed for {self.subscriber_id}: {e}")

    def publish_balance(self, balance: Balance) -> None:
        """Fan a freshly fetched snapshot out to consumers."""
        if self.state == SyncState.CLOSED:
            return
        self._scheduler.call_later(
            0,
            lambda: self._emit(
                BalanceUpdate(subscriber_id=self.subscriber_id, kind="balance", balance=balance)
            ),
        )

    async def _set_state(self, state: SyncState) -> None:
        if self.state == state:
            return
        previous, self.state = self.state, state
        logger.info(f"Balance channel {self.subscriber_id}: {previous.value} -> {state.value}")
        await self._emit(BalanceUpdate(subscriber_id=self.subscriber_id, kind="state", state=state))

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Open the underlying subscription, falling back to reconnection on failure."""
        try:
            await self._connect()
        except ConnectionError as e:
            if self.state == SyncState.CLOSED:
                return
            logger.warning(f"Initial balance subscription failed for {self.subscriber_id}: {e}")
            await self._begin_reconnect()

    async def _connect(self) -> bool:
        """Subscribe to change notifications; False when the channel closed meanwhile."""
        subscription = await self._notifier.subscribe(
            self.subscriber_id,
            on_change=self._on_change,
            on_disconnect=self._on_disconnect,
        )
        if self.state == SyncState.CLOSED:
            self._notifier.unsubscribe(subscription)
            logger.debug(f"Dropped late subscription for closed channel {self.subscriber_id}")
            return False
        self._subscription = subscription
        self._reconnect_attempt = 0
        await self._set_state(SyncState.LIVE)
        return True

    async def _on_change(self, notification: BalanceNotification) -> None:
        if self.state == SyncState.CLOSED:
            return
        if notification.event_type == EVENT_USAGE_THRESHOLD:
            await self._emit(
                BalanceUpdate(
                    subscriber_id=self.subscriber_id,
                    kind="alert",
                    balance=notification.balance,
                    payload=notification.payload,
                )
            )
            return
        self._schedule_debounced_refresh()

    def _schedule_debounced_refresh(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = self._scheduler.call_later(self._debounce_seconds, self._debounced_refresh)

    async def _debounced_refresh(self) -> None:
        self._debounce_task = None
        if self.state == SyncState.CLOSED:
            return
        await self._cache.refresh(self.subscriber_id)

    async def _on_disconnect(self, error: Exception) -> None:
        if self.state == SyncState.CLOSED:
            return
        logger.warning(f"Balance subscription lost for {self.subscriber_id}: {error}")
        self._subscription = None
        await self._begin_reconnect()

    async def _begin_reconnect(self) -> None:
        self._reconnect_attempt = 0
        await self._set_state(SyncState.RECONNECTING)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._reconnect_attempt += 1
        delay = self._reconnect_policy.delay_for(self._reconnect_attempt)
        logger.debug(
            f"Reconnect attempt {self._reconnect_attempt} for {self.subscriber_id} in {delay:.2f}s"
        )
        self._reconnect_task = self._scheduler.call_later(delay, self._attempt_reconnect)

    async def _attempt_reconnect(self) -> None:
        self._reconnect_task = None
        if self.state == SyncState.CLOSED:
            return
        try:
            connected = await self._connect()
        except ConnectionError as e:
            if self.state == SyncState.CLOSED:
                return
            if self._reconnect_policy.should_retry(self._reconnect_attempt):
                logger.warning(
                    f"Reconnect attempt {self._reconnect_attempt} failed for {self.subscriber_id}: {e}"
                )
                self._schedule_reconnect()
            else:
                logger.warning(
                    f"Balance sync degraded for {self.subscriber_id} after "
                    f"{self._reconnect_attempt} reconnect attempts"
                )
                await self._set_state(SyncState.DEGRADED)
            return

        if connected:
            # Changes may have been missed while disconnected
            self._schedule_debounced_refresh()

    async def retry_now(self) -> None:
        """Leave DEGRADED by starting a fresh round of reconnect attempts."""
        if self.state == SyncState.DEGRADED:
            await self._begin_reconnect()

    def close(self) -> None:
        """Cancel timers and drop the underlying subscription."""
        if self.state == SyncState.CLOSED:
            return
        self.state = SyncState.CLOSED
        for task in (self._debounce_task, self._reconnect_task):
            if task is not None:
                task.cancel()
        self._debounce_task = None
        self._reconnect_task = None
        if self._subscription is not None:
            self._notifier.unsubscribe(self._subscription)
            self._subscription = None
        self._consumers.clear()
        logger.info(f"Closed balance channel for {self.subscriber_id}")

    def __repr__(self) -> str:
        return (
            f"BalanceChannel(subscriber_id={self.subscriber_id!r}, "
            f"state={self.state.value}, consumers={self.ref_count})"
        )


class BalanceSyncContext:
    """
    Reference-counted registry of balance channels.

    An explicit object rather than module state: create one per process
    (or per test), and ``close()`` it to tear everything down.
    """

    def __init__(
        self,
        notifier: ChangeNotifier,
        cache: BalanceCache,
        scheduler: Optional[Scheduler] = None,
        reconnect_policy: Optional[RetryPolicy] = None,
        debounce_seconds: float = DEFAULT_REFRESH_DEBOUNCE_SECONDS,
    ):
        self._notifier = notifier
        self._cache = cache
        self._scheduler = scheduler or AsyncioScheduler()
        self._reconnect_policy = reconnect_policy or RetryPolicy()
        self._debounce_seconds = debounce_seconds
        self._channels: Dict[str, BalanceChannel] = {}
        self._lock = asyncio.Lock()
        self._closed = False

        self._cache.add_listener(self._on_snapshot)

    def _on_snapshot(self, balance: Balance) -> None:
        channel = self._channels.get(balance.subscriber_id)
        if channel is not None:
            channel.publish_balance(balance)

    async def attach(self, subscriber_id: str, callback: ConsumerCallback) -> Unsubscribe:
        """
        Register a consumer for a subscriber's balance changes.

        Returns:
            Idempotent function detaching this consumer
        """
        if self._closed:
            raise RuntimeError("BalanceSyncContext is closed")

        async with self._lock:
            channel = self._channels.get(subscriber_id)
            created = channel is None
            if created:
                channel = BalanceChannel(
                    subscriber_id,
                    notifier=self._notifier,
                    cache=self._cache,
                    scheduler=self._scheduler,
                    reconnect_policy=self._reconnect_policy,
                    debounce_seconds=self._debounce_seconds,
                )
                self._channels[subscriber_id] = channel
            token = channel.add_consumer(callback)
            if created:
                await channel.open()

        logger.debug(f"Attached consumer {token} to {subscriber_id} (refs={channel.ref_count})")

        detached = False

        def unsubscribe() -> None:
            nonlocal detached
            if detached:
                return
            detached = True
            self._detach(channel, token)

        return unsubscribe

    def _detach(self, channel: BalanceChannel, token: int) -> None:
        if not channel.remove_consumer(token):
            return
        logger.debug(f"Detached consumer {token} from {channel.subscriber_id} (refs={channel.ref_count})")
        if channel.ref_count == 0:
            channel.close()
            if self._channels.get(channel.subscriber_id) is channel:
                del self._channels[channel.subscriber_id]

    def ref_count(self, subscriber_id: str) -> int:
        channel = self._channels.get(subscriber_id)
        return channel.ref_count if channel else 0

    def channel(self, subscriber_id: str) -> Optional[BalanceChannel]:
        return self._channels.get(subscriber_id)

    def state(self, subscriber_id: str) -> Optional[SyncState]:
        channel = self._channels.get(subscriber_id)
        return channel.state if channel else None

    def __len__(self) -> int:
        return len(self._channels)

    def close(self) -> None:
        """Close every channel."""
        self._closed = True
        for channel in list(self._channels.values()):
            channel.close()
        self._channels.clear()


__all__ = [
    "BalanceChannel",
    "BalanceSyncContext",
    "ConsumerCallback",
    "Unsubscribe",
]
