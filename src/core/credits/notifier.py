"""
Per-subscriber change notifications.

The ledger store publishes a BalanceNotification after every committed
mutation. Listeners subscribe per subscriber id; the sync layer uses one
listener per subscriber and fans out to its own consumers.
"""

import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Union

from .schemas import BalanceNotification

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[BalanceNotification], Union[None, Awaitable[None]]]
DisconnectCallback = Callable[[Exception], Union[None, Awaitable[None]]]


@dataclass
class ChangeSubscription:
    """Handle for a live notification subscription."""
    subscriber_id: str
    on_change: ChangeCallback
    on_disconnect: Optional[DisconnectCallback] = None
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    active: bool = True


async def _invoke(callback: Callable, arg) -> None:
    result = callback(arg)
    if inspect.isawaitable(result):
        await result


class ChangeNotifier(ABC):
    """Abstract per-subscriber notification transport."""

    #: True when publishes ride inside the ledger transaction (see SqlLedgerStore)
    transactional: bool = False

    @abstractmethod
    async def subscribe(
        self,
        subscriber_id: str,
        on_change: ChangeCallback,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> ChangeSubscription:
        """Open a subscription. May raise ConnectionError."""
        ...

    @abstractmethod
    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        ...

    @abstractmethod
    async def publish(self, notification: BalanceNotification) -> None:
        ...

    @abstractmethod
    def subscription_count(self, subscriber_id: Optional[str] = None) -> int:
        ...

    async def close(self) -> None:
        """Release transport resources."""


class InMemoryChangeNotifier(ChangeNotifier):
    """In-process notifier.

    Suitable for single-process deployments and testing. Listener failures
    are logged and never reach the publisher, so a broken consumer cannot
    fail a committed mutation.
    """

    def __init__(self):
        self._subscriptions: Dict[str, Dict[str, ChangeSubscription]] = defaultdict(dict)
        self._available = True

    async def subscribe(
        self,
        subscriber_id: str,
        on_change: ChangeCallback,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> ChangeSubscription:
        if not self._available:
            raise ConnectionError("Change notification transport unavailable")

        subscription = ChangeSubscription(
            subscriber_id=subscriber_id,
            on_change=on_change,
            on_disconnect=on_disconnect,
        )
        self._subscriptions[subscriber_id][subscription.subscription_id] = subscription
        logger.debug(f"Opened change subscription {subscription.subscription_id} for {subscriber_id}")
        return subscription

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.subscriber_id)
        if subs is None:
            return
        subs.pop(subscription.subscription_id, None)
        if not subs:
            del self._subscriptions[subscription.subscriber_id]

    async def publish(self, notification: BalanceNotification) -> None:
        subs = list(self._subscriptions.get(notification.subscriber_id, {}).values())
        for subscription in subs:
            if not subscription.active:
                continue
            try:
                await _invoke(subscription.on_change, notification)
            except Exception as e:
                logger.warning(
                    f"Change listener failed for {notification.subscriber_id} "
                    f"({notification.event_type}): {e}"
                )

    def subscription_count(self, subscriber_id: Optional[str] = None) -> int:
        if subscriber_id is not None:
            return len(self._subscriptions.get(subscriber_id, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    # =========================================================================
    # Transport failures
    # =========================================================================

    def set_available(self, available: bool) -> None:
        """Toggle whether new subscriptions can be opened."""
        self._available = available

    async def drop_connections(self, subscriber_id: Optional[str] = None) -> int:
        """Drop live subscriptions, notifying their disconnect handlers.

        Returns:
            Number of subscriptions dropped
        """
        if subscriber_id is not None:
            targets = list(self._subscriptions.get(subscriber_id, {}).values())
        else:
            targets = [s for subs in self._subscriptions.values() for s in subs.values()]

        error = ConnectionError("Change notification connection lost")
        for subscription in targets:
            self.unsubscribe(subscription)
            if subscription.on_disconnect is not None:
                try:
                    await _invoke(subscription.on_disconnect, error)
                except Exception as e:
                    logger.warning(f"Disconnect handler failed for {subscription.subscriber_id}: {e}")
        return len(targets)


__all__ = [
    "ChangeCallback",
    "DisconnectCallback",
    "ChangeSubscription",
    "ChangeNotifier",
    "InMemoryChangeNotifier",
]
