"""Unit tests for InMemoryChangeNotifier."""

import pytest

from src.core.credits import BalanceNotification, InMemoryChangeNotifier


def notification(subscriber_id="sub-123", event_type="balance_deducted"):
    return BalanceNotification(subscriber_id=subscriber_id, event_type=event_type)


class TestPublish:
    @pytest.mark.asyncio
    async def test_delivers_only_to_matching_subscriber(self, notifier):
        received_a, received_b = [], []
        await notifier.subscribe("sub-a", received_a.append)
        await notifier.subscribe("sub-b", received_b.append)

        await notifier.publish(notification("sub-a"))

        assert len(received_a) == 1
        assert received_b == []

    @pytest.mark.asyncio
    async def test_async_listener_awaited(self, notifier):
        received = []

        async def listener(n):
            received.append(n.event_type)

        await notifier.subscribe("sub-123", listener)
        await notifier.publish(notification())

        assert received == ["balance_deducted"]

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, notifier):
        received = []

        def broken(_n):
            raise RuntimeError("listener bug")

        await notifier.subscribe("sub-123", broken)
        await notifier.subscribe("sub-123", received.append)

        await notifier.publish(notification())

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, notifier):
        received = []
        subscription = await notifier.subscribe("sub-123", received.append)

        notifier.unsubscribe(subscription)
        await notifier.publish(notification())

        assert received == []
        assert subscription.active is False
        assert notifier.subscription_count() == 0


class TestTransportFailures:
    """Simulated transport outages."""

    @pytest.mark.asyncio
    async def test_unavailable_subscribe_raises(self):
        notifier = InMemoryChangeNotifier()
        notifier.set_available(False)

        with pytest.raises(ConnectionError):
            await notifier.subscribe("sub-123", lambda n: None)

    @pytest.mark.asyncio
    async def test_drop_connections_calls_disconnect_handlers(self, notifier):
        errors = []
        await notifier.subscribe("sub-123", lambda n: None, on_disconnect=errors.append)
        await notifier.subscribe("sub-456", lambda n: None)

        dropped = await notifier.drop_connections("sub-123")

        assert dropped == 1
        assert isinstance(errors[0], ConnectionError)
        assert notifier.subscription_count("sub-123") == 0
        assert notifier.subscription_count("sub-456") == 1
