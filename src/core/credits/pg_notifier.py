"""
Change notifications over PostgreSQL LISTEN/NOTIFY.

Every process holds one dedicated asyncpg connection that LISTENs on the
ledger channel. The SQL ledger store emits ``pg_notify`` inside its mutation
transactions, so a notification is delivered to every worker (and to job
processes such as the monthly reset) only once the mutation commits.
Received notifications are fanned out to local subscriptions per subscriber.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

import asyncpg
from pydantic import ValidationError

from src.constants import DEFAULT_NOTIFY_CHANNEL
from src.db.connection import DatabaseConfig

from .notifier import (
    ChangeCallback,
    ChangeNotifier,
    ChangeSubscription,
    DisconnectCallback,
    InMemoryChangeNotifier,
)
from .schemas import BalanceNotification

logger = logging.getLogger(__name__)

Connect = Callable[[str], Awaitable[Any]]


def asyncpg_dsn(database_url: str) -> str:
    """Strip the SQLAlchemy driver suffix so asyncpg accepts the URL.

    Example:
        >>> asyncpg_dsn("postgresql+asyncpg://u:p@db:5432/ledger")
        'postgresql://u:p@db:5432/ledger'
    """
    scheme, sep, rest = database_url.partition("://")
    return f"{scheme.split('+', 1)[0]}{sep}{rest}"


class PostgresChangeNotifier(ChangeNotifier):
    """
    Cross-process notifier backed by LISTEN/NOTIFY.

    Args:
        dsn: asyncpg connection string (default: from DatabaseConfig)
        channel: NOTIFY channel shared by every process
        connect: Connection factory, ``asyncpg.connect`` unless injected
    """

    transactional = True

    def __init__(
        self,
        dsn: Optional[str] = None,
        channel: str = DEFAULT_NOTIFY_CHANNEL,
        connect: Optional[Connect] = None,
    ):
        self._dsn = dsn or asyncpg_dsn(DatabaseConfig().database_url)
        self.channel = channel
        self._connect = connect or asyncpg.connect
        self._connection = None
        self._connect_lock = asyncio.Lock()
        self._query_lock = asyncio.Lock()
        self._local = InMemoryChangeNotifier()
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Listening connection
    # =========================================================================

    async def _ensure_connected(self):
        async with self._connect_lock:
            if self._connection is not None and not self._connection.is_closed():
                return self._connection
            try:
                connection = await self._connect(self._dsn)
                await connection.add_listener(self.channel, self._on_notify)
            except (OSError, asyncpg.PostgresError) as e:
                raise ConnectionError(f"LISTEN {self.channel} failed: {e}") from e

            connection.add_termination_listener(self._on_terminated)
            self._connection = connection
            logger.info(f"Listening for ledger changes on channel {self.channel}")
            return connection

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_notify(self, connection, pid: int, channel: str, payload: str) -> None:
        self._spawn(self._dispatch(payload))

    def _on_terminated(self, connection) -> None:
        if connection is not self._connection:
            return
        logger.warning(f"Listening connection for {self.channel} terminated")
        self._connection = None
        self._spawn(self._local.drop_connections())

    async def _dispatch(self, payload: str) -> None:
        try:
            notification = self.decode(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed notification on {self.channel}: {e}")
            return
        await self._local.publish(notification)

    # =========================================================================
    # ChangeNotifier
    # =========================================================================

    async def subscribe(
        self,
        subscriber_id: str,
        on_change: ChangeCallback,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> ChangeSubscription:
        await self._ensure_connected()
        return await self._local.subscribe(subscriber_id, on_change, on_disconnect=on_disconnect)

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        self._local.unsubscribe(subscription)

    async def publish(self, notification: BalanceNotification) -> None:
        """Send a notification outside any ledger transaction (usage alerts)."""
        try:
            connection = await self._ensure_connected()
            async with self._query_lock:
                await connection.execute("SELECT pg_notify($1, $2)", self.channel, self.encode(notification))
        except (ConnectionError, OSError, asyncpg.PostgresError) as e:
            logger.warning(
                f"Could not publish {notification.event_type} for {notification.subscriber_id}: {e}"
            )

    def subscription_count(self, subscriber_id: Optional[str] = None) -> int:
        return self._local.subscription_count(subscriber_id)

    def encode(self, notification: BalanceNotification) -> str:
        return notification.model_dump_json()

    def decode(self, payload: str) -> BalanceNotification:
        return BalanceNotification.model_validate_json(payload)

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None or connection.is_closed():
            return
        try:
            await connection.remove_listener(self.channel, self._on_notify)
        finally:
            await connection.close()
        logger.info(f"Stopped listening on {self.channel}")


__all__ = ["PostgresChangeNotifier", "asyncpg_dsn"]
