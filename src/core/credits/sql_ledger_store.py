"""
PostgreSQL-backed ledger store.

Each mutation runs in one transaction: a row-level conditional update of
credit_balances plus the matching audit insert. Deductions use a single
``UPDATE ... WHERE purchased_balance >= :amount RETURNING`` so two
concurrent debits can never overdraw the balance.
"""

import logging
import uuid
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import text

from src.constants import (
    BILLING_CYCLE_ACTOR,
    DEFAULT_MONTHLY_ALLOWANCE,
    DEFAULT_PURCHASED_BALANCE,
    EVENT_BALANCE_CREDITED,
    EVENT_BALANCE_DEDUCTED,
    EVENT_MONTHLY_RESET,
    EVENT_RECONCILIATION_SHORTFALL,
)
from src.db.utils import raise_store_unavailable, with_db_retry

from .exceptions import InsufficientCreditError, StoreUnavailableError, SubscriberNotFoundError
from .ledger_store import LedgerStore, _validate_credit_amount, _validate_deduct_amount
from .notifier import ChangeNotifier
from .schemas import (
    AdjustmentAction,
    AdminAdjustmentEvent,
    Balance,
    BalanceNotification,
    BalanceTarget,
    ReconciliationShortfallEvent,
    UsageEvent,
    utc_now,
)

logger = logging.getLogger(__name__)

_BALANCE_COLUMNS = "subscriber_id, monthly_allowance, purchased_balance, lifetime_used, updated_at"


def _row_to_balance(row: Mapping[str, Any]) -> Balance:
    return Balance(
        subscriber_id=row["subscriber_id"],
        monthly_allowance=row["monthly_allowance"],
        purchased_balance=row["purchased_balance"],
        lifetime_used=row["lifetime_used"],
        updated_at=row["updated_at"],
    )


class SqlLedgerStore(LedgerStore):
    """
    Ledger store on top of the shared DatabaseManager.

    Args:
        database: Object exposing ``session()`` as an async context manager
            (defaults to the global ``src.db.connection.db``)
        notifier: Change notifier fired after each committed mutation
        default_monthly_allowance: Plan default restored by the monthly reset
    """

    def __init__(
        self,
        database=None,
        notifier: Optional[ChangeNotifier] = None,
        default_monthly_allowance: int = DEFAULT_MONTHLY_ALLOWANCE,
    ):
        super().__init__(notifier=notifier, default_monthly_allowance=default_monthly_allowance)
        if database is None:
            from src.db.connection import db
            database = db
        self._db = database

    @staticmethod
    def _require_session(session) -> None:
        if session is None:
            raise StoreUnavailableError(message="Database disabled, ledger store unavailable")

    async def _select_for_update(self, session, subscriber_id: str) -> Balance:
        result = await session.execute(
            text(f"""
                SELECT {_BALANCE_COLUMNS}
                FROM credit_balances
                WHERE subscriber_id = :sid
                FOR UPDATE
            """),
            {"sid": subscriber_id},
        )
        row = result.mappings().first()
        if row is None:
            raise SubscriberNotFoundError(subscriber_id)
        return _row_to_balance(row)

    # =========================================================================
    # Notifications
    # =========================================================================

    @property
    def _notifies_in_transaction(self) -> bool:
        return self.notifier is not None and self.notifier.transactional

    async def _notify_in_transaction(
        self,
        session,
        subscriber_id: str,
        event_type: str,
        balance: Optional[Balance],
        **payload,
    ) -> None:
        """Queue ``pg_notify`` in the open transaction; Postgres delivers it on commit."""
        if not self._notifies_in_transaction:
            return
        notification = BalanceNotification(
            subscriber_id=subscriber_id,
            event_type=event_type,
            balance=balance,
            payload=payload,
        )
        await session.execute(
            text("SELECT pg_notify(:channel, :payload)"),
            {"channel": self.notifier.channel, "payload": self.notifier.encode(notification)},
        )

    async def _notify(
        self,
        subscriber_id: str,
        event_type: str,
        balance: Optional[Balance],
        **payload,
    ) -> None:
        if self._notifies_in_transaction:
            return
        await super()._notify(subscriber_id, event_type, balance, **payload)

    # =========================================================================
    # Reads
    # =========================================================================

    @raise_store_unavailable
    @with_db_retry
    async def get_balance(self, subscriber_id: str) -> Balance:
        async with self._db.session() as session:
            self._require_session(session)
            result = await session.execute(
                text(f"SELECT {_BALANCE_COLUMNS} FROM credit_balances WHERE subscriber_id = :sid"),
                {"sid": subscriber_id},
            )
            row = result.mappings().first()

        if row is None:
            raise SubscriberNotFoundError(subscriber_id)
        return _row_to_balance(row)

    @raise_store_unavailable
    @with_db_retry
    async def list_subscribers(self) -> List[str]:
        async with self._db.session() as session:
            self._require_session(session)
            result = await session.execute(
                text("SELECT subscriber_id FROM credit_balances ORDER BY subscriber_id")
            )
            return [row[0] for row in result.all()]

    @raise_store_unavailable
    @with_db_retry
    async def has_reference(self, reference: str) -> bool:
        async with self._db.session() as session:
            self._require_session(session)
            result = await session.execute(
                text("SELECT 1 FROM balance_adjustments WHERE reference = :ref"),
                {"ref": reference},
            )
            return result.first() is not None

    # =========================================================================
    # Mutations
    # =========================================================================

    @raise_store_unavailable
    async def ensure_subscriber(self, subscriber_id: str) -> Balance:
        now = utc_now()
        async with self._db.session() as session:
            self._require_session(session)
            result = await session.execute(
                text(f"""
                    INSERT INTO credit_balances (
                        subscriber_id, monthly_allowance, purchased_balance,
                        lifetime_used, created_at, updated_at
                    ) VALUES (
                        :sid, :allowance, :purchased, 0, :now, :now
                    )
                    ON CONFLICT (subscriber_id) DO NOTHING
                    RETURNING {_BALANCE_COLUMNS}
                """),
                {
                    "sid": subscriber_id,
                    "allowance": self.default_monthly_allowance,
                    "purchased": DEFAULT_PURCHASED_BALANCE,
                    "now": now,
                },
            )
            row = result.mappings().first()
            if row is None:
                existing = await session.execute(
                    text(f"SELECT {_BALANCE_COLUMNS} FROM credit_balances WHERE subscriber_id = :sid"),
                    {"sid": subscriber_id},
                )
                return _row_to_balance(existing.mappings().one())

        logger.info(f"Created ledger entry for {subscriber_id}")
        return _row_to_balance(row)

    @raise_store_unavailable
    async def deduct_recorded(
        self,
        subscriber_id: str,
        amount: int,
        tag: str,
        input_units: int = 0,
        output_units: int = 0,
    ) -> Tuple[Balance, UsageEvent]:
        _validate_deduct_amount(amount)
        now = utc_now()
        event = UsageEvent(
            subscriber_id=subscriber_id,
            feature_tag=tag,
            realized_cost=amount,
            input_units=input_units,
            output_units=output_units,
            settled=True,
            created_at=now,
        )

        async with self._db.session() as session:
            self._require_session(session)
            result = await session.execute(
                text(f"""
                    UPDATE credit_balances
                    SET
                        purchased_balance = purchased_balance - :amount,
                        lifetime_used = lifetime_used + :amount,
                        updated_at = :now
                    WHERE subscriber_id = :sid
                      AND purchased_balance >= :amount
                    RETURNING {_BALANCE_COLUMNS}
                """),
                {"sid": subscriber_id, "amount": amount, "now": now},
            )
            row = result.mappings().first()

            if row is None:
                current = await session.execute(
                    text("SELECT purchased_balance FROM credit_balances WHERE subscriber_id = :sid"),
                    {"sid": subscriber_id},
                )
                available = current.scalar()
                if available is None:
                    raise SubscriberNotFoundError(subscriber_id)
                raise InsufficientCreditError(
                    subscriber_id=subscriber_id,
                    requested=amount,
                    available=available,
                )

            await session.execute(
                text("""
                    INSERT INTO usage_events (
                        id, subscriber_id, feature_tag, realized_cost,
                        input_units, output_units, settled, created_at
                    ) VALUES (
                        :id, :sid, :tag, :cost, :input_units, :output_units, TRUE, :now
                    )
                """),
                {
                    "id": event.id,
                    "sid": subscriber_id,
                    "tag": tag,
                    "cost": amount,
                    "input_units": input_units,
                    "output_units": output_units,
                    "now": now,
                },
            )
            updated = _row_to_balance(row)
            notification = dict(amount=amount, feature_tag=tag, usage_event_id=event.id)
            await self._notify_in_transaction(session, subscriber_id, EVENT_BALANCE_DEDUCTED, updated, **notification)

        logger.info(f"Deducted {amount} from {subscriber_id} for {tag}: now {updated.purchased_balance}")
        await self._notify(subscriber_id, EVENT_BALANCE_DEDUCTED, updated, **notification)
        return updated, event

    @raise_store_unavailable
    async def credit(
        self,
        subscriber_id: str,
        amount: int,
        target: BalanceTarget,
        reason: str,
        actor: str,
        reference: Optional[str] = None,
    ) -> Balance:
        _validate_credit_amount(amount)
        target = BalanceTarget(target)
        now = utc_now()

        async with self._db.session() as session:
            self._require_session(session)
            current = await self._select_for_update(session, subscriber_id)
            old_value = getattr(current, target.value)

            # A NULL reference never conflicts, so unreferenced credits always apply
            inserted = await session.execute(
                text("""
                    INSERT INTO balance_adjustments (
                        id, subscriber_id, action, target, amount,
                        old_value, new_value, actor, reason, reference, created_at
                    ) VALUES (
                        :id, :sid, :action, :target, :amount,
                        :old_value, :new_value, :actor, :reason, :reference, :now
                    )
                    ON CONFLICT (reference) DO NOTHING
                    RETURNING id
                """),
                {
                    "id": str(uuid.uuid4()),
                    "sid": subscriber_id,
                    "action": AdjustmentAction.CREDIT.value,
                    "target": target.value,
                    "amount": amount,
                    "old_value": old_value,
                    "new_value": old_value + amount,
                    "actor": actor,
                    "reason": reason,
                    "reference": reference,
                    "now": now,
                },
            )
            if inserted.first() is None:
                logger.info(f"Credit reference {reference} already applied for {subscriber_id}, skipping")
                return current

            # Column name comes from the BalanceTarget enum, never from user input
            result = await session.execute(
                text(f"""
                    UPDATE credit_balances
                    SET {target.value} = {target.value} + :amount, updated_at = :now
                    WHERE subscriber_id = :sid
                    RETURNING {_BALANCE_COLUMNS}
                """),
                {"sid": subscriber_id, "amount": amount, "now": now},
            )
            updated = _row_to_balance(result.mappings().one())
            notification = dict(amount=amount, target=target.value, actor=actor)
            await self._notify_in_transaction(session, subscriber_id, EVENT_BALANCE_CREDITED, updated, **notification)

        logger.info(f"Credited {amount} to {subscriber_id}.{target.value} by {actor}")
        await self._notify(subscriber_id, EVENT_BALANCE_CREDITED, updated, **notification)
        return updated

    @raise_store_unavailable
    async def reset_monthly(self, subscriber_id: str, actor: str = BILLING_CYCLE_ACTOR) -> Balance:
        now = utc_now()
        new_value = self.default_monthly_allowance

        async with self._db.session() as session:
            self._require_session(session)
            current = await self._select_for_update(session, subscriber_id)
            result = await session.execute(
                text(f"""
                    UPDATE credit_balances
                    SET monthly_allowance = :allowance, updated_at = :now
                    WHERE subscriber_id = :sid
                    RETURNING {_BALANCE_COLUMNS}
                """),
                {"sid": subscriber_id, "allowance": new_value, "now": now},
            )
            updated = _row_to_balance(result.mappings().one())

            await session.execute(
                text("""
                    INSERT INTO balance_adjustments (
                        id, subscriber_id, action, target, amount,
                        old_value, new_value, actor, reason, created_at
                    ) VALUES (
                        :id, :sid, :action, :target, :amount,
                        :old_value, :new_value, :actor, :reason, :now
                    )
                """),
                {
                    "id": str(uuid.uuid4()),
                    "sid": subscriber_id,
                    "action": AdjustmentAction.RESET_MONTHLY.value,
                    "target": BalanceTarget.MONTHLY_ALLOWANCE.value,
                    "amount": new_value - current.monthly_allowance,
                    "old_value": current.monthly_allowance,
                    "new_value": new_value,
                    "actor": actor,
                    "reason": "Monthly allowance reset",
                    "now": now,
                },
            )
            await self._notify_in_transaction(session, subscriber_id, EVENT_MONTHLY_RESET, updated, actor=actor)

        logger.info(f"Reset monthly allowance for {subscriber_id}: {current.monthly_allowance} -> {new_value}")
        await self._notify(subscriber_id, EVENT_MONTHLY_RESET, updated, actor=actor)
        return updated

    @raise_store_unavailable
    async def record_shortfall(
        self,
        subscriber_id: str,
        tag: str,
        realized_cost: int,
        input_units: int = 0,
        output_units: int = 0,
    ) -> ReconciliationShortfallEvent:
        _validate_deduct_amount(realized_cost)
        now = utc_now()
        usage_id = str(uuid.uuid4())

        async with self._db.session() as session:
            self._require_session(session)
            current = await self._select_for_update(session, subscriber_id)
            shortfall = ReconciliationShortfallEvent(
                subscriber_id=subscriber_id,
                feature_tag=tag,
                realized_cost=realized_cost,
                available_balance=current.purchased_balance,
                created_at=now,
            )

            await session.execute(
                text("""
                    INSERT INTO usage_events (
                        id, subscriber_id, feature_tag, realized_cost,
                        input_units, output_units, settled, created_at
                    ) VALUES (
                        :id, :sid, :tag, :cost, :input_units, :output_units, FALSE, :now
                    )
                """),
                {
                    "id": usage_id,
                    "sid": subscriber_id,
                    "tag": tag,
                    "cost": realized_cost,
                    "input_units": input_units,
                    "output_units": output_units,
                    "now": now,
                },
            )
            await session.execute(
                text("""
                    INSERT INTO reconciliation_shortfalls (
                        id, subscriber_id, feature_tag, realized_cost, available_balance, created_at
                    ) VALUES (
                        :id, :sid, :tag, :cost, :available, :now
                    )
                """),
                {
                    "id": shortfall.id,
                    "sid": subscriber_id,
                    "tag": tag,
                    "cost": realized_cost,
                    "available": current.purchased_balance,
                    "now": now,
                },
            )
            notification = dict(realized_cost=realized_cost, feature_tag=tag, usage_event_id=usage_id)
            await self._notify_in_transaction(
                session, subscriber_id, EVENT_RECONCILIATION_SHORTFALL, current, **notification
            )

        logger.warning(
            f"Reconciliation shortfall for {subscriber_id} on {tag}: "
            f"cost {realized_cost}, available {current.purchased_balance}"
        )
        await self._notify(subscriber_id, EVENT_RECONCILIATION_SHORTFALL, current, **notification)
        return shortfall

    # =========================================================================
    # Audit reads
    # =========================================================================

    async def _fetch_events(self, table: str, columns: str, subscriber_id: str, limit: Optional[int]):
        query = f"""
            SELECT {columns} FROM (
                SELECT {columns} FROM {table}
                WHERE subscriber_id = :sid
                ORDER BY created_at DESC
                {"LIMIT :limit" if limit else ""}
            ) recent
            ORDER BY created_at ASC
        """
        params = {"sid": subscriber_id}
        if limit:
            params["limit"] = limit

        async with self._db.session() as session:
            self._require_session(session)
            result = await session.execute(text(query), params)
            return result.mappings().all()

    @raise_store_unavailable
    @with_db_retry
    async def get_usage_events(self, subscriber_id: str, limit: Optional[int] = None) -> List[UsageEvent]:
        rows = await self._fetch_events(
            "usage_events",
            "id, subscriber_id, feature_tag, realized_cost, input_units, output_units, settled, created_at",
            subscriber_id,
            limit,
        )
        return [UsageEvent(**dict(row)) for row in rows]

    @raise_store_unavailable
    @with_db_retry
    async def get_adjustments(
        self, subscriber_id: str, limit: Optional[int] = None
    ) -> List[AdminAdjustmentEvent]:
        rows = await self._fetch_events(
            "balance_adjustments",
            "id, subscriber_id, action, target, amount, old_value, new_value, actor, reason, reference, created_at",
            subscriber_id,
            limit,
        )
        return [AdminAdjustmentEvent(**dict(row)) for row in rows]

    @raise_store_unavailable
    @with_db_retry
    async def get_shortfalls(
        self, subscriber_id: str, limit: Optional[int] = None
    ) -> List[ReconciliationShortfallEvent]:
        rows = await self._fetch_events(
            "reconciliation_shortfalls",
            "id, subscriber_id, feature_tag, realized_cost, available_balance, created_at",
            subscriber_id,
            limit,
        )
        return [ReconciliationShortfallEvent(**dict(row)) for row in rows]

    async def close(self) -> None:
        await self._db.close()


__all__ = ["SqlLedgerStore"]
