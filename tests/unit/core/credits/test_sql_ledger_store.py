"""Unit tests for SqlLedgerStore against a mocked database session."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from src.constants import EVENT_BALANCE_DEDUCTED, EVENT_MONTHLY_RESET
from src.core.credits import (
    BalanceTarget,
    InsufficientCreditError,
    StoreUnavailableError,
    SubscriberNotFoundError,
)
from src.core.credits.pg_notifier import PostgresChangeNotifier
from src.core.credits.schemas import BalanceNotification
from src.core.credits.sql_ledger_store import SqlLedgerStore

SUBSCRIBER_ID = "sub-123"


def balance_row(purchased=1000, allowance=100000, lifetime=0):
    return {
        "subscriber_id": SUBSCRIBER_ID,
        "monthly_allowance": allowance,
        "purchased_balance": purchased,
        "lifetime_used": lifetime,
        "updated_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }


def result_with_row(row):
    """Mock execute() result whose mappings().first()/one() return ``row``."""
    result = MagicMock()
    result.mappings.return_value.first.return_value = row
    result.mappings.return_value.one.return_value = row
    result.first.return_value = row
    return result


def result_with_scalar(value):
    result = MagicMock()
    result.mappings.return_value.first.return_value = None
    result.scalar.return_value = value
    return result


@pytest.fixture
def mock_db_session():
    """Create mock database session."""
    return AsyncMock()


@pytest.fixture
def mock_database(mock_db_session):
    database = MagicMock()
    database.session.return_value.__aenter__.return_value = mock_db_session
    database.close = AsyncMock()
    return database


@pytest.fixture
def sql_store(mock_database, notifier):
    return SqlLedgerStore(database=mock_database, notifier=notifier, default_monthly_allowance=100000)


class TestGetBalance:
    @pytest.mark.asyncio
    async def test_returns_balance(self, sql_store, mock_db_session):
        mock_db_session.execute.return_value = result_with_row(balance_row(purchased=700))

        balance = await sql_store.get_balance(SUBSCRIBER_ID)

        assert balance.purchased_balance == 700
        assert balance.monthly_allowance == 100000

    @pytest.mark.asyncio
    async def test_missing_row_raises_not_found(self, sql_store, mock_db_session):
        mock_db_session.execute.return_value = result_with_row(None)

        with pytest.raises(SubscriberNotFoundError):
            await sql_store.get_balance(SUBSCRIBER_ID)

    @pytest.mark.asyncio
    async def test_database_disabled_is_unavailable(self, sql_store, mock_database):
        mock_database.session.return_value.__aenter__.return_value = None

        with pytest.raises(StoreUnavailableError):
            await sql_store.get_balance(SUBSCRIBER_ID)


class TestDeduct:
    """Conditional-update deductions."""

    @pytest.mark.asyncio
    async def test_success_updates_and_records(self, sql_store, mock_db_session, notifier):
        received = []
        await notifier.subscribe(SUBSCRIBER_ID, received.append)
        mock_db_session.execute.side_effect = [
            result_with_row(balance_row(purchased=700, lifetime=300)),
            MagicMock(),
        ]

        balance, event = await sql_store.deduct_recorded(SUBSCRIBER_ID, 300, "chat_message", output_units=300)

        assert balance.purchased_balance == 700
        assert event.realized_cost == 300
        assert event.settled is True
        assert mock_db_session.execute.await_count == 2
        update_sql = str(mock_db_session.execute.await_args_list[0].args[0])
        assert "purchased_balance >= :amount" in update_sql
        insert_params = mock_db_session.execute.await_args_list[1].args[1]
        assert insert_params["id"] == event.id
        assert [n.event_type for n in received] == [EVENT_BALANCE_DEDUCTED]

    @pytest.mark.asyncio
    async def test_insufficient_balance_raises_without_insert(self, sql_store, mock_db_session, notifier):
        received = []
        await notifier.subscribe(SUBSCRIBER_ID, received.append)
        mock_db_session.execute.side_effect = [result_with_row(None), result_with_scalar(100)]

        with pytest.raises(InsufficientCreditError) as exc_info:
            await sql_store.deduct(SUBSCRIBER_ID, 300, "chat_message")

        assert exc_info.value.available == 100
        assert mock_db_session.execute.await_count == 2
        assert received == []

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, sql_store, mock_db_session):
        mock_db_session.execute.side_effect = [result_with_row(None), result_with_scalar(None)]

        with pytest.raises(SubscriberNotFoundError):
            await sql_store.deduct(SUBSCRIBER_ID, 300, "chat_message")

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self, sql_store, mock_db_session):
        mock_db_session.execute.side_effect = OperationalError("UPDATE", {}, Exception("connection refused"))

        with pytest.raises(StoreUnavailableError):
            await sql_store.deduct(SUBSCRIBER_ID, 300, "chat_message")

    @pytest.mark.asyncio
    async def test_negative_amount_rejected_before_query(self, sql_store, mock_db_session):
        with pytest.raises(ValueError):
            await sql_store.deduct(SUBSCRIBER_ID, -1, "chat_message")

        mock_db_session.execute.assert_not_awaited()


class TestCredit:
    @pytest.mark.asyncio
    async def test_credit_updates_and_audits(self, sql_store, mock_db_session):
        mock_db_session.execute.side_effect = [
            result_with_row(balance_row(purchased=500)),
            result_with_row(("adj-1",)),
            result_with_row(balance_row(purchased=5500)),
        ]

        balance = await sql_store.credit(SUBSCRIBER_ID, 5000, BalanceTarget.PURCHASED_BALANCE, "top-up", "admin-1")

        assert balance.purchased_balance == 5500
        audit_sql = str(mock_db_session.execute.await_args_list[1].args[0])
        assert "ON CONFLICT (reference) DO NOTHING" in audit_sql
        audit_params = mock_db_session.execute.await_args_list[1].args[1]
        assert audit_params["old_value"] == 500
        assert audit_params["new_value"] == 5500
        assert audit_params["actor"] == "admin-1"

    @pytest.mark.asyncio
    async def test_duplicate_reference_is_noop(self, sql_store, mock_db_session, notifier):
        received = []
        await notifier.subscribe(SUBSCRIBER_ID, received.append)
        mock_db_session.execute.side_effect = [
            result_with_row(balance_row(purchased=500)),
            result_with_row(None),
        ]

        balance = await sql_store.credit(
            SUBSCRIBER_ID, 5000, BalanceTarget.PURCHASED_BALANCE, "order", "billing", reference="ord-1"
        )

        assert balance.purchased_balance == 500
        assert mock_db_session.execute.await_count == 2
        assert mock_db_session.execute.await_args_list[1].args[1]["reference"] == "ord-1"
        assert received == []

    @pytest.mark.asyncio
    async def test_credit_unknown_subscriber(self, sql_store, mock_db_session):
        mock_db_session.execute.return_value = result_with_row(None)

        with pytest.raises(SubscriberNotFoundError):
            await sql_store.credit(SUBSCRIBER_ID, 10, BalanceTarget.PURCHASED_BALANCE, "x", "admin-1")


class TestRecordShortfall:
    @pytest.mark.asyncio
    async def test_records_available_balance(self, sql_store, mock_db_session):
        mock_db_session.execute.side_effect = [
            result_with_row(balance_row(purchased=250)),
            MagicMock(),
            MagicMock(),
        ]

        shortfall = await sql_store.record_shortfall(SUBSCRIBER_ID, "chat_message", 900)

        assert shortfall.available_balance == 250
        assert shortfall.realized_cost == 900
        usage_sql = str(mock_db_session.execute.await_args_list[1].args[0])
        assert "FALSE" in usage_sql


class TestListenNotifyDelivery:
    """Mutations publish through pg_notify inside their own transaction."""

    @pytest.fixture
    def pg_notifier(self):
        return PostgresChangeNotifier(dsn="postgresql://localhost/credit_ledger", connect=AsyncMock())

    @pytest.fixture
    def pg_store(self, mock_database, pg_notifier):
        return SqlLedgerStore(database=mock_database, notifier=pg_notifier)

    @pytest.mark.asyncio
    async def test_deduct_notifies_before_commit(self, pg_store, pg_notifier, mock_db_session):
        mock_db_session.execute.side_effect = [
            result_with_row(balance_row(purchased=700, lifetime=300)),
            MagicMock(),
            MagicMock(),
        ]

        await pg_store.deduct(SUBSCRIBER_ID, 300, "chat_message")

        assert mock_db_session.execute.await_count == 3
        notify = mock_db_session.execute.await_args_list[2]
        assert "pg_notify" in str(notify.args[0])
        assert notify.args[1]["channel"] == pg_notifier.channel
        sent = BalanceNotification.model_validate_json(notify.args[1]["payload"])
        assert sent.subscriber_id == SUBSCRIBER_ID
        assert sent.event_type == EVENT_BALANCE_DEDUCTED
        assert sent.balance.purchased_balance == 700
        pg_notifier._connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_balance_sends_nothing(self, pg_store, mock_db_session):
        mock_db_session.execute.side_effect = [result_with_row(None), result_with_scalar(100)]

        with pytest.raises(InsufficientCreditError):
            await pg_store.deduct(SUBSCRIBER_ID, 300, "chat_message")

        sql = [str(c.args[0]) for c in mock_db_session.execute.await_args_list]
        assert not any("pg_notify" in s for s in sql)

    @pytest.mark.asyncio
    async def test_reset_monthly_notifies(self, pg_store, mock_db_session):
        mock_db_session.execute.side_effect = [
            result_with_row(balance_row(allowance=4000)),
            result_with_row(balance_row(allowance=100000)),
            MagicMock(),
            MagicMock(),
        ]

        await pg_store.reset_monthly(SUBSCRIBER_ID)

        notify = mock_db_session.execute.await_args_list[3]
        sent = BalanceNotification.model_validate_json(notify.args[1]["payload"])
        assert sent.event_type == EVENT_MONTHLY_RESET
        assert sent.balance.monthly_allowance == 100000


class TestClose:
    @pytest.mark.asyncio
    async def test_close_disposes_engine(self, sql_store, mock_database):
        await sql_store.close()

        mock_database.close.assert_awaited_once()
