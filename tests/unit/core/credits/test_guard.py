"""Unit tests for the pre-flight usage guard."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.core.credits import (
    Balance,
    BalanceTarget,
    InsufficientCreditError,
    LowBalanceBlockError,
    RejectionReason,
    RequestTooLargeError,
    StoreUnavailableError,
    UsageGuard,
)

SUBSCRIBER_ID = "sub-123"


def make_balance(purchased: int, monthly: int = 100000) -> Balance:
    return Balance(subscriber_id=SUBSCRIBER_ID, monthly_allowance=monthly, purchased_balance=purchased)


@pytest.fixture
def guard(store):
    return UsageGuard(store, security_buffer=2000, max_single_request_cost=8000, timeout_seconds=0.5)


class TestEvaluate:
    """Tests for the pure admission rules."""

    @pytest.mark.parametrize("purchased", [1, 500, 1999])
    def test_low_balance_block_below_buffer(self, guard, purchased):
        decision = guard.evaluate(make_balance(purchased), "chat_message")

        assert decision.approved is False
        assert decision.reason == RejectionReason.LOW_BALANCE_BLOCK

    def test_insufficient_credit_at_zero(self, guard):
        decision = guard.evaluate(make_balance(0), "chat_message")

        assert decision.approved is False
        assert decision.reason == RejectionReason.INSUFFICIENT_CREDIT

    @pytest.mark.parametrize("purchased", [2000, 5500, 1_000_000])
    def test_approves_at_or_above_buffer(self, guard, purchased):
        decision = guard.evaluate(make_balance(purchased), "chat_message")

        assert decision.approved is True
        assert decision.reason is None

    def test_request_too_large(self, store):
        guard = UsageGuard(store, security_buffer=2000, max_single_request_cost=5000)

        decision = guard.evaluate(make_balance(50000), "generate_copy_long")

        assert decision.reason == RejectionReason.REQUEST_TOO_LARGE
        assert decision.ceiling_cost == 8000

    def test_insufficient_checked_before_too_large(self, store):
        guard = UsageGuard(store, security_buffer=2000, max_single_request_cost=5000)

        decision = guard.evaluate(make_balance(0), "generate_copy_long")

        assert decision.reason == RejectionReason.INSUFFICIENT_CREDIT

    @pytest.mark.parametrize("purchased", [0, 1, 1999, 100000])
    def test_admin_always_approved(self, guard, purchased):
        decision = guard.evaluate(make_balance(purchased), "generate_copy_long", is_admin=True)

        assert decision.approved is True

    def test_unknown_feature_uses_default_ceiling(self, guard):
        decision = guard.evaluate(make_balance(10000), "not_a_feature")

        assert decision.ceiling_cost == 2000

    def test_shortfall_cap_blocks(self, store):
        guard = UsageGuard(store, max_cumulative_shortfall=1000)

        decision = guard.evaluate(make_balance(50000), "chat_message", cumulative_shortfall=1001)

        assert decision.reason == RejectionReason.INSUFFICIENT_CREDIT

    def test_shortfall_cap_disabled_by_default(self, guard):
        decision = guard.evaluate(make_balance(50000), "chat_message", cumulative_shortfall=10**6)

        assert decision.approved is True


class TestCheck:
    """Tests for the authoritative ledger check."""

    @pytest.mark.asyncio
    async def test_top_up_scenario(self, guard, store, seed_balance):
        """500 is blocked by the 2000 buffer; after +5000 the 5500 balance is approved."""
        await seed_balance(purchased=500)

        first = await guard.check(SUBSCRIBER_ID, "chat_message")
        await store.credit(SUBSCRIBER_ID, 5000, BalanceTarget.PURCHASED_BALANCE, "top-up", "admin-1")
        second = await guard.check(SUBSCRIBER_ID, "chat_message")

        assert first.reason == RejectionReason.LOW_BALANCE_BLOCK
        assert second.approved is True
        assert second.balance.purchased_balance == 5500
        assert second.balance.monthly_allowance == 100000

    @pytest.mark.asyncio
    async def test_unknown_subscriber_rejected(self, guard):
        decision = await guard.check("missing", "chat_message")

        assert decision.approved is False
        assert decision.reason == RejectionReason.INSUFFICIENT_CREDIT

    @pytest.mark.asyncio
    async def test_store_unavailable_fails_closed(self, guard, store):
        store.get_balance = AsyncMock(side_effect=StoreUnavailableError("down"))

        decision = await guard.check(SUBSCRIBER_ID, "chat_message")

        assert decision.approved is False
        assert decision.reason == RejectionReason.STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_closed(self, guard, store):
        store.get_balance = AsyncMock(side_effect=RuntimeError("boom"))

        decision = await guard.check(SUBSCRIBER_ID, "chat_message")

        assert decision.reason == RejectionReason.STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_timeout_fails_closed(self, store):
        guard = UsageGuard(store, timeout_seconds=0.01)

        async def slow(_subscriber_id):
            await asyncio.sleep(1)

        store.get_balance = slow

        decision = await guard.check(SUBSCRIBER_ID, "chat_message")

        assert decision.reason == RejectionReason.STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_admin_bypasses_zero_balance(self, guard, seed_balance):
        await seed_balance(purchased=0)

        decision = await guard.check(SUBSCRIBER_ID, "chat_message", is_admin=True)

        assert decision.approved is True

    @pytest.mark.asyncio
    async def test_shortfall_cap_reads_audit(self, store, seed_balance):
        await seed_balance(purchased=5000)
        await store.record_shortfall(SUBSCRIBER_ID, "chat_message", 700)
        await store.record_shortfall(SUBSCRIBER_ID, "chat_message", 600)
        guard = UsageGuard(store, max_cumulative_shortfall=1000)

        decision = await guard.check(SUBSCRIBER_ID, "chat_message")

        assert decision.reason == RejectionReason.INSUFFICIENT_CREDIT


class TestAdvisoryAndErrors:
    def test_advisory_flag_set(self, guard):
        decision = guard.check_advisory(make_balance(5000), "chat_message")

        assert decision.approved is True
        assert decision.advisory is True

    @pytest.mark.asyncio
    async def test_check_or_raise_maps_reason(self, guard, seed_balance):
        await seed_balance(purchased=500)

        with pytest.raises(LowBalanceBlockError) as exc_info:
            await guard.check_or_raise(SUBSCRIBER_ID, "chat_message")

        assert exc_info.value.security_buffer == 2000
        assert exc_info.value.available == 500

    @pytest.mark.parametrize(
        "reason,error_type",
        [
            (RejectionReason.INSUFFICIENT_CREDIT, InsufficientCreditError),
            (RejectionReason.LOW_BALANCE_BLOCK, LowBalanceBlockError),
            (RejectionReason.REQUEST_TOO_LARGE, RequestTooLargeError),
            (RejectionReason.STORE_UNAVAILABLE, StoreUnavailableError),
        ],
    )
    def test_rejection_error_types(self, guard, reason, error_type):
        from src.core.credits import GuardDecision

        decision = GuardDecision.reject(reason, "chat_message", 1000, make_balance(10))

        assert isinstance(guard.rejection_error(SUBSCRIBER_ID, decision), error_type)
