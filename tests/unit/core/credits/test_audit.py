"""Unit tests for AuditLog history and analytics."""

import pytest

from src.core.credits import AuditLog, BalanceTarget

SUBSCRIBER_ID = "sub-123"


@pytest.fixture
def audit(store):
    return AuditLog(store)


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_trail_collects_every_record_type(self, audit, store, seed_balance):
        await seed_balance(purchased=1000)
        await store.deduct(SUBSCRIBER_ID, 100, "chat_message")
        await store.record_shortfall(SUBSCRIBER_ID, "generate_copy_long", 5000)

        trail = await audit.get_trail(SUBSCRIBER_ID)

        assert len(trail.usage_events) == 2
        assert len(trail.adjustments) == 1
        assert len(trail.shortfalls) == 1
        assert trail.adjustments[0].target == BalanceTarget.PURCHASED_BALANCE

    @pytest.mark.asyncio
    async def test_trail_is_empty_for_unknown_subscriber(self, audit):
        trail = await audit.get_trail("missing")

        assert trail.usage_events == []
        assert trail.adjustments == []
        assert trail.shortfalls == []


class TestUsageBreakdown:
    """Per-feature aggregation."""

    @pytest.mark.asyncio
    async def test_groups_by_feature_sorted_by_cost(self, audit, store, seed_balance):
        await seed_balance(purchased=10000)
        await store.deduct(SUBSCRIBER_ID, 100, "chat_message", input_units=10, output_units=100)
        await store.deduct(SUBSCRIBER_ID, 200, "chat_message", input_units=20, output_units=200)
        await store.deduct(SUBSCRIBER_ID, 1500, "generate_copy_long", output_units=1500)

        breakdown = await audit.usage_breakdown(SUBSCRIBER_ID)

        assert [f.feature_tag for f in breakdown.features] == ["generate_copy_long", "chat_message"]
        chat = breakdown.features[1]
        assert chat.calls == 2
        assert chat.total_cost == 300
        assert chat.input_units == 30
        assert breakdown.total_cost == 1800
        assert breakdown.cumulative_shortfall == 0

    @pytest.mark.asyncio
    async def test_unsettled_events_count_as_shortfalls(self, audit, store, seed_balance):
        await seed_balance(purchased=100)
        await store.record_shortfall(SUBSCRIBER_ID, "chat_message", 700)
        await store.record_shortfall(SUBSCRIBER_ID, "chat_message", 300)

        breakdown = await audit.usage_breakdown(SUBSCRIBER_ID)

        assert breakdown.total_cost == 0
        assert breakdown.features[0].shortfalls == 2
        assert breakdown.cumulative_shortfall == 1000
        assert await audit.cumulative_shortfall(SUBSCRIBER_ID) == 1000
