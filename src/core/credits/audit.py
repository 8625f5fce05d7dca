"""
Read side of the append-only audit trail.

The ledger store writes every balance-affecting record inside its own
transactions; this module only assembles history and analytics from it.
"""

import logging
from collections import OrderedDict
from typing import Dict, Optional

from .ledger_store import LedgerStore
from .schemas import AuditTrail, FeatureUsage, UsageBreakdown

logger = logging.getLogger(__name__)


class AuditLog:
    """Audit history and per-feature analytics for subscribers."""

    def __init__(self, store: LedgerStore):
        self._store = store

    async def get_trail(self, subscriber_id: str, limit: Optional[int] = None) -> AuditTrail:
        """
        Get chronological audit history for a subscriber.

        Args:
            subscriber_id: Subscriber to look up
            limit: Most recent N records per category (None = all)
        """
        return AuditTrail(
            subscriber_id=subscriber_id,
            usage_events=await self._store.get_usage_events(subscriber_id, limit=limit),
            adjustments=await self._store.get_adjustments(subscriber_id, limit=limit),
            shortfalls=await self._store.get_shortfalls(subscriber_id, limit=limit),
        )

    async def cumulative_shortfall(self, subscriber_id: str) -> int:
        """Total realized cost that could never be charged."""
        shortfalls = await self._store.get_shortfalls(subscriber_id)
        return sum(s.realized_cost for s in shortfalls)

    async def usage_breakdown(self, subscriber_id: str) -> UsageBreakdown:
        """
        Aggregate usage per feature tag.

        Settled events count toward ``total_cost``; unsettled ones are
        counted as shortfalls instead.
        """
        events = await self._store.get_usage_events(subscriber_id)
        features: Dict[str, FeatureUsage] = OrderedDict()

        for event in events:
            item = features.get(event.feature_tag)
            if item is None:
                item = FeatureUsage(feature_tag=event.feature_tag)
                features[event.feature_tag] = item

            item.calls += 1
            item.input_units += event.input_units
            item.output_units += event.output_units
            if event.settled:
                item.total_cost += event.realized_cost
            else:
                item.shortfalls += 1

        ordered = sorted(features.values(), key=lambda f: f.total_cost, reverse=True)
        return UsageBreakdown(
            subscriber_id=subscriber_id,
            features=ordered,
            total_cost=sum(f.total_cost for f in ordered),
            cumulative_shortfall=await self.cumulative_shortfall(subscriber_id),
        )


__all__ = ["AuditLog"]
