"""
Pydantic schemas for credit metering and gating.

Provides data models for balances, audit events, guard decisions
and metered operation results.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.constants import DEFAULT_FEATURE_COST_CEILING, FEATURE_COST_CEILINGS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_event_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Enums
# =============================================================================

class BalanceTarget(str, Enum):
    """Which balance field an adjustment applies to."""
    MONTHLY_ALLOWANCE = "monthly_allowance"
    PURCHASED_BALANCE = "purchased_balance"


class AdjustmentAction(str, Enum):
    CREDIT = "credit"
    RESET_MONTHLY = "reset_monthly"


class RejectionReason(str, Enum):
    """Why the usage guard refused a request."""
    INSUFFICIENT_CREDIT = "INSUFFICIENT_CREDIT"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    LOW_BALANCE_BLOCK = "LOW_BALANCE_BLOCK"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class SyncState(str, Enum):
    """Lifecycle of a real-time balance channel."""
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    DEGRADED = "degraded"
    CLOSED = "closed"


# =============================================================================
# Ledger Records
# =============================================================================

class Balance(BaseModel):
    """Credit balance for one subscriber."""
    model_config = ConfigDict(frozen=True)

    subscriber_id: str
    monthly_allowance: int = Field(ge=0)  # informational recurring quota
    purchased_balance: int = Field(ge=0)  # spendable, never expires
    lifetime_used: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def percentage_used(self) -> float:
        """Share of credits consumed: used / (used + still spendable), 0-100."""
        total = self.lifetime_used + self.purchased_balance
        if total <= 0:
            return 0.0
        return min(100.0, self.lifetime_used / total * 100)


class UsageEvent(BaseModel):
    """Immutable record of one metered operation."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_event_id)
    subscriber_id: str
    feature_tag: str
    realized_cost: int = Field(ge=0)
    input_units: int = 0
    output_units: int = 0
    settled: bool = True  # False when the deduction could not be applied
    created_at: datetime = Field(default_factory=utc_now)


class AdminAdjustmentEvent(BaseModel):
    """Immutable record of a credit or monthly reset."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_event_id)
    subscriber_id: str
    action: AdjustmentAction
    target: BalanceTarget
    amount: int
    old_value: int
    new_value: int
    actor: str
    reason: str = ""
    reference: Optional[str] = None  # external id, e.g. purchase order id
    created_at: datetime = Field(default_factory=utc_now)


class ReconciliationShortfallEvent(BaseModel):
    """Immutable record of usage that could not be charged after the fact."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_event_id)
    subscriber_id: str
    feature_tag: str
    realized_cost: int
    available_balance: int
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Guard & Metering
# =============================================================================

class GuardDecision(BaseModel):
    """Result of a usage guard admission check."""
    approved: bool
    reason: Optional[RejectionReason] = None
    feature: str
    ceiling_cost: int
    balance: Optional[Balance] = None
    advisory: bool = False  # True when evaluated against a cached snapshot

    @classmethod
    def approve(cls, feature: str, ceiling_cost: int, balance: Optional[Balance], advisory: bool = False):
        return cls(approved=True, feature=feature, ceiling_cost=ceiling_cost, balance=balance, advisory=advisory)

    @classmethod
    def reject(
        cls,
        reason: RejectionReason,
        feature: str,
        ceiling_cost: int,
        balance: Optional[Balance] = None,
        advisory: bool = False,
    ):
        return cls(
            approved=False,
            reason=reason,
            feature=feature,
            ceiling_cost=ceiling_cost,
            balance=balance,
            advisory=advisory,
        )


class RealizedUsage(BaseModel):
    """Usage measured after the costed call completed.

    Only output units are billable; input units are kept for analytics.
    """
    input_units: int = 0
    output_units: int = 0
    provider: Optional[str] = None
    model: Optional[str] = None

    @property
    def billable_cost(self) -> int:
        return self.output_units


class MeteredResult(BaseModel):
    """Outcome of a metered operation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    result: Any = None
    feature: str
    usage: RealizedUsage
    realized_cost: int
    balance: Optional[Balance] = None  # balance after deduction, None on shortfall
    shortfall: bool = False
    event_id: Optional[str] = None  # settled UsageEvent id, or ReconciliationShortfallEvent id


class BalanceNotification(BaseModel):
    """Change notification published to balance subscribers."""
    subscriber_id: str
    event_type: str
    balance: Optional[Balance] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class BalanceUpdate(BaseModel):
    """What a balance consumer receives from the sync layer."""
    subscriber_id: str
    kind: str  # "balance", "state" or "alert"
    balance: Optional[Balance] = None
    state: Optional[SyncState] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Analytics
# =============================================================================

class FeatureUsage(BaseModel):
    """Usage aggregated for a single feature tag."""
    feature_tag: str
    calls: int = 0
    total_cost: int = 0
    input_units: int = 0
    output_units: int = 0
    shortfalls: int = 0


class UsageBreakdown(BaseModel):
    subscriber_id: str
    features: List[FeatureUsage]
    total_cost: int
    cumulative_shortfall: int


class AuditTrail(BaseModel):
    """Chronological audit history for a subscriber."""
    subscriber_id: str
    usage_events: List[UsageEvent] = Field(default_factory=list)
    adjustments: List[AdminAdjustmentEvent] = Field(default_factory=list)
    shortfalls: List[ReconciliationShortfallEvent] = Field(default_factory=list)


class PurchaseCreditResult(BaseModel):
    """Outcome of crediting a purchase order."""
    order_id: str
    applied: bool  # False when the order was already credited
    balance: Balance


class MonthlyResetSummary(BaseModel):
    """Counts returned by the batch monthly reset."""
    total: int
    reset: int
    failed: int
    failed_subscribers: List[str] = Field(default_factory=list)


def get_feature_ceiling(feature: str) -> int:
    """Upper bound on the billable cost of one call for a feature."""
    return FEATURE_COST_CEILINGS.get(feature, DEFAULT_FEATURE_COST_CEILING)


__all__ = [
    "BalanceTarget",
    "AdjustmentAction",
    "RejectionReason",
    "SyncState",
    "Balance",
    "UsageEvent",
    "AdminAdjustmentEvent",
    "ReconciliationShortfallEvent",
    "GuardDecision",
    "RealizedUsage",
    "MeteredResult",
    "BalanceNotification",
    "BalanceUpdate",
    "FeatureUsage",
    "UsageBreakdown",
    "AuditTrail",
    "MonthlyResetSummary",
    "PurchaseCreditResult",
    "get_feature_ceiling",
    "utc_now",
]
