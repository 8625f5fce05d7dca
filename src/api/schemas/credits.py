"""Request and response models for the credits API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from src.core.credits.schemas import (
    AdminAdjustmentEvent,
    Balance,
    BalanceTarget,
    FeatureUsage,
    RejectionReason,
    ReconciliationShortfallEvent,
    UsageEvent,
)


# =============================================================================
# Balance
# =============================================================================

class BalanceResponse(BaseModel):
    """Balance snapshot for the calling subscriber."""
    success: bool = True
    subscriber_id: str
    monthly_allowance: int
    purchased_balance: int
    lifetime_used: int
    percentage_used: float
    cached: bool = Field(default=True, description="False when read straight from the ledger")

    @classmethod
    def from_balance(cls, balance: Balance, cached: bool = True) -> "BalanceResponse":
        return cls(
            subscriber_id=balance.subscriber_id,
            monthly_allowance=balance.monthly_allowance,
            purchased_balance=balance.purchased_balance,
            lifetime_used=balance.lifetime_used,
            percentage_used=round(balance.percentage_used, 2),
            cached=cached,
        )


# =============================================================================
# Guard
# =============================================================================

class GuardRequest(BaseModel):
    feature: str = Field(..., min_length=1, example="generate_copy_short")
    advisory: bool = Field(default=False, description="Evaluate against the cached snapshot only")


class GuardResponse(BaseModel):
    success: bool = True
    approved: bool
    reason: Optional[RejectionReason] = None
    feature: str
    ceiling_cost: int
    purchased_balance: Optional[int] = None
    advisory: bool = False


# =============================================================================
# Metered operation
# =============================================================================

class MeteredRequest(BaseModel):
    """Echo operation used to exercise the metering envelope end to end."""
    feature: str = Field(..., min_length=1, example="chat_message")
    prompt: str = Field(default="", example="Write a tagline for a coffee shop")
    output_units: int = Field(..., ge=0, description="Output units the echo operation reports", example=120)
    input_units: Optional[int] = Field(default=None, ge=0)


class MeteredResponse(BaseModel):
    success: bool = True
    feature: str
    result: Any = None
    input_units: int
    output_units: int
    realized_cost: int
    shortfall: bool
    event_id: Optional[str] = None
    purchased_balance: Optional[int] = None


# =============================================================================
# Administration
# =============================================================================

class AdjustBalanceRequest(BaseModel):
    subscriber_id: str = Field(..., min_length=1)
    target: BalanceTarget = BalanceTarget.PURCHASED_BALANCE
    amount: int = Field(..., gt=0, example=5000)
    reason: str = Field(..., min_length=1, example="Goodwill credit")

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v


class ResetMonthlyRequest(BaseModel):
    subscriber_id: Optional[str] = Field(
        default=None,
        description="Reset one subscriber; omit to run the billing-cycle reset for everyone",
    )


class ResetMonthlyResponse(BaseModel):
    success: bool = True
    total: int
    reset: int
    failed: int
    failed_subscribers: List[str] = Field(default_factory=list)


class PurchaseCreditRequest(BaseModel):
    subscriber_id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1, example="ord_1042")
    amount: int = Field(..., gt=0, example=10000)


class PurchaseCreditResponse(BaseModel):
    success: bool = True
    order_id: str
    applied: bool
    purchased_balance: int


# =============================================================================
# Audit & analytics
# =============================================================================

class AuditTrailResponse(BaseModel):
    success: bool = True
    subscriber_id: str
    usage_events: List[UsageEvent] = Field(default_factory=list)
    adjustments: List[AdminAdjustmentEvent] = Field(default_factory=list)
    shortfalls: List[ReconciliationShortfallEvent] = Field(default_factory=list)


class UsageBreakdownResponse(BaseModel):
    success: bool = True
    subscriber_id: str
    features: List[FeatureUsage] = Field(default_factory=list)
    total_cost: int = 0
    cumulative_shortfall: int = 0
    percentages: Dict[str, float] = Field(default_factory=dict)
