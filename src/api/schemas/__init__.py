"""API request/response schemas."""

from .common import ErrorResponse, HealthStatus, HealthStatusEnum
from .credits import (
    AdjustBalanceRequest,
    AuditTrailResponse,
    BalanceResponse,
    GuardRequest,
    GuardResponse,
    MeteredRequest,
    MeteredResponse,
    PurchaseCreditRequest,
    PurchaseCreditResponse,
    ResetMonthlyRequest,
    ResetMonthlyResponse,
    UsageBreakdownResponse,
)

__all__ = [
    "ErrorResponse",
    "HealthStatus",
    "HealthStatusEnum",
    "AdjustBalanceRequest",
    "AuditTrailResponse",
    "BalanceResponse",
    "GuardRequest",
    "GuardResponse",
    "MeteredRequest",
    "MeteredResponse",
    "PurchaseCreditRequest",
    "PurchaseCreditResponse",
    "ResetMonthlyRequest",
    "ResetMonthlyResponse",
    "UsageBreakdownResponse",
]
