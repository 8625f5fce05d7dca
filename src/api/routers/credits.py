"""Credits API endpoints.

All endpoints act on the subscriber named by the X-Subscriber-ID header,
except the administrative ones, which take the target subscriber in the
request body and require X-Is-Admin.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from src.core.credits import CreditService

from ..dependencies import SubscriberContext, get_credits, get_subscriber_context, require_admin
from ..schemas.common import ErrorResponse
from ..schemas.credits import (
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

logger = logging.getLogger(__name__)
router = APIRouter()

CREDIT_ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    402: {"model": ErrorResponse, "description": "Insufficient credit or balance below the security buffer"},
    404: {"model": ErrorResponse, "description": "Unknown subscriber"},
    503: {"model": ErrorResponse, "description": "Ledger store unavailable"},
}


def echo_operation(request: MeteredRequest) -> Dict[str, Any]:
    """Stand-in costed call: echoes the prompt and reports the requested usage."""
    input_units = request.input_units
    if input_units is None:
        input_units = len(request.prompt.split())
    return {
        "text": request.prompt,
        "input_units": input_units,
        "output_units": request.output_units,
    }


# =============================================================================
# Balance
# =============================================================================

@router.get(
    "/balance",
    response_model=BalanceResponse,
    operation_id="getBalance",
    summary="Get credit balance",
    responses=CREDIT_ERROR_RESPONSES,
)
async def get_balance(
    fresh: bool = Query(False, description="Read straight from the ledger instead of the cache"),
    context: SubscriberContext = Depends(get_subscriber_context),
    service: CreditService = Depends(get_credits),
):
    """
    Get the caller's balance snapshot.

    By default the cached snapshot is served (stale-while-revalidate).
    """
    if fresh:
        balance = await service.get_balance(context.subscriber_id)
    else:
        balance = await service.get_balance_snapshot(context.subscriber_id)
    return BalanceResponse.from_balance(balance, cached=not fresh)


@router.post(
    "/logout",
    operation_id="logout",
    summary="Drop the caller's cached balance",
)
async def logout(
    context: SubscriberContext = Depends(get_subscriber_context),
    service: CreditService = Depends(get_credits),
):
    evicted = service.logout(context.subscriber_id)
    return {"success": True, "evicted": evicted}


# =============================================================================
# Guard & Metering
# =============================================================================

@router.post(
    "/guard",
    response_model=GuardResponse,
    operation_id="checkGuard",
    summary="Check whether a feature call would be admitted",
)
async def check_guard(
    request: GuardRequest,
    context: SubscriberContext = Depends(get_subscriber_context),
    service: CreditService = Depends(get_credits),
):
    """
    Evaluate the usage guard for a feature without running anything.

    Rejections are returned as ``approved=false`` with a reason rather than
    as an error status.
    """
    if request.advisory:
        decision = await service.check_guard_advisory(
            context.subscriber_id, request.feature, is_admin=context.is_admin
        )
    else:
        decision = await service.check_guard(
            context.subscriber_id, request.feature, is_admin=context.is_admin
        )

    return GuardResponse(
        approved=decision.approved,
        reason=decision.reason,
        feature=decision.feature,
        ceiling_cost=decision.ceiling_cost,
        purchased_balance=decision.balance.purchased_balance if decision.balance else None,
        advisory=decision.advisory,
    )


@router.post(
    "/metered",
    response_model=MeteredResponse,
    operation_id="performMeteredOperation",
    summary="Run an echo operation inside the metering envelope",
    responses={
        **CREDIT_ERROR_RESPONSES,
        422: {"model": ErrorResponse, "description": "Feature ceiling exceeds the single-request maximum"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        502: {"model": ErrorResponse, "description": "Usage could not be metered"},
    },
)
async def perform_metered(
    request: MeteredRequest,
    context: SubscriberContext = Depends(get_subscriber_context),
    service: CreditService = Depends(get_credits),
):
    """
    Rate limit, guard, run the echo operation, then charge its realized usage.

    A successful response with ``shortfall=true`` means the call completed but
    could not be charged in full.
    """
    metered = await service.perform_metered_operation(
        context.subscriber_id,
        request.feature,
        request,
        echo_operation,
        is_admin=context.is_admin,
    )

    return MeteredResponse(
        feature=metered.feature,
        result=metered.result.get("text") if isinstance(metered.result, dict) else metered.result,
        input_units=metered.usage.input_units,
        output_units=metered.usage.output_units,
        realized_cost=metered.realized_cost,
        shortfall=metered.shortfall,
        event_id=metered.event_id,
        purchased_balance=metered.balance.purchased_balance if metered.balance else None,
    )


# =============================================================================
# Administration
# =============================================================================

@router.post(
    "/subscribers/{subscriber_id}",
    response_model=BalanceResponse,
    operation_id="ensureSubscriber",
    summary="Create a subscriber's ledger entry with plan defaults (admin)",
)
async def ensure_subscriber(
    subscriber_id: str,
    admin: SubscriberContext = Depends(require_admin),
    service: CreditService = Depends(get_credits),
):
    balance = await service.ensure_subscriber(subscriber_id)
    return BalanceResponse.from_balance(balance, cached=False)


@router.post(
    "/adjust",
    response_model=BalanceResponse,
    operation_id="adjustBalance",
    summary="Credit a subscriber's balance (admin)",
    responses={403: {"model": ErrorResponse, "description": "Caller is not an administrator"}},
)
async def adjust_balance(
    request: AdjustBalanceRequest,
    admin: SubscriberContext = Depends(require_admin),
    service: CreditService = Depends(get_credits),
):
    """Add credits to the monthly allowance or the purchased balance. Always audited."""
    balance = await service.adjust_balance(
        request.subscriber_id,
        request.target,
        request.amount,
        reason=request.reason,
        actor=admin.subscriber_id,
        actor_is_admin=admin.is_admin,
    )
    return BalanceResponse.from_balance(balance, cached=False)


@router.post(
    "/purchase",
    response_model=PurchaseCreditResponse,
    operation_id="creditPurchase",
    summary="Credit a completed purchase order (admin, idempotent per order)",
)
async def credit_purchase(
    request: PurchaseCreditRequest,
    admin: SubscriberContext = Depends(require_admin),
    service: CreditService = Depends(get_credits),
):
    await service.ensure_subscriber(request.subscriber_id)
    result = await service.credit_purchase(request.subscriber_id, request.amount, request.order_id)
    return PurchaseCreditResponse(
        order_id=result.order_id,
        applied=result.applied,
        purchased_balance=result.balance.purchased_balance,
    )


@router.post(
    "/reset-monthly",
    response_model=ResetMonthlyResponse,
    operation_id="resetMonthly",
    summary="Reset monthly allowances (admin)",
)
async def reset_monthly(
    request: ResetMonthlyRequest,
    admin: SubscriberContext = Depends(require_admin),
    service: CreditService = Depends(get_credits),
):
    """Reset one subscriber, or run the billing-cycle reset for all of them."""
    if request.subscriber_id:
        await service.reset_monthly(request.subscriber_id, actor=admin.subscriber_id)
        return ResetMonthlyResponse(total=1, reset=1, failed=0)

    summary = await service.reset_all_monthly(actor=admin.subscriber_id)
    return ResetMonthlyResponse(
        total=summary.total,
        reset=summary.reset,
        failed=summary.failed,
        failed_subscribers=summary.failed_subscribers,
    )


# =============================================================================
# Audit & analytics
# =============================================================================

@router.get(
    "/audit",
    response_model=AuditTrailResponse,
    operation_id="getAuditTrail",
    summary="Get the caller's audit trail",
)
async def get_audit_trail(
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Most recent entries per record type"),
    context: SubscriberContext = Depends(get_subscriber_context),
    service: CreditService = Depends(get_credits),
):
    trail = await service.get_audit_trail(context.subscriber_id, limit=limit)
    return AuditTrailResponse(
        subscriber_id=trail.subscriber_id,
        usage_events=trail.usage_events,
        adjustments=trail.adjustments,
        shortfalls=trail.shortfalls,
    )


@router.get(
    "/usage/breakdown",
    response_model=UsageBreakdownResponse,
    operation_id="getUsageBreakdown",
    summary="Get the caller's usage by feature",
)
async def get_usage_breakdown(
    context: SubscriberContext = Depends(get_subscriber_context),
    service: CreditService = Depends(get_credits),
):
    breakdown = await service.get_usage_breakdown(context.subscriber_id)

    percentages = {}
    if breakdown.total_cost > 0:
        percentages = {
            f.feature_tag: round(f.total_cost / breakdown.total_cost * 100, 2)
            for f in breakdown.features
        }

    return UsageBreakdownResponse(
        subscriber_id=breakdown.subscriber_id,
        features=breakdown.features,
        total_cost=breakdown.total_cost,
        cumulative_shortfall=breakdown.cumulative_shortfall,
        percentages=percentages,
    )
