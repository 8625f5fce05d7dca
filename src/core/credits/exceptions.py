"""
Custom exceptions for credit metering and gating.

Every error carries a ``category`` that tells callers how to react:

- ``remedy``: the subscriber can fix it (purchase more credits)
- ``policy``: the request itself is not allowed
- ``transient``: retry later
- ``fatal``: this call failed and must not be retried
"""

from typing import Optional, Dict, Any


class CreditError(Exception):
    """Base exception for credit metering errors."""

    category = "fatal"
    error_code = "credit_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to HTTP error response body."""
        return {
            "error": self.error_code,
            "category": self.category,
            "message": self.message,
            "details": self.details,
        }


class InsufficientCreditError(CreditError):
    """
    Raised when a deduction would take the purchased balance below zero,
    or when the guard sees no spendable balance.

    Contains details needed for HTTP 402 response with purchase CTA.
    """

    category = "remedy"
    error_code = "insufficient_credit"
    status_code = 402

    def __init__(self, subscriber_id: str, requested: int, available: int):
        self.subscriber_id = subscriber_id
        self.requested = requested
        self.available = available
        super().__init__(
            message=f"Insufficient credit. Requested: {requested:,} / available: {available:,}",
            details={
                "subscriber_id": subscriber_id,
                "requested": requested,
                "available": available,
            },
        )

    def to_response_dict(self) -> Dict[str, Any]:
        response = super().to_response_dict()
        response["purchase"] = {
            "message": "Purchase additional credits to continue",
            "url": "/settings/billing?purchase=credits",
        }
        return response


class LowBalanceBlockError(CreditError):
    """Raised when the spendable balance is below the security buffer."""

    category = "remedy"
    error_code = "low_balance_block"
    status_code = 402

    def __init__(self, subscriber_id: str, available: int, security_buffer: int):
        self.subscriber_id = subscriber_id
        self.available = available
        self.security_buffer = security_buffer
        super().__init__(
            message=(
                f"Balance {available:,} is below the minimum of {security_buffer:,} "
                f"required to start a request"
            ),
            details={
                "subscriber_id": subscriber_id,
                "available": available,
                "security_buffer": security_buffer,
            },
        )


class RequestTooLargeError(CreditError):
    """Raised when a feature's ceiling cost exceeds the single-request maximum."""

    category = "policy"
    error_code = "request_too_large"
    status_code = 422

    def __init__(self, feature: str, ceiling_cost: int, max_cost: int):
        self.feature = feature
        self.ceiling_cost = ceiling_cost
        self.max_cost = max_cost
        super().__init__(
            message=f"Feature '{feature}' may cost up to {ceiling_cost:,} (max {max_cost:,})",
            details={"feature": feature, "ceiling_cost": ceiling_cost, "max_cost": max_cost},
        )


class RateLimitedError(CreditError):
    """Raised when an identifier exceeds its call budget for the current window."""

    category = "transient"
    error_code = "rate_limited"
    status_code = 429

    def __init__(self, identifier: str, retry_after: int):
        self.identifier = identifier
        self.retry_after = retry_after
        super().__init__(
            message=f"Rate limit exceeded. Retry after {retry_after} seconds.",
            details={"identifier": identifier, "retry_after": retry_after},
        )


class MeteringError(CreditError):
    """Raised when realized usage cannot be determined from an operation result."""

    category = "fatal"
    error_code = "metering_error"
    status_code = 502

    def __init__(self, message: str, subscriber_id: Optional[str] = None, feature: Optional[str] = None):
        details = {}
        if subscriber_id:
            details["subscriber_id"] = subscriber_id
        if feature:
            details["feature"] = feature
        super().__init__(message=message, details=details)


class StoreUnavailableError(CreditError):
    """Raised when the ledger store cannot be reached or timed out."""

    category = "transient"
    error_code = "store_unavailable"
    status_code = 503


class SubscriberNotFoundError(CreditError):
    """Raised when no ledger row exists for a subscriber."""

    category = "policy"
    error_code = "subscriber_not_found"
    status_code = 404

    def __init__(self, subscriber_id: str):
        self.subscriber_id = subscriber_id
        super().__init__(
            message=f"No credit balance found for subscriber: {subscriber_id}",
            details={"subscriber_id": subscriber_id},
        )


class AdminRequiredError(CreditError):
    """Raised when a non-admin actor attempts an administrative adjustment."""

    category = "policy"
    error_code = "admin_required"
    status_code = 403

    def __init__(self, actor: str, action: str):
        super().__init__(
            message=f"Actor '{actor}' is not allowed to {action}",
            details={"actor": actor, "action": action},
        )


__all__ = [
    "CreditError",
    "InsufficientCreditError",
    "LowBalanceBlockError",
    "RequestTooLargeError",
    "RateLimitedError",
    "MeteringError",
    "StoreUnavailableError",
    "SubscriberNotFoundError",
    "AdminRequiredError",
]
