"""Shared dependencies for API routes.

Identity: the caller's subscriber id and admin flag are read from request
headers and trusted verbatim. Authentication happens upstream.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException

from src.core.credits import AdminRequiredError, CreditService, get_credit_service
from src.utils.env_utils import parse_bool_value

logger = logging.getLogger(__name__)


# =============================================================================
# Subscriber Context
# =============================================================================

@dataclass
class SubscriberContext:
    """Identity of the caller for credit operations."""
    subscriber_id: str
    is_admin: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "is_admin": self.is_admin,
        }


async def get_subscriber_id(
    x_subscriber_id: Optional[str] = Header(None, alias="X-Subscriber-ID")
) -> str:
    """
    Extract the subscriber id from the request header.

    Raises:
        HTTPException 400: If header is missing or blank
    """
    if not x_subscriber_id or not x_subscriber_id.strip():
        raise HTTPException(
            status_code=400,
            detail="X-Subscriber-ID header required"
        )
    return x_subscriber_id.strip()


async def get_is_admin(
    x_is_admin: Optional[str] = Header(None, alias="X-Is-Admin")
) -> bool:
    return parse_bool_value(x_is_admin, default=False)


async def get_subscriber_context(
    subscriber_id: str = Depends(get_subscriber_id),
    is_admin: bool = Depends(get_is_admin),
) -> SubscriberContext:
    return SubscriberContext(subscriber_id=subscriber_id, is_admin=is_admin)


async def require_admin(
    context: SubscriberContext = Depends(get_subscriber_context),
) -> SubscriberContext:
    """
    Require an administrator caller.

    Raises:
        AdminRequiredError: rendered as HTTP 403 by the credit error handler
    """
    if not context.is_admin:
        logger.warning(f"Admin endpoint called by non-admin {context.subscriber_id}")
        raise AdminRequiredError(actor=context.subscriber_id, action="call administrative endpoints")
    return context


# =============================================================================
# Service Dependencies
# =============================================================================

def get_credits() -> CreditService:
    """Get the process-wide CreditService (overridable in tests)."""
    return get_credit_service()


async def initialize_credit_service() -> CreditService:
    """
    Build the CreditService at startup (eager initialization).

    Raises:
        Exception: If the service fails to initialize (fail-fast behavior)
    """
    service = get_credit_service()
    logger.info(f"Credit service ready (backend={service.settings.ledger_backend})")
    return service


async def shutdown_credit_service() -> None:
    """Close the CreditService and drop the process-wide instance."""
    from src.core.credits.service import CreditServiceRegistry

    if not CreditServiceRegistry.has_instance():
        return
    service = get_credit_service()
    try:
        await service.close()
    finally:
        CreditServiceRegistry.reset_instance()
