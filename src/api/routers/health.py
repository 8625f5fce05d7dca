"""Health check API endpoint."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from src.core.credits import CreditService

from ..dependencies import get_credits
from ..schemas.common import HealthStatus

logger = logging.getLogger(__name__)
router = APIRouter()

SERVICE_NAME = "Credit Metering Service"
SERVICE_VERSION = "1.0.0"


@router.get(
    "/health",
    response_model=HealthStatus,
    operation_id="getHealth",
    summary="Check service health",
)
async def health_check(service: CreditService = Depends(get_credits)):
    """
    Check the health of all service components.

    **No authentication required**: This endpoint does not require X-Subscriber-ID header.

    Returns status of:
    - Ledger store (database when the SQL backend is configured)
    - Balance sync (open real-time channels)
    """
    components: Dict[str, Dict[str, Any]] = {}
    backend = service.settings.ledger_backend

    if backend == "sql":
        try:
            from src.db.connection import db
            if await db.test_connection(timeout=5.0):
                components["ledger_store"] = {
                    "status": "healthy",
                    "backend": backend,
                    "pool": db.get_pool_stats(),
                }
            else:
                components["ledger_store"] = {
                    "status": "unhealthy",
                    "backend": backend,
                    "message": "Database connection test failed",
                }
        except Exception as e:
            logger.warning(f"Ledger health check failed: {e}")
            components["ledger_store"] = {
                "status": "unhealthy",
                "backend": backend,
                "message": str(e),
            }
    else:
        components["ledger_store"] = {"status": "healthy", "backend": backend}

    components["balance_sync"] = {
        "status": "healthy",
        "channels": len(service.sync),
        "cached_balances": len(service.cache),
    }

    unhealthy = any(c.get("status") == "unhealthy" for c in components.values())

    return HealthStatus(
        status="unhealthy" if unhealthy else "healthy",
        version=SERVICE_VERSION,
        timestamp=datetime.now(timezone.utc),
        components=components,
    )


@router.get(
    "/",
    response_model=Dict[str, str],
    operation_id="getRoot",
    summary="Get API information",
)
async def root():
    """
    Root endpoint with API information and documentation links.

    **No authentication required**: This endpoint does not require X-Subscriber-ID header.
    """
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "docs": "/docs",
        "health": "/health",
    }
