"""FastAPI application factory."""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

from src.constants import DEFAULT_API_PREFIX, DOCS_URL, OPENAPI_URL, REDOC_URL
from src.utils.env_utils import parse_bool_env, parse_int_env

from .middleware import add_middleware, register_exception_handlers
from .routers import credits_router, health_router
from .routers.health import SERVICE_NAME, SERVICE_VERSION

logger = logging.getLogger(__name__)

# =============================================================================
# OpenAPI Configuration
# =============================================================================

OPENAPI_TAGS = [
    {
        "name": "Health",
        "description": "Service health checks and status endpoints",
    },
    {
        "name": "Credits",
        "description": "Credit balances, usage guard, metered operations, adjustments and audit trail",
    },
]

API_DESCRIPTION = """
Credit metering and gating in front of LLM calls.

## Flow
Rate limiter -> usage guard -> costed call -> realized usage -> ledger deduction -> audit trail.

## Capabilities
- **Balance**: cached snapshot or authoritative ledger read
- **Usage Guard**: pre-flight admission against security buffer and per-feature ceilings
- **Metering**: post-hoc charging of realized output units, with shortfall recording
- **Administration**: audited credits, purchase orders and monthly resets
- **Audit Trail**: usage events, adjustments, shortfalls and per-feature breakdown

---

## Headers
- `X-Subscriber-ID`: Subscriber identifier (required for all endpoints except /health)
- `X-Is-Admin`: `true` for administrative callers (required for adjust, purchase and reset)

---

## Rate Limits
- **10 metered requests per 60 seconds** per subscriber (configurable)
"""


# Background cleanup task reference
_cleanup_task: Optional[asyncio.Task] = None


async def _periodic_cleanup():
    """Background task sweeping expired rate limiter windows."""
    from src.core.credits import get_credit_service

    cleanup_interval = parse_int_env("CLEANUP_INTERVAL_SECONDS", 300)

    while True:
        try:
            await asyncio.sleep(cleanup_interval)
            removed = get_credit_service().rate_limiter.cleanup()
            logger.debug(f"Periodic cleanup completed ({removed} rate limit windows removed)")

        except asyncio.CancelledError:
            logger.info("Periodic cleanup task cancelled")
            break
        except Exception as e:
            logger.error(f"Unexpected error in periodic cleanup: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown events."""
    global _cleanup_task

    logger.info(f"Starting {SERVICE_NAME} API...")

    from .dependencies import initialize_credit_service
    service = await initialize_credit_service()

    if service.settings.ledger_backend == "sql":
        from src.db.connection import db
        if await db.test_connection():
            await db.create_tables()
            logger.info("Database connection pool initialized")
        else:
            logger.warning("Database unreachable at startup; ledger reads will fail closed")

    _cleanup_task = asyncio.create_task(_periodic_cleanup())
    logger.info("Started periodic cleanup task")

    yield

    # Shutdown order: cleanup task, credit service, then database
    logger.info(f"Shutting down {SERVICE_NAME} API...")

    if _cleanup_task:
        _cleanup_task.cancel()
        try:
            await _cleanup_task
        except asyncio.CancelledError:
            pass
        _cleanup_task = None
        logger.info("Periodic cleanup task stopped")

    try:
        from .dependencies import shutdown_credit_service
        await shutdown_credit_service()
        logger.info("Credit service shutdown complete")
    except Exception as e:
        logger.warning(f"Credit service shutdown error: {e}")

    try:
        from src.db.connection import db
        await db.close_all()
        logger.info("Database connections closed")
    except Exception as e:
        logger.warning(f"Database cleanup error: {e}")

    logger.info("Shutdown complete")


def custom_openapi(app: FastAPI) -> Dict[str, Any]:
    """Generate custom OpenAPI schema with identity header schemes."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=OPENAPI_TAGS,
    )

    openapi_schema["servers"] = [
        {"url": "http://localhost:8001", "description": "Local development server"},
    ]

    if "components" not in openapi_schema:
        openapi_schema["components"] = {}

    openapi_schema["components"]["securitySchemes"] = {
        "SubscriberId": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Subscriber-ID",
            "description": "Subscriber whose credits are read or charged",
        },
        "IsAdmin": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Is-Admin",
            "description": "Set to 'true' for administrative endpoints",
        },
    }

    openapi_schema["security"] = [
        {"SubscriberId": []},
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    api_prefix = os.getenv("API_PREFIX", DEFAULT_API_PREFIX)
    debug = parse_bool_env("DEBUG", False)

    app = FastAPI(
        title=SERVICE_NAME,
        description=API_DESCRIPTION,
        version=SERVICE_VERSION,
        docs_url=DOCS_URL,
        redoc_url=REDOC_URL,
        openapi_url=OPENAPI_URL,
        openapi_tags=OPENAPI_TAGS,
        lifespan=lifespan,
        debug=debug,
    )

    app.openapi = lambda: custom_openapi(app)

    cors_origins = os.getenv("CORS_ORIGINS", '["*"]')
    try:
        origins = json.loads(cors_origins)
    except json.JSONDecodeError:
        logger.warning(f"Invalid CORS_ORIGINS value {cors_origins!r}, allowing all origins")
        origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    add_middleware(app)
    register_exception_handlers(app)

    app.include_router(
        health_router,
        tags=["Health"],
    )

    app.include_router(
        credits_router,
        prefix=f"{api_prefix}/credits",
        tags=["Credits"],
    )

    return app
