"""API routers package."""

from .credits import router as credits_router
from .health import router as health_router

__all__ = [
    "credits_router",
    "health_router",
]
