"""Common schema models shared across API endpoints."""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field


class HealthStatusEnum(str, Enum):
    """Health status values for service components."""
    healthy = "healthy"
    unhealthy = "unhealthy"
    degraded = "degraded"


class HealthStatus(BaseModel):
    """Service health check response."""
    status: HealthStatusEnum = Field(..., example="healthy")
    version: str = Field(..., example="1.0.0")
    timestamp: datetime
    components: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = Field(default=False, example=False)
    error: str = Field(..., example="insufficient_credit")
    category: Optional[str] = Field(default=None, example="remedy")
    message: Optional[str] = Field(default=None, example="Insufficient credit. Requested: 2,000 / available: 500")
    details: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = Field(default=None, example="a1b2c3d4")
