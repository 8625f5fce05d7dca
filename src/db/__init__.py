"""
PostgreSQL database package for the credit ledger.

Provides:
- SQLAlchemy 2.0 async ORM models
- Connection management with per-event-loop engines
- Retry helpers for transient database errors
"""

from .connection import DatabaseManager, db
from .models import (
    Base,
    CreditBalanceModel,
    UsageEventModel,
    BalanceAdjustmentModel,
    ReconciliationShortfallModel,
)

__all__ = [
    # Connection management
    "DatabaseManager",
    "db",
    # Models
    "Base",
    "CreditBalanceModel",
    "UsageEventModel",
    "BalanceAdjustmentModel",
    "ReconciliationShortfallModel",
]
