"""
Credit metering and gating module.

Provides the balance ledger, the pre-flight usage guard, post-hoc
reconciliation of realized LLM usage, the audit trail, and the cached
real-time balance sync used by the Credit Metering Service.
"""

from .schemas import (
    AdjustmentAction,
    AdminAdjustmentEvent,
    AuditTrail,
    Balance,
    BalanceNotification,
    BalanceTarget,
    BalanceUpdate,
    FeatureUsage,
    GuardDecision,
    MeteredResult,
    MonthlyResetSummary,
    PurchaseCreditResult,
    RealizedUsage,
    ReconciliationShortfallEvent,
    RejectionReason,
    SyncState,
    UsageBreakdown,
    UsageEvent,
    get_feature_ceiling,
)
from .exceptions import (
    AdminRequiredError,
    CreditError,
    InsufficientCreditError,
    LowBalanceBlockError,
    MeteringError,
    RateLimitedError,
    RequestTooLargeError,
    StoreUnavailableError,
    SubscriberNotFoundError,
)
from .config import CreditSettings, get_credit_settings, reset_credit_settings
from .notifier import ChangeNotifier, InMemoryChangeNotifier
from .ledger_store import InMemoryLedgerStore, LedgerStore
from .rate_limiter import RateLimiter
from .retry import RetryPolicy
from .scheduler import AsyncioScheduler, ScheduledTask, Scheduler, VirtualScheduler
from .guard import UsageGuard
from .metering import UsageMeter
from .audit import AuditLog
from .balance_cache import BalanceCache
from .sync import BalanceChannel, BalanceSyncContext
from .service import (
    CreditService,
    create_credit_service,
    get_credit_service,
    reset_credit_service,
)

__all__ = [
    # Schemas
    "AdjustmentAction",
    "AdminAdjustmentEvent",
    "AuditTrail",
    "Balance",
    "BalanceNotification",
    "BalanceTarget",
    "BalanceUpdate",
    "FeatureUsage",
    "GuardDecision",
    "MeteredResult",
    "MonthlyResetSummary",
    "PurchaseCreditResult",
    "RealizedUsage",
    "ReconciliationShortfallEvent",
    "RejectionReason",
    "SyncState",
    "UsageBreakdown",
    "UsageEvent",
    "get_feature_ceiling",
    # Exceptions
    "AdminRequiredError",
    "CreditError",
    "InsufficientCreditError",
    "LowBalanceBlockError",
    "MeteringError",
    "RateLimitedError",
    "RequestTooLargeError",
    "StoreUnavailableError",
    "SubscriberNotFoundError",
    # Config
    "CreditSettings",
    "get_credit_settings",
    "reset_credit_settings",
    # Ledger
    "ChangeNotifier",
    "InMemoryChangeNotifier",
    "InMemoryLedgerStore",
    "LedgerStore",
    # Gating & Metering
    "RateLimiter",
    "RetryPolicy",
    "UsageGuard",
    "UsageMeter",
    "AuditLog",
    # Timers
    "AsyncioScheduler",
    "ScheduledTask",
    "Scheduler",
    "VirtualScheduler",
    # Cache & Sync
    "BalanceCache",
    "BalanceChannel",
    "BalanceSyncContext",
    # Service
    "CreditService",
    "create_credit_service",
    "get_credit_service",
    "reset_credit_service",
]
