"""
CreditService - Facade for credit metering and gating.

This service is the single entry point used by the API layer and by jobs:
- LedgerStore: balances and the audit records written with them
- UsageGuard: pre-flight admission
- UsageMeter: metered operations and reconciliation
- BalanceCache / BalanceSyncContext: cached snapshots and live updates
- AuditLog: history and per-feature analytics
"""

import logging
from typing import Any, Optional

from src.constants import BILLING_CYCLE_ACTOR, PURCHASE_ACTOR
from src.core.patterns import ThreadSafeSingleton

from .audit import AuditLog
from .balance_cache import BalanceCache
from .config import CreditSettings, get_credit_settings
from .exceptions import AdminRequiredError, CreditError
from .guard import UsageGuard
from .ledger_store import InMemoryLedgerStore, LedgerStore
from .metering import CostedOperation, UsageMeter
from .notifier import ChangeNotifier, InMemoryChangeNotifier
from .rate_limiter import RateLimiter
from .retry import RetryPolicy
from .scheduler import AsyncioScheduler, Scheduler
from .schemas import (
    AuditTrail,
    Balance,
    BalanceTarget,
    GuardDecision,
    MeteredResult,
    MonthlyResetSummary,
    PurchaseCreditResult,
    UsageBreakdown,
)
from .sync import BalanceSyncContext, ConsumerCallback, Unsubscribe

logger = logging.getLogger(__name__)


class CreditService:
    """
    Facade for credit metering.

    Components are wired from ``settings`` unless passed in explicitly.
    The ledger store and the sync layer always share one ChangeNotifier.
    """

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[ChangeNotifier] = None,
        settings: Optional[CreditSettings] = None,
        scheduler: Optional[Scheduler] = None,
        rate_limiter: Optional[RateLimiter] = None,
        operation_policy: Optional[RetryPolicy] = None,
        reconnect_policy: Optional[RetryPolicy] = None,
        sleep=None,
    ):
        self.settings = settings or get_credit_settings()
        self.store = store
        self.notifier = notifier or store.notifier or InMemoryChangeNotifier()
        if store.notifier is None:
            store.notifier = self.notifier
        self.scheduler = scheduler or AsyncioScheduler()

        self.audit = AuditLog(store)
        self.guard = UsageGuard(
            store,
            security_buffer=self.settings.security_buffer,
            max_single_request_cost=self.settings.max_single_request_cost,
            timeout_seconds=self.settings.guard_timeout_seconds,
            audit=self.audit,
            max_cumulative_shortfall=self.settings.max_cumulative_shortfall,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=self.settings.rate_limit_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        self.meter = UsageMeter(
            store,
            self.guard,
            rate_limiter=self.rate_limiter,
            retry_policy=operation_policy or RetryPolicy(
                max_attempts=self.settings.operation_max_attempts,
                base_delay=1.0,
                max_delay=10.0,
            ),
            notifier=self.notifier,
            sleep=sleep,
        )
        self.cache = BalanceCache(
            store,
            ttl_seconds=self.settings.balance_cache_ttl_seconds,
            scheduler=self.scheduler,
        )

        self.sync = BalanceSyncContext(
            self.notifier,
            self.cache,
            scheduler=self.scheduler,
            reconnect_policy=reconnect_policy or RetryPolicy(
                max_attempts=self.settings.max_reconnect_attempts,
                base_delay=self.settings.reconnect_base_delay_seconds,
                max_delay=self.settings.reconnect_max_delay_seconds,
            ),
            debounce_seconds=self.settings.refresh_debounce_seconds,
        )
        logger.info(f"CreditService initialized with {type(store).__name__}")

    # =========================================================================
    # Admission & Metering
    # =========================================================================

    async def ensure_subscriber(self, subscriber_id: str) -> Balance:
        """Create the subscriber's ledger entry with plan defaults if missing."""
        return await self.store.ensure_subscriber(subscriber_id)

    async def check_guard(self, subscriber_id: str, feature: str, is_admin: bool = False) -> GuardDecision:
        """Authoritative admission check (reads the ledger, fails closed)."""
        return await self.guard.check(subscriber_id, feature, is_admin=is_admin)

    async def check_guard_advisory(
        self, subscriber_id: str, feature: str, is_admin: bool = False
    ) -> GuardDecision:
        """Admission hint from the cached snapshot. Never use it to admit a call."""
        snapshot = await self.cache.get(subscriber_id)
        return self.guard.check_advisory(snapshot, feature, is_admin=is_admin)

    async def perform_metered_operation(
        self,
        subscriber_id: str,
        feature: str,
        payload: Any,
        operation: CostedOperation,
        is_admin: bool = False,
    ) -> MeteredResult:
        """Run ``operation(payload)`` inside the metering envelope. See UsageMeter.run."""
        return await self.meter.run(subscriber_id, feature, payload, operation, is_admin=is_admin)

    # =========================================================================
    # Balance reads & live updates
    # =========================================================================

    async def get_balance_snapshot(self, subscriber_id: str) -> Balance:
        """Cached (stale-while-revalidate) balance."""
        return await self.cache.get(subscriber_id)

    async def get_balance(self, subscriber_id: str) -> Balance:
        """Authoritative balance straight from the ledger."""
        return await self.store.get_balance(subscriber_id)

    async def subscribe_to_balance_changes(
        self, subscriber_id: str, callback: ConsumerCallback
    ) -> Unsubscribe:
        """Attach a consumer to live balance updates; returns its unsubscribe function."""
        return await self.sync.attach(subscriber_id, callback)

    def logout(self, subscriber_id: str) -> bool:
        """Drop the subscriber's cached snapshot."""
        return self.cache.evict(subscriber_id)

    # =========================================================================
    # Administrative adjustments
    # =========================================================================

    async def adjust_balance(
        self,
        subscriber_id: str,
        target: BalanceTarget,
        amount: int,
        reason: str,
        actor: str,
        actor_is_admin: bool,
    ) -> Balance:
        """
        Credit a balance field on behalf of an administrator.

        Raises:
            AdminRequiredError: actor is not an administrator
            ValueError: amount is not positive
            SubscriberNotFoundError: unknown subscriber
        """
        if not actor_is_admin:
            logger.warning(f"Rejected balance adjustment for {subscriber_id} by non-admin {actor}")
            raise AdminRequiredError(actor=actor, action="adjust balances")

        return await self.store.credit(subscriber_id, amount, BalanceTarget(target), reason, actor)

    async def credit_purchase(self, subscriber_id: str, amount: int, order_id: str) -> PurchaseCreditResult:
        """
        Credit purchased balance for a completed order. Idempotent per order id.

        Raises:
            ValueError: order id empty or amount not positive
        """
        if not order_id:
            raise ValueError("order_id is required")

        already_applied = await self.store.has_reference(order_id)
        balance = await self.store.credit(
            subscriber_id,
            amount,
            BalanceTarget.PURCHASED_BALANCE,
            reason=f"Purchase order {order_id}",
            actor=PURCHASE_ACTOR,
            reference=order_id,
        )
        if already_applied:
            logger.info(f"Purchase order {order_id} already credited to {subscriber_id}")
        return PurchaseCreditResult(order_id=order_id, applied=not already_applied, balance=balance)

    async def reset_monthly(self, subscriber_id: str, actor: str = BILLING_CYCLE_ACTOR) -> Balance:
        return await self.store.reset_monthly(subscriber_id, actor=actor)

    async def reset_all_monthly(self, actor: str = BILLING_CYCLE_ACTOR) -> MonthlyResetSummary:
        """
        Billing-cycle job: reset every subscriber's monthly allowance.

        A failure for one subscriber is logged and counted, and the job
        continues with the rest.
        """
        subscriber_ids = await self.store.list_subscribers()
        failed = []

        for subscriber_id in subscriber_ids:
            try:
                await self.store.reset_monthly(subscriber_id, actor=actor)
            except CreditError as e:
                logger.error(f"Monthly reset failed for {subscriber_id}: {e.message}")
                failed.append(subscriber_id)

        summary = MonthlyResetSummary(
            total=len(subscriber_ids),
            reset=len(subscriber_ids) - len(failed),
            failed=len(failed),
            failed_subscribers=failed,
        )
        logger.info(f"Monthly reset complete: {summary.reset}/{summary.total} reset, {summary.failed} failed")
        return summary

    # =========================================================================
    # Audit & analytics
    # =========================================================================

    async def get_audit_trail(self, subscriber_id: str, limit: Optional[int] = None) -> AuditTrail:
        return await self.audit.get_trail(subscriber_id, limit=limit)

    async def get_usage_breakdown(self, subscriber_id: str) -> UsageBreakdown:
        return await self.audit.usage_breakdown(subscriber_id)

    async def get_cumulative_shortfall(self, subscriber_id: str) -> int:
        return await self.audit.cumulative_shortfall(subscriber_id)

    async def close(self) -> None:
        """Tear down live channels, cached snapshots, the notifier and the store."""
        self.sync.close()
        self.cache.clear()
        await self.notifier.close()
        await self.store.close()
        logger.info("CreditService closed")


def create_credit_service(settings: Optional[CreditSettings] = None) -> CreditService:
    """Build a CreditService with the ledger backend selected by settings.

    The sql backend pairs the SqlLedgerStore with LISTEN/NOTIFY so balance
    changes reach every process; the memory backend stays in-process.
    """
    settings = settings or get_credit_settings()

    if settings.ledger_backend == "sql":
        from .pg_notifier import PostgresChangeNotifier
        from .sql_ledger_store import SqlLedgerStore
        notifier: ChangeNotifier = PostgresChangeNotifier(channel=settings.notify_channel)
        store: LedgerStore = SqlLedgerStore(
            notifier=notifier,
            default_monthly_allowance=settings.default_monthly_allowance,
        )
    else:
        notifier = InMemoryChangeNotifier()
        store = InMemoryLedgerStore(
            notifier=notifier,
            default_monthly_allowance=settings.default_monthly_allowance,
        )

    return CreditService(store, notifier=notifier, settings=settings)


class CreditServiceRegistry(ThreadSafeSingleton):
    """Process-wide holder of the default CreditService."""

    def _initialize(self) -> None:
        self.service = create_credit_service()

    def _cleanup(self) -> None:
        # Sync teardown only; async store resources are closed by the app lifespan
        self.service.sync.close()
        self.service.cache.clear()


def get_credit_service() -> CreditService:
    """Get the process-wide CreditService."""
    return CreditServiceRegistry.get_instance().service


def reset_credit_service() -> None:
    """Drop the process-wide CreditService (for testing)."""
    CreditServiceRegistry.reset_instance()


__all__ = [
    "CreditService",
    "create_credit_service",
    "get_credit_service",
    "reset_credit_service",
]
