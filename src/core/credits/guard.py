"""
Pre-flight usage guard.

Decides, immediately before a costed call, whether it may proceed. The
authoritative check reads the ledger under a bounded timeout and fails
closed; the advisory check evaluates the same rules against a cached
snapshot and is only meant for UX hints.
"""

import asyncio
import logging
from typing import Callable, Optional

from src.constants import (
    DEFAULT_GUARD_TIMEOUT_SECONDS,
    DEFAULT_MAX_SINGLE_REQUEST_COST,
    DEFAULT_SECURITY_BUFFER,
)

from .audit import AuditLog
from .exceptions import (
    CreditError,
    InsufficientCreditError,
    LowBalanceBlockError,
    RequestTooLargeError,
    StoreUnavailableError,
    SubscriberNotFoundError,
)
from .ledger_store import LedgerStore
from .schemas import Balance, GuardDecision, RejectionReason, get_feature_ceiling

logger = logging.getLogger(__name__)


class UsageGuard:
    """
    Admission check for metered operations.

    Rules, in order:
        1. Load the current balance
        2. Admin actor -> approve (still metered afterwards)
        3. No spendable balance (or shortfall cap exceeded) -> INSUFFICIENT_CREDIT
        4. Feature ceiling above the single-request maximum -> REQUEST_TOO_LARGE
        5. Spendable balance below the security buffer -> LOW_BALANCE_BLOCK
        6. Approve
    """

    def __init__(
        self,
        store: LedgerStore,
        security_buffer: int = DEFAULT_SECURITY_BUFFER,
        max_single_request_cost: int = DEFAULT_MAX_SINGLE_REQUEST_COST,
        timeout_seconds: float = DEFAULT_GUARD_TIMEOUT_SECONDS,
        ceiling_for: Callable[[str], int] = get_feature_ceiling,
        audit: Optional[AuditLog] = None,
        max_cumulative_shortfall: int = 0,
    ):
        self._store = store
        self.security_buffer = security_buffer
        self.max_single_request_cost = max_single_request_cost
        self.timeout_seconds = timeout_seconds
        self._ceiling_for = ceiling_for
        self._audit = audit or AuditLog(store)
        self.max_cumulative_shortfall = max_cumulative_shortfall

    def evaluate(
        self,
        balance: Balance,
        feature: str,
        is_admin: bool = False,
        cumulative_shortfall: int = 0,
        advisory: bool = False,
    ) -> GuardDecision:
        """Apply the admission rules to a balance. Pure; never touches the store."""
        ceiling = self._ceiling_for(feature)

        if is_admin:
            return GuardDecision.approve(feature, ceiling, balance, advisory=advisory)

        if balance.purchased_balance <= 0:
            return GuardDecision.reject(
                RejectionReason.INSUFFICIENT_CREDIT, feature, ceiling, balance, advisory=advisory
            )

        if self.max_cumulative_shortfall and cumulative_shortfall > self.max_cumulative_shortfall:
            return GuardDecision.reject(
                RejectionReason.INSUFFICIENT_CREDIT, feature, ceiling, balance, advisory=advisory
            )

        if ceiling > self.max_single_request_cost:
            return GuardDecision.reject(
                RejectionReason.REQUEST_TOO_LARGE, feature, ceiling, balance, advisory=advisory
            )

        if balance.purchased_balance < self.security_buffer:
            return GuardDecision.reject(
                RejectionReason.LOW_BALANCE_BLOCK, feature, ceiling, balance, advisory=advisory
            )

        return GuardDecision.approve(feature, ceiling, balance, advisory=advisory)

    async def _authoritative(self, subscriber_id: str, feature: str, is_admin: bool) -> GuardDecision:
        balance = await self._store.get_balance(subscriber_id)
        shortfall = 0
        if self.max_cumulative_shortfall and not is_admin:
            shortfall = await self._audit.cumulative_shortfall(subscriber_id)
        return self.evaluate(balance, feature, is_admin=is_admin, cumulative_shortfall=shortfall)

    async def check(self, subscriber_id: str, feature: str, is_admin: bool = False) -> GuardDecision:
        """
        Authoritative admission check against the ledger.

        A timeout or store failure yields a STORE_UNAVAILABLE rejection.

        Args:
            subscriber_id: Subscriber making the request
            feature: Feature tag of the costed call
            is_admin: Whether the actor is an administrator

        Returns:
            GuardDecision
        """
        ceiling = self._ceiling_for(feature)
        try:
            decision = await asyncio.wait_for(
                self._authoritative(subscriber_id, feature, is_admin),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Guard timed out after {self.timeout_seconds}s for {subscriber_id}, rejecting"
            )
            return GuardDecision.reject(RejectionReason.STORE_UNAVAILABLE, feature, ceiling)
        except SubscriberNotFoundError:
            logger.warning(f"Guard found no ledger entry for {subscriber_id}, rejecting")
            return GuardDecision.reject(RejectionReason.INSUFFICIENT_CREDIT, feature, ceiling)
        except StoreUnavailableError as e:
            logger.warning(f"Guard could not reach ledger for {subscriber_id}: {e.message}")
            return GuardDecision.reject(RejectionReason.STORE_UNAVAILABLE, feature, ceiling)
        except Exception as e:
            logger.error(f"Guard check failed for {subscriber_id}: {type(e).__name__}: {e}")
            return GuardDecision.reject(RejectionReason.STORE_UNAVAILABLE, feature, ceiling)

        if decision.approved:
            logger.debug(f"Guard approved {feature} for {subscriber_id}")
        else:
            logger.warning(
                f"Guard rejected {feature} for {subscriber_id}: {decision.reason.value} "
                f"(balance={decision.balance.purchased_balance if decision.balance else 'n/a'})"
            )
        return decision

    def check_advisory(self, snapshot: Balance, feature: str, is_admin: bool = False) -> GuardDecision:
        """Evaluate the rules against a cached snapshot. Never authoritative."""
        return self.evaluate(snapshot, feature, is_admin=is_admin, advisory=True)

    async def check_or_raise(self, subscriber_id: str, feature: str, is_admin: bool = False) -> GuardDecision:
        """
        Authoritative check that raises on rejection.

        Raises:
            InsufficientCreditError, LowBalanceBlockError, RequestTooLargeError,
            StoreUnavailableError
        """
        decision = await self.check(subscriber_id, feature, is_admin=is_admin)
        if not decision.approved:
            raise self.rejection_error(subscriber_id, decision)
        return decision

    def rejection_error(self, subscriber_id: str, decision: GuardDecision) -> CreditError:
        """Map a rejected decision to the matching exception."""
        available = decision.balance.purchased_balance if decision.balance else 0
        reason = decision.reason

        if reason == RejectionReason.INSUFFICIENT_CREDIT:
            return InsufficientCreditError(
                subscriber_id=subscriber_id,
                requested=decision.ceiling_cost,
                available=available,
            )
        if reason == RejectionReason.LOW_BALANCE_BLOCK:
            return LowBalanceBlockError(
                subscriber_id=subscriber_id,
                available=available,
                security_buffer=self.security_buffer,
            )
        if reason == RejectionReason.REQUEST_TOO_LARGE:
            return RequestTooLargeError(
                feature=decision.feature,
                ceiling_cost=decision.ceiling_cost,
                max_cost=self.max_single_request_cost,
            )
        return StoreUnavailableError(
            message="Ledger store unavailable, request rejected",
            details={"subscriber_id": subscriber_id},
        )


__all__ = ["UsageGuard"]
