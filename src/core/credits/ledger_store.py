"""
Ledger store: the single source of truth for subscriber balances.

Every mutation is atomic per subscriber, writes its audit record in the
same critical section, and publishes a change notification once committed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from src.constants import (
    BILLING_CYCLE_ACTOR,
    DEFAULT_MONTHLY_ALLOWANCE,
    DEFAULT_PURCHASED_BALANCE,
    EVENT_BALANCE_CREDITED,
    EVENT_BALANCE_DEDUCTED,
    EVENT_MONTHLY_RESET,
    EVENT_RECONCILIATION_SHORTFALL,
)

from .exceptions import InsufficientCreditError, SubscriberNotFoundError
from .notifier import ChangeNotifier
from .schemas import (
    AdjustmentAction,
    AdminAdjustmentEvent,
    Balance,
    BalanceNotification,
    BalanceTarget,
    ReconciliationShortfallEvent,
    UsageEvent,
    utc_now,
)

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """
    Abstract ledger store.

    Implementations guarantee:
    - mutations for one subscriber are serialized
    - reads observe the latest completed mutation
    - a failed mutation leaves balance and audit trail untouched
    """

    def __init__(
        self,
        notifier: Optional[ChangeNotifier] = None,
        default_monthly_allowance: int = DEFAULT_MONTHLY_ALLOWANCE,
    ):
        self.notifier = notifier
        self.default_monthly_allowance = default_monthly_allowance

    # =========================================================================
    # Balance operations
    # =========================================================================

    @abstractmethod
    async def get_balance(self, subscriber_id: str) -> Balance:
        """Get the current balance. Raises SubscriberNotFoundError."""
        ...

    @abstractmethod
    async def ensure_subscriber(self, subscriber_id: str) -> Balance:
        """Create the ledger row with plan defaults if it does not exist."""
        ...

    @abstractmethod
    async def list_subscribers(self) -> List[str]:
        ...

    async def deduct(
        self,
        subscriber_id: str,
        amount: int,
        tag: str,
        input_units: int = 0,
        output_units: int = 0,
    ) -> Balance:
        """
        Subtract realized cost from the purchased balance.

        Raises:
            ValueError: amount is negative
            InsufficientCreditError: amount exceeds purchased balance (no change made)
            SubscriberNotFoundError: unknown subscriber
        """
        balance, _ = await self.deduct_recorded(
            subscriber_id, amount, tag, input_units=input_units, output_units=output_units
        )
        return balance

    @abstractmethod
    async def deduct_recorded(
        self,
        subscriber_id: str,
        amount: int,
        tag: str,
        input_units: int = 0,
        output_units: int = 0,
    ) -> Tuple[Balance, UsageEvent]:
        """Same as deduct, also returning the settled UsageEvent written."""
        ...

    @abstractmethod
    async def credit(
        self,
        subscriber_id: str,
        amount: int,
        target: BalanceTarget,
        reason: str,
        actor: str,
        reference: Optional[str] = None,
    ) -> Balance:
        """
        Add credits to one balance field and write an adjustment record.

        A credit carrying a ``reference`` that was already applied is a no-op.

        Raises:
            ValueError: amount is not positive
            SubscriberNotFoundError: unknown subscriber
        """
        ...

    @abstractmethod
    async def reset_monthly(self, subscriber_id: str, actor: str = BILLING_CYCLE_ACTOR) -> Balance:
        """Restore the monthly allowance to the plan default."""
        ...

    @abstractmethod
    async def record_shortfall(
        self,
        subscriber_id: str,
        tag: str,
        realized_cost: int,
        input_units: int = 0,
        output_units: int = 0,
    ) -> ReconciliationShortfallEvent:
        """Record usage that could not be charged (unsettled event + shortfall)."""
        ...

    @abstractmethod
    async def has_reference(self, reference: str) -> bool:
        """Whether a credit with this external reference was already applied."""
        ...

    # =========================================================================
    # Audit reads
    # =========================================================================

    @abstractmethod
    async def get_usage_events(self, subscriber_id: str, limit: Optional[int] = None) -> List[UsageEvent]:
        ...

    @abstractmethod
    async def get_adjustments(
        self, subscriber_id: str, limit: Optional[int] = None
    ) -> List[AdminAdjustmentEvent]:
        ...

    @abstractmethod
    async def get_shortfalls(
        self, subscriber_id: str, limit: Optional[int] = None
    ) -> List[ReconciliationShortfallEvent]:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _notify(
        self,
        subscriber_id: str,
        event_type: str,
        balance: Optional[Balance],
        **payload,
    ) -> None:
        if self.notifier is None:
            return
        await self.notifier.publish(
            BalanceNotification(
                subscriber_id=subscriber_id,
                event_type=event_type,
                balance=balance,
                payload=payload,
            )
        )


def _validate_deduct_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValueError(f"Deduct amount must be an integer, got {amount!r}")
    if amount < 0:
        raise ValueError(f"Deduct amount must be >= 0, got {amount}")


def _validate_credit_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValueError(f"Credit amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise ValueError(f"Credit amount must be > 0, got {amount}")


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger.

    Uses one asyncio.Lock per subscriber so that mutations for different
    subscribers proceed independently while those for the same subscriber
    are serialized.
    """

    def __init__(
        self,
        notifier: Optional[ChangeNotifier] = None,
        default_monthly_allowance: int = DEFAULT_MONTHLY_ALLOWANCE,
    ):
        super().__init__(notifier=notifier, default_monthly_allowance=default_monthly_allowance)
        self._balances: Dict[str, Balance] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._usage_events: Dict[str, List[UsageEvent]] = defaultdict(list)
        self._adjustments: Dict[str, List[AdminAdjustmentEvent]] = defaultdict(list)
        self._shortfalls: Dict[str, List[ReconciliationShortfallEvent]] = defaultdict(list)
        self._references: Set[str] = set()

    def _lock_for(self, subscriber_id: str) -> asyncio.Lock:
        lock = self._locks.get(subscriber_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subscriber_id] = lock
        return lock

    def _require(self, subscriber_id: str) -> Balance:
        balance = self._balances.get(subscriber_id)
        if balance is None:
            raise SubscriberNotFoundError(subscriber_id)
        return balance

    async def get_balance(self, subscriber_id: str) -> Balance:
        return self._require(subscriber_id)

    async def ensure_subscriber(self, subscriber_id: str) -> Balance:
        async with self._lock_for(subscriber_id):
            balance = self._balances.get(subscriber_id)
            if balance is not None:
                return balance
            balance = Balance(
                subscriber_id=subscriber_id,
                monthly_allowance=self.default_monthly_allowance,
                purchased_balance=DEFAULT_PURCHASED_BALANCE,
                lifetime_used=0,
            )
            self._balances[subscriber_id] = balance

        logger.info(f"Created ledger entry for {subscriber_id}")
        return balance

    async def list_subscribers(self) -> List[str]:
        return sorted(self._balances)

    async def deduct_recorded(
        self,
        subscriber_id: str,
        amount: int,
        tag: str,
        input_units: int = 0,
        output_units: int = 0,
    ) -> Tuple[Balance, UsageEvent]:
        _validate_deduct_amount(amount)

        async with self._lock_for(subscriber_id):
            current = self._require(subscriber_id)
            if amount > current.purchased_balance:
                raise InsufficientCreditError(
                    subscriber_id=subscriber_id,
                    requested=amount,
                    available=current.purchased_balance,
                )

            updated = current.model_copy(
                update={
                    "purchased_balance": current.purchased_balance - amount,
                    "lifetime_used": current.lifetime_used + amount,
                    "updated_at": utc_now(),
                }
            )
            event = UsageEvent(
                subscriber_id=subscriber_id,
                feature_tag=tag,
                realized_cost=amount,
                input_units=input_units,
                output_units=output_units,
                settled=True,
            )
            self._balances[subscriber_id] = updated
            self._usage_events[subscriber_id].append(event)

        logger.info(
            f"Deducted {amount} from {subscriber_id} for {tag}: "
            f"{current.purchased_balance} -> {updated.purchased_balance}"
        )
        await self._notify(
            subscriber_id,
            EVENT_BALANCE_DEDUCTED,
            updated,
            amount=amount,
            feature_tag=tag,
            usage_event_id=event.id,
        )
        return updated, event

    async def credit(
        self,
        subscriber_id: str,
        amount: int,
        target: BalanceTarget,
        reason: str,
        actor: str,
        reference: Optional[str] = None,
    ) -> Balance:
        _validate_credit_amount(amount)
        target = BalanceTarget(target)

        async with self._lock_for(subscriber_id):
            current = self._require(subscriber_id)
            if reference is not None and reference in self._references:
                logger.info(f"Credit reference {reference} already applied for {subscriber_id}, skipping")
                return current

            old_value = getattr(current, target.value)
            new_value = old_value + amount
            updated = current.model_copy(update={target.value: new_value, "updated_at": utc_now()})
            adjustment = AdminAdjustmentEvent(
                subscriber_id=subscriber_id,
                action=AdjustmentAction.CREDIT,
                target=target,
                amount=amount,
                old_value=old_value,
                new_value=new_value,
                actor=actor,
                reason=reason,
                reference=reference,
            )
            self._balances[subscriber_id] = updated
            self._adjustments[subscriber_id].append(adjustment)
            if reference is not None:
                self._references.add(reference)

        logger.info(
            f"Credited {amount} to {subscriber_id}.{target.value} by {actor}: {old_value} -> {new_value}"
        )
        await self._notify(
            subscriber_id,
            EVENT_BALANCE_CREDITED,
            updated,
            amount=amount,
            target=target.value,
            actor=actor,
        )
        return updated

    async def reset_monthly(self, subscriber_id: str, actor: str = BILLING_CYCLE_ACTOR) -> Balance:
        async with self._lock_for(subscriber_id):
            current = self._require(subscriber_id)
            old_value = current.monthly_allowance
            new_value = self.default_monthly_allowance
            updated = current.model_copy(update={"monthly_allowance": new_value, "updated_at": utc_now()})
            adjustment = AdminAdjustmentEvent(
                subscriber_id=subscriber_id,
                action=AdjustmentAction.RESET_MONTHLY,
                target=BalanceTarget.MONTHLY_ALLOWANCE,
                amount=new_value - old_value,
                old_value=old_value,
                new_value=new_value,
                actor=actor,
                reason="Monthly allowance reset",
            )
            self._balances[subscriber_id] = updated
            self._adjustments[subscriber_id].append(adjustment)

        logger.info(f"Reset monthly allowance for {subscriber_id}: {old_value} -> {new_value}")
        await self._notify(subscriber_id, EVENT_MONTHLY_RESET, updated, actor=actor)
        return updated

    async def record_shortfall(
        self,
        subscriber_id: str,
        tag: str,
        realized_cost: int,
        input_units: int = 0,
        output_units: int = 0,
    ) -> ReconciliationShortfallEvent:
        _validate_deduct_amount(realized_cost)

        async with self._lock_for(subscriber_id):
            current = self._require(subscriber_id)
            usage = UsageEvent(
                subscriber_id=subscriber_id,
                feature_tag=tag,
                realized_cost=realized_cost,
                input_units=input_units,
                output_units=output_units,
                settled=False,
            )
            shortfall = ReconciliationShortfallEvent(
                subscriber_id=subscriber_id,
                feature_tag=tag,
                realized_cost=realized_cost,
                available_balance=current.purchased_balance,
            )
            self._usage_events[subscriber_id].append(usage)
            self._shortfalls[subscriber_id].append(shortfall)

        logger.warning(
            f"Reconciliation shortfall for {subscriber_id} on {tag}: "
            f"cost {realized_cost}, available {shortfall.available_balance}"
        )
        await self._notify(
            subscriber_id,
            EVENT_RECONCILIATION_SHORTFALL,
            current,
            realized_cost=realized_cost,
            feature_tag=tag,
            usage_event_id=usage.id,
        )
        return shortfall

    async def has_reference(self, reference: str) -> bool:
        return reference in self._references

    async def get_usage_events(self, subscriber_id: str, limit: Optional[int] = None) -> List[UsageEvent]:
        events = list(self._usage_events.get(subscriber_id, []))
        return events[-limit:] if limit else events

    async def get_adjustments(
        self, subscriber_id: str, limit: Optional[int] = None
    ) -> List[AdminAdjustmentEvent]:
        events = list(self._adjustments.get(subscriber_id, []))
        return events[-limit:] if limit else events

    async def get_shortfalls(
        self, subscriber_id: str, limit: Optional[int] = None
    ) -> List[ReconciliationShortfallEvent]:
        events = list(self._shortfalls.get(subscriber_id, []))
        return events[-limit:] if limit else events


__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
]
