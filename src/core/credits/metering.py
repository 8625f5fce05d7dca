"""
Metering and post-hoc reconciliation around a costed call.

Flow for one metered operation:
    rate limiter -> usage guard -> costed call (under RetryPolicy)
    -> extract realized usage -> deduct, or record a shortfall
    -> usage threshold alerts

No ledger lock is held while the costed call runs.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from src.constants import EVENT_USAGE_THRESHOLD, USAGE_ALERT_THRESHOLDS
from src.utils.timer_utils import Timer

from .exceptions import CreditError, InsufficientCreditError, MeteringError, RateLimitedError
from .guard import UsageGuard
from .ledger_store import LedgerStore
from .notifier import ChangeNotifier
from .rate_limiter import RateLimiter
from .retry import RetryPolicy
from .schemas import Balance, BalanceNotification, MeteredResult, RealizedUsage
from .token_extractors import extract_realized_usage

logger = logging.getLogger(__name__)

CostedOperation = Callable[[Any], Union[Any, Awaitable[Any]]]
UsageExtractor = Callable[[Any], RealizedUsage]


def crossed_thresholds(
    before: Balance,
    after: Balance,
    thresholds: Sequence[int] = USAGE_ALERT_THRESHOLDS,
) -> List[int]:
    """Usage percentages crossed by going from ``before`` to ``after``."""
    return [
        t for t in thresholds
        if before.percentage_used < t <= after.percentage_used
    ]


class UsageMeter:
    """
    Wraps costed calls with admission, metering and reconciliation.

    Args:
        store: Ledger store charged after each call
        guard: Pre-flight admission check
        rate_limiter: Optional frequency gate, checked before the guard
        retry_policy: Policy for the costed call (default: no retry)
        notifier: Where usage threshold alerts are published
        extractor: Turns an operation result into RealizedUsage
        alert_thresholds: Usage percentages that trigger an alert
    """

    def __init__(
        self,
        store: LedgerStore,
        guard: UsageGuard,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        notifier: Optional[ChangeNotifier] = None,
        extractor: UsageExtractor = extract_realized_usage,
        alert_thresholds: Sequence[int] = USAGE_ALERT_THRESHOLDS,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._store = store
        self._guard = guard
        self._rate_limiter = rate_limiter
        self._retry_policy = retry_policy or RetryPolicy.no_retry()
        self._notifier = notifier
        self._extractor = extractor
        self._alert_thresholds = tuple(alert_thresholds)
        self._sleep = sleep

    async def _invoke(self, operation: CostedOperation, payload: Any) -> Any:
        result = operation(payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _call_with_policy(self, operation: CostedOperation, payload: Any) -> Any:
        if self._sleep is not None:
            return await self._retry_policy.call(self._invoke, operation, payload, sleep=self._sleep)
        return await self._retry_policy.call(self._invoke, operation, payload)

    async def run(
        self,
        subscriber_id: str,
        feature: str,
        payload: Any,
        operation: CostedOperation,
        is_admin: bool = False,
    ) -> MeteredResult:
        """
        Perform one metered operation.

        Args:
            subscriber_id: Subscriber being charged
            feature: Feature tag (selects the ceiling cost)
            payload: Passed verbatim to ``operation``
            operation: Costed call, sync or async, returning a result that
                carries usage data
            is_admin: Admin actors bypass the guard but are still charged

        Returns:
            MeteredResult (``shortfall=True`` when the charge could not be applied)

        Raises:
            RateLimitedError: call budget for the window is spent
            InsufficientCreditError, LowBalanceBlockError, RequestTooLargeError,
            StoreUnavailableError: guard rejected the call (operation not invoked)
            MeteringError: usage could not be determined (nothing charged)

        Once the costed call has returned, ledger errors never raise: the
        result comes back with ``shortfall=True`` and the charge is recorded
        as a shortfall when the store accepts the write.
        """
        if self._rate_limiter is not None and not self._rate_limiter.allow(subscriber_id):
            raise RateLimitedError(
                identifier=subscriber_id,
                retry_after=self._rate_limiter.retry_after(subscriber_id),
            )

        decision = await self._guard.check(subscriber_id, feature, is_admin=is_admin)
        if not decision.approved:
            raise self._guard.rejection_error(subscriber_id, decision)

        with Timer() as timer:
            result = await self._call_with_policy(operation, payload)
        logger.debug(f"Costed call for {subscriber_id} on {feature} took {timer.elapsed_ms:.1f}ms")

        try:
            usage = self._extractor(result)
        except MeteringError as e:
            e.details.setdefault("subscriber_id", subscriber_id)
            e.details.setdefault("feature", feature)
            logger.error(f"Metering failed for {subscriber_id} on {feature}: {e.message}")
            raise

        cost = usage.billable_cost
        try:
            balance, usage_event = await self._store.deduct_recorded(
                subscriber_id,
                cost,
                feature,
                input_units=usage.input_units,
                output_units=usage.output_units,
            )
        except InsufficientCreditError:
            return await self._settle_shortfall(subscriber_id, feature, result, usage)
        except CreditError as e:
            logger.error(
                f"Deduction of {cost} for {subscriber_id} on {feature} failed after delivery: "
                f"{e.error_code}: {e.message}"
            )
            return await self._settle_shortfall(subscriber_id, feature, result, usage)

        await self._publish_alerts(subscriber_id, balance, cost)
        return MeteredResult(
            result=result,
            feature=feature,
            usage=usage,
            realized_cost=cost,
            balance=balance,
            shortfall=False,
            event_id=usage_event.id,
        )

    async def _settle_shortfall(
        self, subscriber_id: str, feature: str, result: Any, usage: RealizedUsage
    ) -> MeteredResult:
        """Record an uncharged call and hand back its result."""
        event_id = None
        try:
            shortfall = await self._store.record_shortfall(
                subscriber_id,
                feature,
                usage.billable_cost,
                input_units=usage.input_units,
                output_units=usage.output_units,
            )
            event_id = shortfall.id
        except CreditError as e:
            logger.error(
                f"Could not record shortfall of {usage.billable_cost} for {subscriber_id} "
                f"on {feature}: {e.message}"
            )

        return MeteredResult(
            result=result,
            feature=feature,
            usage=usage,
            realized_cost=usage.billable_cost,
            balance=None,
            shortfall=True,
            event_id=event_id,
        )

    async def _publish_alerts(self, subscriber_id: str, after: Balance, cost: int) -> None:
        if self._notifier is None or cost <= 0:
            return

        before = after.model_copy(
            update={
                "purchased_balance": after.purchased_balance + cost,
                "lifetime_used": max(0, after.lifetime_used - cost),
            }
        )
        alerts = [{"threshold_percent": t} for t in crossed_thresholds(before, after, self._alert_thresholds)]
        if before.purchased_balance > 0 and after.purchased_balance == 0:
            alerts.append({"depleted": True})

        for payload in alerts:
            logger.warning(f"Usage alert for {subscriber_id}: {payload} ({after.percentage_used:.1f}% used)")
            await self._notifier.publish(
                BalanceNotification(
                    subscriber_id=subscriber_id,
                    event_type=EVENT_USAGE_THRESHOLD,
                    balance=after,
                    payload={**payload, "percentage_used": round(after.percentage_used, 2)},
                )
            )


__all__ = [
    "CostedOperation",
    "UsageExtractor",
    "UsageMeter",
    "crossed_thresholds",
]
