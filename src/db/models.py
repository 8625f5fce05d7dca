"""
SQLAlchemy models for the credit ledger.

Tables:
- credit_balances: one row per subscriber (the balance of record)
- usage_events: one row per metered operation (settled or not)
- balance_adjustments: credits and monthly resets with before/after values
- reconciliation_shortfalls: usage that could not be charged after the fact
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class CreditBalanceModel(Base):
    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("purchased_balance >= 0", name="ck_credit_balances_purchased_non_negative"),
        CheckConstraint("lifetime_used >= 0", name="ck_credit_balances_lifetime_non_negative"),
    )

    subscriber_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    monthly_allowance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    purchased_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class UsageEventModel(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_subscriber_created", "subscriber_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("credit_balances.subscriber_id"), nullable=False
    )
    feature_tag: Mapped[str] = mapped_column(String(100), nullable=False)
    realized_cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    input_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    output_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class BalanceAdjustmentModel(Base):
    __tablename__ = "balance_adjustments"
    __table_args__ = (
        Index("ix_balance_adjustments_subscriber_created", "subscriber_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("credit_balances.subscriber_id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)  # credit, reset_monthly
    target: Mapped[str] = mapped_column(String(32), nullable=False)  # monthly_allowance, purchased_balance
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    old_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    new_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Unique so a purchase order can only ever be credited once
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class ReconciliationShortfallModel(Base):
    __tablename__ = "reconciliation_shortfalls"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("credit_balances.subscriber_id"), nullable=False, index=True
    )
    feature_tag: Mapped[str] = mapped_column(String(100), nullable=False)
    realized_cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    available_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


__all__ = [
    "Base",
    "CreditBalanceModel",
    "UsageEventModel",
    "BalanceAdjustmentModel",
    "ReconciliationShortfallModel",
]
