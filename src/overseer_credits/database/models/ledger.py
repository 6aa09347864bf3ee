"""Ledger models: CreditAccount, CreditAuditEntry."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BigIntegerPK, Base, CreditAmount, utcnow


class CreditAccount(Base):
    """Per-user credit balance.

    Available balance is ``credits_added - credits_used - pre_authorized_credits``
    and never goes negative.
    """

    __tablename__ = "credit_accounts"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Lifetime grants and purchases, reset only by the monthly rollover
    credits_added: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal(0), nullable=False)
    # Consumption
    credits_used: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal(0), nullable=False)
    # Temporary holds for in-flight batch jobs
    pre_authorized_credits: Mapped[Decimal] = mapped_column(
        CreditAmount,
        default=Decimal(0),
        nullable=False,
    )
    plan_tier: Mapped[str] = mapped_column(String(32), default="free", nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def available(self) -> Decimal:
        return self.credits_added - self.credits_used - self.pre_authorized_credits


class CreditAuditEntry(Base):
    """Append-only record of one balance-affecting operation.

    Rows are inserted and never updated or deleted.
    """

    __tablename__ = "credit_audit_log"
    __table_args__ = (Index("ix_credit_audit_log_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # usage, add, pre_authorize, release_pre_authorize, refund
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(CreditAmount, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(CreditAmount, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(CreditAmount, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)
