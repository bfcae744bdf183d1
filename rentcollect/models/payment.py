"""
Payments & allocations (canonical ledger).

- Payment: одна запись на внешнюю транзакцию (UNIQUE external_transaction_reference).
- PaymentAllocation: неизменяемая связь платёж → счёт; удаляется только реверсом.
Инвариант: sum(allocations.amount) + unallocated_amount == amount.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rentcollect.models.base import Base, BaseModel, Money, enum_column, utc_now


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_PAID = "partially_paid"


class PaymentMethod(str, enum.Enum):
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CHEQUE = "cheque"
    OTHER = "other"


class Payment(BaseModel):
    __tablename__ = "payments"

    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False, index=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id", ondelete="RESTRICT"), nullable=False, index=True)
    landlord_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("landlord_payment_accounts.id", ondelete="SET NULL"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    unallocated_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        enum_column(PaymentMethod, "payment_method"), nullable=False, default=PaymentMethod.MPESA
    )
    status: Mapped[PaymentStatus] = mapped_column(
        enum_column(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING
    )
    external_transaction_reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    paybill_account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    confirmed_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    late_fee_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("unallocated_amount >= 0", name="unallocated_non_negative"),
        CheckConstraint("unallocated_amount <= amount", name="unallocated_le_amount"),
        Index("ix_payments_tenant_date", "tenant_id", "payment_date"),
    )


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    allocated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (CheckConstraint("amount > 0", name="amount_positive"),)


__all__ = ["PaymentStatus", "PaymentMethod", "Payment", "PaymentAllocation"]
