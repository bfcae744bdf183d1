"""
UnmatchedPayment: деньги, которые не удалось сопоставить с арендатором.

Карантин вместо отказа: запись хранит сырой payload и причину, затем оператор
переводит её pending -> resolved | ignored ровно один раз.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rentcollect.models.base import BaseModel, JSONType, Money, enum_column


class UnmatchedPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class UnmatchedPayment(BaseModel):
    __tablename__ = "unmatched_payments"

    external_transaction_reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    raw_account_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    business_short_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    transaction_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)

    # частичные подсказки сопоставителя; определяют, кому видна запись
    landlord_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    property_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    status: Mapped[UnmatchedPaymentStatus] = mapped_column(
        enum_column(UnmatchedPaymentStatus, "unmatched_payment_status"),
        nullable=False,
        default=UnmatchedPaymentStatus.PENDING,
    )
    resolved_payment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payments.id", ondelete="SET NULL"), nullable=True
    )
    resolved_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        Index("ix_unmatched_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != UnmatchedPaymentStatus.PENDING


__all__ = ["UnmatchedPaymentStatus", "UnmatchedPayment"]
