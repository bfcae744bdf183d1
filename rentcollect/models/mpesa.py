"""
MpesaTransaction: tracking record for asynchronous gateway requests (STK push, B2C).

Запись создаётся в статусе pending тем, кто инициировал запрос, и переводится
в терминальный статус ровно один раз: callback-ом или фоновой сверкой.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rentcollect.models.base import BaseModel, JSONType, Money, enum_column


class MpesaTransactionType(str, enum.Enum):
    STK_PUSH = "stk_push"
    B2C = "b2c"


class MpesaTransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_MPESA_STATUSES = (
    MpesaTransactionStatus.COMPLETED,
    MpesaTransactionStatus.FAILED,
    MpesaTransactionStatus.CANCELLED,
    MpesaTransactionStatus.TIMEOUT,
)


class MpesaTransaction(BaseModel):
    __tablename__ = "mpesa_transactions"

    transaction_type: Mapped[MpesaTransactionType] = mapped_column(
        enum_column(MpesaTransactionType, "mpesa_transaction_type"), nullable=False
    )
    # CheckoutRequestID (STK) или ConversationID (B2C)
    external_request_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    # MerchantRequestID (STK) или OriginatorConversationID (B2C)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    tenant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    business_short_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[MpesaTransactionStatus] = mapped_column(
        enum_column(MpesaTransactionStatus, "mpesa_transaction_status"),
        nullable=False,
        default=MpesaTransactionStatus.PENDING,
    )
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    transaction_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payment_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    callback_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    callback_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("ix_mpesa_tx_type_status_created", "transaction_type", "status", "created_at"),)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MPESA_STATUSES


__all__ = ["MpesaTransactionType", "MpesaTransactionStatus", "TERMINAL_MPESA_STATUSES", "MpesaTransaction"]
