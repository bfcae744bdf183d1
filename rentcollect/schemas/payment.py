"""
Payment Pydantic schemas.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from rentcollect.models.payment import PaymentMethod, PaymentStatus
from rentcollect.schemas.base import BaseSchema, TimestampedSchema


class PaymentResponse(TimestampedSchema):
    """Schema for payment response"""

    tenant_id: int
    unit_id: int
    landlord_account_id: Optional[int]
    amount: Decimal
    unallocated_amount: Decimal
    payment_date: datetime
    due_date: Optional[date]
    period_start: date
    period_end: date
    method: PaymentMethod
    status: PaymentStatus
    external_transaction_reference: str
    correlation_id: Optional[str]
    paybill_account_number: Optional[str]
    phone_number: Optional[str]
    notes: Optional[str]
    confirmed_at: Optional[datetime]
    confirmed_by_user_id: Optional[int]


class AllocatePaymentRequest(BaseModel):
    """
    Без полей: FIFO по всем открытым счетам арендатора.
    invoice_id (+ amount): ручное распределение только для этого вызова.
    """

    invoice_id: Optional[int] = Field(None, ge=1)
    amount: Optional[Decimal] = Field(None, decimal_places=2)


class ReversePaymentRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RejectPaymentRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class AllocationLineResponse(BaseSchema):
    invoice_id: int
    amount: Decimal
    invoice_balance: Decimal
    invoice_status: str


class AllocationResultResponse(BaseSchema):
    success: bool
    code: str
    message: str
    payment_id: int
    allocations: list[AllocationLineResponse] = Field(default_factory=list)
    unallocated_amount: Decimal


class ReversalResultResponse(BaseSchema):
    payment_id: int
    reversed_allocations: int
    restored_amount: Decimal
    unallocated_amount: Decimal
    invoices: list[AllocationLineResponse] = Field(default_factory=list)


class ConfirmPaymentResponse(BaseModel):
    payment: PaymentResponse
    allocation: AllocationResultResponse


__all__ = [
    "PaymentResponse",
    "AllocatePaymentRequest",
    "ReversePaymentRequest",
    "RejectPaymentRequest",
    "AllocationLineResponse",
    "AllocationResultResponse",
    "ReversalResultResponse",
    "ConfirmPaymentResponse",
]
