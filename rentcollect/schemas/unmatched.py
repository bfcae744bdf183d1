"""
Unmatched payment queue schemas.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from rentcollect.models.unmatched import UnmatchedPaymentStatus
from rentcollect.schemas.base import TimestampedSchema
from rentcollect.schemas.payment import AllocationResultResponse


class UnmatchedPaymentResponse(TimestampedSchema):
    external_transaction_reference: str
    amount: Decimal
    raw_account_reference: Optional[str]
    phone_number: Optional[str]
    payer_name: Optional[str]
    business_short_code: Optional[str]
    transaction_date: Optional[datetime]
    correlation_id: Optional[str]
    reason: str
    landlord_id: Optional[int]
    property_id: Optional[int]
    status: UnmatchedPaymentStatus
    resolved_payment_id: Optional[int]
    resolved_by_user_id: Optional[int]
    resolved_at: Optional[datetime]
    resolution_notes: Optional[str]


class ResolveUnmatchedRequest(BaseModel):
    # период проверяется в сервисе: ошибка формы должна прийти как 422 с понятным текстом
    tenant_id: int = Field(..., ge=1)
    period_start: date
    period_end: date
    payment_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)
    landlord_account_id: Optional[int] = Field(None, ge=1)


class IgnoreUnmatchedRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class ResolveUnmatchedResponse(BaseModel):
    unmatched: UnmatchedPaymentResponse
    payment_id: int
    allocation: AllocationResultResponse


__all__ = [
    "UnmatchedPaymentResponse",
    "ResolveUnmatchedRequest",
    "IgnoreUnmatchedRequest",
    "ResolveUnmatchedResponse",
]
