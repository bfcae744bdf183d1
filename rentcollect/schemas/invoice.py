"""
Invoice late-fee schemas.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from rentcollect.models.invoice import InvoiceStatus
from rentcollect.schemas.base import BaseSchema


class LateFeeAssessmentResponse(BaseSchema):
    invoice_id: int
    due_date: date
    as_of: date
    grace_period_days: int
    days_overdue: int
    is_within_grace: bool
    penalty_days: int
    late_fee_amount: Decimal
    policy: str
    description: str


class ApplyLateFeeRequest(BaseModel):
    as_of: Optional[date] = None


class ApplyLateFeeResponse(BaseSchema):
    invoice_id: int
    late_fee_amount: Decimal
    delta: Decimal
    amount: Decimal
    balance: Decimal
    status: InvoiceStatus
    description: str


__all__ = ["LateFeeAssessmentResponse", "ApplyLateFeeRequest", "ApplyLateFeeResponse"]
