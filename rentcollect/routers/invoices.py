# rentcollect/routers/invoices.py
"""
Invoices router: оценка и применение пени за просрочку.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.db import get_async_db
from rentcollect.core.dependencies import get_current_principal
from rentcollect.core.rbac import Principal
from rentcollect.models.base import to_money
from rentcollect.schemas.invoice import ApplyLateFeeRequest, ApplyLateFeeResponse, LateFeeAssessmentResponse
from rentcollect.services.late_fees import apply_invoice_late_fee, assess_invoice_late_fee

router = APIRouter()


@router.get("/{invoice_id}/late-fee", response_model=LateFeeAssessmentResponse, summary="Оценить пеню по счёту")
async def get_late_fee(
    invoice_id: int,
    as_of: Optional[date] = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    fee = await assess_invoice_late_fee(db, principal, invoice_id, as_of)
    a = fee.assessment
    return LateFeeAssessmentResponse(
        invoice_id=fee.invoice.id,
        due_date=a.due_date,
        as_of=a.current_date,
        grace_period_days=a.grace_period_days,
        days_overdue=a.days_overdue,
        is_within_grace=a.is_within_grace,
        penalty_days=a.penalty_days,
        late_fee_amount=a.late_fee_amount,
        policy=fee.policy.describe(),
        description=fee.description,
    )


@router.post("/{invoice_id}/late-fee", response_model=ApplyLateFeeResponse, summary="Начислить пеню на счёт")
async def apply_late_fee(
    invoice_id: int,
    body: Optional[ApplyLateFeeRequest] = Body(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    fee = await apply_invoice_late_fee(db, principal, invoice_id, body.as_of if body else None)
    invoice = fee.invoice
    return ApplyLateFeeResponse(
        invoice_id=invoice.id,
        late_fee_amount=to_money(invoice.late_fee_amount),
        delta=fee.delta,
        amount=to_money(invoice.amount),
        balance=to_money(invoice.balance),
        status=invoice.status,
        description=fee.description,
    )


__all__ = ["router"]
