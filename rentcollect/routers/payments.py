# rentcollect/routers/payments.py
"""
Payments router: просмотр, подтверждение/отклонение, распределение и сторнирование.

Особенности:
- Principal из bearer JWT передаётся в каждую команду явно.
- Проверка прав и скоупа объекта выполняется в сервисах.
- Каждая команда - одна транзакция с одним commit (retry_on_conflict в сервисе).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.db import get_async_db
from rentcollect.core.dependencies import get_current_principal
from rentcollect.core.rbac import Permission, Principal
from rentcollect.schemas.payment import (
    AllocatePaymentRequest,
    AllocationResultResponse,
    ConfirmPaymentResponse,
    PaymentResponse,
    RejectPaymentRequest,
    ReversalResultResponse,
    ReversePaymentRequest,
)
from rentcollect.services.access import get_payment_for_principal
from rentcollect.services.allocation_service import allocate_payment
from rentcollect.services.ledger_writer import confirm_payment, reject_payment
from rentcollect.services.reversal_service import reverse_payment_allocations

router = APIRouter()


# ---------------------------------------------------------------------
# GET /payments/{payment_id}
# ---------------------------------------------------------------------

@router.get("/{payment_id}", response_model=PaymentResponse, summary="Получить платёж по ID")
async def get_payment(
    payment_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    payment = await get_payment_for_principal(db, principal, payment_id, Permission.VIEW_PAYMENTS)
    return PaymentResponse.model_validate(payment)


# ---------------------------------------------------------------------
# POST /payments/{payment_id}/confirm
# ---------------------------------------------------------------------

@router.post("/{payment_id}/confirm", response_model=ConfirmPaymentResponse, summary="Подтвердить pending-платёж")
async def confirm(
    payment_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    payment, result = await confirm_payment(db, principal, payment_id)
    return ConfirmPaymentResponse(
        payment=PaymentResponse.model_validate(payment),
        allocation=AllocationResultResponse.model_validate(result),
    )


# ---------------------------------------------------------------------
# POST /payments/{payment_id}/reject
# ---------------------------------------------------------------------

@router.post("/{payment_id}/reject", response_model=PaymentResponse, summary="Отклонить pending-платёж")
async def reject(
    payment_id: int,
    body: RejectPaymentRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    payment = await reject_payment(db, principal, payment_id, body.reason)
    return PaymentResponse.model_validate(payment)


# ---------------------------------------------------------------------
# POST /payments/{payment_id}/allocate
# ---------------------------------------------------------------------

@router.post(
    "/{payment_id}/allocate",
    response_model=AllocationResultResponse,
    summary="Распределить платёж (FIFO или вручную на один счёт)",
)
async def allocate(
    payment_id: int,
    body: Optional[AllocatePaymentRequest] = Body(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    body = body or AllocatePaymentRequest()
    result = await allocate_payment(db, principal, payment_id, invoice_id=body.invoice_id, amount=body.amount)
    return AllocationResultResponse.model_validate(result)


# ---------------------------------------------------------------------
# POST /payments/{payment_id}/reverse
# ---------------------------------------------------------------------

@router.post("/{payment_id}/reverse", response_model=ReversalResultResponse, summary="Сторнировать распределения")
async def reverse(
    payment_id: int,
    body: Optional[ReversePaymentRequest] = Body(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    reason = body.reason if body else None
    result = await reverse_payment_allocations(db, principal, payment_id, reason)
    return ReversalResultResponse.model_validate(result)


__all__ = ["router"]
