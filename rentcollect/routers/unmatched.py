# rentcollect/routers/unmatched.py
"""
Unmatched payments queue: список, карточка, разбор (resolve) и игнорирование.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.db import get_async_db
from rentcollect.core.dependencies import get_current_principal
from rentcollect.core.rbac import Principal
from rentcollect.models.unmatched import UnmatchedPaymentStatus
from rentcollect.schemas.payment import AllocationResultResponse
from rentcollect.schemas.unmatched import (
    IgnoreUnmatchedRequest,
    ResolveUnmatchedRequest,
    ResolveUnmatchedResponse,
    UnmatchedPaymentResponse,
)
from rentcollect.services.unmatched_service import get_unmatched, ignore_unmatched, list_unmatched, resolve_unmatched

router = APIRouter()


@router.get("/", response_model=list[UnmatchedPaymentResponse], summary="Очередь нераспознанных платежей")
async def list_items(
    status: Optional[UnmatchedPaymentStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    items = await list_unmatched(db, principal, status, limit=limit, offset=offset)
    return [UnmatchedPaymentResponse.model_validate(i) for i in items]


@router.get("/{unmatched_id}", response_model=UnmatchedPaymentResponse, summary="Карточка нераспознанного платежа")
async def get_item(
    unmatched_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    item = await get_unmatched(db, principal, unmatched_id)
    return UnmatchedPaymentResponse.model_validate(item)


@router.post("/{unmatched_id}/resolve", response_model=ResolveUnmatchedResponse, summary="Привязать к арендатору")
async def resolve(
    unmatched_id: int,
    body: ResolveUnmatchedRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    resolution = await resolve_unmatched(
        db,
        principal,
        unmatched_id,
        tenant_id=body.tenant_id,
        period_start=body.period_start,
        period_end=body.period_end,
        payment_date=body.payment_date,
        notes=body.notes,
        landlord_account_id=body.landlord_account_id,
    )
    return ResolveUnmatchedResponse(
        unmatched=UnmatchedPaymentResponse.model_validate(resolution.unmatched),
        payment_id=resolution.payment.id,
        allocation=AllocationResultResponse.model_validate(resolution.allocation),
    )


@router.post("/{unmatched_id}/ignore", response_model=UnmatchedPaymentResponse, summary="Игнорировать")
async def ignore(
    unmatched_id: int,
    body: Optional[IgnoreUnmatchedRequest] = Body(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    item = await ignore_unmatched(db, principal, unmatched_id, body.notes if body else None)
    return UnmatchedPaymentResponse.model_validate(item)


__all__ = ["router"]
