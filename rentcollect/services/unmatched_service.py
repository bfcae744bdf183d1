"""
Unmatched payment queue: карантин, разбор и игнорирование.

State machine: pending -> resolved | ignored, переход ровно один раз.
Строка блокируется (FOR UPDATE) и версионируется, поэтому из двух
одновременных переходов выигрывает один, второй получает 409.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.exceptions import (
    AuthorizationError,
    ConflictError,
    DuplicateDelivery,
    NotFoundError,
    RentCollectValidationError,
)
from rentcollect.core.logging import audit_logger, get_logger
from rentcollect.core.rbac import Permission, Principal, Role, can_access_unmatched, require_permission
from rentcollect.models.base import afor_update_by_id, to_money, utc_now
from rentcollect.models.payment import Payment
from rentcollect.models.property import LandlordPaymentAccount, Property
from rentcollect.models.unmatched import UnmatchedPayment, UnmatchedPaymentStatus
from rentcollect.services.access import get_tenant_in_scope
from rentcollect.services.account_matcher import MatchResult
from rentcollect.services.allocation_service import AllocationResult, retry_on_conflict
from rentcollect.services.ledger_writer import billing_period_for, record_payment, validate_period
from rentcollect.services.notifications import notify_payment_recorded
from rentcollect.utils.idempotency import insert_once

logger = get_logger(__name__)


@dataclass
class Resolution:
    unmatched: UnmatchedPayment
    payment: Payment
    allocation: Optional[AllocationResult]


# ---------------------------------------------------------------------------
# Quarantine (вызывается из обработки webhook, в транзакции вызывающего)
# ---------------------------------------------------------------------------
async def quarantine(
    session: AsyncSession,
    *,
    external_ref: str,
    amount: Decimal,
    reason: str,
    raw_account_reference: Optional[str] = None,
    phone_number: Optional[str] = None,
    payer_name: Optional[str] = None,
    business_short_code: Optional[str] = None,
    transaction_date: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
    raw_payload: Optional[dict[str, Any]] = None,
    landlord_id: Optional[int] = None,
    property_id: Optional[int] = None,
) -> UnmatchedPayment:
    """Дубликат по external_transaction_reference поднимает DuplicateDelivery."""
    item = UnmatchedPayment(
        external_transaction_reference=external_ref.strip(),
        amount=to_money(amount),
        reason=reason,
        raw_account_reference=raw_account_reference,
        phone_number=phone_number,
        payer_name=payer_name,
        business_short_code=business_short_code,
        transaction_date=transaction_date,
        correlation_id=correlation_id,
        raw_payload=raw_payload,
        landlord_id=landlord_id,
        property_id=property_id,
        status=UnmatchedPaymentStatus.PENDING,
    )
    await insert_once(session, item, external_id=item.external_transaction_reference, kind="unmatched")
    logger.warning(
        "Payment quarantined",
        unmatched_id=item.id,
        external_ref=item.external_transaction_reference,
        reason=reason,
        landlord_id=landlord_id,
        property_id=property_id,
    )
    return item


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
async def list_unmatched(
    session: AsyncSession,
    principal: Principal,
    status: Optional[UnmatchedPaymentStatus] = None,
    *,
    limit: int = 100,
    offset: int = 0,
) -> list[UnmatchedPayment]:
    require_permission(principal, Permission.VIEW_UNMATCHED, "unmatched_payments")
    q = select(UnmatchedPayment)
    if status is not None:
        q = q.where(UnmatchedPayment.status == status)

    if not principal.is_platform_admin:
        if principal.role == Role.LANDLORD:
            q = q.where(UnmatchedPayment.landlord_id == principal.user_id)
        elif principal.property_ids:
            q = q.where(UnmatchedPayment.property_id.in_(sorted(principal.property_ids)))
        else:
            return []

    q = q.order_by(UnmatchedPayment.created_at.desc(), UnmatchedPayment.id.desc()).limit(limit).offset(offset)
    res = await session.execute(q)
    return list(res.scalars().all())


async def get_unmatched(session: AsyncSession, principal: Principal, unmatched_id: int) -> UnmatchedPayment:
    require_permission(principal, Permission.VIEW_UNMATCHED, f"unmatched:{unmatched_id}")
    return await _load_in_scope(session, principal, unmatched_id)


async def _load_in_scope(session: AsyncSession, principal: Principal, unmatched_id: int) -> UnmatchedPayment:
    item = await session.get(UnmatchedPayment, unmatched_id)
    if item is None:
        raise NotFoundError("Unmatched payment not found", code="UNMATCHED_NOT_FOUND")
    if not can_access_unmatched(principal, item):
        audit_logger.log_permission_denied(principal.user_id, "out of scope", f"unmatched:{unmatched_id}")
        raise AuthorizationError("Resource is outside of your scope", code="OUT_OF_SCOPE")
    return item


async def _lock_pending(session: AsyncSession, unmatched_id: int) -> UnmatchedPayment:
    item = await afor_update_by_id(session, UnmatchedPayment, unmatched_id)
    if item is None:
        raise NotFoundError("Unmatched payment not found", code="UNMATCHED_NOT_FOUND")
    if item.is_terminal:
        raise ConflictError(
            f"Unmatched payment is already {UnmatchedPaymentStatus(item.status).value}",
            code="UNMATCHED_NOT_PENDING",
        )
    return item


# ---------------------------------------------------------------------------
# Account selection for resolution
# ---------------------------------------------------------------------------
async def select_payment_account(
    session: AsyncSession, prop: Property, requested_id: Optional[int] = None
) -> LandlordPaymentAccount:
    """Запрошенный счёт -> активный default объекта -> любой активный счёт объекта/арендодателя."""
    if requested_id is not None:
        account = await session.get(LandlordPaymentAccount, requested_id)
        if account is None or not account.is_active or not account.serves(prop):
            raise RentCollectValidationError(
                "Payment account is not an active account of this property",
                code="INVALID_PAYMENT_ACCOUNT",
                extra={"field": "landlord_account_id"},
            )
        return account

    res = await session.execute(
        select(LandlordPaymentAccount)
        .where(
            LandlordPaymentAccount.property_id == prop.id,
            LandlordPaymentAccount.is_active.is_(True),
            LandlordPaymentAccount.is_default.is_(True),
        )
        .order_by(LandlordPaymentAccount.id)
        .limit(1)
    )
    account = res.scalars().first()
    if account is not None:
        return account

    res = await session.execute(
        select(LandlordPaymentAccount)
        .where(
            LandlordPaymentAccount.is_active.is_(True),
            (LandlordPaymentAccount.property_id == prop.id)
            | (
                LandlordPaymentAccount.property_id.is_(None)
                & (LandlordPaymentAccount.landlord_id == prop.landlord_id)
            ),
        )
        .order_by(
            LandlordPaymentAccount.property_id.is_(None),
            LandlordPaymentAccount.is_default.desc(),
            LandlordPaymentAccount.id,
        )
        .limit(1)
    )
    account = res.scalars().first()
    if account is None:
        raise RentCollectValidationError(
            "No active payment account for this property",
            code="NO_PAYMENT_ACCOUNT",
            extra={"field": "landlord_account_id"},
        )
    return account


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
async def resolve_unmatched(
    session: AsyncSession,
    principal: Principal,
    unmatched_id: int,
    *,
    tenant_id: int,
    period_start: date,
    period_end: date,
    payment_date: Optional[datetime] = None,
    notes: Optional[str] = None,
    landlord_account_id: Optional[int] = None,
) -> Resolution:
    require_permission(principal, Permission.RESOLVE_UNMATCHED, f"unmatched:{unmatched_id}")
    await _load_in_scope(session, principal, unmatched_id)
    validate_period(period_start, period_end)

    async def _run() -> Resolution:
        # загружаем внутри попытки: rollback при повторе экспайрит объекты сессии
        tenant, unit, prop = await get_tenant_in_scope(session, principal, tenant_id)
        item = await _lock_pending(session, unmatched_id)
        ref = item.external_transaction_reference
        exists = await session.execute(select(Payment.id).where(Payment.external_transaction_reference == ref))
        if exists.first() is not None:
            raise ConflictError("A payment already exists for this transaction", code="DUPLICATE_REFERENCE")

        account = await select_payment_account(session, prop, landlord_account_id)
        match = MatchResult(
            tenant_id=tenant.id,
            unit_id=unit.id,
            landlord_account_id=account.id,
            property_id=prop.id,
            landlord_id=prop.landlord_id,
        )
        try:
            payment, allocation = await record_payment(
                session,
                match,
                item.amount,
                external_ref=ref,
                correlation_id=item.correlation_id,
                payment_date=payment_date or item.transaction_date or utc_now(),
                period_start=period_start,
                period_end=period_end,
                due_date=billing_period_for(tenant, period_start).due_date,
                paybill_account_number=item.raw_account_reference,
                phone_number=item.phone_number,
                payer_name=item.payer_name,
                notes=notes,
                confirmed_by_user_id=principal.user_id,
            )
        except DuplicateDelivery as e:
            raise ConflictError("A payment already exists for this transaction", code="DUPLICATE_REFERENCE") from e

        item.status = UnmatchedPaymentStatus.RESOLVED
        item.resolved_payment_id = payment.id
        item.resolved_by_user_id = principal.user_id
        item.resolved_at = utc_now()
        item.resolution_notes = notes
        await session.flush()
        return Resolution(unmatched=item, payment=payment, allocation=allocation)

    resolution = await retry_on_conflict(session, _run, what="resolve unmatched payment")
    audit_logger.log_data_change(
        principal.user_id,
        "resolve",
        "unmatched_payment",
        unmatched_id,
        {
            "tenant_id": tenant_id,
            "payment_id": resolution.payment.id,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        },
    )
    await notify_payment_recorded(resolution.payment, source="unmatched_resolution")
    return resolution


async def ignore_unmatched(
    session: AsyncSession, principal: Principal, unmatched_id: int, notes: Optional[str] = None
) -> UnmatchedPayment:
    require_permission(principal, Permission.IGNORE_UNMATCHED, f"unmatched:{unmatched_id}")
    await _load_in_scope(session, principal, unmatched_id)

    async def _run() -> UnmatchedPayment:
        item = await _lock_pending(session, unmatched_id)
        item.status = UnmatchedPaymentStatus.IGNORED
        item.resolved_by_user_id = principal.user_id
        item.resolved_at = utc_now()
        item.resolution_notes = notes
        await session.flush()
        return item

    item = await retry_on_conflict(session, _run, what="ignore unmatched payment")
    audit_logger.log_data_change(principal.user_id, "ignore", "unmatched_payment", unmatched_id, {"notes": notes or ""})
    return item


__all__ = [
    "Resolution",
    "quarantine",
    "list_unmatched",
    "get_unmatched",
    "select_payment_account",
    "resolve_unmatched",
    "ignore_unmatched",
]
