"""
Ledger writer: ровно один канонический Payment на внешнюю транзакцию.

record_payment() работает в транзакции вызывающего (guard и запись в одном UoW);
COMPLETED-платёж сразу распределяется, PENDING - при подтверждении оператором.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.exceptions import ConflictError, RentCollectValidationError
from rentcollect.core.logging import audit_logger, get_logger
from rentcollect.core.rbac import Permission, Principal
from rentcollect.models.base import to_money, utc_now
from rentcollect.models.payment import Payment, PaymentMethod, PaymentStatus
from rentcollect.models.property import Tenant
from rentcollect.services.access import get_payment_for_principal
from rentcollect.services.account_matcher import MatchResult
from rentcollect.services.allocation_service import (
    AllocationResult,
    allocate_to_outstanding_invoices,
    lock_payment,
    retry_on_conflict,
)
from rentcollect.utils.idempotency import insert_once

logger = get_logger(__name__)


@dataclass(frozen=True)
class BillingPeriod:
    period_start: date
    period_end: date
    due_date: date


def billing_period_for(tenant: Optional[Tenant], on: date) -> BillingPeriod:
    """Календарный месяц даты; срок оплаты = rent_due_day, прижатый к длине месяца."""
    last_day = calendar.monthrange(on.year, on.month)[1]
    due_day = tenant.rent_due_day if tenant is not None and tenant.rent_due_day else 1
    return BillingPeriod(
        period_start=on.replace(day=1),
        period_end=on.replace(day=last_day),
        due_date=on.replace(day=min(max(due_day, 1), last_day)),
    )


def validate_period(period_start: date, period_end: date) -> None:
    if period_end <= period_start:
        raise RentCollectValidationError(
            "Period end must be after period start",
            code="INVALID_PERIOD",
            extra={"field": "period_end"},
        )


async def record_payment(
    session: AsyncSession,
    match: MatchResult,
    amount: Decimal,
    *,
    external_ref: str,
    correlation_id: Optional[str] = None,
    method: PaymentMethod = PaymentMethod.MPESA,
    status: PaymentStatus = PaymentStatus.COMPLETED,
    payment_date: Optional[datetime] = None,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    due_date: Optional[date] = None,
    paybill_account_number: Optional[str] = None,
    phone_number: Optional[str] = None,
    payer_name: Optional[str] = None,
    notes: Optional[str] = None,
    confirmed_by_user_id: Optional[int] = None,
) -> tuple[Payment, Optional[AllocationResult]]:
    """
    Создаёт Payment через insert_once (DuplicateDelivery пробрасывается вызывающему).
    Возвращает (payment, allocation_result | None для pending).
    """
    amount = to_money(amount)
    if amount <= 0:
        raise RentCollectValidationError("Payment amount must be positive", code="INVALID_AMOUNT")

    paid_at = payment_date or utc_now()
    if period_start is None or period_end is None:
        tenant = await session.get(Tenant, match.tenant_id)
        period = billing_period_for(tenant, paid_at.date())
        period_start = period_start or period.period_start
        period_end = period_end or period.period_end
        due_date = due_date or period.due_date
    validate_period(period_start, period_end)

    now = utc_now()
    payment = Payment(
        tenant_id=match.tenant_id,
        unit_id=match.unit_id,
        landlord_account_id=match.landlord_account_id,
        amount=amount,
        unallocated_amount=amount,
        payment_date=paid_at,
        due_date=due_date,
        period_start=period_start,
        period_end=period_end,
        method=method,
        status=status,
        external_transaction_reference=external_ref.strip(),
        correlation_id=correlation_id,
        paybill_account_number=paybill_account_number,
        phone_number=phone_number,
        payer_name=payer_name,
        notes=notes,
        confirmed_at=now if status == PaymentStatus.COMPLETED else None,
        confirmed_by_user_id=confirmed_by_user_id,
    )
    await insert_once(session, payment, external_id=payment.external_transaction_reference, kind="payment")
    logger.info(
        "Payment recorded",
        payment_id=payment.id,
        tenant_id=payment.tenant_id,
        amount=str(amount),
        status=PaymentStatus(status).value,
        external_ref=payment.external_transaction_reference,
    )

    if status != PaymentStatus.COMPLETED:
        return payment, None
    allocation = await allocate_to_outstanding_invoices(session, payment.id)
    return payment, allocation


async def confirm_payment(
    session: AsyncSession, principal: Principal, payment_id: int
) -> tuple[Payment, AllocationResult]:
    """Pending -> Completed (штамп оператора) и распределение; один commit."""
    await get_payment_for_principal(session, principal, payment_id, Permission.CONFIRM_PAYMENT)

    async def _run() -> tuple[Payment, AllocationResult]:
        payment = await lock_payment(session, payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise ConflictError(
                f"Payment is already {PaymentStatus(payment.status).value}", code="PAYMENT_NOT_PENDING"
            )
        payment.status = PaymentStatus.COMPLETED
        payment.confirmed_at = utc_now()
        payment.confirmed_by_user_id = principal.user_id
        await session.flush()
        result = await allocate_to_outstanding_invoices(session, payment.id)
        return payment, result

    payment, result = await retry_on_conflict(session, _run, what="confirm payment")
    audit_logger.log_data_change(
        principal.user_id,
        "confirm",
        "payment",
        payment_id,
        {"status": PaymentStatus.COMPLETED.value, "allocation_code": result.code},
    )
    return payment, result


async def reject_payment(session: AsyncSession, principal: Principal, payment_id: int, reason: str) -> Payment:
    """Pending -> Failed; причина дописывается в notes. Распределений у pending-платежа нет."""
    reason = (reason or "").strip()
    if not reason:
        raise RentCollectValidationError("Rejection reason is required", code="REASON_REQUIRED")
    await get_payment_for_principal(session, principal, payment_id, Permission.REJECT_PAYMENT)

    async def _run() -> Payment:
        payment = await lock_payment(session, payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise ConflictError(
                f"Payment is already {PaymentStatus(payment.status).value}", code="PAYMENT_NOT_PENDING"
            )
        payment.status = PaymentStatus.FAILED
        payment.notes = f"{payment.notes}\n\nRejected: {reason}" if payment.notes else f"Rejected: {reason}"
        await session.flush()
        return payment

    payment = await retry_on_conflict(session, _run, what="reject payment")
    logger.info("Payment rejected", payment_id=payment_id, reason=reason)
    audit_logger.log_data_change(
        principal.user_id,
        "reject",
        "payment",
        payment_id,
        {"status": PaymentStatus.FAILED.value, "reason": reason},
    )
    return payment


__all__ = [
    "BillingPeriod",
    "billing_period_for",
    "validate_period",
    "record_payment",
    "confirm_payment",
    "reject_payment",
]
