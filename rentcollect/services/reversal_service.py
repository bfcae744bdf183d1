"""
Reversal engine: откат всех распределений платежа.

Балансы счетов восстанавливаются, статусы пересчитываются, строки PaymentAllocation
удаляются, unallocated_amount платежа снова равен amount. Нет распределений - успешный no-op.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.logging import audit_logger, get_logger
from rentcollect.core.metrics import REVERSALS
from rentcollect.core.rbac import Permission, Principal
from rentcollect.models.base import to_money
from rentcollect.models.invoice import Invoice, InvoiceStatus
from rentcollect.models.payment import PaymentAllocation
from rentcollect.services.access import get_payment_for_principal
from rentcollect.services.allocation_service import (
    ZERO,
    AllocationLine,
    lock_payment,
    retry_on_conflict,
    status_after_reversal,
)

logger = get_logger(__name__)


@dataclass
class ReversalResult:
    payment_id: int
    reversed_allocations: int
    restored_amount: Decimal
    unallocated_amount: Decimal
    invoices: list[AllocationLine] = field(default_factory=list)


async def reverse_allocations(
    session: AsyncSession,
    payment_id: int,
    reason: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> ReversalResult:
    payment = await lock_payment(session, payment_id)

    res = await session.execute(
        select(PaymentAllocation)
        .where(PaymentAllocation.payment_id == payment.id)
        .order_by(PaymentAllocation.id)
        .with_for_update()
    )
    allocations = list(res.scalars().all())
    if not allocations:
        return ReversalResult(
            payment_id=payment.id,
            reversed_allocations=0,
            restored_amount=ZERO,
            unallocated_amount=to_money(payment.unallocated_amount),
        )

    restore: dict[int, Decimal] = {}
    for alloc in allocations:
        restore[alloc.invoice_id] = restore.get(alloc.invoice_id, ZERO) + to_money(alloc.amount)

    inv_res = await session.execute(
        select(Invoice)
        .where(Invoice.id.in_(list(restore)))
        .order_by(Invoice.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    invoices = {inv.id: inv for inv in inv_res.scalars().all()}

    lines: list[AllocationLine] = []
    for invoice_id, amount in restore.items():
        invoice = invoices[invoice_id]
        invoice.balance = to_money(invoice.balance) + amount
        invoice.status = status_after_reversal(invoice, today)
        lines.append(
            AllocationLine(
                invoice_id=invoice.id,
                amount=amount,
                invoice_balance=to_money(invoice.balance),
                invoice_status=InvoiceStatus(invoice.status).value,
            )
        )

    for alloc in allocations:
        await session.delete(alloc)

    restored = sum(restore.values(), ZERO)
    payment.unallocated_amount = to_money(payment.amount)
    await session.flush()

    logger.info(
        "Allocations reversed",
        payment_id=payment.id,
        invoices=list(restore),
        restored=str(restored),
        reason=reason,
    )
    return ReversalResult(
        payment_id=payment.id,
        reversed_allocations=len(allocations),
        restored_amount=restored,
        unallocated_amount=to_money(payment.unallocated_amount),
        invoices=lines,
    )


async def reverse_payment_allocations(
    session: AsyncSession,
    principal: Principal,
    payment_id: int,
    reason: Optional[str] = None,
) -> ReversalResult:
    await get_payment_for_principal(session, principal, payment_id, Permission.REVERSE_ALLOCATION)

    async def _run() -> ReversalResult:
        return await reverse_allocations(session, payment_id, reason)

    try:
        result = await retry_on_conflict(session, _run, what="reverse allocations")
    except Exception:
        REVERSALS.labels(result="error").inc()
        raise

    REVERSALS.labels(result="noop" if result.reversed_allocations == 0 else "reversed").inc()
    audit_logger.log_data_change(
        principal.user_id,
        "reverse_allocations",
        "payment",
        payment_id,
        {
            "reason": reason or "",
            "reversed_allocations": result.reversed_allocations,
            "restored_amount": str(result.restored_amount),
        },
    )
    return result


__all__ = ["ReversalResult", "reverse_allocations", "reverse_payment_allocations"]
