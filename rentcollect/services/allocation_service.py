"""
Allocation engine: распределение платежа по открытым счетам арендатора.

Инварианты (проверяются тестами):
- payment: sum(allocations) + unallocated_amount == amount
- invoice: balance == amount + opening_balance - sum(allocations), balance >= 0

FIFO по (due_date ASC, id ASC). Остаток после всех счетов остаётся кредитом
(unallocated_amount) и не считается ошибкой.

Конкурентность: SELECT ... FOR UPDATE на платёж и счета + version_id_col.
StaleDataError / OperationalError -> повтор с чистого чтения, затем AllocationConflict (409).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rentcollect.core.config import settings
from rentcollect.core.exceptions import (
    AllocationConflict,
    ConflictError,
    NotFoundError,
    RentCollectValidationError,
)
from rentcollect.core.logging import audit_logger, get_logger
from rentcollect.core.metrics import ALLOCATION_CONFLICTS, ALLOCATIONS
from rentcollect.core.rbac import Permission, Principal
from rentcollect.models.base import afor_update_by_id, to_money
from rentcollect.models.invoice import ALLOCATABLE_INVOICE_STATUSES, Invoice, InvoiceStatus
from rentcollect.models.payment import Payment, PaymentAllocation, PaymentStatus
from rentcollect.services.access import get_payment_for_principal

logger = get_logger(__name__)

ZERO = Decimal("0.00")

T = TypeVar("T")


@dataclass
class AllocationLine:
    invoice_id: int
    amount: Decimal
    invoice_balance: Decimal
    invoice_status: str


@dataclass
class AllocationResult:
    success: bool
    message: str
    code: str
    payment_id: int
    allocations: list[AllocationLine] = field(default_factory=list)
    unallocated_amount: Decimal = ZERO

    @property
    def allocated_amount(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)


# ---------------------------------------------------------------------------
# Status rules
# ---------------------------------------------------------------------------
def status_after_allocation(invoice: Invoice) -> InvoiceStatus:
    balance = to_money(invoice.balance)
    if balance == ZERO:
        return InvoiceStatus.PAID
    if ZERO < balance < to_money(invoice.total_due):
        return InvoiceStatus.PARTIALLY_PAID
    return invoice.status


def status_after_reversal(invoice: Invoice, today: Optional[date] = None) -> InvoiceStatus:
    """Полностью восстановленный баланс: overdue если срок прошёл, иначе issued."""
    today = today or date.today()
    balance = to_money(invoice.balance)
    total = to_money(invoice.total_due)
    if balance >= total and invoice.status in (InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_PAID):
        return InvoiceStatus.OVERDUE if invoice.due_date < today else InvoiceStatus.ISSUED
    if ZERO < balance < total:
        return InvoiceStatus.PARTIALLY_PAID
    return invoice.status


# ---------------------------------------------------------------------------
# Row loading with locks
# ---------------------------------------------------------------------------
async def lock_payment(session: AsyncSession, payment_id: int) -> Payment:
    payment = await afor_update_by_id(session, Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
    return payment


async def lock_open_invoices(session: AsyncSession, tenant_id: int) -> list[Invoice]:
    q = (
        select(Invoice)
        .where(
            Invoice.tenant_id == tenant_id,
            Invoice.balance > 0,
            Invoice.status.in_(ALLOCATABLE_INVOICE_STATUSES),
        )
        .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    res = await session.execute(q)
    return list(res.scalars().all())


def _apply(session: AsyncSession, payment: Payment, invoice: Invoice, amount: Decimal) -> AllocationLine:
    amount = to_money(amount)
    session.add(PaymentAllocation(payment_id=payment.id, invoice_id=invoice.id, amount=amount))
    invoice.balance = to_money(invoice.balance) - amount
    payment.unallocated_amount = to_money(payment.unallocated_amount) - amount
    invoice.status = status_after_allocation(invoice)
    return AllocationLine(
        invoice_id=invoice.id,
        amount=amount,
        invoice_balance=to_money(invoice.balance),
        invoice_status=InvoiceStatus(invoice.status).value,
    )


# ---------------------------------------------------------------------------
# Engine (работает в транзакции вызывающего, без commit)
# ---------------------------------------------------------------------------
async def allocate_to_outstanding_invoices(session: AsyncSession, payment_id: int) -> AllocationResult:
    payment = await lock_payment(session, payment_id)
    if payment.status != PaymentStatus.COMPLETED:
        return AllocationResult(
            success=False,
            message=f"Payment is {PaymentStatus(payment.status).value}; only completed payments are allocated",
            code="PAYMENT_NOT_COMPLETED",
            payment_id=payment.id,
            unallocated_amount=to_money(payment.unallocated_amount),
        )

    remaining = to_money(payment.unallocated_amount)
    if remaining <= ZERO:
        return AllocationResult(
            success=True,
            message="Payment is fully allocated",
            code="NOTHING_TO_ALLOCATE",
            payment_id=payment.id,
            unallocated_amount=ZERO,
        )

    lines: list[AllocationLine] = []
    for invoice in await lock_open_invoices(session, payment.tenant_id):
        if remaining <= ZERO:
            break
        take = min(to_money(invoice.balance), remaining)
        if take <= ZERO:
            continue
        lines.append(_apply(session, payment, invoice, take))
        remaining = to_money(payment.unallocated_amount)

    await session.flush()

    if remaining > ZERO:
        message = f"Allocated {sum((ln.amount for ln in lines), ZERO)}; {remaining} held as credit"
        code = "OVERPAYMENT_CREDIT" if lines else "NO_OPEN_INVOICES"
    else:
        message = f"Allocated {sum((ln.amount for ln in lines), ZERO)} across {len(lines)} invoice(s)"
        code = "ALLOCATED"

    logger.info(
        "Payment allocated (fifo)",
        payment_id=payment.id,
        tenant_id=payment.tenant_id,
        invoices=[ln.invoice_id for ln in lines],
        unallocated=str(remaining),
    )
    return AllocationResult(
        success=True,
        message=message,
        code=code,
        payment_id=payment.id,
        allocations=lines,
        unallocated_amount=remaining,
    )


async def allocate_manual(
    session: AsyncSession, payment_id: int, invoice_id: int, amount: Optional[Decimal] = None
) -> AllocationResult:
    """
    Ручное распределение на один счёт. amount=None -> min(unallocated, balance).
    Отказы поднимаются как RentCollectValidationError / ConflictError.
    """
    payment = await lock_payment(session, payment_id)
    if payment.status != PaymentStatus.COMPLETED:
        raise ConflictError("Only completed payments can be allocated", code="PAYMENT_NOT_COMPLETED")

    invoice = await afor_update_by_id(session, Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found", code="INVOICE_NOT_FOUND")
    if invoice.tenant_id != payment.tenant_id:
        raise RentCollectValidationError("Invoice belongs to a different tenant", code="TENANT_MISMATCH")
    if invoice.status not in ALLOCATABLE_INVOICE_STATUSES:
        raise RentCollectValidationError(
            f"Invoice is {InvoiceStatus(invoice.status).value} and cannot receive allocations",
            code="INVOICE_NOT_ELIGIBLE",
        )

    unallocated = to_money(payment.unallocated_amount)
    balance = to_money(invoice.balance)
    if amount is None:
        amount = min(unallocated, balance)
        if amount <= ZERO:
            raise RentCollectValidationError("Nothing left to allocate", code="INVALID_AMOUNT")
    amount = to_money(amount)

    if amount <= ZERO:
        raise RentCollectValidationError("Amount must be greater than zero", code="INVALID_AMOUNT")
    if amount > unallocated:
        raise RentCollectValidationError(
            f"Amount exceeds unallocated balance of the payment ({unallocated})", code="EXCEEDS_UNALLOCATED"
        )
    if amount > balance:
        raise RentCollectValidationError(
            f"Amount exceeds invoice balance ({balance})", code="EXCEEDS_INVOICE_BALANCE"
        )

    line = _apply(session, payment, invoice, amount)
    await session.flush()

    logger.info("Payment allocated (manual)", payment_id=payment.id, invoice_id=invoice.id, amount=str(amount))
    return AllocationResult(
        success=True,
        message=f"Allocated {amount} to invoice {invoice.id}",
        code="ALLOCATED",
        payment_id=payment.id,
        allocations=[line],
        unallocated_amount=to_money(payment.unallocated_amount),
    )


# ---------------------------------------------------------------------------
# Commands: одна транзакция, один commit, ограниченный повтор при конфликте
# ---------------------------------------------------------------------------
async def retry_on_conflict(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    what: str,
    max_retries: Optional[int] = None,
) -> T:
    attempts = max(1, max_retries if max_retries is not None else settings.ALLOCATION_MAX_RETRIES)
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            result = await operation()
            await session.commit()
            return result
        except (StaleDataError, OperationalError) as e:
            await session.rollback()
            ALLOCATION_CONFLICTS.inc()
            logger.warning("Concurrent write conflict", operation=what, attempt=attempt, error=str(e))
            last_error = e
        except Exception:
            await session.rollback()
            raise
    raise AllocationConflict(
        f"Concurrent update conflict while trying to {what}; please retry",
        code="ALLOCATION_CONFLICT",
    ) from last_error


async def allocate_payment(
    session: AsyncSession,
    principal: Principal,
    payment_id: int,
    invoice_id: Optional[int] = None,
    amount: Optional[Decimal] = None,
) -> AllocationResult:
    await get_payment_for_principal(session, principal, payment_id, Permission.ALLOCATE_PAYMENT)
    if amount is not None and invoice_id is None:
        raise RentCollectValidationError("amount requires invoice_id", code="INVOICE_REQUIRED")
    mode = "manual" if invoice_id is not None else "fifo"

    async def _run() -> AllocationResult:
        if invoice_id is not None:
            return await allocate_manual(session, payment_id, invoice_id, amount)
        return await allocate_to_outstanding_invoices(session, payment_id)

    try:
        result = await retry_on_conflict(session, _run, what="allocate payment")
    except Exception:
        ALLOCATIONS.labels(mode=mode, result="error").inc()
        raise

    ALLOCATIONS.labels(mode=mode, result="success" if result.success else "failure").inc()
    audit_logger.log_data_change(
        principal.user_id,
        "allocate",
        "payment",
        payment_id,
        {
            "mode": mode,
            "code": result.code,
            "allocations": [{"invoice_id": ln.invoice_id, "amount": str(ln.amount)} for ln in result.allocations],
            "allocated_amount": str(result.allocated_amount),
            "unallocated_amount": str(result.unallocated_amount),
        },
    )
    return result


__all__ = [
    "AllocationLine",
    "AllocationResult",
    "status_after_allocation",
    "status_after_reversal",
    "lock_payment",
    "lock_open_invoices",
    "allocate_to_outstanding_invoices",
    "allocate_manual",
    "retry_on_conflict",
    "allocate_payment",
]
