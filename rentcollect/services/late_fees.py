"""
Late fee calculator.

assess_late_fee() - чистая функция (даты + политика -> LateFeeAssessment), без БД.
Остальное - применение пени к счёту (идемпотентно по late_fee_amount)
и периодическая пометка просроченных счетов.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.config import settings
from rentcollect.core.exceptions import ConflictError, NotFoundError
from rentcollect.core.logging import audit_logger, get_logger
from rentcollect.core.rbac import Permission, Principal
from rentcollect.models.base import afor_update_by_id, to_money
from rentcollect.models.invoice import Invoice, InvoiceStatus
from rentcollect.models.property import Tenant
from rentcollect.services.access import get_invoice_for_principal
from rentcollect.services.allocation_service import retry_on_conflict

logger = get_logger(__name__)

ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------
class LateFeePolicy(Protocol):
    def __call__(self, penalty_days: int) -> Decimal: ...

    def describe(self) -> str: ...


@dataclass(frozen=True)
class NoLateFee:
    def __call__(self, penalty_days: int) -> Decimal:
        return ZERO

    def describe(self) -> str:
        return "No late fee"


@dataclass(frozen=True)
class FixedLateFee:
    amount: Decimal

    def __call__(self, penalty_days: int) -> Decimal:
        return to_money(self.amount) if penalty_days > 0 else ZERO

    def describe(self) -> str:
        return f"Fixed {settings.LEDGER_CURRENCY} {to_money(self.amount)}"


@dataclass(frozen=True)
class PercentageLateFee:
    rate: Decimal
    base_amount: Decimal

    def __call__(self, penalty_days: int) -> Decimal:
        if penalty_days <= 0:
            return ZERO
        return to_money(Decimal(self.base_amount) * Decimal(self.rate) / Decimal(100))

    def describe(self) -> str:
        return f"{Decimal(self.rate).normalize()}% of {settings.LEDGER_CURRENCY} {to_money(self.base_amount)}"


@dataclass(frozen=True)
class DailyLateFee:
    per_day: Decimal
    cap: Optional[Decimal] = None

    def __call__(self, penalty_days: int) -> Decimal:
        if penalty_days <= 0:
            return ZERO
        fee = to_money(Decimal(self.per_day) * penalty_days)
        if self.cap is not None:
            fee = min(fee, to_money(self.cap))
        return fee

    def describe(self) -> str:
        text = f"{settings.LEDGER_CURRENCY} {to_money(self.per_day)} per day"
        if self.cap is not None:
            text += f" (max {to_money(self.cap)})"
        return text


def policy_for_tenant(tenant: Tenant) -> LateFeePolicy:
    """Фиксированная сумма (> 0) важнее процента от месячной аренды."""
    fixed = tenant.late_fee_fixed_amount
    if fixed is not None and Decimal(fixed) > 0:
        return FixedLateFee(to_money(fixed))
    pct = tenant.late_fee_percentage
    if pct is not None and Decimal(pct) > 0:
        return PercentageLateFee(rate=Decimal(pct), base_amount=to_money(tenant.monthly_rent or 0))
    return NoLateFee()


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LateFeeAssessment:
    due_date: date
    current_date: date
    grace_period_days: int
    days_overdue: int
    is_within_grace: bool
    penalty_days: int
    late_fee_amount: Decimal


def assess_late_fee(
    due_date: date,
    current_date: date,
    grace_period_days: int,
    policy: LateFeePolicy,
) -> LateFeeAssessment:
    grace = max(0, int(grace_period_days or 0))
    days_overdue = max(0, (current_date - due_date).days)
    penalty_days = max(0, days_overdue - grace)
    fee = to_money(policy(penalty_days)) if penalty_days > 0 else ZERO
    return LateFeeAssessment(
        due_date=due_date,
        current_date=current_date,
        grace_period_days=grace,
        days_overdue=days_overdue,
        is_within_grace=days_overdue <= grace,
        penalty_days=penalty_days,
        late_fee_amount=fee,
    )


def describe_late_fee(assessment: LateFeeAssessment) -> str:
    if assessment.days_overdue == 0:
        return "Not overdue"
    if assessment.is_within_grace:
        left = assessment.grace_period_days - assessment.days_overdue
        return f"{assessment.days_overdue} day(s) overdue, within grace period ({left} day(s) left)"
    return (
        f"{assessment.days_overdue} day(s) overdue, {assessment.penalty_days} day(s) past grace period: "
        f"late fee {settings.LEDGER_CURRENCY} {assessment.late_fee_amount}"
    )


# ---------------------------------------------------------------------------
# Invoice side effects
# ---------------------------------------------------------------------------
_LATE_FEE_EXCLUDED = (InvoiceStatus.VOID, InvoiceStatus.PAID, InvoiceStatus.DRAFT)


async def apply_late_fee_to_invoice(session: AsyncSession, invoice: Invoice, assessment: LateFeeAssessment) -> Decimal:
    """
    Доводит late_fee_amount счёта до оценённого значения; amount и balance растут на дельту.
    Повторный вызов с той же оценкой - no-op. Возвращает дельту.
    """
    if invoice.status in _LATE_FEE_EXCLUDED:
        raise ConflictError(
            f"Late fees cannot be applied to a {InvoiceStatus(invoice.status).value} invoice",
            code="INVOICE_NOT_ELIGIBLE",
        )
    delta = to_money(assessment.late_fee_amount) - to_money(invoice.late_fee_amount or 0)
    if delta <= ZERO:
        return ZERO

    invoice.amount = to_money(invoice.amount) + delta
    invoice.balance = to_money(invoice.balance) + delta
    invoice.late_fee_amount = to_money(assessment.late_fee_amount)
    await session.flush()
    logger.info("Late fee applied", invoice_id=invoice.id, delta=str(delta), total=str(invoice.late_fee_amount))
    return delta


async def refresh_overdue_invoices(session: AsyncSession, today: Optional[date] = None) -> int:
    """issued / partially_paid с прошедшим сроком и ненулевым балансом -> overdue."""
    today = today or date.today()
    stmt = (
        update(Invoice)
        .where(
            Invoice.status.in_((InvoiceStatus.ISSUED, InvoiceStatus.PARTIALLY_PAID)),
            Invoice.due_date < today,
            Invoice.balance > 0,
        )
        .values(status=InvoiceStatus.OVERDUE, version=Invoice.version + 1)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    count = res.rowcount or 0
    if count:
        logger.info("Invoices marked overdue", count=count, as_of=today.isoformat())
    return count


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@dataclass
class InvoiceLateFee:
    invoice: Invoice
    assessment: LateFeeAssessment
    policy: LateFeePolicy
    delta: Decimal = ZERO

    @property
    def description(self) -> str:
        return describe_late_fee(self.assessment)


async def _assess_loaded(session: AsyncSession, invoice: Invoice, as_of: date) -> InvoiceLateFee:
    tenant = await session.get(Tenant, invoice.tenant_id)
    if tenant is None:
        policy: LateFeePolicy = NoLateFee()
        grace = 0
    else:
        policy = policy_for_tenant(tenant)
        grace = tenant.late_fee_grace_period_days
    assessment = assess_late_fee(invoice.due_date, as_of, grace, policy)
    return InvoiceLateFee(invoice=invoice, assessment=assessment, policy=policy)


async def assess_invoice_late_fee(
    session: AsyncSession, principal: Principal, invoice_id: int, as_of: Optional[date] = None
) -> InvoiceLateFee:
    invoice = await get_invoice_for_principal(session, principal, invoice_id, Permission.VIEW_INVOICES)
    return await _assess_loaded(session, invoice, as_of or date.today())


async def apply_invoice_late_fee(
    session: AsyncSession, principal: Principal, invoice_id: int, as_of: Optional[date] = None
) -> InvoiceLateFee:
    await get_invoice_for_principal(session, principal, invoice_id, Permission.APPLY_LATE_FEES)
    as_of = as_of or date.today()

    async def _run() -> InvoiceLateFee:
        invoice = await afor_update_by_id(session, Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found", code="INVOICE_NOT_FOUND")
        outcome = await _assess_loaded(session, invoice, as_of)
        outcome.delta = await apply_late_fee_to_invoice(session, invoice, outcome.assessment)
        return outcome

    outcome = await retry_on_conflict(session, _run, what="apply late fee")
    if outcome.delta > ZERO:
        audit_logger.log_data_change(
            principal.user_id,
            "apply_late_fee",
            "invoice",
            invoice_id,
            {"delta": str(outcome.delta), "late_fee_amount": str(outcome.assessment.late_fee_amount)},
        )
    return outcome


__all__ = [
    "LateFeePolicy",
    "NoLateFee",
    "FixedLateFee",
    "PercentageLateFee",
    "DailyLateFee",
    "policy_for_tenant",
    "LateFeeAssessment",
    "assess_late_fee",
    "describe_late_fee",
    "apply_late_fee_to_invoice",
    "refresh_overdue_invoices",
    "InvoiceLateFee",
    "assess_invoice_late_fee",
    "apply_invoice_late_fee",
]
