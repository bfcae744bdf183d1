from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import make_invoice, make_ledger
from rentcollect.core.exceptions import ConflictError
from rentcollect.core.rbac import Principal, Role
from rentcollect.models import Invoice, InvoiceStatus, Tenant
from rentcollect.services.late_fees import (
    DailyLateFee,
    FixedLateFee,
    NoLateFee,
    PercentageLateFee,
    apply_invoice_late_fee,
    assess_invoice_late_fee,
    assess_late_fee,
    describe_late_fee,
    policy_for_tenant,
    refresh_overdue_invoices,
)

DUE = date(2025, 12, 5)


# ---------------------------------------------------------------------------
# Арифметика оценки
# ---------------------------------------------------------------------------
def test_not_overdue_before_due_date():
    a = assess_late_fee(DUE, date(2025, 12, 1), 5, FixedLateFee(Decimal("500")))
    assert a.days_overdue == 0
    assert a.penalty_days == 0
    assert a.late_fee_amount == Decimal("0")
    assert describe_late_fee(a) == "Not overdue"


def test_within_grace_period_has_no_fee():
    a = assess_late_fee(DUE, date(2025, 12, 10), 5, FixedLateFee(Decimal("500")))
    assert a.days_overdue == 5
    assert a.is_within_grace is True
    assert a.penalty_days == 0
    assert a.late_fee_amount == Decimal("0")
    assert "within grace period (0 day(s) left)" in describe_late_fee(a)


def test_fixed_fee_after_grace():
    a = assess_late_fee(DUE, date(2025, 12, 11), 5, FixedLateFee(Decimal("500")))
    assert a.days_overdue == 6
    assert a.is_within_grace is False
    assert a.penalty_days == 1
    assert a.late_fee_amount == Decimal("500.00")
    assert "late fee KES 500.00" in describe_late_fee(a)


def test_percentage_fee_of_monthly_rent():
    policy = PercentageLateFee(rate=Decimal("5"), base_amount=Decimal("15000"))
    a = assess_late_fee(DUE, date(2025, 12, 20), 3, policy)
    assert a.late_fee_amount == Decimal("750.00")


def test_daily_fee_is_capped():
    policy = DailyLateFee(per_day=Decimal("100"), cap=Decimal("250"))
    assert assess_late_fee(DUE, date(2025, 12, 7), 0, policy).late_fee_amount == Decimal("200.00")
    assert assess_late_fee(DUE, date(2025, 12, 30), 0, policy).late_fee_amount == Decimal("250.00")


def test_negative_grace_is_treated_as_zero():
    a = assess_late_fee(DUE, date(2025, 12, 6), -3, FixedLateFee(Decimal("100")))
    assert a.grace_period_days == 0
    assert a.penalty_days == 1


def test_policy_for_tenant_prefers_fixed_amount():
    tenant = Tenant(
        monthly_rent=Decimal("1000"),
        late_fee_fixed_amount=Decimal("200"),
        late_fee_percentage=Decimal("10"),
    )
    assert isinstance(policy_for_tenant(tenant), FixedLateFee)

    tenant.late_fee_fixed_amount = None
    policy = policy_for_tenant(tenant)
    assert isinstance(policy, PercentageLateFee)
    assert policy(1) == Decimal("100.00")

    tenant.late_fee_percentage = None
    assert isinstance(policy_for_tenant(tenant), NoLateFee)


# ---------------------------------------------------------------------------
# Применение к счёту
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_apply_late_fee_raises_amount_and_balance_once(session):
    ledger = await make_ledger(session, late_fee_fixed_amount=Decimal("300"))
    invoice = await make_invoice(session, ledger, "1000", DUE)
    principal = Principal(user_id=ledger.landlord_id, role=Role.LANDLORD)

    first = await apply_invoice_late_fee(session, principal, invoice.id, as_of=date(2025, 12, 20))
    assert first.delta == Decimal("300.00")

    second = await apply_invoice_late_fee(session, principal, invoice.id, as_of=date(2025, 12, 21))
    assert second.delta == Decimal("0")

    await session.refresh(invoice)
    assert invoice.late_fee_amount == Decimal("300.00")
    assert invoice.amount == Decimal("1300.00")
    assert invoice.balance == Decimal("1300.00")


@pytest.mark.asyncio
async def test_assess_invoice_late_fee_does_not_write(session):
    ledger = await make_ledger(session, late_fee_fixed_amount=Decimal("300"))
    invoice = await make_invoice(session, ledger, "1000", DUE)
    principal = Principal(user_id=ledger.landlord_id, role=Role.LANDLORD)

    outcome = await assess_invoice_late_fee(session, principal, invoice.id, as_of=date(2025, 12, 20))
    assert outcome.assessment.late_fee_amount == Decimal("300.00")
    assert outcome.policy.describe() == "Fixed KES 300.00"

    await session.refresh(invoice)
    assert invoice.late_fee_amount == Decimal("0")


@pytest.mark.asyncio
async def test_paid_invoice_is_not_eligible_for_late_fee(session):
    ledger = await make_ledger(session, late_fee_fixed_amount=Decimal("300"))
    invoice = await make_invoice(session, ledger, "1000", DUE, status=InvoiceStatus.PAID, balance="0")
    principal = Principal(user_id=ledger.landlord_id, role=Role.LANDLORD)

    with pytest.raises(ConflictError) as ei:
        await apply_invoice_late_fee(session, principal, invoice.id, as_of=date(2025, 12, 20))
    assert ei.value.code == "INVOICE_NOT_ELIGIBLE"


@pytest.mark.asyncio
async def test_refresh_overdue_marks_only_open_past_due_invoices(session):
    ledger = await make_ledger(session)
    past = await make_invoice(session, ledger, "1000", date(2025, 11, 5))
    paid = await make_invoice(session, ledger, "1000", date(2025, 11, 5), status=InvoiceStatus.PAID, balance="0")
    future = await make_invoice(session, ledger, "1000", date(2026, 1, 5))

    count = await refresh_overdue_invoices(session, today=date(2025, 12, 10))
    await session.commit()
    assert count == 1

    res = await session.execute(
        select(Invoice.id, Invoice.status).where(Invoice.id.in_([past.id, paid.id, future.id]))
    )
    statuses = dict(res.all())
    assert statuses[past.id] == InvoiceStatus.OVERDUE
    assert statuses[paid.id] == InvoiceStatus.PAID
    assert statuses[future.id] == InvoiceStatus.ISSUED
