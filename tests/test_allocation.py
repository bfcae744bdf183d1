"""
Распределение платежей по счетам: FIFO по сроку, переплата как кредит,
ручное распределение на один счёт и его отказы.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import make_invoice, make_ledger, make_payment
from rentcollect.core.exceptions import AuthorizationError, NotFoundError, RentCollectValidationError
from rentcollect.core.rbac import Principal, Role
from rentcollect.models import Invoice, InvoiceStatus, PaymentAllocation, PaymentStatus
from rentcollect.services.allocation_service import allocate_payment, status_after_allocation, status_after_reversal


def landlord(ledger) -> Principal:
    return Principal(user_id=ledger.landlord_id, role=Role.LANDLORD)


async def allocation_total(session, payment_id: int) -> Decimal:
    res = await session.execute(
        select(func.coalesce(func.sum(PaymentAllocation.amount), 0)).where(PaymentAllocation.payment_id == payment_id)
    )
    return Decimal(str(res.scalar_one()))


# ---------------------------------------------------------------------------
# FIFO
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_fifo_pays_oldest_invoice_first(session, ledger):
    older = await make_invoice(session, ledger, "1000", date(2025, 11, 5))
    newer = await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1500", ref="FIFO0001")

    result = await allocate_payment(session, landlord(ledger), payment.id)

    assert result.success is True
    assert result.code == "ALLOCATED"
    assert [ln.invoice_id for ln in result.allocations] == [older.id, newer.id]
    assert result.unallocated_amount == Decimal("0")

    await session.refresh(older)
    await session.refresh(newer)
    await session.refresh(payment)
    assert older.status == InvoiceStatus.PAID
    assert older.balance == Decimal("0")
    assert newer.status == InvoiceStatus.PARTIALLY_PAID
    assert newer.balance == Decimal("500.00")
    assert payment.unallocated_amount == Decimal("0")
    assert await allocation_total(session, payment.id) == Decimal("1500.00")


@pytest.mark.asyncio
async def test_fifo_same_due_date_pays_lower_id_first(session, ledger):
    first = await make_invoice(session, ledger, "1000", date(2025, 11, 5))
    second = await make_invoice(session, ledger, "1000", date(2025, 11, 5))
    first_id, second_id = first.id, second.id
    assert first_id < second_id
    payment = await make_payment(session, ledger, "700", ref="TIE0001")

    result = await allocate_payment(session, landlord(ledger), payment.id)

    assert [ln.invoice_id for ln in result.allocations] == [first_id]
    await session.refresh(first)
    await session.refresh(second)
    assert first.balance == Decimal("300.00")
    assert first.status == InvoiceStatus.PARTIALLY_PAID
    assert second.balance == Decimal("1000.00")
    assert second.status == InvoiceStatus.ISSUED


@pytest.mark.asyncio
async def test_exact_payment_before_due_date_settles_invoice(session, ledger):
    invoice = await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="EXACT0001")

    result = await allocate_payment(session, landlord(ledger), payment.id)

    assert result.code == "ALLOCATED"
    await session.refresh(invoice)
    assert invoice.balance == Decimal("0")
    assert invoice.status == InvoiceStatus.PAID


@pytest.mark.asyncio
async def test_single_payment_clears_two_months(session, ledger):
    november = await make_invoice(session, ledger, "600", date(2025, 11, 5))
    december = await make_invoice(session, ledger, "300", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "900", ref="TWOMONTH01")

    result = await allocate_payment(session, landlord(ledger), payment.id)

    assert [ln.amount for ln in result.allocations] == [Decimal("600.00"), Decimal("300.00")]
    assert result.unallocated_amount == Decimal("0")
    await session.refresh(november)
    await session.refresh(december)
    assert november.status == InvoiceStatus.PAID
    assert december.status == InvoiceStatus.PAID


@pytest.mark.asyncio
async def test_overpayment_is_held_as_credit(session, ledger):
    invoice = await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1300", ref="OVER0001")

    result = await allocate_payment(session, landlord(ledger), payment.id)

    assert result.success is True
    assert result.code == "OVERPAYMENT_CREDIT"
    assert result.unallocated_amount == Decimal("300.00")
    await session.refresh(invoice)
    await session.refresh(payment)
    assert invoice.status == InvoiceStatus.PAID
    assert payment.unallocated_amount == Decimal("300.00")
    # сумма распределений + остаток = сумма платежа
    assert await allocation_total(session, payment.id) + payment.unallocated_amount == payment.amount


@pytest.mark.asyncio
async def test_credit_is_applied_to_the_next_invoice(session, ledger):
    payment = await make_payment(session, ledger, "500", ref="CREDIT0001")
    first = await allocate_payment(session, landlord(ledger), payment.id)
    assert first.code == "NO_OPEN_INVOICES"
    assert first.unallocated_amount == Decimal("500.00")

    invoice = await make_invoice(session, ledger, "1000", date(2026, 1, 5))
    second = await allocate_payment(session, landlord(ledger), payment.id)

    assert second.code == "ALLOCATED"
    await session.refresh(invoice)
    assert invoice.balance == Decimal("500.00")
    assert invoice.status == InvoiceStatus.PARTIALLY_PAID

    third = await allocate_payment(session, landlord(ledger), payment.id)
    assert third.code == "NOTHING_TO_ALLOCATE"


@pytest.mark.asyncio
async def test_void_and_draft_invoices_are_skipped(session, ledger):
    await make_invoice(session, ledger, "1000", date(2025, 10, 5), status=InvoiceStatus.VOID)
    await make_invoice(session, ledger, "1000", date(2025, 10, 6), status=InvoiceStatus.DRAFT)
    overdue = await make_invoice(session, ledger, "1000", date(2025, 11, 5), status=InvoiceStatus.OVERDUE)
    payment = await make_payment(session, ledger, "400", ref="SKIP0001")

    result = await allocate_payment(session, landlord(ledger), payment.id)

    assert [ln.invoice_id for ln in result.allocations] == [overdue.id]
    await session.refresh(overdue)
    assert overdue.status == InvoiceStatus.PARTIALLY_PAID


@pytest.mark.asyncio
async def test_pending_payment_is_not_allocated(session, ledger):
    await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="PEND0001", status=PaymentStatus.PENDING)

    result = await allocate_payment(session, landlord(ledger), payment.id)

    assert result.success is False
    assert result.code == "PAYMENT_NOT_COMPLETED"
    assert result.allocations == []


# ---------------------------------------------------------------------------
# Ручное распределение
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_manual_allocation_targets_one_invoice(session, ledger):
    older = await make_invoice(session, ledger, "1000", date(2025, 11, 5))
    newer = await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="MAN0001")

    result = await allocate_payment(session, landlord(ledger), payment.id, invoice_id=newer.id, amount=Decimal("400"))

    assert [ln.invoice_id for ln in result.allocations] == [newer.id]
    assert result.unallocated_amount == Decimal("600.00")
    await session.refresh(older)
    await session.refresh(newer)
    assert older.balance == Decimal("1000.00")
    assert newer.balance == Decimal("600.00")
    assert newer.status == InvoiceStatus.PARTIALLY_PAID


@pytest.mark.asyncio
async def test_manual_allocation_without_amount_takes_what_fits(session, ledger):
    invoice = await make_invoice(session, ledger, "700", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="MAN0002")

    result = await allocate_payment(session, landlord(ledger), payment.id, invoice_id=invoice.id)

    assert result.allocations[0].amount == Decimal("700.00")
    assert result.unallocated_amount == Decimal("300.00")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount, code",
    [
        (Decimal("1500"), "EXCEEDS_UNALLOCATED"),
        (Decimal("0"), "INVALID_AMOUNT"),
    ],
)
async def test_manual_allocation_rejects_bad_amounts(session, ledger, amount, code):
    invoice = await make_invoice(session, ledger, "2000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref=f"BAD-{code}")

    with pytest.raises(RentCollectValidationError) as ei:
        await allocate_payment(session, landlord(ledger), payment.id, invoice_id=invoice.id, amount=amount)
    assert ei.value.code == code


@pytest.mark.asyncio
async def test_manual_allocation_cannot_exceed_invoice_balance(session, ledger):
    invoice = await make_invoice(session, ledger, "500", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="MAN0003")
    payment_id, invoice_id = payment.id, invoice.id

    with pytest.raises(RentCollectValidationError) as ei:
        await allocate_payment(session, landlord(ledger), payment_id, invoice_id=invoice_id, amount=Decimal("800"))
    assert ei.value.code == "EXCEEDS_INVOICE_BALANCE"

    # отказ ничего не записал
    await session.refresh(invoice)
    assert invoice.balance == Decimal("500.00")
    assert await allocation_total(session, payment_id) == Decimal("0")


@pytest.mark.asyncio
async def test_manual_allocation_rejects_other_tenants_invoice(session, ledger):
    other = await make_ledger(session, short_code="600100", account_ref="A-102", unit_number="102")
    foreign = await make_invoice(session, other, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="MAN0004")

    with pytest.raises(RentCollectValidationError) as ei:
        await allocate_payment(session, landlord(ledger), payment.id, invoice_id=foreign.id)
    assert ei.value.code == "TENANT_MISMATCH"


@pytest.mark.asyncio
async def test_amount_without_invoice_is_rejected(session, ledger):
    payment = await make_payment(session, ledger, "1000", ref="MAN0005")

    with pytest.raises(RentCollectValidationError) as ei:
        await allocate_payment(session, landlord(ledger), payment.id, amount=Decimal("100"))
    assert ei.value.code == "INVOICE_REQUIRED"


@pytest.mark.asyncio
async def test_paid_invoice_is_not_eligible_for_manual_allocation(session, ledger):
    invoice = await make_invoice(session, ledger, "1000", date(2025, 12, 5), status=InvoiceStatus.PAID, balance="0")
    payment = await make_payment(session, ledger, "1000", ref="MAN0006")

    with pytest.raises(RentCollectValidationError) as ei:
        await allocate_payment(session, landlord(ledger), payment.id, invoice_id=invoice.id)
    assert ei.value.code == "INVOICE_NOT_ELIGIBLE"


# ---------------------------------------------------------------------------
# Доступ
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_other_landlord_cannot_allocate(session, ledger):
    payment = await make_payment(session, ledger, "1000", ref="SCOPE0001")

    with pytest.raises(AuthorizationError) as ei:
        await allocate_payment(session, Principal(user_id=999, role=Role.LANDLORD), payment.id)
    assert ei.value.code == "OUT_OF_SCOPE"


@pytest.mark.asyncio
async def test_caretaker_cannot_allocate(session, ledger):
    payment = await make_payment(session, ledger, "1000", ref="SCOPE0002")
    caretaker = Principal(user_id=5, role=Role.CARETAKER, property_ids=frozenset({ledger.property_id}))

    with pytest.raises(AuthorizationError) as ei:
        await allocate_payment(session, caretaker, payment.id)
    assert ei.value.code == "PERMISSION_DENIED"


@pytest.mark.asyncio
async def test_unknown_payment_is_not_found(session, ledger):
    with pytest.raises(NotFoundError):
        await allocate_payment(session, landlord(ledger), 987654)


# ---------------------------------------------------------------------------
# Правила статусов
# ---------------------------------------------------------------------------
def test_status_rules():
    inv = Invoice(amount=Decimal("1000"), opening_balance=Decimal("0"), balance=Decimal("0"), status=InvoiceStatus.ISSUED)
    assert status_after_allocation(inv) == InvoiceStatus.PAID

    inv = Invoice(
        amount=Decimal("1000"),
        opening_balance=Decimal("0"),
        balance=Decimal("1000"),
        status=InvoiceStatus.PAID,
        due_date=date(2025, 12, 5),
    )
    assert status_after_reversal(inv, today=date(2025, 12, 20)) == InvoiceStatus.OVERDUE
    assert status_after_reversal(inv, today=date(2025, 12, 1)) == InvoiceStatus.ISSUED
