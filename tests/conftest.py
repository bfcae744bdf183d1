# tests/conftest.py
"""
Pytest configuration and fixtures for async database testing.

Ключевые особенности:
- Каждый тест получает свежую файловую SQLite (aiosqlite) в tmp_path; SAVEPOINT включён.
- Переменные окружения выставляются ДО импорта rentcollect (settings читаются при импорте).
- HTTP-клиент: httpx.AsyncClient + ASGITransport, get_async_db переопределён на тестовую БД.
- Фабрики доменных сущностей: объект/квартира/арендатор/счёт арендодателя, счета, платежи.
"""

from __future__ import annotations

import os
import tempfile

os.environ["TESTING"] = "1"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/rentcollect_pytest.db")
os.environ["MPESA_WEBHOOK_TOKEN"] = "test-webhook-token"
os.environ["SECRET_KEY"] = "test-secret-key-for-jwt"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ.setdefault("LOG_FORMAT", "text")

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from rentcollect.core.db import enable_sqlite_savepoints, get_async_db, make_session_maker
from rentcollect.core.security import create_access_token
from rentcollect.models import (
    Base,
    Invoice,
    InvoiceStatus,
    LandlordPaymentAccount,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Property,
    Tenant,
    Unit,
)

WEBHOOK_TOKEN = "test-webhook-token"
WEBHOOK_HEADERS = {"X-MPesa-Token": WEBHOOK_TOKEN}


# ======================================================================================
# БД
# ======================================================================================
@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rentcollect_test.db'}")
    enable_sqlite_savepoints(eng)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_maker(engine)


@pytest_asyncio.fixture
async def session(session_maker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_maker() as s:
        yield s


# ======================================================================================
# HTTP клиент
# ======================================================================================
@pytest_asyncio.fixture
async def client(session_maker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncClient]:
    from rentcollect.main import create_app

    app = create_app()

    async def _override_db() -> AsyncIterator[AsyncSession]:
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_async_db] = _override_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(
    role: str = "landlord",
    user_id: int = 100,
    property_ids: Iterable[int] = (),
    organization_id: Optional[int] = None,
) -> dict[str, str]:
    token = create_access_token(user_id, role=role, organization_id=organization_id, property_ids=property_ids)
    return {"Authorization": f"Bearer {token}"}


# ======================================================================================
# Фабрики
# ======================================================================================
@dataclass
class Ledger:
    landlord_id: int
    property_id: int
    unit_id: int
    tenant_id: int
    account_id: int
    short_code: str
    account_ref: str


async def make_ledger(
    session: AsyncSession,
    *,
    landlord_id: int = 100,
    short_code: str = "600100",
    account_ref: str = "A-101",
    unit_number: str = "101",
    monthly_rent: Decimal = Decimal("1000.00"),
    lease_start: date = date(2025, 1, 1),
    rent_due_day: int = 5,
    grace_days: int = 5,
    late_fee_fixed_amount: Optional[Decimal] = None,
    late_fee_percentage: Optional[Decimal] = None,
    organization_id: Optional[int] = None,
) -> Ledger:
    prop = Property(name=f"Block {unit_number}", landlord_id=landlord_id, organization_id=organization_id)
    session.add(prop)
    await session.flush()
    unit = Unit(property_id=prop.id, unit_number=unit_number, payment_account_number=account_ref)
    session.add(unit)
    await session.flush()
    tenant = Tenant(
        unit_id=unit.id,
        first_name="Wanjiru",
        last_name="Kamau",
        phone_number="254700000001",
        lease_start=lease_start,
        monthly_rent=monthly_rent,
        rent_due_day=rent_due_day,
        late_fee_grace_period_days=grace_days,
        late_fee_fixed_amount=late_fee_fixed_amount,
        late_fee_percentage=late_fee_percentage,
    )
    account = LandlordPaymentAccount(
        landlord_id=landlord_id,
        property_id=prop.id,
        account_name="Main paybill",
        mpesa_short_code=short_code,
        is_default=True,
    )
    session.add_all([tenant, account])
    await session.commit()
    return Ledger(
        landlord_id=landlord_id,
        property_id=prop.id,
        unit_id=unit.id,
        tenant_id=tenant.id,
        account_id=account.id,
        short_code=short_code,
        account_ref=account_ref,
    )


async def make_invoice(
    session: AsyncSession,
    ledger: Ledger,
    amount: Decimal | str,
    due_date: date,
    *,
    status: InvoiceStatus = InvoiceStatus.ISSUED,
    balance: Decimal | str | None = None,
) -> Invoice:
    amount = Decimal(amount)
    invoice = Invoice(
        tenant_id=ledger.tenant_id,
        unit_id=ledger.unit_id,
        property_id=ledger.property_id,
        landlord_id=ledger.landlord_id,
        period_start=due_date.replace(day=1),
        period_end=due_date.replace(day=28),
        due_date=due_date,
        amount=amount,
        balance=Decimal(balance) if balance is not None else amount,
        status=status,
    )
    session.add(invoice)
    await session.commit()
    return invoice


async def make_payment(
    session: AsyncSession,
    ledger: Ledger,
    amount: Decimal | str,
    *,
    ref: str,
    status: PaymentStatus = PaymentStatus.COMPLETED,
    paid_at: datetime = datetime(2025, 12, 3, 10, 0, 0),
) -> Payment:
    amount = Decimal(amount)
    payment = Payment(
        tenant_id=ledger.tenant_id,
        unit_id=ledger.unit_id,
        landlord_account_id=ledger.account_id,
        amount=amount,
        unallocated_amount=amount,
        payment_date=paid_at,
        period_start=paid_at.date().replace(day=1),
        period_end=paid_at.date().replace(day=28),
        method=PaymentMethod.MPESA,
        status=status,
        external_transaction_reference=ref,
    )
    session.add(payment)
    await session.commit()
    return payment


@pytest_asyncio.fixture
async def ledger(session: AsyncSession) -> Ledger:
    return await make_ledger(session)


def c2b_payload(
    trans_id: str,
    amount: str | int = "1000",
    *,
    bill_ref: str = "A-101",
    short_code: str = "600100",
    trans_time: str = "20251203101500",
) -> dict:
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": trans_time,
        "TransAmount": str(amount),
        "BusinessShortCode": short_code,
        "BillRefNumber": bill_ref,
        "InvoiceNumber": "",
        "OrgAccountBalance": "",
        "ThirdPartyTransID": "",
        "MSISDN": "254700000001",
        "FirstName": "Wanjiru",
        "MiddleName": "",
        "LastName": "Kamau",
    }


def stk_payload(
    checkout_id: str,
    *,
    result_code: int = 0,
    receipt: Optional[str] = "RCT0000001",
    amount: int | str = 1000,
    transaction_date: int = 20251203101500,
) -> dict:
    callback: dict = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        items = [
            {"Name": "Amount", "Value": amount},
            {"Name": "TransactionDate", "Value": transaction_date},
            {"Name": "PhoneNumber", "Value": 254700000001},
        ]
        if receipt:
            items.insert(1, {"Name": "MpesaReceiptNumber", "Value": receipt})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}
