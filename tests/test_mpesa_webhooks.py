"""
M-Pesa callbacks end-to-end: аутентификация, идемпотентность, карантин, отказ на кривом payload.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import WEBHOOK_HEADERS, c2b_payload, make_invoice, stk_payload
from rentcollect.models import (
    InvoiceStatus,
    MpesaTransaction,
    MpesaTransactionStatus,
    Payment,
    UnmatchedPayment,
)
from rentcollect.services.mpesa_webhook_service import (
    REASON_UNKNOWN_CHECKOUT,
    register_b2c_request,
    register_stk_request,
)

C2B_URL = "/api/v1/mpesa/c2b/confirmation"
STK_URL = "/api/v1/mpesa/stkpush/callback"


async def count(session_maker, model, *where) -> int:
    async with session_maker() as s:
        res = await s.execute(select(func.count(model.id)).where(*where))
        return res.scalar_one()


async def fetch_one(session_maker, model, *where):
    async with session_maker() as s:
        res = await s.execute(select(model).where(*where))
        return res.scalars().one()


# ---------------------------------------------------------------------------
# Аутентификация
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"X-MPesa-Token": "wrong"}])
async def test_callback_without_valid_token_is_rejected(client, session_maker, ledger, headers):
    r = await client.post(C2B_URL, json=c2b_payload("AUTH000001"), headers=headers)

    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_WEBHOOK_TOKEN"
    assert await count(session_maker, Payment) == 0
    assert await count(session_maker, UnmatchedPayment) == 0


# ---------------------------------------------------------------------------
# C2B
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_c2b_confirmation_records_and_allocates(client, session, session_maker, ledger):
    invoice = await make_invoice(session, ledger, "1000", date(2025, 12, 5))

    r = await client.post(C2B_URL, json=c2b_payload("QKC0000001", "1000"), headers=WEBHOOK_HEADERS)

    assert r.status_code == 200
    assert r.json() == {"resultCode": 0, "resultDesc": "Accepted"}
    correlation_id = r.headers["X-Correlation-ID"]

    payment = await fetch_one(session_maker, Payment, Payment.external_transaction_reference == "QKC0000001")
    assert payment.tenant_id == ledger.tenant_id
    assert payment.landlord_account_id == ledger.account_id
    assert payment.amount == Decimal("1000.00")
    assert payment.unallocated_amount == Decimal("0")
    assert payment.correlation_id == correlation_id
    assert payment.payment_date.date() == date(2025, 12, 3)
    assert payment.period_start == date(2025, 12, 1)
    assert payment.period_end == date(2025, 12, 31)

    await session.refresh(invoice)
    await session.commit()
    assert invoice.status == InvoiceStatus.PAID


@pytest.mark.asyncio
async def test_duplicate_c2b_is_acknowledged_once_recorded(client, session_maker, ledger):
    body = c2b_payload("QKC0000002", "1000")

    first = await client.post(C2B_URL, json=body, headers=WEBHOOK_HEADERS)
    second = await client.post(C2B_URL, json=body, headers=WEBHOOK_HEADERS)

    assert first.status_code == second.status_code == 200
    assert first.json()["resultCode"] == 0
    assert second.json()["resultCode"] == 0
    assert await count(session_maker, Payment) == 1


@pytest.mark.asyncio
async def test_unknown_account_reference_is_quarantined(client, session_maker, ledger):
    r = await client.post(C2B_URL, json=c2b_payload("QKC0000003", bill_ref="ZZZ-999"), headers=WEBHOOK_HEADERS)

    assert r.status_code == 200
    assert r.json()["resultCode"] == 0
    assert await count(session_maker, Payment) == 0

    item = await fetch_one(session_maker, UnmatchedPayment, UnmatchedPayment.external_transaction_reference == "QKC0000003")
    assert item.reason == "Invalid account reference"
    assert item.raw_account_reference == "ZZZ-999"
    assert item.landlord_id == ledger.landlord_id
    assert item.amount == Decimal("1000.00")
    assert item.raw_payload["TransID"] == "QKC0000003"


@pytest.mark.asyncio
async def test_duplicate_quarantined_notification_is_stored_once(client, session_maker, ledger):
    body = c2b_payload("QKC0000004", bill_ref="ZZZ-999")

    await client.post(C2B_URL, json=body, headers=WEBHOOK_HEADERS)
    r = await client.post(C2B_URL, json=body, headers=WEBHOOK_HEADERS)

    assert r.json()["resultCode"] == 0
    assert await count(session_maker, UnmatchedPayment) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "mutate",
    [
        lambda b: b.pop("TransID"),
        lambda b: b.update(TransAmount="-5"),
        lambda b: b.update(TransAmount="abc"),
        lambda b: b.update(TransAmount="0.001"),
        lambda b: b.update(TransAmount="0.001", BillRefNumber="NOPE"),
        lambda b: b.update(BusinessShortCode=""),
    ],
)
async def test_malformed_c2b_is_rejected_without_writes(client, session_maker, ledger, mutate):
    body = c2b_payload("QKC0000005")
    mutate(body)

    r = await client.post(C2B_URL, json=body, headers=WEBHOOK_HEADERS)

    assert r.status_code == 400
    assert r.json()["resultCode"] == 1
    assert r.json()["resultDesc"].startswith("Rejected: ")
    assert await count(session_maker, Payment) == 0
    assert await count(session_maker, UnmatchedPayment) == 0


@pytest.mark.asyncio
async def test_non_json_body_is_rejected(client, ledger):
    r = await client.post(
        C2B_URL, content=b"not json", headers={**WEBHOOK_HEADERS, "Content-Type": "application/json"}
    )
    assert r.status_code == 400
    assert r.json() == {"resultCode": 1, "resultDesc": "Rejected: body is not valid JSON"}


@pytest.mark.asyncio
async def test_c2b_validation_always_accepts(client, session_maker, ledger):
    r = await client.post(
        "/api/v1/mpesa/c2b/validation", json=c2b_payload("QKC0000006", bill_ref="ZZZ-999"), headers=WEBHOOK_HEADERS
    )
    assert r.status_code == 200
    assert r.json()["resultCode"] == 0
    assert await count(session_maker, UnmatchedPayment) == 0


# ---------------------------------------------------------------------------
# STK push
# ---------------------------------------------------------------------------
async def register_stk(session, ledger, checkout_id: str, amount: str = "1000"):
    record = await register_stk_request(
        session,
        checkout_request_id=checkout_id,
        amount=Decimal(amount),
        phone_number="254700000001",
        account_reference=ledger.account_ref,
        business_short_code=ledger.short_code,
        tenant_id=ledger.tenant_id,
    )
    await session.commit()
    return record.id


@pytest.mark.asyncio
async def test_duplicate_stk_callback_records_one_payment(client, session, session_maker, ledger):
    record_id = await register_stk(session, ledger, "ws_CO_0001")
    body = stk_payload("ws_CO_0001", receipt="RCT0000001")

    first = await client.post(STK_URL, json=body, headers=WEBHOOK_HEADERS)
    second = await client.post(STK_URL, json=body, headers=WEBHOOK_HEADERS)

    assert first.json()["resultCode"] == 0
    assert second.json()["resultCode"] == 0
    assert await count(session_maker, Payment) == 1

    payment = await fetch_one(session_maker, Payment, Payment.external_transaction_reference == "RCT0000001")
    record = await fetch_one(session_maker, MpesaTransaction, MpesaTransaction.id == record_id)
    assert record.status == MpesaTransactionStatus.COMPLETED
    assert record.mpesa_receipt_number == "RCT0000001"
    assert record.payment_id == payment.id
    assert payment.tenant_id == ledger.tenant_id


@pytest.mark.asyncio
async def test_stk_success_without_receipt_uses_checkout_id(client, session, session_maker, ledger):
    await register_stk(session, ledger, "ws_CO_0002")

    r = await client.post(STK_URL, json=stk_payload("ws_CO_0002", receipt=None), headers=WEBHOOK_HEADERS)

    assert r.json()["resultCode"] == 0
    assert await count(session_maker, Payment, Payment.external_transaction_reference == "ws_CO_0002") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result_code, expected",
    [
        (1032, MpesaTransactionStatus.CANCELLED),
        (1037, MpesaTransactionStatus.TIMEOUT),
        (2001, MpesaTransactionStatus.TIMEOUT),
        (1, MpesaTransactionStatus.FAILED),
    ],
)
async def test_stk_failure_codes_update_record_only(client, session, session_maker, ledger, result_code, expected):
    record_id = await register_stk(session, ledger, f"ws_CO_F{result_code}")

    r = await client.post(
        STK_URL, json=stk_payload(f"ws_CO_F{result_code}", result_code=result_code), headers=WEBHOOK_HEADERS
    )

    assert r.json()["resultCode"] == 0
    record = await fetch_one(session_maker, MpesaTransaction, MpesaTransaction.id == record_id)
    assert record.status == expected
    assert record.result_code == result_code
    assert await count(session_maker, Payment) == 0


@pytest.mark.asyncio
async def test_stk_success_for_unknown_checkout_is_quarantined(client, session_maker, ledger):
    r = await client.post(STK_URL, json=stk_payload("ws_CO_UNKNOWN", receipt="RCT0000009"), headers=WEBHOOK_HEADERS)

    assert r.json()["resultCode"] == 0
    item = await fetch_one(session_maker, UnmatchedPayment, UnmatchedPayment.external_transaction_reference == "RCT0000009")
    assert item.reason == REASON_UNKNOWN_CHECKOUT
    assert await count(session_maker, Payment) == 0


@pytest.mark.asyncio
async def test_stk_receipt_already_seen_via_c2b_links_existing_payment(client, session, session_maker, ledger):
    record_id = await register_stk(session, ledger, "ws_CO_0003")
    await client.post(C2B_URL, json=c2b_payload("RCT0000003", "1000"), headers=WEBHOOK_HEADERS)

    r = await client.post(STK_URL, json=stk_payload("ws_CO_0003", receipt="RCT0000003"), headers=WEBHOOK_HEADERS)

    assert r.json()["resultCode"] == 0
    assert await count(session_maker, Payment) == 1
    payment = await fetch_one(session_maker, Payment, Payment.external_transaction_reference == "RCT0000003")
    record = await fetch_one(session_maker, MpesaTransaction, MpesaTransaction.id == record_id)
    assert record.status == MpesaTransactionStatus.COMPLETED
    assert record.payment_id == payment.id


@pytest.mark.asyncio
async def test_malformed_stk_callback_is_rejected(client, session, session_maker, ledger):
    record_id = await register_stk(session, ledger, "ws_CO_0004")
    body = stk_payload("ws_CO_0004")
    del body["Body"]["stkCallback"]["ResultCode"]

    r = await client.post(STK_URL, json=body, headers=WEBHOOK_HEADERS)

    assert r.status_code == 400
    assert r.json()["resultCode"] == 1
    record = await fetch_one(session_maker, MpesaTransaction, MpesaTransaction.id == record_id)
    assert record.status == MpesaTransactionStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("checkout_id", ["ws_CO_0005", "ws_CO_UNKNOWN"])
async def test_stk_sub_cent_amount_is_rejected_without_writes(client, session, session_maker, ledger, checkout_id):
    record_id = await register_stk(session, ledger, "ws_CO_0005")

    r = await client.post(STK_URL, json=stk_payload(checkout_id, amount="0.001"), headers=WEBHOOK_HEADERS)

    assert r.status_code == 400
    assert r.json()["resultCode"] == 1
    assert "2 decimal places" in r.json()["resultDesc"]
    record = await fetch_one(session_maker, MpesaTransaction, MpesaTransaction.id == record_id)
    assert record.status == MpesaTransactionStatus.PENDING
    assert await count(session_maker, Payment) == 0
    assert await count(session_maker, UnmatchedPayment) == 0


# ---------------------------------------------------------------------------
# B2C
# ---------------------------------------------------------------------------
def b2c_payload(conversation_id: str, result_code: int = 0) -> dict:
    return {
        "Result": {
            "ResultType": 0,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully.",
            "OriginatorConversationID": "10571-7910404-1",
            "ConversationID": conversation_id,
            "TransactionID": "NLJ41HAY6Q",
            "ResultParameters": {
                "ResultParameter": [
                    {"Key": "TransactionAmount", "Value": 500},
                    {"Key": "TransactionCompletedDateTime", "Value": "03.12.2025 10:15:00"},
                ]
            },
        }
    }


@pytest.mark.asyncio
async def test_b2c_result_then_timeout_keeps_first_outcome(client, session, session_maker, ledger):
    record = await register_b2c_request(
        session, conversation_id="AG_20251203_0001", amount=Decimal("500"), tenant_id=ledger.tenant_id
    )
    await session.commit()
    record_id = record.id

    r1 = await client.post("/api/v1/mpesa/b2c/result", json=b2c_payload("AG_20251203_0001"), headers=WEBHOOK_HEADERS)
    r2 = await client.post("/api/v1/mpesa/b2c/timeout", json=b2c_payload("AG_20251203_0001"), headers=WEBHOOK_HEADERS)

    assert r1.json()["resultCode"] == 0
    assert r2.json()["resultCode"] == 0
    stored = await fetch_one(session_maker, MpesaTransaction, MpesaTransaction.id == record_id)
    assert stored.status == MpesaTransactionStatus.COMPLETED
    assert stored.mpesa_receipt_number == "NLJ41HAY6Q"
    assert stored.transaction_date.date() == date(2025, 12, 3)
    assert await count(session_maker, Payment) == 0


@pytest.mark.asyncio
async def test_gateway_health(client):
    r = await client.get("/api/v1/mpesa/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
