"""
HTTP surface for operators: bearer auth, problem+json errors, payments / unmatched / invoices routes.
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import WEBHOOK_HEADERS, auth_headers, c2b_payload, make_invoice, make_payment
from rentcollect.core.db import health_check_db_async
from rentcollect.models import PaymentStatus


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_health_ok(client):
    r = await client.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "ok"
    assert j["database"]["ok"] is True
    assert "scheduler" in j and "uptime_seconds" in j


@pytest.mark.asyncio
async def test_db_health_check_runs_select_one():
    assert await health_check_db_async(timeout_seconds=1) == {"ok": True, "error": None}


@pytest.mark.asyncio
async def test_version_and_metrics(client):
    r = await client.get("/version")
    assert r.status_code == 200
    assert "version" in r.json()

    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "rentcollect_" in r.text


@pytest.mark.asyncio
async def test_security_headers_present(client):
    r = await client.get("/api/v1/mpesa/health")
    h = r.headers
    assert h["X-Content-Type-Options"] == "nosniff"
    assert h["X-Frame-Options"] == "DENY"
    assert "Referrer-Policy" in h
    assert "X-Request-ID" in h


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_missing_and_invalid_bearer_token(client, ledger):
    r = await client.get("/api/v1/payments/1")
    assert r.status_code == 401
    assert r.json()["code"] == "NOT_AUTHENTICATED"

    r = await client.get("/api/v1/payments/1", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_TOKEN"


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_get_payment_respects_scope(client, session, ledger):
    payment = await make_payment(session, ledger, "1000", ref="API0001")

    r = await client.get(f"/api/v1/payments/{payment.id}", headers=auth_headers("landlord", ledger.landlord_id))
    assert r.status_code == 200
    body = r.json()
    assert body["external_transaction_reference"] == "API0001"
    assert Decimal(body["amount"]) == Decimal("1000")

    r = await client.get(f"/api/v1/payments/{payment.id}", headers=auth_headers("landlord", 999))
    assert r.status_code == 403
    assert r.json()["code"] == "OUT_OF_SCOPE"

    r = await client.get("/api/v1/payments/424242", headers=auth_headers("landlord", ledger.landlord_id))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_caretaker_reads_but_cannot_allocate(client, session, ledger):
    payment = await make_payment(session, ledger, "1000", ref="API0002")
    headers = auth_headers("caretaker", 5, property_ids=[ledger.property_id])

    assert (await client.get(f"/api/v1/payments/{payment.id}", headers=headers)).status_code == 200
    r = await client.post(f"/api/v1/payments/{payment.id}/allocate", headers=headers)
    assert r.status_code == 403
    assert r.json()["code"] == "PERMISSION_DENIED"


@pytest.mark.asyncio
async def test_allocate_and_reverse_over_http(client, session, ledger):
    invoice = await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1200", ref="API0003")
    headers = auth_headers("landlord", ledger.landlord_id)

    r = await client.post(f"/api/v1/payments/{payment.id}/allocate", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["code"] == "OVERPAYMENT_CREDIT"
    assert body["allocations"][0]["invoice_id"] == invoice.id
    assert body["allocations"][0]["invoice_status"] == "paid"
    assert Decimal(body["unallocated_amount"]) == Decimal("200")

    r = await client.post(f"/api/v1/payments/{payment.id}/reverse", json={"reason": "typo"}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["reversed_allocations"] == 1
    assert Decimal(body["restored_amount"]) == Decimal("1000")
    assert Decimal(body["unallocated_amount"]) == Decimal("1200")


@pytest.mark.asyncio
async def test_manual_allocation_errors_are_problem_json(client, session, ledger):
    invoice = await make_invoice(session, ledger, "500", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="API0004")
    headers = auth_headers("accountant", 8, property_ids=[ledger.property_id])

    r = await client.post(
        f"/api/v1/payments/{payment.id}/allocate",
        json={"invoice_id": invoice.id, "amount": "800"},
        headers=headers,
    )
    assert r.status_code == 422
    assert r.headers["content-type"].startswith("application/problem+json")
    assert r.json()["code"] == "EXCEEDS_INVOICE_BALANCE"

    r = await client.post(f"/api/v1/payments/{payment.id}/allocate", json={"amount": "100"}, headers=headers)
    assert r.status_code == 422
    assert r.json()["code"] == "INVOICE_REQUIRED"


@pytest.mark.asyncio
async def test_confirm_pending_payment(client, session, ledger):
    invoice = await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="API0005", status=PaymentStatus.PENDING)
    headers = auth_headers("manager", 3, property_ids=[ledger.property_id])

    r = await client.post(f"/api/v1/payments/{payment.id}/confirm", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["payment"]["status"] == "completed"
    assert body["payment"]["confirmed_by_user_id"] == 3
    assert body["allocation"]["allocations"][0]["invoice_id"] == invoice.id

    r = await client.post(f"/api/v1/payments/{payment.id}/confirm", headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "PAYMENT_NOT_PENDING"


@pytest.mark.asyncio
async def test_reject_pending_payment(client, session, ledger):
    await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    payment = await make_payment(session, ledger, "1000", ref="API0006", status=PaymentStatus.PENDING)
    headers = auth_headers("manager", 3, property_ids=[ledger.property_id])

    r = await client.post(
        f"/api/v1/payments/{payment.id}/reject", json={"reason": "bank slip is forged"}, headers=headers
    )
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "failed"
    assert body["notes"] == "Rejected: bank slip is forged"

    # отклонённый платёж нельзя ни подтвердить, ни отклонить ещё раз
    r = await client.post(f"/api/v1/payments/{payment.id}/confirm", headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "PAYMENT_NOT_PENDING"
    r = await client.post(f"/api/v1/payments/{payment.id}/reject", json={"reason": "again"}, headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "PAYMENT_NOT_PENDING"


@pytest.mark.asyncio
async def test_reject_requires_permission_and_reason(client, session, ledger):
    payment = await make_payment(session, ledger, "1000", ref="API0007", status=PaymentStatus.PENDING)

    accountant = auth_headers("accountant", 4, property_ids=[ledger.property_id])
    r = await client.post(f"/api/v1/payments/{payment.id}/reject", json={"reason": "nope"}, headers=accountant)
    assert r.status_code == 403
    assert r.json()["code"] == "PERMISSION_DENIED"

    landlord = auth_headers("landlord", ledger.landlord_id)
    r = await client.post(f"/api/v1/payments/{payment.id}/reject", json={"reason": "   "}, headers=landlord)
    assert r.status_code == 422
    assert r.json()["code"] == "REASON_REQUIRED"

    r = await client.post(f"/api/v1/payments/{payment.id}/reject", json={}, headers=landlord)
    assert r.status_code == 422
    assert r.headers["content-type"].startswith("application/problem+json")

    r = await client.get(f"/api/v1/payments/{payment.id}", headers=landlord)
    assert r.json()["status"] == "pending"


# ---------------------------------------------------------------------------
# Unmatched
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_unmatched_queue_resolve_flow(client, ledger):
    await client.post("/api/v1/mpesa/c2b/confirmation", json=c2b_payload("APIU0001", bill_ref="?"), headers=WEBHOOK_HEADERS)
    headers = auth_headers("landlord", ledger.landlord_id)

    r = await client.get("/api/v1/unmatched-payments/", params={"status": "pending"}, headers=headers)
    assert r.status_code == 200
    items = r.json()
    assert [i["external_transaction_reference"] for i in items] == ["APIU0001"]
    unmatched_id = items[0]["id"]

    payload = {"tenant_id": ledger.tenant_id, "period_start": "2025-12-01", "period_end": "2025-12-31"}
    r = await client.post(f"/api/v1/unmatched-payments/{unmatched_id}/resolve", json=payload, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["unmatched"]["status"] == "resolved"
    assert body["unmatched"]["resolved_payment_id"] == body["payment_id"]

    r = await client.post(f"/api/v1/unmatched-payments/{unmatched_id}/resolve", json=payload, headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "UNMATCHED_NOT_PENDING"

    r = await client.get(f"/api/v1/payments/{body['payment_id']}", headers=headers)
    assert r.json()["external_transaction_reference"] == "APIU0001"


@pytest.mark.asyncio
async def test_unmatched_resolve_validation(client, ledger):
    await client.post("/api/v1/mpesa/c2b/confirmation", json=c2b_payload("APIU0002", bill_ref="?"), headers=WEBHOOK_HEADERS)
    headers = auth_headers("landlord", ledger.landlord_id)
    items = (await client.get("/api/v1/unmatched-payments/", headers=headers)).json()
    unmatched_id = items[0]["id"]

    r = await client.post(
        f"/api/v1/unmatched-payments/{unmatched_id}/resolve",
        json={"tenant_id": ledger.tenant_id, "period_start": "2025-12-31", "period_end": "2025-12-01"},
        headers=headers,
    )
    assert r.status_code == 422
    assert r.json()["code"] == "INVALID_PERIOD"

    r = await client.post(f"/api/v1/unmatched-payments/{unmatched_id}/ignore", json={"notes": "bank test"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"


# ---------------------------------------------------------------------------
# Invoices / late fees
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_late_fee_assessment_and_application(client, session, ledger):
    invoice = await make_invoice(session, ledger, "1000", date(2025, 12, 5))
    headers = auth_headers("landlord", ledger.landlord_id)

    r = await client.get(f"/api/v1/invoices/{invoice.id}/late-fee", params={"as_of": "2025-12-08"}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["days_overdue"] == 3
    assert body["is_within_grace"] is True
    assert Decimal(body["late_fee_amount"]) == Decimal("0")
    assert body["policy"] == "No late fee"

    r = await client.post(f"/api/v1/invoices/{invoice.id}/late-fee", json={"as_of": "2025-12-20"}, headers=headers)
    assert r.status_code == 200
    assert Decimal(r.json()["delta"]) == Decimal("0")

    r = await client.post(
        f"/api/v1/invoices/{invoice.id}/late-fee", headers=auth_headers("accountant", 8, property_ids=[ledger.property_id])
    )
    assert r.status_code == 403
