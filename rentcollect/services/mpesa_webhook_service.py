"""
M-Pesa notification processing: C2B confirmation, STK push callback, B2C result / timeout.

Порядок для денег: guard (is_duplicate) -> matcher -> ledger writer + allocation,
либо карантин. Всё в одной транзакции с одним commit; дубликат = успешный no-op.

Записи отслеживания (MpesaTransaction) переводятся из pending охраняемым
UPDATE ... WHERE status = 'pending': rowcount 0 означает, что итог уже записан.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.exceptions import DuplicateDelivery
from rentcollect.core.logging import get_logger
from rentcollect.models.base import to_money, utc_now
from rentcollect.models.mpesa import MpesaTransaction, MpesaTransactionStatus, MpesaTransactionType
from rentcollect.models.payment import Payment, PaymentStatus
from rentcollect.schemas.mpesa import (
    B2CResultPayload,
    C2BNotification,
    MpesaAck,
    StkCallbackPayload,
    parse_daraja_time,
)
from rentcollect.services.account_matcher import MatchFailure, MatchOutcome, match_account, match_tenant
from rentcollect.services.allocation_service import retry_on_conflict
from rentcollect.services.ledger_writer import record_payment
from rentcollect.services.notifications import notify_payment_recorded
from rentcollect.services.unmatched_service import quarantine
from rentcollect.utils.idempotency import insert_once, is_duplicate

logger = get_logger(__name__)

STK_RESULT_SUCCESS = 0
STK_RESULT_CANCELLED = 1032
STK_RESULT_TIMEOUT_CODES = frozenset({1037, 2001})

REASON_UNKNOWN_CHECKOUT = "Unknown checkout request"

OUTCOME_RECORDED = "recorded"
OUTCOME_QUARANTINED = "quarantined"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UPDATED = "updated"
OUTCOME_IGNORED = "ignored"


@dataclass
class WebhookOutcome:
    outcome: str
    correlation_id: Optional[str] = None
    payment_id: Optional[int] = None
    unmatched_id: Optional[int] = None
    detail: str = ""

    def ack(self) -> MpesaAck:
        return MpesaAck.accepted()


def status_for_stk_result(result_code: int) -> MpesaTransactionStatus:
    if result_code == STK_RESULT_SUCCESS:
        return MpesaTransactionStatus.COMPLETED
    if result_code == STK_RESULT_CANCELLED:
        return MpesaTransactionStatus.CANCELLED
    if result_code in STK_RESULT_TIMEOUT_CODES:
        return MpesaTransactionStatus.TIMEOUT
    return MpesaTransactionStatus.FAILED


def _money_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError):
        return None
    return amount if amount > 0 else None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Tracking records: registration (вызывает инициатор STK / B2C) и охраняемый переход
# ---------------------------------------------------------------------------
async def _register(session: AsyncSession, record: MpesaTransaction) -> MpesaTransaction:
    try:
        return await insert_once(session, record, external_id=record.external_request_id, kind="tracking_record")
    except DuplicateDelivery:
        res = await session.execute(
            select(MpesaTransaction).where(MpesaTransaction.external_request_id == record.external_request_id)
        )
        return res.scalars().one()


async def register_stk_request(
    session: AsyncSession,
    *,
    checkout_request_id: str,
    amount: Decimal,
    merchant_request_id: Optional[str] = None,
    phone_number: Optional[str] = None,
    account_reference: Optional[str] = None,
    business_short_code: Optional[str] = None,
    tenant_id: Optional[int] = None,
) -> MpesaTransaction:
    record = MpesaTransaction(
        transaction_type=MpesaTransactionType.STK_PUSH,
        external_request_id=checkout_request_id.strip(),
        merchant_request_id=merchant_request_id,
        amount=to_money(amount),
        phone_number=phone_number,
        account_reference=account_reference,
        business_short_code=business_short_code,
        tenant_id=tenant_id,
        status=MpesaTransactionStatus.PENDING,
    )
    return await _register(session, record)


async def register_b2c_request(
    session: AsyncSession,
    *,
    conversation_id: str,
    amount: Decimal,
    originator_conversation_id: Optional[str] = None,
    phone_number: Optional[str] = None,
    tenant_id: Optional[int] = None,
) -> MpesaTransaction:
    record = MpesaTransaction(
        transaction_type=MpesaTransactionType.B2C,
        external_request_id=conversation_id.strip(),
        merchant_request_id=originator_conversation_id,
        amount=to_money(amount),
        phone_number=phone_number,
        tenant_id=tenant_id,
        status=MpesaTransactionStatus.PENDING,
    )
    return await _register(session, record)


async def claim_pending(
    session: AsyncSession,
    record_id: int,
    status: MpesaTransactionStatus,
    *,
    result_code: Optional[int] = None,
    result_desc: Optional[str] = None,
    receipt: Optional[str] = None,
    transaction_date: Optional[datetime] = None,
    payload: Optional[dict[str, Any]] = None,
) -> bool:
    """UPDATE ... WHERE status = 'pending'. True, если переход выполнили мы."""
    now = utc_now()
    stmt = (
        update(MpesaTransaction)
        .where(MpesaTransaction.id == record_id, MpesaTransaction.status == MpesaTransactionStatus.PENDING)
        .values(
            status=status,
            result_code=result_code,
            result_desc=(result_desc or "")[:255] or None,
            mpesa_receipt_number=receipt,
            transaction_date=transaction_date,
            callback_payload=payload,
            callback_received_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return (res.rowcount or 0) == 1


async def _link_payment(session: AsyncSession, record_id: int, payment_id: int) -> None:
    await session.execute(
        update(MpesaTransaction)
        .where(MpesaTransaction.id == record_id)
        .values(payment_id=payment_id, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )


# ---------------------------------------------------------------------------
# C2B confirmation
# ---------------------------------------------------------------------------
async def process_c2b_confirmation(
    session: AsyncSession,
    notification: C2BNotification,
    raw_payload: dict[str, Any],
    correlation_id: str,
) -> WebhookOutcome:
    ref = notification.trans_id
    paid_at = notification.transaction_datetime or utc_now()
    recorded: list[Payment] = []

    async def _run() -> WebhookOutcome:
        recorded.clear()
        if await is_duplicate(session, ref):
            return WebhookOutcome(OUTCOME_DUPLICATE, correlation_id, detail=ref)

        match = await match_account(
            session, notification.bill_ref_number, notification.business_short_code, paid_at.date()
        )
        if isinstance(match, MatchFailure):
            item = await quarantine(
                session,
                external_ref=ref,
                amount=notification.trans_amount,
                reason=match.reason,
                raw_account_reference=notification.bill_ref_number,
                phone_number=notification.msisdn,
                payer_name=notification.payer_name,
                business_short_code=notification.business_short_code,
                transaction_date=paid_at,
                correlation_id=correlation_id,
                raw_payload=raw_payload,
                landlord_id=match.landlord_id,
                property_id=match.property_id,
            )
            return WebhookOutcome(OUTCOME_QUARANTINED, correlation_id, unmatched_id=item.id, detail=match.reason)

        payment, _ = await record_payment(
            session,
            match,
            notification.trans_amount,
            external_ref=ref,
            correlation_id=correlation_id,
            status=PaymentStatus.COMPLETED,
            payment_date=paid_at,
            paybill_account_number=notification.bill_ref_number,
            phone_number=notification.msisdn,
            payer_name=notification.payer_name,
        )
        recorded.append(payment)
        return WebhookOutcome(OUTCOME_RECORDED, correlation_id, payment_id=payment.id)

    try:
        outcome = await retry_on_conflict(session, _run, what="record C2B payment")
    except DuplicateDelivery:
        return WebhookOutcome(OUTCOME_DUPLICATE, correlation_id, detail=ref)

    logger.info("C2B confirmation processed", trans_id=ref, outcome=outcome.outcome, detail=outcome.detail)
    for payment in recorded:
        await notify_payment_recorded(payment, source="mpesa_c2b")
    return outcome


# ---------------------------------------------------------------------------
# STK push
# ---------------------------------------------------------------------------
async def apply_stk_result(
    session: AsyncSession,
    record_id: int,
    *,
    result_code: int,
    result_desc: Optional[str],
    receipt: Optional[str] = None,
    amount: Optional[Decimal] = None,
    phone_number: Optional[str] = None,
    transaction_date: Optional[datetime] = None,
    payload: Optional[dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> tuple[WebhookOutcome, Optional[Payment]]:
    """
    Общий путь для callback-а и фоновой сверки. Без commit.
    Успех: Payment по квитанции (или CheckoutRequestID), иначе карантин.
    """
    record = await session.get(MpesaTransaction, record_id, populate_existing=True)
    if record is None:
        return WebhookOutcome(OUTCOME_IGNORED, correlation_id, detail="tracking record not found"), None

    new_status = status_for_stk_result(result_code)
    claimed = await claim_pending(
        session,
        record.id,
        new_status,
        result_code=result_code,
        result_desc=result_desc,
        receipt=receipt,
        transaction_date=transaction_date,
        payload=payload,
    )
    if not claimed:
        return WebhookOutcome(OUTCOME_DUPLICATE, correlation_id, detail=record.external_request_id), None
    if new_status != MpesaTransactionStatus.COMPLETED:
        return WebhookOutcome(OUTCOME_UPDATED, correlation_id, detail=new_status.value), None

    ref = receipt or record.external_request_id
    money = amount or to_money(record.amount)
    paid_at = transaction_date or utc_now()
    phone = phone_number or record.phone_number

    if record.tenant_id is not None:
        match = await match_tenant(session, record.tenant_id, record.business_short_code)
    else:
        match = await match_account(session, record.account_reference, record.business_short_code, paid_at.date())

    try:
        return await _record_stk_money(
            session,
            record,
            match,
            ref=ref,
            money=money,
            paid_at=paid_at,
            phone=phone,
            payload=payload,
            correlation_id=correlation_id,
        )
    except DuplicateDelivery:
        # деньги по этой квитанции уже учтены (например, пришли C2B); переход записи сохраняем
        existing = await session.execute(select(Payment.id).where(Payment.external_transaction_reference == ref))
        payment_id = existing.scalar_one_or_none()
        if payment_id is not None:
            await _link_payment(session, record.id, payment_id)
        return WebhookOutcome(OUTCOME_DUPLICATE, correlation_id, payment_id=payment_id, detail=ref), None


async def _record_stk_money(
    session: AsyncSession,
    record: MpesaTransaction,
    match: MatchOutcome,
    *,
    ref: str,
    money: Decimal,
    paid_at: datetime,
    phone: Optional[str],
    payload: Optional[dict[str, Any]],
    correlation_id: Optional[str],
) -> tuple[WebhookOutcome, Optional[Payment]]:
    if isinstance(match, MatchFailure):
        item = await quarantine(
            session,
            external_ref=ref,
            amount=money,
            reason=match.reason,
            raw_account_reference=record.account_reference,
            phone_number=phone,
            business_short_code=record.business_short_code,
            transaction_date=paid_at,
            correlation_id=correlation_id,
            raw_payload=payload,
            landlord_id=match.landlord_id,
            property_id=match.property_id,
        )
        return WebhookOutcome(OUTCOME_QUARANTINED, correlation_id, unmatched_id=item.id, detail=match.reason), None

    payment, _ = await record_payment(
        session,
        match,
        money,
        external_ref=ref,
        correlation_id=correlation_id,
        status=PaymentStatus.COMPLETED,
        payment_date=paid_at,
        paybill_account_number=record.account_reference,
        phone_number=phone,
    )
    await _link_payment(session, record.id, payment.id)
    return WebhookOutcome(OUTCOME_RECORDED, correlation_id, payment_id=payment.id), payment


async def process_stk_callback(
    session: AsyncSession,
    payload: StkCallbackPayload,
    raw_payload: dict[str, Any],
    correlation_id: str,
) -> WebhookOutcome:
    cb = payload.callback
    receipt = _str_or_none(cb.metadata_value("MpesaReceiptNumber"))
    amount = _money_or_none(cb.metadata_value("Amount"))
    phone = _str_or_none(cb.metadata_value("PhoneNumber"))
    tx_date = parse_daraja_time(cb.metadata_value("TransactionDate"))
    recorded: list[Payment] = []

    async def _run() -> WebhookOutcome:
        recorded.clear()
        res = await session.execute(
            select(MpesaTransaction.id).where(
                MpesaTransaction.external_request_id == cb.checkout_request_id,
                MpesaTransaction.transaction_type == MpesaTransactionType.STK_PUSH,
            )
        )
        record_id = res.scalar_one_or_none()

        if record_id is None:
            if cb.result_code != STK_RESULT_SUCCESS or amount is None:
                logger.warning(
                    "STK callback for unknown checkout request",
                    checkout_request_id=cb.checkout_request_id,
                    result_code=cb.result_code,
                )
                return WebhookOutcome(OUTCOME_IGNORED, correlation_id, detail=REASON_UNKNOWN_CHECKOUT)
            ref = receipt or cb.checkout_request_id
            if await is_duplicate(session, ref):
                return WebhookOutcome(OUTCOME_DUPLICATE, correlation_id, detail=ref)
            item = await quarantine(
                session,
                external_ref=ref,
                amount=amount,
                reason=REASON_UNKNOWN_CHECKOUT,
                phone_number=phone,
                transaction_date=tx_date,
                correlation_id=correlation_id,
                raw_payload=raw_payload,
            )
            return WebhookOutcome(
                OUTCOME_QUARANTINED, correlation_id, unmatched_id=item.id, detail=REASON_UNKNOWN_CHECKOUT
            )

        outcome, payment = await apply_stk_result(
            session,
            record_id,
            result_code=cb.result_code,
            result_desc=cb.result_desc,
            receipt=receipt,
            amount=amount,
            phone_number=phone,
            transaction_date=tx_date,
            payload=raw_payload,
            correlation_id=correlation_id,
        )
        if payment is not None:
            recorded.append(payment)
        return outcome

    try:
        outcome = await retry_on_conflict(session, _run, what="apply STK callback")
    except DuplicateDelivery:
        return WebhookOutcome(OUTCOME_DUPLICATE, correlation_id, detail=cb.checkout_request_id)

    logger.info(
        "STK callback processed",
        checkout_request_id=cb.checkout_request_id,
        result_code=cb.result_code,
        outcome=outcome.outcome,
    )
    for payment in recorded:
        await notify_payment_recorded(payment, source="mpesa_stk")
    return outcome


# ---------------------------------------------------------------------------
# B2C
# ---------------------------------------------------------------------------
async def _find_b2c_record_id(session: AsyncSession, *ids: Optional[str]) -> Optional[int]:
    keys = [i for i in ids if i]
    if not keys:
        return None
    res = await session.execute(
        select(MpesaTransaction.id)
        .where(
            MpesaTransaction.transaction_type == MpesaTransactionType.B2C,
            or_(MpesaTransaction.external_request_id.in_(keys), MpesaTransaction.merchant_request_id.in_(keys)),
        )
        .order_by(MpesaTransaction.id)
        .limit(1)
    )
    return res.scalar_one_or_none()


async def process_b2c_result(
    session: AsyncSession,
    payload: B2CResultPayload,
    raw_payload: dict[str, Any],
    correlation_id: str,
    *,
    timeout: bool = False,
) -> WebhookOutcome:
    r = payload.result
    params = r.parameters()

    async def _run() -> WebhookOutcome:
        record_id = await _find_b2c_record_id(session, r.conversation_id, r.originator_conversation_id)
        if record_id is None:
            logger.warning(
                "B2C notification for unknown conversation",
                conversation_id=r.conversation_id,
                originator_conversation_id=r.originator_conversation_id,
            )
            return WebhookOutcome(OUTCOME_IGNORED, correlation_id, detail="unknown conversation")

        if timeout:
            status = MpesaTransactionStatus.TIMEOUT
        elif r.result_code == 0:
            status = MpesaTransactionStatus.COMPLETED
        else:
            status = MpesaTransactionStatus.FAILED

        claimed = await claim_pending(
            session,
            record_id,
            status,
            result_code=r.result_code,
            result_desc=r.result_desc,
            receipt=_str_or_none(r.transaction_id) or _str_or_none(params.get("TransactionReceipt")),
            transaction_date=_b2c_completed_at(params.get("TransactionCompletedDateTime")),
            payload=raw_payload,
        )
        if not claimed:
            return WebhookOutcome(OUTCOME_DUPLICATE, correlation_id, detail=r.conversation_id or "")
        return WebhookOutcome(OUTCOME_UPDATED, correlation_id, detail=status.value)

    outcome = await retry_on_conflict(session, _run, what="apply B2C result")
    logger.info(
        "B2C notification processed",
        conversation_id=r.conversation_id,
        result_code=r.result_code,
        timeout=timeout,
        outcome=outcome.outcome,
    )
    return outcome


def _b2c_completed_at(value: Any) -> Optional[datetime]:
    """Daraja B2C: "19.12.2019 11:45:50"."""
    text = _str_or_none(value)
    if not text:
        return None
    try:
        return datetime.strptime(text, "%d.%m.%Y %H:%M:%S")
    except ValueError:
        return parse_daraja_time(text)


__all__ = [
    "WebhookOutcome",
    "status_for_stk_result",
    "register_stk_request",
    "register_b2c_request",
    "claim_pending",
    "apply_stk_result",
    "process_c2b_confirmation",
    "process_stk_callback",
    "process_b2c_result",
    "STK_RESULT_SUCCESS",
    "STK_RESULT_CANCELLED",
    "STK_RESULT_TIMEOUT_CODES",
    "REASON_UNKNOWN_CHECKOUT",
]
