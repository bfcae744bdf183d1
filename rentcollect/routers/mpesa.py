# rentcollect/routers/mpesa.py
"""
M-Pesa (Daraja) notification endpoints.

Особенности:
- Аутентификация по общему секрету (X-MPesa-Token) до любых побочных эффектов.
- Тело разбирается вручную: невалидный payload -> 400 {"resultCode": 1, ...}, в БД ничего не пишется.
- Каждому уведомлению выдаётся correlation id: в лог-контекст, в запись, в X-Correlation-ID.
- Дубликат = успех (resultCode 0).
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.db import get_async_db
from rentcollect.core.dependencies import verify_mpesa_callback
from rentcollect.core.logging import bound_context, get_logger, new_correlation_id
from rentcollect.core.metrics import WEBHOOK_NOTIFICATIONS
from rentcollect.schemas.mpesa import B2CResultPayload, C2BNotification, MpesaAck, StkCallbackPayload
from rentcollect.services.mpesa_webhook_service import (
    WebhookOutcome,
    process_b2c_result,
    process_c2b_confirmation,
    process_stk_callback,
)

logger = get_logger(__name__)

router = APIRouter()

CORRELATION_HEADER = "X-Correlation-ID"

P = TypeVar("P", bound=BaseModel)


class RejectedPayload(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

async def _read_payload(request: Request, schema: type[P]) -> tuple[P, dict[str, Any]]:
    raw = await request.body()
    try:
        data = json.loads(raw or b"null")
    except ValueError as e:
        raise RejectedPayload("body is not valid JSON") from e
    if not isinstance(data, dict):
        raise RejectedPayload("body must be a JSON object")
    try:
        return schema.model_validate(data), data
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise RejectedPayload(f"{loc}: {first.get('msg', 'invalid payload')}".strip(": ")) from e


def _rejected(kind: str, correlation_id: str, reason: str) -> JSONResponse:
    WEBHOOK_NOTIFICATIONS.labels(kind=kind, outcome="rejected").inc()
    logger.warning("M-Pesa notification rejected", kind=kind, reason=reason)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=MpesaAck.rejected(reason).model_dump(),
        headers={CORRELATION_HEADER: correlation_id},
    )


async def _handle(
    kind: str,
    request: Request,
    response: Response,
    schema: type[P],
    process: Callable[[P, dict[str, Any], str], Awaitable[WebhookOutcome]],
) -> MpesaAck | JSONResponse:
    correlation_id = new_correlation_id()
    with bound_context(correlation_id=correlation_id):
        try:
            payload, raw = await _read_payload(request, schema)
        except RejectedPayload as e:
            return _rejected(kind, correlation_id, e.reason)

        outcome = await process(payload, raw, correlation_id)
        WEBHOOK_NOTIFICATIONS.labels(kind=kind, outcome=outcome.outcome).inc()
        response.headers[CORRELATION_HEADER] = correlation_id
        return outcome.ack()


# ---------------------------------------------------------------------
# C2B
# ---------------------------------------------------------------------

@router.post(
    "/c2b/validation",
    response_model=MpesaAck,
    summary="C2B validation (всегда принимаем)",
    dependencies=[Depends(verify_mpesa_callback)],
)
async def c2b_validation(request: Request, response: Response):
    correlation_id = new_correlation_id()
    with bound_context(correlation_id=correlation_id):
        try:
            payload, _ = await _read_payload(request, C2BNotification)
        except RejectedPayload as e:
            return _rejected("c2b_validation", correlation_id, e.reason)
        logger.info(
            "C2B validation request",
            trans_id=payload.trans_id,
            amount=str(payload.trans_amount),
            bill_ref=payload.bill_ref_number,
            short_code=payload.business_short_code,
        )
        WEBHOOK_NOTIFICATIONS.labels(kind="c2b_validation", outcome="accepted").inc()
        response.headers[CORRELATION_HEADER] = correlation_id
        return MpesaAck.accepted()


@router.post(
    "/c2b/confirmation",
    response_model=MpesaAck,
    summary="C2B confirmation",
    dependencies=[Depends(verify_mpesa_callback)],
)
async def c2b_confirmation(request: Request, response: Response, db: AsyncSession = Depends(get_async_db)):
    async def _process(payload: C2BNotification, raw: dict[str, Any], cid: str) -> WebhookOutcome:
        return await process_c2b_confirmation(db, payload, raw, cid)

    return await _handle("c2b", request, response, C2BNotification, _process)


# ---------------------------------------------------------------------
# STK push
# ---------------------------------------------------------------------

@router.post(
    "/stkpush/callback",
    response_model=MpesaAck,
    summary="STK push result callback",
    dependencies=[Depends(verify_mpesa_callback)],
)
async def stk_callback(request: Request, response: Response, db: AsyncSession = Depends(get_async_db)):
    async def _process(payload: StkCallbackPayload, raw: dict[str, Any], cid: str) -> WebhookOutcome:
        return await process_stk_callback(db, payload, raw, cid)

    return await _handle("stk", request, response, StkCallbackPayload, _process)


# ---------------------------------------------------------------------
# B2C
# ---------------------------------------------------------------------

@router.post(
    "/b2c/result",
    response_model=MpesaAck,
    summary="B2C disbursement result",
    dependencies=[Depends(verify_mpesa_callback)],
)
async def b2c_result(request: Request, response: Response, db: AsyncSession = Depends(get_async_db)):
    async def _process(payload: B2CResultPayload, raw: dict[str, Any], cid: str) -> WebhookOutcome:
        return await process_b2c_result(db, payload, raw, cid)

    return await _handle("b2c_result", request, response, B2CResultPayload, _process)


@router.post(
    "/b2c/timeout",
    response_model=MpesaAck,
    summary="B2C queue timeout",
    dependencies=[Depends(verify_mpesa_callback)],
)
async def b2c_timeout(request: Request, response: Response, db: AsyncSession = Depends(get_async_db)):
    async def _process(payload: B2CResultPayload, raw: dict[str, Any], cid: str) -> WebhookOutcome:
        return await process_b2c_result(db, payload, raw, cid, timeout=True)

    return await _handle("b2c_timeout", request, response, B2CResultPayload, _process)


# ---------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------

@router.get("/health", summary="Liveness для шлюза")
async def mpesa_health():
    return {"status": "ok"}


__all__ = ["router", "CORRELATION_HEADER"]
