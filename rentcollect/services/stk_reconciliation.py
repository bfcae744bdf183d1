"""
Фоновая сверка зависших STK push запросов.

Берём pending-записи старше STK_RECONCILE_MIN_AGE_MINUTES (старые первыми),
спрашиваем шлюз и применяем тот же маппинг результата, что и callback.
Ошибка шлюза оставляет запись pending, пока она моложе
STK_PENDING_TIMEOUT_MINUTES; старше этого окна запись уходит в timeout
(с ответом шлюза или без). Каждая запись коммитится и падает отдельно.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from rentcollect.core.config import settings
from rentcollect.core.db import session_scope
from rentcollect.core.exceptions import ExternalServiceError
from rentcollect.core.logging import bound_context, get_logger, new_correlation_id
from rentcollect.core.metrics import STK_SWEEP_RECORDS
from rentcollect.models.base import utc_now
from rentcollect.models.mpesa import MpesaTransaction, MpesaTransactionStatus, MpesaTransactionType
from rentcollect.models.payment import Payment
from rentcollect.services.mpesa_service import MpesaService, StkStatus
from rentcollect.services.mpesa_webhook_service import (
    OUTCOME_RECORDED,
    apply_stk_result,
    claim_pending,
)
from rentcollect.services.notifications import notify_payment_recorded

logger = get_logger(__name__)

SWEEP_RESOLVED = "resolved"
SWEEP_TIMED_OUT = "timed_out"
SWEEP_STILL_PENDING = "still_pending"
SWEEP_GATEWAY_ERROR = "gateway_error"
SWEEP_CONFLICT = "conflict"
SWEEP_ERROR = "error"


class StkStatusGateway(Protocol):
    async def query_stk_status(self, checkout_request_id: str) -> Optional[StkStatus]: ...


@dataclass
class SweepReport:
    examined: int = 0
    resolved: int = 0
    timed_out: int = 0
    still_pending: int = 0
    gateway_errors: int = 0
    conflicts: int = 0
    errors: int = 0
    payment_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "resolved": self.resolved,
            "timed_out": self.timed_out,
            "still_pending": self.still_pending,
            "gateway_errors": self.gateway_errors,
            "conflicts": self.conflicts,
            "errors": self.errors,
        }


async def _stale_pending(session: AsyncSession, now: datetime) -> list[tuple[int, str, datetime]]:
    cutoff = now - timedelta(minutes=settings.STK_RECONCILE_MIN_AGE_MINUTES)
    res = await session.execute(
        select(MpesaTransaction.id, MpesaTransaction.external_request_id, MpesaTransaction.created_at)
        .where(
            MpesaTransaction.transaction_type == MpesaTransactionType.STK_PUSH,
            MpesaTransaction.status == MpesaTransactionStatus.PENDING,
            MpesaTransaction.created_at <= cutoff,
        )
        .order_by(MpesaTransaction.created_at, MpesaTransaction.id)
        .limit(settings.STK_RECONCILE_BATCH_SIZE)
    )
    return [(row[0], row[1], row[2]) for row in res.all()]


async def _sweep_one(
    session: AsyncSession,
    gateway: Optional[StkStatusGateway],
    record_id: int,
    checkout_id: str,
    created_at: datetime,
    now: datetime,
) -> tuple[str, Optional[Payment]]:
    status: Optional[StkStatus] = None
    gateway_failed = False
    if gateway is not None:
        try:
            status = await gateway.query_stk_status(checkout_id)
        except ExternalServiceError as e:
            logger.warning("STK status query failed", checkout_request_id=checkout_id, error=str(e))
            gateway_failed = True

    if status is not None:
        outcome, payment = await apply_stk_result(
            session,
            record_id,
            result_code=status.result_code,
            result_desc=status.result_desc,
            payload=status.raw,
            correlation_id=new_correlation_id(),
        )
        await session.commit()
        logger.info("STK request reconciled", checkout_request_id=checkout_id, outcome=outcome.outcome)
        return SWEEP_RESOLVED, payment if outcome.outcome == OUTCOME_RECORDED else None

    if created_at <= now - timedelta(minutes=settings.STK_PENDING_TIMEOUT_MINUTES):
        claimed = await claim_pending(
            session,
            record_id,
            MpesaTransactionStatus.TIMEOUT,
            result_desc="No answer from gateway before timeout",
        )
        await session.commit()
        if claimed:
            logger.info("STK request timed out", checkout_request_id=checkout_id)
            return SWEEP_TIMED_OUT, None
        return SWEEP_RESOLVED, None

    if gateway_failed:
        return SWEEP_GATEWAY_ERROR, None
    return SWEEP_STILL_PENDING, None


async def reconcile_stale_stk_requests(
    session: AsyncSession,
    gateway: Optional[StkStatusGateway],
    now: Optional[datetime] = None,
) -> SweepReport:
    now = now or utc_now()
    report = SweepReport()
    candidates = await _stale_pending(session, now)
    await session.commit()

    for record_id, checkout_id, created_at in candidates:
        report.examined += 1
        try:
            outcome, payment = await _sweep_one(session, gateway, record_id, checkout_id, created_at, now)
        except (StaleDataError, OperationalError) as e:
            await session.rollback()
            logger.warning("STK sweep conflict, will retry next run", checkout_request_id=checkout_id, error=str(e))
            outcome, payment = SWEEP_CONFLICT, None
        except Exception:
            # одна битая запись не должна блокировать остальные (старые идут первыми)
            await session.rollback()
            logger.exception("STK sweep failed for record, will retry next run", checkout_request_id=checkout_id)
            outcome, payment = SWEEP_ERROR, None

        STK_SWEEP_RECORDS.labels(outcome=outcome).inc()
        if outcome == SWEEP_RESOLVED:
            report.resolved += 1
        elif outcome == SWEEP_TIMED_OUT:
            report.timed_out += 1
        elif outcome == SWEEP_STILL_PENDING:
            report.still_pending += 1
        elif outcome == SWEEP_GATEWAY_ERROR:
            report.gateway_errors += 1
        elif outcome == SWEEP_CONFLICT:
            report.conflicts += 1
        else:
            report.errors += 1
        if payment is not None:
            report.payment_ids.append(payment.id)
            await notify_payment_recorded(payment, source="stk_reconciliation")

    if report.examined:
        logger.info("STK sweep finished", **report.as_dict())
    return report


async def run_stk_reconciliation(maker: Optional[async_sessionmaker[AsyncSession]] = None) -> SweepReport:
    """Точка входа для планировщика."""
    gateway = MpesaService() if settings.mpesa_gateway_configured else None
    with bound_context(correlation_id=new_correlation_id()):
        async with session_scope(maker) as session:
            return await reconcile_stale_stk_requests(session, gateway)


__all__ = [
    "StkStatusGateway",
    "SweepReport",
    "reconcile_stale_stk_requests",
    "run_stk_reconciliation",
    "SWEEP_RESOLVED",
    "SWEEP_TIMED_OUT",
    "SWEEP_STILL_PENDING",
    "SWEEP_GATEWAY_ERROR",
    "SWEEP_CONFLICT",
    "SWEEP_ERROR",
]
