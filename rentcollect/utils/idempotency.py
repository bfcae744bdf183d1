"""
Idempotency utilities for preventing duplicate ledger writes.

Гарантия "ровно один раз" опирается на UNIQUE-ограничения в БД, а не на кэш:
- is_duplicate(): быстрая проверка на чтение (без гарантий при гонке);
- insert_once(): вставка в SAVEPOINT; нарушение уникальности -> DuplicateDelivery,
  внешняя транзакция при этом остаётся живой.
"""

from __future__ import annotations

from typing import Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.exceptions import DuplicateDelivery, is_unique_violation
from rentcollect.core.logging import get_logger
from rentcollect.models.mpesa import TERMINAL_MPESA_STATUSES, MpesaTransaction
from rentcollect.models.payment import Payment
from rentcollect.models.unmatched import UnmatchedPayment

logger = get_logger(__name__)

T = TypeVar("T")


async def is_duplicate(session: AsyncSession, external_id: Optional[str]) -> bool:
    """
    Был ли уже обработан внешний идентификатор: Payment, UnmatchedPayment
    или терминальная запись отслеживания STK/B2C.
    """
    ref = (external_id or "").strip()
    if not ref:
        return False

    res = await session.execute(select(Payment.id).where(Payment.external_transaction_reference == ref).limit(1))
    if res.first() is not None:
        return True

    res = await session.execute(
        select(UnmatchedPayment.id).where(UnmatchedPayment.external_transaction_reference == ref).limit(1)
    )
    if res.first() is not None:
        return True

    res = await session.execute(
        select(MpesaTransaction.id)
        .where(
            MpesaTransaction.external_request_id == ref,
            MpesaTransaction.status.in_(TERMINAL_MPESA_STATUSES),
        )
        .limit(1)
    )
    return res.first() is not None


async def insert_once(session: AsyncSession, obj: T, *, external_id: str, kind: str = "payment") -> T:
    """
    Durable guard: INSERT внутри SAVEPOINT.
    Если уникальный ключ уже занят, откатывается только savepoint и поднимается DuplicateDelivery.
    """
    try:
        async with session.begin_nested():
            session.add(obj)
            await session.flush()
    except IntegrityError as e:
        if not is_unique_violation(e):
            raise
        logger.info("Duplicate delivery suppressed", kind=kind, external_id=external_id)
        raise DuplicateDelivery(external_id, kind=kind) from e
    return obj


__all__ = ["is_duplicate", "insert_once"]
