"""
Account matcher: raw paybill reference + short code -> tenant / unit / landlord account.

Никогда не бросает исключений на "не нашли": возвращает MatchFailure с причиной
и частичными подсказками (landlord_id / property_id) для скоупинга карантина.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.logging import get_logger
from rentcollect.models.property import LandlordPaymentAccount, Property, Tenant, Unit

logger = get_logger(__name__)

REASON_INVALID_REFERENCE = "Invalid account reference"
REASON_UNKNOWN_SHORT_CODE = "Unknown short code"
REASON_INACTIVE_ACCOUNT = "Inactive payment account"
REASON_NOT_SERVED = "Short code does not serve this account reference"
REASON_AMBIGUOUS = "Ambiguous account reference"
REASON_NO_ACTIVE_TENANT = "No active tenant"


@dataclass(frozen=True)
class MatchResult:
    tenant_id: int
    unit_id: int
    landlord_account_id: int
    property_id: int
    landlord_id: int


@dataclass(frozen=True)
class MatchFailure:
    reason: str
    landlord_id: Optional[int] = None
    property_id: Optional[int] = None


MatchOutcome = Union[MatchResult, MatchFailure]


def normalize_reference(raw: Optional[str]) -> str:
    return (raw or "").strip().casefold()


def _single(values: set[int]) -> Optional[int]:
    return next(iter(values)) if len(values) == 1 else None


async def _units_for_reference(session: AsyncSession, reference: str) -> list[tuple[Unit, Property]]:
    q = (
        select(Unit, Property)
        .join(Property, Property.id == Unit.property_id)
        .where(func.lower(func.trim(Unit.payment_account_number)) == reference)
        .order_by(Unit.id)
    )
    res = await session.execute(q)
    return [(u, p) for u, p in res.all()]


async def _accounts_for_short_code(session: AsyncSession, short_code: str) -> list[LandlordPaymentAccount]:
    q = (
        select(LandlordPaymentAccount)
        .where(LandlordPaymentAccount.mpesa_short_code == short_code)
        .order_by(LandlordPaymentAccount.id)
    )
    res = await session.execute(q)
    return list(res.scalars().all())


async def find_active_tenancy(session: AsyncSession, unit_id: int, on: date) -> Optional[Tenant]:
    """Активная аренда на дату; при пересечении берём самую позднюю lease_start."""
    q = (
        select(Tenant)
        .where(
            Tenant.unit_id == unit_id,
            Tenant.is_active.is_(True),
            Tenant.lease_start <= on,
            (Tenant.lease_end.is_(None)) | (Tenant.lease_end >= on),
        )
        .order_by(Tenant.lease_start.desc(), Tenant.id.desc())
        .limit(1)
    )
    res = await session.execute(q)
    return res.scalars().first()


async def match_account(
    session: AsyncSession,
    raw_reference: Optional[str],
    business_short_code: Optional[str],
    on: date,
) -> MatchOutcome:
    reference = normalize_reference(raw_reference)
    short_code = (business_short_code or "").strip()

    accounts = await _accounts_for_short_code(session, short_code) if short_code else []
    account_landlord_hint = _single({a.landlord_id for a in accounts})
    account_property_hint = _single({a.property_id for a in accounts if a.property_id is not None})

    if not reference:
        return MatchFailure(REASON_INVALID_REFERENCE, account_landlord_hint, account_property_hint)

    candidates = await _units_for_reference(session, reference)
    if not candidates:
        return MatchFailure(REASON_INVALID_REFERENCE, account_landlord_hint, account_property_hint)

    unit_landlord_hint = _single({p.landlord_id for _, p in candidates})
    unit_property_hint = _single({p.id for _, p in candidates})
    landlord_hint = unit_landlord_hint or account_landlord_hint
    property_hint = unit_property_hint or account_property_hint

    if not accounts:
        return MatchFailure(REASON_UNKNOWN_SHORT_CODE, landlord_hint, property_hint)

    active = [a for a in accounts if a.is_active]
    if not active:
        return MatchFailure(REASON_INACTIVE_ACCOUNT, landlord_hint, property_hint)

    served: list[tuple[Unit, Property, LandlordPaymentAccount]] = []
    for unit, prop in candidates:
        # счёт, привязанный к объекту, важнее общего счёта арендодателя
        matching = sorted(
            (a for a in active if a.serves(prop)),
            key=lambda a: (a.property_id is None, not a.is_default, a.id),
        )
        if matching:
            served.append((unit, prop, matching[0]))

    if not served:
        return MatchFailure(REASON_NOT_SERVED, landlord_hint, property_hint)
    if len(served) > 1:
        return MatchFailure(
            REASON_AMBIGUOUS,
            _single({p.landlord_id for _, p, _ in served}) or landlord_hint,
            _single({p.id for _, p, _ in served}),
        )

    unit, prop, account = served[0]
    tenancy = await find_active_tenancy(session, unit.id, on)
    if tenancy is None:
        return MatchFailure(REASON_NO_ACTIVE_TENANT, prop.landlord_id, prop.id)

    logger.debug("Account reference matched", unit_id=unit.id, tenant_id=tenancy.id, account_id=account.id)
    return MatchResult(
        tenant_id=tenancy.id,
        unit_id=unit.id,
        landlord_account_id=account.id,
        property_id=prop.id,
        landlord_id=prop.landlord_id,
    )


async def match_tenant(
    session: AsyncSession, tenant_id: int, business_short_code: Optional[str] = None
) -> MatchOutcome:
    """
    Арендатор уже известен (STK push инициирован для него): достраиваем unit / property / счёт.
    Счёт по short code, если он обслуживает объект, иначе default или любой активный счёт объекта.
    """
    q = (
        select(Tenant, Unit, Property)
        .join(Unit, Unit.id == Tenant.unit_id)
        .join(Property, Property.id == Unit.property_id)
        .where(Tenant.id == tenant_id)
    )
    row = (await session.execute(q)).first()
    if row is None:
        return MatchFailure(REASON_NO_ACTIVE_TENANT)
    tenant, unit, prop = row

    short_code = (business_short_code or "").strip()
    accounts = await _accounts_for_short_code(session, short_code) if short_code else []
    if not accounts:
        res = await session.execute(
            select(LandlordPaymentAccount).where(
                (LandlordPaymentAccount.property_id == prop.id)
                | (
                    LandlordPaymentAccount.property_id.is_(None)
                    & (LandlordPaymentAccount.landlord_id == prop.landlord_id)
                )
            )
        )
        accounts = list(res.scalars().all())

    serving = sorted(
        (a for a in accounts if a.is_active and a.serves(prop)),
        key=lambda a: (a.property_id is None, not a.is_default, a.id),
    )
    if not serving:
        if not accounts:
            reason = REASON_UNKNOWN_SHORT_CODE
        elif any(a.is_active for a in accounts):
            reason = REASON_NOT_SERVED
        else:
            reason = REASON_INACTIVE_ACCOUNT
        return MatchFailure(reason, prop.landlord_id, prop.id)

    return MatchResult(
        tenant_id=tenant.id,
        unit_id=unit.id,
        landlord_account_id=serving[0].id,
        property_id=prop.id,
        landlord_id=prop.landlord_id,
    )


__all__ = [
    "match_tenant",
    "MatchResult",
    "MatchFailure",
    "MatchOutcome",
    "normalize_reference",
    "find_active_tenancy",
    "match_account",
    "REASON_INVALID_REFERENCE",
    "REASON_UNKNOWN_SHORT_CODE",
    "REASON_INACTIVE_ACCOUNT",
    "REASON_NOT_SERVED",
    "REASON_AMBIGUOUS",
    "REASON_NO_ACTIVE_TENANT",
]
