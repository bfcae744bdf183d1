"""
Loading resources on behalf of a principal: permission check + property scope.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rentcollect.core.exceptions import NotFoundError, RentCollectValidationError
from rentcollect.core.rbac import Permission, Principal, ensure_property_access, require_permission
from rentcollect.models.invoice import Invoice
from rentcollect.models.payment import Payment
from rentcollect.models.property import Property, Tenant, Unit


async def property_for_unit(session: AsyncSession, unit_id: int) -> Optional[Property]:
    q = select(Property).join(Unit, Unit.property_id == Property.id).where(Unit.id == unit_id)
    res = await session.execute(q)
    return res.scalars().first()


async def get_payment_for_principal(
    session: AsyncSession, principal: Principal, payment_id: int, permission: Permission
) -> Payment:
    require_permission(principal, permission, f"payment:{payment_id}")
    payment = await session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
    prop = await property_for_unit(session, payment.unit_id)
    if prop is None:
        raise NotFoundError("Payment unit not found", code="UNIT_NOT_FOUND")
    ensure_property_access(principal, prop, f"payment:{payment_id}")
    return payment


async def get_invoice_for_principal(
    session: AsyncSession, principal: Principal, invoice_id: int, permission: Permission
) -> Invoice:
    require_permission(principal, permission, f"invoice:{invoice_id}")
    invoice = await session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found", code="INVOICE_NOT_FOUND")
    prop = await session.get(Property, invoice.property_id)
    if prop is None:
        raise NotFoundError("Invoice property not found", code="PROPERTY_NOT_FOUND")
    ensure_property_access(principal, prop, f"invoice:{invoice_id}")
    return invoice


async def get_tenant_in_scope(
    session: AsyncSession, principal: Principal, tenant_id: int
) -> tuple[Tenant, Unit, Property]:
    """Tenant + unit + property. Арендатор приходит из тела запроса, поэтому "нет такого" = 422."""
    q = (
        select(Tenant, Unit, Property)
        .join(Unit, Unit.id == Tenant.unit_id)
        .join(Property, Property.id == Unit.property_id)
        .where(Tenant.id == tenant_id)
    )
    row = (await session.execute(q)).first()
    if row is None:
        raise RentCollectValidationError(
            "Tenant not found", code="TENANT_NOT_FOUND", extra={"field": "tenant_id"}
        )
    tenant, unit, prop = row
    ensure_property_access(principal, prop, f"tenant:{tenant_id}")
    return tenant, unit, prop


__all__ = [
    "property_for_unit",
    "get_payment_for_principal",
    "get_invoice_for_principal",
    "get_tenant_in_scope",
]
