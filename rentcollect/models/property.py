"""
Property / Unit / Tenant / LandlordPaymentAccount.

Эти сущности ведутся внешним сервисом (CRUD вне нашего контура); здесь они нужны
сопоставителю счетов, разрешению unmatched-платежей и расчёту пени.
"""

from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from rentcollect.models.base import BaseModel, Money, enum_column


class PaymentAccountType(str, enum.Enum):
    MPESA_PAYBILL = "mpesa_paybill"
    MPESA_TILL = "mpesa_till"
    BANK_ACCOUNT = "bank_account"


class Property(BaseModel):
    __tablename__ = "properties"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    landlord_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class Unit(BaseModel):
    __tablename__ = "units"

    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)
    unit_number: Mapped[str] = mapped_column(String(32), nullable=False)
    # код, который арендатор вводит как "Account No." при оплате на paybill
    payment_account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    __table_args__ = (Index("ix_units_property_unit_number", "property_id", "unit_number", unique=True),)


class Tenant(BaseModel):
    """A tenancy: one tenant occupying one unit over a lease window."""

    __tablename__ = "tenants"

    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id", ondelete="RESTRICT"), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    lease_start: Mapped[date] = mapped_column(Date, nullable=False)
    lease_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    monthly_rent: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    rent_due_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    late_fee_grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    late_fee_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    late_fee_fixed_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    __table_args__ = (
        CheckConstraint("rent_due_day >= 1 AND rent_due_day <= 31", name="rent_due_day_range"),
        CheckConstraint("late_fee_grace_period_days >= 0", name="grace_non_negative"),
        Index("ix_tenants_unit_active", "unit_id", "is_active"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_active_on(self, on: date) -> bool:
        if not self.is_active or self.lease_start > on:
            return False
        return self.lease_end is None or self.lease_end >= on


class LandlordPaymentAccount(BaseModel):
    __tablename__ = "landlord_payment_accounts"

    landlord_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    # NULL = счёт арендодателя, обслуживающий все его объекты
    property_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("properties.id", ondelete="CASCADE"), nullable=True, index=True
    )
    account_type: Mapped[PaymentAccountType] = mapped_column(
        enum_column(PaymentAccountType, "payment_account_type"),
        nullable=False,
        default=PaymentAccountType.MPESA_PAYBILL,
    )
    account_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    mpesa_short_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def serves(self, prop: Property) -> bool:
        if self.property_id is not None:
            return self.property_id == prop.id
        return self.landlord_id == prop.landlord_id


__all__ = ["PaymentAccountType", "Property", "Unit", "Tenant", "LandlordPaymentAccount"]
