# rentcollect/models/base.py
"""
Base model with common fields and functionality (SQLAlchemy 2.x, DeclarativeBase).

- NAMING_CONVENTIONS для alembic и единых имён ограничений/индексов.
- BaseModel: id / created_at / updated_at (naive UTC).
- Денежный тип Money = Numeric(14, 2) (Decimal на стороне Python).
- JSON, который становится JSONB на PostgreSQL.
- Async-хелпер afor_update_by_id (SELECT ... FOR UPDATE).
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional, TypeVar

from sqlalchemy import JSON, DateTime, Integer, MetaData, Numeric, select
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Naive UTC "сейчас": все DateTime-колонки проекта хранятся без tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)


CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Привести значение к Decimal с двумя знаками (банковское округление не используется)."""
    if isinstance(value, Decimal):
        d = value
    else:
        d = Decimal(str(value))
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


Money = Numeric(14, 2, asdecimal=True)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def enum_column(enum_cls: type[enum.Enum], name: str) -> SQLEnum:
    """Строковый enum (VARCHAR + CHECK), хранит значения в нижнем регистре."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


# --------------------------------------------------------------------------------------
# SQLAlchemy naming conventions
# --------------------------------------------------------------------------------------
NAMING_CONVENTIONS: dict[str, str] = {
    "ix": "ix__%(table_name)s__%(column_0_N_name)s",
    "uq": "uq__%(table_name)s__%(column_0_N_name)s",
    "ck": "ck__%(table_name)s__%(constraint_name)s",
    "fk": "fk__%(table_name)s__%(column_0_N_name)s__%(referred_table_name)s",
    "pk": "pk__%(table_name)s",
}


class Base(DeclarativeBase):
    """Root declarative base (SQLAlchemy 2.x) с naming conventions."""

    metadata = MetaData(naming_convention=NAMING_CONVENTIONS)


class BaseModel(Base):
    """Общий базовый класс для всех моделей проекта."""

    __abstract__ = True

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<{self.__class__.__name__}(id={self.id!r})>"


T = TypeVar("T", bound=BaseModel)


# --------------------------------------------------------------------------------------
# Async helpers
# --------------------------------------------------------------------------------------
async def afor_update_by_id(
    session: AsyncSession,
    model: type[T],
    obj_id: Any,
    *,
    nowait: bool = False,
    skip_locked: bool = False,
) -> Optional[T]:
    """SELECT ... FOR UPDATE по id; на SQLite блокировка игнорируется диалектом."""
    q = (
        select(model)
        .where(model.id == obj_id)
        .with_for_update(nowait=nowait, skip_locked=skip_locked)
        .execution_options(populate_existing=True)
    )
    res = await session.execute(q)
    return res.scalars().first()


__all__ = [
    "Base",
    "BaseModel",
    "NAMING_CONVENTIONS",
    "Money",
    "JSONType",
    "CENT",
    "to_money",
    "enum_column",
    "utc_now",
    "afor_update_by_id",
]
