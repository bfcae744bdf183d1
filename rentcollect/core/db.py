# rentcollect/core/db.py
"""
Database configuration and session management for RentCollect (async).

Ключевые особенности:
- Ленивое создание движка (никаких подключений при импорте модуля).
- Безопасный фолбэк: sqlite+aiosqlite:///./rentcollect.db, если DATABASE_URL не задан.
- Автоконвертация Postgres URL → postgresql+asyncpg://
- Утилиты: get_async_db() (FastAPI dependency), session_scope() для фоновых задач,
  close_db_async(), health_check_db_async(), get_alembic_engine_url().
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from rentcollect.core.config import settings
from rentcollect.core.logging import get_logger

logger = get_logger(__name__)

_SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./rentcollect.db"


# -----------------------------------------------------------------------------
# Вспомогательные: нормализация URL
# -----------------------------------------------------------------------------
def _normalize_pg_to_asyncpg(url: str) -> str:
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql+"):
        return "postgresql+asyncpg://" + url.split("://", 1)[1]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _normalize_pg_to_psycopg2(url: str) -> str:
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql+"):
        return "postgresql+psycopg2://" + url.split("://", 1)[1]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return url


def _resolve_async_url() -> str:
    raw = (settings.DATABASE_URL or os.getenv("DATABASE_URL", "")).strip()
    if raw:
        try:
            url = _normalize_pg_to_asyncpg(raw)
            make_url(url)
            return url
        except ArgumentError:
            logger.warning("Invalid DATABASE_URL; falling back to sqlite", url=raw)
    return _SQLITE_FALLBACK_URL


def _engine_options(url: str) -> dict:
    opts: dict = {"echo": bool(settings.DEBUG), "pool_pre_ping": True}
    if "PYTEST_CURRENT_TEST" in os.environ:
        opts["poolclass"] = NullPool
        return opts
    if url.startswith("sqlite"):
        return opts
    opts.update(
        pool_size=settings.SQLALCHEMY_POOL_SIZE,
        max_overflow=settings.SQLALCHEMY_MAX_OVERFLOW,
        pool_recycle=settings.SQLALCHEMY_POOL_RECYCLE,
    )
    return opts


# -----------------------------------------------------------------------------
# Ленивая инициализация async движка/фабрики сессий
# -----------------------------------------------------------------------------
_ASYNC_ENGINE: Optional[AsyncEngine] = None
_ASYNC_SESSION_MAKER: Optional[async_sessionmaker[AsyncSession]] = None


def _get_async_engine() -> AsyncEngine:
    """Создаёт и кэширует async engine лениво (без подключения)."""
    global _ASYNC_ENGINE, _ASYNC_SESSION_MAKER
    if _ASYNC_ENGINE is not None:
        return _ASYNC_ENGINE

    url = _resolve_async_url()
    _ASYNC_ENGINE = create_async_engine(url, **_engine_options(url))
    if url.startswith("sqlite"):
        enable_sqlite_savepoints(_ASYNC_ENGINE)
    _ASYNC_SESSION_MAKER = make_session_maker(_ASYNC_ENGINE)
    return _ASYNC_ENGINE


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    pysqlite/aiosqlite сами решают, когда слать BEGIN, и SAVEPOINT до BEGIN
    превращается в отдельную транзакцию. Берём управление на себя.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    _get_async_engine()
    assert _ASYNC_SESSION_MAKER is not None
    return _ASYNC_SESSION_MAKER


async def get_async_db() -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency (async).
    Создаёт сессию при входе и закрывает при выходе; незавершённая транзакция откатывается.
    """
    session = get_session_maker()()
    try:
        yield session
    finally:
        await session.close()


@asynccontextmanager
async def session_scope(
    maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[AsyncSession]:
    """Сессия для фоновых задач (планировщик): commit при успехе, rollback при ошибке."""
    session = (maker or get_session_maker())()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_db_async() -> None:
    global _ASYNC_ENGINE, _ASYNC_SESSION_MAKER
    if _ASYNC_ENGINE is not None:
        await _ASYNC_ENGINE.dispose()
    _ASYNC_ENGINE = None
    _ASYNC_SESSION_MAKER = None


async def health_check_db_async(timeout_seconds: int = 2) -> dict:
    try:
        eng = _get_async_engine()
        async with eng.connect() as conn:
            conn = await conn.execution_options(timeout=timeout_seconds)
            await conn.execute(text("SELECT 1"))
        return {"ok": True, "error": None}
    except (SQLAlchemyError, OSError) as e:
        logger.error("Async DB health check failed", error=str(e))
        return {"ok": False, "error": str(e)}


# -----------------------------------------------------------------------------
# Alembic helper
# -----------------------------------------------------------------------------
def get_alembic_engine_url() -> str:
    """Sync URL для Alembic env.py (postgresql+psycopg2:// или sqlite)."""
    raw = (settings.DATABASE_URL or os.getenv("DATABASE_URL", "")).strip()
    if not raw:
        return _SQLITE_FALLBACK_URL.replace("sqlite+aiosqlite", "sqlite")
    if raw.startswith("sqlite+aiosqlite"):
        return raw.replace("sqlite+aiosqlite", "sqlite", 1)
    return _normalize_pg_to_psycopg2(raw)


__all__ = [
    "get_async_db",
    "get_session_maker",
    "make_session_maker",
    "enable_sqlite_savepoints",
    "session_scope",
    "close_db_async",
    "health_check_db_async",
    "get_alembic_engine_url",
]
