from __future__ import annotations

import logging
import os
import sys
from logging.config import fileConfig
from pathlib import Path
from typing import Any

from sqlalchemy import event, pool
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.create import create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError

from alembic import context

# =============================================================================
# 🧭 Поиск корня проекта и sys.path
# =============================================================================
THIS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = THIS_DIR.parent  # .../alembic -> корень проекта
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# =============================================================================
# 🧩 Alembic config и логирование
# =============================================================================
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")


# =============================================================================
# ⚙️ URL БД
# =============================================================================
def get_database_url() -> str:
    """
    Приоритет:
      1) ALEMBIC_DATABASE_URL
      2) rentcollect.core.db.get_alembic_engine_url() (DATABASE_URL -> sync-драйвер, либо SQLite fallback)
    """
    url = (os.getenv("ALEMBIC_DATABASE_URL") or "").strip()
    if url:
        return url

    from rentcollect.core.db import get_alembic_engine_url

    return get_alembic_engine_url()


DATABASE_URL = get_database_url()
config.set_main_option("sqlalchemy.url", DATABASE_URL.replace("%", "%%"))

# =============================================================================
# 🗂️ Метаданные моделей приложения
# =============================================================================
import rentcollect.models  # noqa: E402,F401  регистрирует все таблицы
from rentcollect.models.base import Base  # noqa: E402

target_metadata = Base.metadata


# =============================================================================
# 🔍 Фильтры/хуки Alembic
# =============================================================================
def process_revision_directives(context_: Any, revision: Any, directives: list[Any]) -> None:
    """Удаляем «пустые» ревизии при autogenerate."""
    if getattr(config.cmd_opts, "autogenerate", False):
        script = directives[0]
        if script.upgrade_ops.is_empty():
            directives[:] = []
            logger.info("No schema changes detected; skipping empty revision.")


def _detect_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name().startswith("sqlite")


def make_context_kwargs(connection: Connection) -> dict[str, Any]:
    return dict(
        connection=connection,
        target_metadata=target_metadata,
        process_revision_directives=process_revision_directives,
        compare_type=True,
        compare_server_default=True,
        render_as_batch=_detect_sqlite(str(connection.engine.url)),
    )


# =============================================================================
# 🧵 Offline миграции
# =============================================================================
def run_migrations_offline() -> None:
    """Генерация SQL без подключения к БД."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        process_revision_directives=process_revision_directives,
        literal_binds=True,
        compare_type=True,
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


# =============================================================================
# 🌐 Online миграции
# =============================================================================
def _build_sync_engine(url: str) -> Engine:
    engine = create_engine(url, poolclass=pool.NullPool, future=True)

    # Для SQLite включаем foreign_keys
    if _detect_sqlite(url):

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, _):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def run_migrations_online() -> None:
    engine = _build_sync_engine(DATABASE_URL)
    try:
        with engine.connect() as connection:
            logger.info("Connected to database: %s", connection.engine.url.render_as_string(hide_password=True))
            context.configure(**make_context_kwargs(connection))
            with context.begin_transaction():
                context.run_migrations()
    except OperationalError as exc:
        logger.error("Database connection failed: %s", exc)
        raise
    finally:
        engine.dispose()


# =============================================================================
# ▶️ Точка входа
# =============================================================================
if context.is_offline_mode():
    logger.info("Running migrations in OFFLINE mode")
    run_migrations_offline()
else:
    logger.info("Running migrations in ONLINE mode")
    run_migrations_online()
