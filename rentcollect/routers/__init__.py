# rentcollect/routers/__init__.py
"""
Routers package initialization.

- Явный список модулей через ROUTER_SPECS (префикс и теги задаются тут).
- Единый API-префикс из settings.API_V1_STR (по умолчанию /api/v1).
- Фильтрация через ENV: ROUTERS_INCLUDE / ROUTERS_EXCLUDE (поддержка масок `*`).
"""

from __future__ import annotations

import fnmatch
import importlib
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from fastapi import APIRouter, FastAPI

from rentcollect.core.config import settings
from rentcollect.core.logging import get_logger

logger = get_logger(__name__)


# -------------------------------------------------------------------------
# Спецификация подключений
# -------------------------------------------------------------------------
@dataclass(frozen=True)
class RouterSpec:
    module: str                 # e.g. "rentcollect.routers.payments"
    attr: str = "router"        # имя APIRouter в модуле
    prefix: Optional[str] = None
    tags: Optional[List[str]] = None
    enabled: bool = True        # можно временно отключить модуль


ROUTER_SPECS: Tuple[RouterSpec, ...] = (
    RouterSpec("rentcollect.routers.mpesa",     prefix="/mpesa",              tags=["mpesa"]),
    RouterSpec("rentcollect.routers.payments",  prefix="/payments",           tags=["payments"]),
    RouterSpec("rentcollect.routers.unmatched", prefix="/unmatched-payments", tags=["unmatched-payments"]),
    RouterSpec("rentcollect.routers.invoices",  prefix="/invoices",           tags=["invoices"]),
)


def _api_prefix() -> str:
    base = settings.API_V1_STR or "/api/v1"
    if not base.startswith("/"):
        base = "/" + base
    return base.rstrip("/")


# -------------------------------------------------------------------------
# ENV filters: include/exclude с масками
# -------------------------------------------------------------------------
def _parse_csv_env(name: str) -> List[str]:
    raw = os.getenv(name, "").strip()
    return [x.strip() for x in raw.split(",") if x.strip()]


def _match_any(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatch(name, p) for p in patterns)


def _should_include(module_name: str, includes: List[str], excludes: List[str]) -> bool:
    if includes and not _match_any(module_name, includes):
        return False
    if excludes and _match_any(module_name, excludes):
        return False
    return True


# -------------------------------------------------------------------------
# Регистрация в FastAPI
# -------------------------------------------------------------------------
def register_routers(app: FastAPI) -> None:
    """Подключает роутеры из ROUTER_SPECS. Ошибка импорта модуля не глушится."""
    base_prefix = _api_prefix()
    includes = _parse_csv_env("ROUTERS_INCLUDE")
    excludes = _parse_csv_env("ROUTERS_EXCLUDE")

    for spec in ROUTER_SPECS:
        if not spec.enabled:
            continue
        if not _should_include(spec.module, includes, excludes):
            logger.info("Router excluded by filter", module=spec.module)
            continue

        mod = importlib.import_module(spec.module)
        router = getattr(mod, spec.attr, None)
        if not isinstance(router, APIRouter):
            raise RuntimeError(f"No APIRouter attr={spec.attr} in {spec.module}")

        # аккуратно склеиваем префиксы
        mp = (spec.prefix or "/" + spec.module.split(".")[-1].replace("_", "-")).strip()
        if not mp.startswith("/"):
            mp = "/" + mp
        full_prefix = f"{base_prefix}{mp}"
        tags = spec.tags or list(router.tags or []) or [mp.strip("/")]

        app.include_router(router, prefix=full_prefix, tags=tags)
        logger.info("Router registered", module=spec.module, prefix=full_prefix, tags=tags)


__all__ = ["RouterSpec", "ROUTER_SPECS", "register_routers"]
