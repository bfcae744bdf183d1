from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# ================================
# ВСПОМОГАТЕЛЬНЫЕ ХЕЛПЕРЫ
# ================================
def _under_pytest() -> bool:
    return "PYTEST_CURRENT_TEST" in os.environ


def _mask_secret(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    s = str(val)
    if not s:
        return s
    if len(s) <= 6:
        return "***"
    return s[:3] + "***" + s[-3:]


def _parse_list_like(v):
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("[") and v.endswith("]"):
            try:
                parsed = json.loads(v)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(i).strip() for i in parsed if str(i).strip()]
        return [i.strip() for i in v.split(",") if i.strip()]
    return v


def _is_secret_key_name(key: str) -> bool:
    lk = key.lower()
    if any(s in lk for s in ("secret", "password", "token", "passkey")):
        return True
    if "key" in lk and "public" not in lk:
        return True
    return False


def _mask_nested(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if isinstance(k, str) and _is_secret_key_name(k) and not isinstance(v, (dict, list, tuple)):
                out[k] = _mask_secret(v)
            else:
                out[k] = _mask_nested(v)
        return out
    if isinstance(obj, list):
        return [_mask_nested(v) for v in obj]
    return obj


# ================================
# НАСТРОЙКИ ПРИЛОЖЕНИЯ (Pydantic v2)
# ================================
class Settings(BaseSettings):
    """
    Конфиг-прослойка RentCollect.
    - В продакшене разрешён только PostgreSQL; в dev/test fallback на SQLite (aiosqlite).
    - Секреты маскируются в дампах.
    - Все ручки M-Pesa и фоновой сверки STK настраиваются через .env.
    """

    model_config = SettingsConfigDict(
        env_file=(".env.test", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    # ---- базовые
    APP_NAME: str = Field(default="RentCollect", description="Application name")
    PROJECT_NAME: str = Field(default="RentCollect", description="Project name")
    VERSION: str = Field(default="0.1.0", description="Application version")
    DEBUG: bool = Field(default=False, description="Debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment")
    TESTING: bool = Field(default=False, description="Testing mode")
    API_V1_STR: str = Field(default="/api/v1", description="API v1 prefix")
    HOST: str = Field(default="127.0.0.1", description="Server host")
    PORT: int = Field(default=8000, description="Server port")
    CORS_ORIGINS: Annotated[List[str], NoDecode] = Field(default=["*"], description="CORS origins")

    # ---- security/JWT (токены выпускает внешний auth-сервис, мы только проверяем)
    SECRET_KEY: str = Field(default="changeme", description="JWT secret key")
    ALGORITHM: str = Field(default="HS256", description="JWT algorithm")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=30, description="Access token expiry")
    JWT_LEEWAY_SECONDS: int = Field(default=10, description="Clock skew tolerance")

    # ---- БД
    DATABASE_URL: Optional[str] = Field(default=None, description="Database URL")
    SQLALCHEMY_POOL_SIZE: int = Field(default=10, description="Pool size")
    SQLALCHEMY_MAX_OVERFLOW: int = Field(default=20, description="Max overflow")
    SQLALCHEMY_POOL_RECYCLE: int = Field(default=1800, description="Pool recycle (s)")

    # ---- логи
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="Logging format (json|text)")

    # ---- M-Pesa (Daraja)
    MPESA_WEBHOOK_TOKEN: Optional[str] = Field(default=None, description="Shared secret expected in X-MPesa-Token")
    MPESA_ALLOWED_CALLBACK_IPS: Annotated[List[str], NoDecode] = Field(default=[], description="Optional callback source allow-list")
    MPESA_USE_SANDBOX: bool = Field(default=True, description="Use Daraja sandbox")
    MPESA_API_URL: Optional[str] = Field(default=None, description="Override Daraja base URL")
    MPESA_CONSUMER_KEY: Optional[str] = Field(default=None, description="Daraja consumer key")
    MPESA_CONSUMER_SECRET: Optional[str] = Field(default=None, description="Daraja consumer secret")
    MPESA_SHORTCODE: Optional[str] = Field(default=None, description="STK business short code")
    MPESA_PASSKEY: Optional[str] = Field(default=None, description="STK passkey")
    MPESA_HTTP_TIMEOUT_SECONDS: float = Field(default=10.0, description="Gateway HTTP timeout")
    LEDGER_CURRENCY: str = Field(default="KES", description="Single ledger currency")

    # ---- сверка STK / распределение
    STK_RECONCILE_INTERVAL_MINUTES: int = Field(default=10, description="Sweep interval")
    STK_RECONCILE_MIN_AGE_MINUTES: int = Field(default=2, description="Only sweep records older than this")
    STK_RECONCILE_BATCH_SIZE: int = Field(default=50, description="Records per sweep")
    STK_PENDING_TIMEOUT_MINUTES: int = Field(default=30, description="Mark unanswered STK requests as timeout")
    OVERDUE_REFRESH_INTERVAL_MINUTES: int = Field(default=60, description="Overdue label refresh interval")
    ALLOCATION_MAX_RETRIES: int = Field(default=3, description="Retries on allocation conflicts")

    # ---- планировщик
    ENABLE_SCHEDULER: bool = Field(default=False, description="Start APScheduler in app lifespan")
    SCHEDULER_TIMEZONE: str = Field(default="UTC", description="Scheduler timezone")

    # --------- валидаторы ---------
    @field_validator("CORS_ORIGINS", "MPESA_ALLOWED_CALLBACK_IPS", mode="before")
    def _lists(cls, v):
        return _parse_list_like(v)

    @field_validator("ALGORITHM")
    def check_alg(cls, v):
        allowed = {"HS256", "HS384", "HS512"}
        if v not in allowed:
            raise ValueError(f"Unsupported JWT algorithm: {v}")
        return v

    @field_validator("ALLOCATION_MAX_RETRIES", "STK_RECONCILE_BATCH_SIZE")
    def _positive(cls, v):
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    # --------- удобные свойства ---------
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_testing(self) -> bool:
        return bool(self.TESTING or _under_pytest())

    @property
    def mpesa_base_url(self) -> str:
        if self.MPESA_API_URL:
            return self.MPESA_API_URL.rstrip("/")
        if self.MPESA_USE_SANDBOX:
            return "https://sandbox.safaricom.co.ke"
        return "https://api.safaricom.co.ke"

    @property
    def mpesa_gateway_configured(self) -> bool:
        return bool(self.MPESA_CONSUMER_KEY and self.MPESA_CONSUMER_SECRET and self.MPESA_SHORTCODE and self.MPESA_PASSKEY)

    @property
    def build_info(self) -> dict:
        return {
            "project": self.PROJECT_NAME,
            "version": self.VERSION,
            "environment": self.ENVIRONMENT,
        }

    # --------- проверки ---------
    def _is_postgres_url(self, url: str) -> bool:
        scheme = (urlparse(url).scheme or "").lower()
        return scheme in {"postgres", "postgresql"} or scheme.startswith("postgresql+")

    def check_secret_key(self) -> None:
        if self.is_production:
            if not self.SECRET_KEY or self.SECRET_KEY.strip().lower() in {"changeme", "secret", "password"}:
                raise ValueError("Set a secure SECRET_KEY in .env for production!")

    def check_database_url(self) -> None:
        if self.is_production:
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL must be set in production!")
            if not self._is_postgres_url(self.DATABASE_URL):
                raise ValueError("In production, only PostgreSQL is allowed for DATABASE_URL!")

    def check_webhook_token(self) -> None:
        if not self.MPESA_WEBHOOK_TOKEN:
            logging.getLogger(__name__).warning(
                "MPESA_WEBHOOK_TOKEN не задан: все M-Pesa callbacks будут отклоняться (401)."
            )

    def dump_settings_safe(self) -> dict:
        return _mask_nested(self.model_dump())


# Глобальный объект настроек
@lru_cache
def get_settings() -> Settings:
    s = Settings()
    if not _under_pytest() and os.getenv("DISABLE_APP_STARTUP_HOOKS") != "1":
        s.check_secret_key()
        s.check_database_url()
        s.check_webhook_token()
    return s


settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
