# rentcollect/core/logging.py
"""
Centralized logging for RentCollect.

Features:
- Stdlib logging (dictConfig) + structlog (JSON in prod, dev console otherwise).
- Sensitive fields redaction (tokens, passkeys, consumer secrets).
- Context (request_id, user_id, correlation_id, client_ip, user_agent) via contextvars.
- Audit logger for ledger-affecting actions (allocate / reverse / resolve / ignore / confirm).
- ASGI middleware for request context & access logs.

Env knobs (see rentcollect/core/config.py):
  LOG_LEVEL=INFO
  LOG_FORMAT=json|text
  ENVIRONMENT=production|development|test
"""

from __future__ import annotations

import logging
import logging.config
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Dict, Iterator, Optional, Tuple

import structlog

from rentcollect.core.config import settings

# ---------- Context vars ----------
_ctx_request_id: ContextVar[str] = ContextVar("request_id", default="")
_ctx_user_id: ContextVar[str] = ContextVar("user_id", default="")
_ctx_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")
_ctx_client_ip: ContextVar[str] = ContextVar("client_ip", default="")
_ctx_user_agent: ContextVar[str] = ContextVar("user_agent", default="")

_CONFIGURED = False

# ---------- Secrets redaction ----------
_SECRET_KEYS = ("secret", "password", "token", "passkey", "api_key", "authorization")


def _mask_secret_value(v: Any) -> Any:
    s = str(v)
    if len(s) <= 6:
        return "***"
    return s[:3] + "***" + s[-3:]


def redact_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        out: Dict[str, Any] = {}
        for k, v in data.items():
            lk = str(k).lower()
            if any(x in lk for x in _SECRET_KEYS) and v is not None:
                out[k] = _mask_secret_value(v)
            else:
                out[k] = redact_secrets(v)
        return out
    if isinstance(data, list):
        return [redact_secrets(v) for v in data]
    if isinstance(data, tuple):
        return tuple(redact_secrets(v) for v in data)
    return data


# ---------- structlog processors ----------
def _inject_context(_, __, event_dict):
    for key, var in (
        ("request_id", _ctx_request_id),
        ("user_id", _ctx_user_id),
        ("correlation_id", _ctx_correlation_id),
        ("client_ip", _ctx_client_ip),
        ("user_agent", _ctx_user_agent),
    ):
        val = var.get()
        if val and key not in event_dict:
            event_dict[key] = val
    return event_dict


def _redact_processor(_, __, event_dict):
    return redact_secrets(event_dict)


def _add_app(_, __, event_dict):
    event_dict["app"] = settings.PROJECT_NAME
    event_dict["version"] = settings.VERSION
    return event_dict


# ---------- Stdlib dictConfig ----------
def _build_stdlib_dict_config() -> dict:
    level = (settings.LOG_LEVEL or "INFO").upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {"format": "%(message)s"},
        },
        "handlers": {
            "console": {
                "level": level,
                "class": "logging.StreamHandler",
                "formatter": "plain",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn": {"handlers": ["console"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["console"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["console"], "level": "INFO", "propagate": False},
            "apscheduler": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        },
    }


# ---------- structlog configure ----------
def _configure_structlog() -> None:
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_context,
        _redact_processor,
        _add_app,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    use_json = settings.is_production or ((settings.LOG_FORMAT or "").lower() == "json" and not settings.is_testing)
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer(colors=False)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ---------- Public API ----------
def setup_logging() -> None:
    """
    Centralized logging setup:
    - stdlib dictConfig (console)
    - structlog (JSON/console)
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    logging.config.dictConfig(_build_stdlib_dict_config())
    _configure_structlog()
    logging.getLogger(__name__).info("Logging initialized (level=%s)", settings.LOG_LEVEL)
    _CONFIGURED = True


def get_logger(name: str):
    return structlog.get_logger(name)


# ---------- Context helpers ----------
def new_correlation_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def bound_context(
    request_id: Optional[str] = None,
    user_id: Optional[str | int] = None,
    correlation_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Iterator[None]:
    """Scoped binding of logging context with automatic reset."""
    tokens: list[Tuple[ContextVar[str], Token]] = []
    if request_id is not None:
        tokens.append((_ctx_request_id, _ctx_request_id.set(request_id)))
    if user_id is not None:
        tokens.append((_ctx_user_id, _ctx_user_id.set(str(user_id))))
    if correlation_id is not None:
        tokens.append((_ctx_correlation_id, _ctx_correlation_id.set(correlation_id)))
    if client_ip is not None:
        tokens.append((_ctx_client_ip, _ctx_client_ip.set(client_ip)))
    if user_agent is not None:
        tokens.append((_ctx_user_agent, _ctx_user_agent.set(user_agent)))
    try:
        yield
    finally:
        for var, tok in reversed(tokens):
            var.reset(tok)


# ---------- Audit Logger ----------
class AuditLogger:
    def __init__(self):
        self.logger = get_logger("audit")

    def log_auth_failure(self, subject: str, ip_address: str, reason: str) -> None:
        self.logger.warning("auth_failure", subject=subject, ip_address=ip_address, reason=reason)

    def log_data_change(
        self,
        user_id: int | str,
        action: str,
        resource_type: str,
        resource_id: str | int,
        changes: dict[str, Any],
    ) -> None:
        self.logger.info(
            "data_change",
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            changes=redact_secrets(changes),
        )

    def log_security_event(self, event: str, details: dict[str, Any]) -> None:
        self.logger.warning("security_event", security_event=event, **redact_secrets(details))

    def log_permission_denied(self, user_id: int | str, reason: str, resource: str) -> None:
        self.logger.warning("permission_denied", user_id=user_id, reason=reason, resource=resource)


audit_logger = AuditLogger()


# ---------- ASGI middleware ----------
class LoggingContextMiddleware:
    """
    - Generates/reads X-Request-ID and echoes it on the response
    - Binds request context
    - Logs start/end with duration and status
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        headers = {k.decode().lower(): v.decode() for k, v in scope.get("headers", [])}
        request_id = headers.get("x-request-id") or str(uuid.uuid4())
        client = scope.get("client") or ("", 0)
        client_ip = client[0] if isinstance(client, (list, tuple)) and client else ""
        path = scope.get("path", "")
        method = scope.get("method", "")

        start = time.perf_counter()
        status_code_holder = {"code": 500}

        async def _send(message):
            if message["type"] == "http.response.start":
                status_code_holder["code"] = message.get("status", 200)
                raw_headers = list(message.get("headers", []))
                if not any(k.lower() == b"x-request-id" for k, _ in raw_headers):
                    raw_headers.append((b"x-request-id", request_id.encode()))
                message = {**message, "headers": raw_headers}
            await send(message)

        with bound_context(request_id=request_id, client_ip=client_ip, user_agent=headers.get("user-agent", "")):
            lg = get_logger("http")
            lg.info("request_start", method=method, path=path)
            try:
                await self.app(scope, receive, _send)
            finally:
                lg.info(
                    "request_end",
                    method=method,
                    path=path,
                    status=status_code_holder["code"],
                    duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
                )


__all__ = [
    "setup_logging",
    "get_logger",
    "bound_context",
    "new_correlation_id",
    "AuditLogger",
    "audit_logger",
    "LoggingContextMiddleware",
    "redact_secrets",
]
