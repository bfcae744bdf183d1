# rentcollect/core/exceptions.py
from __future__ import annotations

"""
Unified exceptions & handlers for RentCollect.

- Domain exceptions (AuthenticationError, AuthorizationError, NotFoundError, ConflictError, ...)
- AllocationConflict: transient concurrency failure of the allocation engine (retryable)
- DuplicateDelivery: internal signal of the idempotency guard (never reaches HTTP)
- Global FastAPI handlers with structured logging via rentcollect.core.logging
- RFC 7807-style JSON body (application/problem+json)
- IntegrityError parsing (duplicate/foreign key/not null/check) for PG/SQLite
"""

import re
from typing import Any, Dict, Mapping, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from rentcollect.core.logging import bound_context, get_logger, redact_secrets

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Custom domain exceptions
# -----------------------------------------------------------------------------


class RentCollectException(Exception):
    """Base domain exception."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        http_status: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.extra = extra or {}
        self.headers = headers or {}
        self.http_status = http_status  # позволяет насильно указать статус
        super().__init__(self.message)


class AuthenticationError(RentCollectException):
    """Missing or invalid credentials (bearer token or webhook shared secret)."""


class AuthorizationError(RentCollectException):
    """Authenticated principal lacks a permission or the resource is out of scope."""


class RentCollectValidationError(RentCollectException):
    """Form-level validation failure (bad period, missing tenant, bad amount)."""


class NotFoundError(RentCollectException):
    """Resource not found errors."""


class ConflictError(RentCollectException):
    """State conflict: terminal unmatched payment, duplicate reference, non-pending payment."""


class AllocationConflict(ConflictError):
    """Concurrent writers touched the same payment/invoice rows; safe to retry."""


class ExternalServiceError(RentCollectException):
    """Gateway (Daraja) call failed."""


class DuplicateDelivery(RentCollectException):
    """
    Raised by the idempotency guard when a unique key already exists.
    Callers translate it to a successful no-op.
    """

    def __init__(self, external_id: str, kind: str = "payment"):
        super().__init__(f"Duplicate {kind} delivery: {external_id}", code="DUPLICATE_DELIVERY")
        self.external_id = external_id
        self.kind = kind


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _problem_json(
    title: str,
    detail: str,
    status_code: int,
    code: Optional[str] = None,
    instance: Optional[str] = None,
    extras: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """RFC 7807 inspired body (application/problem+json compatible)."""
    body: Dict[str, Any] = {
        "type": f"https://httpstatuses.com/{status_code}",
        "title": title,
        "status": status_code,
        "detail": detail,
        "code": code,
    }
    if instance:
        body["instance"] = instance
    if extras:
        body["extra"] = redact_secrets(extras)
    return {k: v for k, v in body.items() if v is not None}


def _extract_request_id(headers: Mapping[str, str]) -> str:
    for k in ("x-request-id", "x-correlation-id"):
        if k in headers:
            return headers.get(k, "")
    return ""


def _json_problem_response(
    status_code: int,
    content: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers=headers or {},
        media_type="application/problem+json",
    )


# -----------------------------------------------------------------------------
# IntegrityError parsing (Postgres/SQLite common patterns)
# -----------------------------------------------------------------------------

_DUP_RE = re.compile(r"duplicate key|unique constraint|unique violation", re.IGNORECASE)
_FK_RE = re.compile(r"foreign key", re.IGNORECASE)
_NOTNULL_RE = re.compile(r"not null", re.IGNORECASE)
_CHECK_RE = re.compile(r"check constraint|violates check constraint", re.IGNORECASE)


def is_unique_violation(exc: IntegrityError) -> bool:
    return bool(_DUP_RE.search(str(getattr(exc, "orig", exc))))


def _parse_integrity_error(exc: IntegrityError) -> Tuple[str, str]:
    """Returns (message, code) for user-friendly error mapping."""
    text = str(getattr(exc, "orig", exc))
    if _DUP_RE.search(text):
        return ("A record with this value already exists", "DUPLICATE_VALUE")
    if _FK_RE.search(text):
        return ("Referenced record does not exist", "FOREIGN_KEY_ERROR")
    if _NOTNULL_RE.search(text):
        return ("Required field is missing", "REQUIRED_FIELD")
    if _CHECK_RE.search(text):
        return ("Invalid value provided", "INVALID_VALUE")
    return ("A database constraint was violated", "INTEGRITY_ERROR")


# -----------------------------------------------------------------------------
# Exception Handlers (FastAPI)
# -----------------------------------------------------------------------------

_DOMAIN_STATUS: Tuple[Tuple[type, int, str], ...] = (
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED, "Authentication error"),
    (AuthorizationError, status.HTTP_403_FORBIDDEN, "Authorization error"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "Resource not found"),
    (ConflictError, status.HTTP_409_CONFLICT, "Conflict"),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY, "Upstream service error"),
    (RentCollectValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error"),
)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for uncaught exceptions."""
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path, method=request.method)

    body = _problem_json(
        title="Internal server error",
        detail="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_ERROR",
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_500_INTERNAL_SERVER_ERROR, body)


async def rentcollect_exception_handler(request: Request, exc: RentCollectException) -> JSONResponse:
    """Handler for domain exceptions. Maps to appropriate HTTP status codes."""
    sc = status.HTTP_400_BAD_REQUEST
    title = "Bad request"
    for exc_type, exc_status, exc_title in _DOMAIN_STATUS:
        if isinstance(exc, exc_type):
            sc, title = exc_status, exc_title
            break
    sc = exc.http_status or sc

    if isinstance(exc, AuthenticationError):
        exc.headers.setdefault("WWW-Authenticate", 'Bearer realm="api"')

    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.warning(
            "RentCollect exception",
            exception_type=type(exc).__name__,
            message=exc.message,
            code=exc.code,
            path=request.url.path,
            method=request.method,
        )

    body = _problem_json(
        title=title,
        detail=exc.message,
        status_code=sc,
        code=exc.code,
        instance=str(request.url),
        extras=exc.extra,
    )
    return _json_problem_response(sc, body, headers=exc.headers)


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    msg, code = _parse_integrity_error(exc)
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.warning(
            "Database integrity error",
            error=str(getattr(exc, "orig", exc)),
            path=request.url.path,
            method=request.method,
            code=code,
        )

    body = _problem_json(
        title="Integrity error",
        detail=msg,
        status_code=status.HTTP_409_CONFLICT,
        code=code,
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_409_CONFLICT, body)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for FastAPI RequestValidationError (body/query/path validation)."""
    errs = exc.errors()
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.warning("Request validation error", errors=redact_secrets(errs), path=request.url.path)

    body = _problem_json(
        title="Validation error",
        detail="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="REQUEST_VALIDATION_ERROR",
        instance=str(request.url),
        extras={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errs]},
    )
    return _json_problem_response(status.HTTP_422_UNPROCESSABLE_ENTITY, body)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.info("HTTP exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)

    body = _problem_json(
        title=f"HTTP {exc.status_code}",
        detail=str(exc.detail),
        status_code=exc.status_code,
        code=f"HTTP_{exc.status_code}",
        instance=str(request.url),
    )
    return _json_problem_response(exc.status_code, body, headers=exc.headers or {})


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.error("SQLAlchemy error", exc_info=exc, path=request.url.path, method=request.method)

    body = _problem_json(
        title="Database error",
        detail="Database operation failed",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="DB_ERROR",
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_500_INTERNAL_SERVER_ERROR, body)


async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.error("DB operational error", exc_info=exc, path=request.url.path, method=request.method)

    body = _problem_json(
        title="Database unavailable",
        detail="Database is temporarily unavailable. Please retry later.",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code="DB_UNAVAILABLE",
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_503_SERVICE_UNAVAILABLE, body)


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to FastAPI app."""
    app.add_exception_handler(RentCollectException, rentcollect_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

    # SQLAlchemy
    app.add_exception_handler(IntegrityError, integrity_error_handler)  # 409
    app.add_exception_handler(OperationalError, operational_error_handler)  # 503
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)  # 500

    app.add_exception_handler(Exception, global_exception_handler)


__all__ = [
    "RentCollectException",
    "AuthenticationError",
    "AuthorizationError",
    "RentCollectValidationError",
    "NotFoundError",
    "ConflictError",
    "AllocationConflict",
    "ExternalServiceError",
    "DuplicateDelivery",
    "is_unique_violation",
    "register_exception_handlers",
]
