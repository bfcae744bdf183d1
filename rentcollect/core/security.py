# rentcollect/core/security.py
"""
Token and shared-secret verification.

RentCollect does not issue user credentials: bearer tokens are minted by the
platform's auth service and only verified here (python-jose, HS*). The
`create_access_token` helper exists for service-to-service calls and tests.
"""

from __future__ import annotations

import hmac
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any, Iterable, Optional, Union

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from rentcollect.core.config import settings

JWT_ISSUER = "rentcollect"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def constant_time_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def verify_webhook_token(provided: Optional[str], expected: Optional[str] = None) -> bool:
    """Fail closed: no configured token means every callback is rejected."""
    expected = settings.MPESA_WEBHOOK_TOKEN if expected is None else expected
    if not expected or not provided:
        return False
    return constant_time_compare(provided, expected)


def create_access_token(
    subject: Union[str, int],
    *,
    role: str,
    organization_id: Optional[int] = None,
    property_ids: Iterable[int] = (),
    expires_delta: Optional[timedelta] = None,
    extra: Optional[dict[str, Any]] = None,
) -> str:
    now = _utcnow()
    exp = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    claims: dict[str, Any] = {
        "iss": JWT_ISSUER,
        "sub": str(subject),
        "type": "access",
        "role": role,
        "org": organization_id,
        "property_ids": sorted(int(p) for p in property_ids),
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": secrets.token_urlsafe(16),
    }
    if extra:
        claims.update(extra)
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and validate; raises ValueError with a human-readable reason."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            issuer=JWT_ISSUER,
            options={"verify_aud": False, "leeway": settings.JWT_LEEWAY_SECONDS},
        )
    except ExpiredSignatureError as e:
        raise ValueError("Token expired") from e
    except JWTClaimsError as e:
        raise ValueError(f"Invalid claims: {e}") from e
    except JWTError as e:
        raise ValueError(f"Invalid token: {e}") from e

    if payload.get("type") != "access":
        raise ValueError(f"Unexpected token type: {payload.get('type')}")
    if "sub" not in payload:
        raise ValueError("Token subject (sub) missing")
    return payload


__all__ = [
    "constant_time_compare",
    "verify_webhook_token",
    "create_access_token",
    "decode_access_token",
]
