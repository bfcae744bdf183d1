# rentcollect/core/dependencies.py
"""
FastAPI dependencies: operator principal (bearer JWT) and M-Pesa callback authentication.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from rentcollect.core.config import settings
from rentcollect.core.exceptions import AuthenticationError
from rentcollect.core.logging import audit_logger
from rentcollect.core.rbac import Principal, Role
from rentcollect.core.security import decode_access_token, verify_webhook_token

http_bearer = HTTPBearer(auto_error=False)

MPESA_TOKEN_HEADER = "X-MPesa-Token"


def _principal_from_payload(payload: dict) -> Principal:
    try:
        user_id = int(payload["sub"])
        role = Role(payload.get("role"))
    except (KeyError, TypeError, ValueError) as e:
        raise AuthenticationError("Token does not carry a valid subject/role", code="INVALID_TOKEN") from e

    org = payload.get("org")
    raw_props = payload.get("property_ids") or []
    try:
        property_ids = frozenset(int(p) for p in raw_props)
        organization_id = int(org) if org is not None else None
    except (TypeError, ValueError) as e:
        raise AuthenticationError("Token scope claims are malformed", code="INVALID_TOKEN") from e
    return Principal(user_id=user_id, role=role, organization_id=organization_id, property_ids=property_ids)


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated", code="NOT_AUTHENTICATED")
    try:
        payload = decode_access_token(credentials.credentials)
    except ValueError as e:
        client_ip = request.client.host if request.client else ""
        audit_logger.log_auth_failure("bearer", client_ip, str(e))
        raise AuthenticationError(str(e), code="INVALID_TOKEN") from e
    return _principal_from_payload(payload)


async def verify_mpesa_callback(
    request: Request,
    x_mpesa_token: Optional[str] = Header(default=None, alias=MPESA_TOKEN_HEADER),
) -> None:
    """Shared-secret check for inbound gateway notifications. Rejects before any side effect."""
    client_ip = request.client.host if request.client else ""
    allowed = settings.MPESA_ALLOWED_CALLBACK_IPS
    if allowed and client_ip not in allowed:
        audit_logger.log_security_event(
            "mpesa_callback_ip_rejected", {"client_ip": client_ip, "path": request.url.path}
        )
        raise AuthenticationError("Callback source not allowed", code="CALLBACK_SOURCE_REJECTED")

    if not verify_webhook_token(x_mpesa_token):
        audit_logger.log_auth_failure("mpesa_callback", client_ip, "missing or invalid webhook token")
        raise AuthenticationError("Invalid webhook token", code="INVALID_WEBHOOK_TOKEN")


__all__ = ["get_current_principal", "verify_mpesa_callback", "MPESA_TOKEN_HEADER", "http_bearer"]
