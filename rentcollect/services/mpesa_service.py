"""
Safaricom Daraja gateway client (read side only: STK push status query).
"""

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx

from rentcollect.core.config import settings
from rentcollect.core.exceptions import ExternalServiceError
from rentcollect.core.logging import get_logger
from rentcollect.models.base import utc_now

logger = get_logger(__name__)

# Daraja отвечает так, пока клиент ещё не ввёл PIN
STILL_PROCESSING_ERROR_CODE = "500.001.1001"


@dataclass(frozen=True)
class StkStatus:
    checkout_request_id: str
    result_code: int
    result_desc: str
    raw: dict[str, Any]


class MpesaService:
    """Service for M-Pesa Daraja integration"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        short_code: Optional[str] = None,
        passkey: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.mpesa_base_url).rstrip("/")
        self.consumer_key = consumer_key or settings.MPESA_CONSUMER_KEY or ""
        self.consumer_secret = consumer_secret or settings.MPESA_CONSUMER_SECRET or ""
        self.short_code = short_code or settings.MPESA_SHORTCODE or ""
        self.passkey = passkey or settings.MPESA_PASSKEY or ""
        self.timeout = timeout or settings.MPESA_HTTP_TIMEOUT_SECONDS
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def _password(self, timestamp: str) -> str:
        raw = f"{self.short_code}{self.passkey}{timestamp}".encode()
        return base64.b64encode(raw).decode()

    async def get_access_token(self) -> str:
        """OAuth client_credentials; токен кэшируется до истечения."""
        now = utc_now()
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token

        try:
            async with self._client() as client:
                response = await client.get(
                    "/oauth/v1/generate",
                    params={"grant_type": "client_credentials"},
                    auth=(self.consumer_key, self.consumer_secret),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Daraja OAuth error: {e}")
            raise ExternalServiceError(f"Failed to obtain Daraja access token: {e}", code="MPESA_AUTH_FAILED") from e

        token = data.get("access_token")
        if not token:
            raise ExternalServiceError("Daraja OAuth response has no access_token", code="MPESA_AUTH_FAILED")
        expires_in = int(data.get("expires_in") or 3599)
        self._token = token
        self._token_expires_at = now + timedelta(seconds=max(expires_in - 60, 0))
        return token

    async def query_stk_status(self, checkout_request_id: str) -> Optional[StkStatus]:
        """
        STK push query. None = шлюз ещё не знает итог (запрос в обработке).
        Сетевые и прочие ошибки поднимаются как ExternalServiceError.
        """
        token = await self.get_access_token()
        timestamp = utc_now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    "/mpesa/stkpushquery/v1/query",
                    headers={"Authorization": f"Bearer {token}"},
                    json=payload,
                )
                data = response.json() if response.content else {}
                if data.get("errorCode") == STILL_PROCESSING_ERROR_CODE:
                    logger.info(f"STK {checkout_request_id} still processing")
                    return None
                response.raise_for_status()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Daraja STK query error for {checkout_request_id}: {e}")
            raise ExternalServiceError(f"Failed to query STK status: {e}", code="MPESA_QUERY_FAILED") from e

        if "ResultCode" not in data:
            logger.info(f"STK {checkout_request_id} query returned no result yet: {data.get('ResponseDescription')}")
            return None

        status = StkStatus(
            checkout_request_id=checkout_request_id,
            result_code=int(data["ResultCode"]),
            result_desc=str(data.get("ResultDesc") or ""),
            raw=data,
        )
        logger.info(f"STK {checkout_request_id} status: {status.result_code} {status.result_desc}")
        return status


__all__ = ["MpesaService", "StkStatus", "STILL_PROCESSING_ERROR_CODE"]
