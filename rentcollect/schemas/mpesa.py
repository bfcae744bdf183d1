"""
M-Pesa (Daraja) notification payloads and gateway acknowledgement.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from rentcollect.models.base import CENT
from rentcollect.schemas.base import GatewaySchema

DARAJA_TIME_FORMAT = "%Y%m%d%H%M%S"


def parse_daraja_time(value: Any) -> Optional[datetime]:
    """yyyyMMddHHmmss -> naive datetime; None если формат не распознан."""
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return datetime.strptime(raw, DARAJA_TIME_FORMAT)
    except ValueError:
        return None


def parse_gateway_amount(value: Any) -> Decimal:
    """Сумма шлюза: конечная, > 0, не больше двух знаков после запятой."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError("amount is not a number") from e
    if not amount.is_finite() or amount <= 0:
        raise ValueError("amount must be a positive number")
    if amount != amount.quantize(CENT):
        raise ValueError("amount must have at most 2 decimal places")
    return amount


# ---------------------------------------------------------------------------
# Gateway ack
# ---------------------------------------------------------------------------
class MpesaAck(BaseModel):
    """Ответ шлюзу: resultCode 0 = принято (записано, в карантине или дубль)."""

    resultCode: int = 0
    resultDesc: str = "Accepted"

    @classmethod
    def accepted(cls, desc: str = "Accepted") -> "MpesaAck":
        return cls(resultCode=0, resultDesc=desc)

    @classmethod
    def rejected(cls, reason: str) -> "MpesaAck":
        return cls(resultCode=1, resultDesc=f"Rejected: {reason}")


# ---------------------------------------------------------------------------
# C2B
# ---------------------------------------------------------------------------
class C2BNotification(GatewaySchema):
    transaction_type: Optional[str] = Field(None, alias="TransactionType")
    trans_id: str = Field(..., alias="TransID", min_length=1, max_length=64)
    trans_time: Optional[str] = Field(None, alias="TransTime")
    trans_amount: Decimal = Field(..., alias="TransAmount", gt=0)
    business_short_code: str = Field(..., alias="BusinessShortCode", min_length=1, max_length=20)
    bill_ref_number: Optional[str] = Field(None, alias="BillRefNumber", max_length=128)
    invoice_number: Optional[str] = Field(None, alias="InvoiceNumber")
    org_account_balance: Optional[str] = Field(None, alias="OrgAccountBalance")
    third_party_trans_id: Optional[str] = Field(None, alias="ThirdPartyTransID")
    msisdn: Optional[str] = Field(None, alias="MSISDN", max_length=20)
    first_name: Optional[str] = Field(None, alias="FirstName")
    middle_name: Optional[str] = Field(None, alias="MiddleName")
    last_name: Optional[str] = Field(None, alias="LastName")

    @field_validator("trans_id", "business_short_code")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("trans_amount")
    @classmethod
    def _whole_cents(cls, v: Decimal) -> Decimal:
        return parse_gateway_amount(v)

    @property
    def transaction_datetime(self) -> Optional[datetime]:
        return parse_daraja_time(self.trans_time)

    @property
    def payer_name(self) -> Optional[str]:
        parts = [p.strip() for p in (self.first_name, self.middle_name, self.last_name) if p and p.strip()]
        return " ".join(parts) or None


# ---------------------------------------------------------------------------
# STK push callback
# ---------------------------------------------------------------------------
class StkCallbackItem(GatewaySchema):
    name: str = Field(..., alias="Name")
    value: Any = Field(None, alias="Value")


class StkCallbackMetadata(GatewaySchema):
    items: list[StkCallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(GatewaySchema):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID", min_length=1, max_length=100)
    result_code: int = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    callback_metadata: Optional[StkCallbackMetadata] = Field(None, alias="CallbackMetadata")

    @model_validator(mode="after")
    def _amount_in_cents(self) -> "StkCallback":
        amount = self.metadata_value("Amount")
        if amount is not None and amount != "":
            parse_gateway_amount(amount)
        return self

    def metadata_value(self, name: str) -> Any:
        if not self.callback_metadata:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None


class StkCallbackBody(GatewaySchema):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class StkCallbackPayload(GatewaySchema):
    body: StkCallbackBody = Field(..., alias="Body")

    @property
    def callback(self) -> StkCallback:
        return self.body.stk_callback


# ---------------------------------------------------------------------------
# B2C result / timeout
# ---------------------------------------------------------------------------
class B2CResultParameter(GatewaySchema):
    key: str = Field(..., alias="Key")
    value: Any = Field(None, alias="Value")


class B2CResultParameters(GatewaySchema):
    items: list[B2CResultParameter] = Field(default_factory=list, alias="ResultParameter")

    @field_validator("items", mode="before")
    @classmethod
    def _single_to_list(cls, v: Any) -> Any:
        # одиночный параметр Daraja присылает объектом, а не списком
        if isinstance(v, dict):
            return [v]
        return v


class B2CResult(GatewaySchema):
    result_type: Optional[int] = Field(None, alias="ResultType")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    originator_conversation_id: Optional[str] = Field(None, alias="OriginatorConversationID")
    conversation_id: Optional[str] = Field(None, alias="ConversationID")
    transaction_id: Optional[str] = Field(None, alias="TransactionID")
    result_parameters: Optional[B2CResultParameters] = Field(None, alias="ResultParameters")
    reference_data: Optional[dict[str, Any]] = Field(None, alias="ReferenceData")

    @model_validator(mode="after")
    def _need_some_id(self) -> "B2CResult":
        if not (self.conversation_id or self.originator_conversation_id):
            raise ValueError("ConversationID or OriginatorConversationID is required")
        return self

    def parameters(self) -> dict[str, Any]:
        if not self.result_parameters:
            return {}
        return {p.key: p.value for p in self.result_parameters.items}


class B2CResultPayload(GatewaySchema):
    result: B2CResult = Field(..., alias="Result")


__all__ = [
    "DARAJA_TIME_FORMAT",
    "parse_daraja_time",
    "parse_gateway_amount",
    "MpesaAck",
    "C2BNotification",
    "StkCallbackItem",
    "StkCallbackMetadata",
    "StkCallback",
    "StkCallbackPayload",
    "B2CResultParameter",
    "B2CResultParameters",
    "B2CResult",
    "B2CResultPayload",
]
