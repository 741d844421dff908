"""
STK Push callback envelope.

The gateway posts::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 1.00},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254708374149}]}}}}

Failed transactions carry no CallbackMetadata.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from paymentservice.core.exceptions import MalformedCallback


class CallbackItem(BaseModel):
    """One named metadata value."""

    name: str = Field(..., alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    """Metadata item list."""

    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    """The ``stkCallback`` object."""

    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., min_length=1, alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    @property
    def metadata(self) -> Dict[str, Any]:
        """Metadata items flattened into ``{Name: Value}``."""
        if self.callback_metadata is None:
            return {}
        return {item.name: item.value for item in self.callback_metadata.items}

    @property
    def receipt_number(self) -> Optional[str]:
        receipt = self.metadata.get("MpesaReceiptNumber")
        return str(receipt) if receipt is not None else None


class _Body(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class StkCallbackEnvelope(BaseModel):
    """The full ``{"Body": {"stkCallback": ...}}`` envelope."""

    body: _Body = Field(..., alias="Body")


def parse_callback(payload: Any) -> StkCallback:
    """
    Parse a decoded callback payload.

    Args:
        payload: Decoded JSON body

    Returns:
        StkCallback: The inner callback

    Raises:
        MalformedCallback: If the payload is not a valid envelope
    """
    try:
        envelope = StkCallbackEnvelope.model_validate(payload)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise MalformedCallback("Invalid callback format", detail=problems) from e
    return envelope.body.stk_callback
