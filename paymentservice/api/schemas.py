"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CreatePaymentRequest(BaseModel):
    """Request schema for initiating a payment."""

    order_id: int = Field(..., description="Internal order identifier")
    amount: str = Field(..., description="Amount in whole KES, e.g. \"100\"")
    phone: str = Field(..., description="Payer MSISDN, e.g. 254700000000")

    @field_validator("amount", "phone", mode="before")
    @classmethod
    def coerce_number(cls, v: Any) -> Any:
        """Accept bare JSON numbers for amount and phone."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"order_id": 42, "amount": "100", "phone": "254700000000"},
            ]
        }
    }


class CreatePaymentResponse(BaseModel):
    """Response schema for payment initiation."""

    message: str = Field(default="Payment initiated", description="Status message")
    checkout_request_id: str = Field(..., description="Gateway CheckoutRequestID")
    merchant_request_id: Optional[str] = Field(default=None, description="Gateway MerchantRequestID")
    customer_message: Optional[str] = Field(default=None, description="Message shown to the payer")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "message": "Payment initiated",
                    "checkout_request_id": "ws_CO_191220191020363925",
                    "merchant_request_id": "29115-34620561-1",
                    "customer_message": "Success. Request accepted for processing",
                }
            ]
        }
    }


class PaymentStatusResponse(BaseModel):
    """Response schema for a payment attempt."""

    checkout_request_id: str = Field(..., description="Gateway CheckoutRequestID")
    order_id: int = Field(..., description="Internal order identifier")
    amount: int = Field(..., description="Amount in whole KES")
    state: str = Field(..., description="initiated, paid or failed")
    result_code: Optional[int] = Field(default=None, description="Gateway ResultCode")
    result_desc: Optional[str] = Field(default=None, description="Gateway ResultDesc")
    mpesa_receipt_number: Optional[str] = Field(default=None, description="M-Pesa receipt")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    resolved_at: Optional[str] = Field(default=None, description="Resolution timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Error body for every non-2xx answer."""

    error: str = Field(..., description="Error message")
    detail: Optional[Any] = Field(default=None, description="Extra detail, e.g. gateway response")


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    ResultCode: int = Field(default=0)
    ResultDesc: str = Field(default="Accepted")
    outcome: str = Field(..., description="applied, duplicate or unknown_correlation")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class BacklogResponse(BaseModel):
    """Response schema for reconciliation backlog status."""

    pending: int = Field(..., description="Undelivered order status updates")
    delivered: Optional[int] = Field(default=None, description="Delivered by this replay")
