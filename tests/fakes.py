"""
Fakes for the gateway and the order service, plus payload builders.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

from paymentservice.config import Settings
from paymentservice.integrations.mpesa_client import OAUTH_PATH, STK_PUSH_PATH


def make_settings(**overrides: Any) -> Settings:
    """Build settings without reading the environment's .env file."""
    values: Dict[str, Any] = {
        "mpesa_consumer_key": "test-consumer-key",
        "mpesa_consumer_secret": "test-consumer-secret",
        "mpesa_business_shortcode": "174379",
        "mpesa_passkey": "test-passkey",
        "mpesa_callback_url": "https://payments.example.com/callback",
        "mpesa_base_url": "https://daraja.test",
        "orders_service_url": "http://orders.test",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "order_status_retry_base_delay": 0,
        "order_status_retry_max_delay": 0,
        "backlog_replay_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeDaraja:
    """Stand-in for the Daraja OAuth and STK Push endpoints."""

    def __init__(self) -> None:
        self.token_calls = 0
        self.token_status = 200
        self.token_body: Optional[Dict[str, Any]] = None
        self.token_delay = 0.0
        self.stk_requests: List[httpx.Request] = []
        self.stk_status = 200
        self.stk_body: Optional[Dict[str, Any]] = None
        self.stk_error: Optional[Exception] = None
        self.stk_delay = 0.0
        self.next_checkout_ids: List[str] = []
        self._sequence = 0

    @property
    def stk_calls(self) -> int:
        return len(self.stk_requests)

    def stk_json(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.stk_requests[index].content)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == OAUTH_PATH:
            self.token_calls += 1
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            body = self.token_body or {
                "access_token": f"token-{self.token_calls}",
                "expires_in": "3599",
            }
            return httpx.Response(self.token_status, json=body)

        if request.url.path == STK_PUSH_PATH:
            self.stk_requests.append(request)
            if self.stk_delay:
                await asyncio.sleep(self.stk_delay)
            if self.stk_error is not None:
                raise self.stk_error
            if self.stk_body is not None:
                return httpx.Response(self.stk_status, json=self.stk_body)

            self._sequence += 1
            checkout_id = (
                self.next_checkout_ids.pop(0)
                if self.next_checkout_ids
                else f"ws_CO_{self._sequence}"
            )
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-{self._sequence}",
                    "CheckoutRequestID": checkout_id,
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )

        return httpx.Response(404, json={"errorMessage": "Not found"})


class FakeOrderService:
    """Stand-in for ``PUT /orders/{id}/status``."""

    def __init__(self) -> None:
        self.updates: List[Tuple[int, str]] = []
        self.failures_remaining = 0
        self.always_fail = False
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.always_fail or self.failures_remaining > 0:
            self.failures_remaining = max(0, self.failures_remaining - 1)
            return httpx.Response(503, text="order service down")

        parts = request.url.path.strip("/").split("/")
        assert request.method == "PUT"
        assert parts[0] == "orders" and parts[2] == "status"
        self.updates.append((int(parts[1]), json.loads(request.content)["status"]))
        return httpx.Response(200, json={"ok": True})


def stk_callback(
    checkout_request_id: str,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: Optional[str] = "NLJ7RT61SV",
) -> Dict[str, Any]:
    """Build a gateway callback envelope."""
    callback: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 100.0},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20191219102115},
                {"Name": "PhoneNumber", "Value": 254700000000},
            ]
        }
    return {"Body": {"stkCallback": callback}}


