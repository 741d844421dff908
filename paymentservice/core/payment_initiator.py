"""
Payment initiator: STK Push for an order.

Flow:
1. Validate input (no network call on failure)
2. Reject orders that already have an attempt in flight
3. Fetch an access token from the credential cache
4. Build the signed request (shortcode + passkey + timestamp password)
5. Send the STK Push
6. Record the PaymentAttempt and commit
7. Return the CheckoutRequestID

Steps 3-6 run shielded from caller cancellation: once started they finish,
so a gateway transaction is never left without its record and success is
never reported without one. Initiation is never retried here; repeating an
STK Push can charge the payer twice.
"""
import asyncio
import re
import time
import weakref
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog

from paymentservice.config import Settings
from paymentservice.core.correlation_store import CorrelationStore
from paymentservice.core.credential_cache import CredentialCache
from paymentservice.core.exceptions import (
    ActiveAttemptExists,
    CredentialError,
    GatewayRejected,
    PaymentError,
    PaymentValidationError,
)
from paymentservice.integrations.mpesa_client import MpesaClient
from paymentservice.monitoring.metrics import metrics

PHONE_PATTERN = re.compile(r"^\d{9,15}$")

# Daraja refuses a single STK Push above this many KES
MAX_STK_AMOUNT = 250000


@dataclass(frozen=True)
class InitiationResult:
    """What the caller gets back from a successful initiation."""

    correlation_id: str
    merchant_request_id: Optional[str]
    order_id: int
    customer_message: Optional[str] = None


class PaymentInitiator:
    """Starts STK Push payments and records their correlation ids."""

    def __init__(
        self,
        settings: Settings,
        client: MpesaClient,
        credentials: CredentialCache,
        store: CorrelationStore,
        logger: Optional[Any] = None,
    ):
        """
        Initialize payment initiator.

        Args:
            settings: Application settings
            client: Gateway client
            credentials: Access token cache
            store: Correlation store
            logger: Structured logger
        """
        self.settings = settings
        self.client = client
        self.credentials = credentials
        self.store = store
        self.logger = logger or structlog.get_logger(__name__)
        # Locks live only while an initiation for the order holds a reference
        self._order_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @staticmethod
    def validate(
        order_id: Any, amount: Any, phone_number: Any, max_amount: int = MAX_STK_AMOUNT
    ) -> tuple[int, int, str]:
        """
        Validate and normalize initiation input.

        Returns:
            tuple: (order_id, amount in whole units, phone number digits)

        Raises:
            PaymentValidationError: If validation fails
        """
        if isinstance(order_id, bool) or not isinstance(order_id, int) or order_id <= 0:
            raise PaymentValidationError("Order ID must be a positive integer")

        amount_text = str(amount).strip() if amount is not None else ""
        if not amount_text:
            raise PaymentValidationError("Amount is required")
        try:
            value = Decimal(amount_text)
        except InvalidOperation:
            raise PaymentValidationError("Amount must be numeric")
        if not value.is_finite() or value <= 0:
            raise PaymentValidationError("Amount must be positive")
        if value != value.to_integral_value():
            raise PaymentValidationError("Amount must be a whole number")
        if value > max_amount:
            raise PaymentValidationError(f"Amount must not exceed {max_amount}")

        phone = str(phone_number).strip() if phone_number is not None else ""
        if not phone:
            raise PaymentValidationError("Phone number is required")
        phone = phone.lstrip("+")
        if not PHONE_PATTERN.match(phone):
            raise PaymentValidationError("Phone number must be 9-15 digits")

        return order_id, int(value), phone

    def build_request(self, order_id: int, amount: int, phone_number: str) -> Dict[str, Any]:
        """Build the STK Push request body."""
        timestamp = self.client.timestamp()
        shortcode = self.settings.mpesa_business_shortcode
        return {
            "BusinessShortCode": shortcode,
            "Password": self.client.build_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": f"ORDER_{order_id}",
            "TransactionDesc": "Order Payment",
        }

    async def initiate(self, order_id: Any, amount: Any, phone_number: Any) -> InitiationResult:
        """
        Initiate an STK Push payment for an order.

        Raises:
            PaymentValidationError: Bad input
            ActiveAttemptExists: The order already has an attempt in flight
            CredentialError: No usable access token
            GatewayUnavailable: Transport failure talking to the gateway
            GatewayRejected: The gateway refused the request
        """
        start_time = time.perf_counter()
        outcome = "initiated"
        try:
            order_id, amount_units, phone = self.validate(
                order_id, amount, phone_number, max_amount=self.settings.mpesa_max_amount
            )
            result = await asyncio.shield(self._initiate_serialized(order_id, amount_units, phone))
            return result
        except asyncio.CancelledError:
            outcome = "caller_cancelled"
            self.logger.warning("payment_initiation_caller_cancelled", order_id=order_id)
            raise
        except PaymentError as e:
            outcome = e.error_code
            raise
        except Exception:
            outcome = "error"
            raise
        finally:
            metrics.record_initiation(outcome, time.perf_counter() - start_time)

    async def _initiate_serialized(
        self, order_id: int, amount: int, phone_number: str
    ) -> InitiationResult:
        lock = self._order_locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._order_locks[order_id] = lock
        async with lock:
            return await self._initiate(order_id, amount, phone_number)

    async def _initiate(self, order_id: int, amount: int, phone_number: str) -> InitiationResult:
        log = self.logger.bind(order_id=order_id)
        log.info("payment_initiation_started", amount=amount)

        active = await self.store.get_active_for_order(order_id)
        if active is not None:
            log.warning("payment_initiation_rejected_active", correlation_id=active.correlation_id)
            raise ActiveAttemptExists(order_id, active.correlation_id)

        token = await self.credentials.get_token()
        payload = self.build_request(order_id, amount, phone_number)

        try:
            response = await self.client.stk_push(token, payload)
        except GatewayRejected as e:
            if e.http_status == 401:
                self.credentials.invalidate(token)
                log.error("payment_initiation_token_rejected")
                raise CredentialError("Gateway rejected the access token", detail=e.detail) from e
            log.error("payment_initiation_rejected", error=e.message, response=e.detail)
            raise

        correlation_id = str(response["CheckoutRequestID"])
        merchant_request_id = response.get("MerchantRequestID")

        try:
            await self.store.record_initiated(
                correlation_id=correlation_id,
                order_id=order_id,
                amount=amount,
                phone_number=phone_number,
                merchant_request_id=merchant_request_id,
            )
        except Exception as e:
            # The gateway accepted this push; its callback will find no attempt
            log.critical(
                "payment_attempt_record_failed",
                correlation_id=correlation_id,
                merchant_request_id=merchant_request_id,
                amount=amount,
                phone_number=phone_number,
                error=str(e),
            )
            raise

        log.info(
            "payment_initiated",
            correlation_id=correlation_id,
            merchant_request_id=merchant_request_id,
        )
        return InitiationResult(
            correlation_id=correlation_id,
            merchant_request_id=merchant_request_id,
            order_id=order_id,
            customer_message=response.get("CustomerMessage"),
        )
