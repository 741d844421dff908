"""
API routes for payment initiation and callback reconciliation.
"""
import json
from typing import Any, Dict

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from paymentservice.core.backlog import ReconciliationBacklog
from paymentservice.core.callback_reconciler import CallbackReconciler
from paymentservice.core.correlation_store import CorrelationStore
from paymentservice.core.exceptions import MalformedCallback
from paymentservice.core.payment_initiator import PaymentInitiator
from paymentservice.monitoring.health import HealthCheck
from paymentservice.monitoring.metrics import metrics

from .dependencies import get_backlog, get_health, get_initiator, get_reconciler, get_store
from .schemas import (
    BacklogResponse,
    CallbackAck,
    CreatePaymentRequest,
    CreatePaymentResponse,
    ErrorResponse,
    HealthCheckResponse,
    PaymentStatusResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
callback_router = APIRouter(tags=["callbacks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initiate a payment",
    description="Send an STK Push to the payer's phone for an order",
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def create_payment(
    request: CreatePaymentRequest,
    initiator: PaymentInitiator = Depends(get_initiator),
) -> CreatePaymentResponse:
    """
    Initiate an M-Pesa STK Push.

    The attempt is recorded before this returns; the final outcome arrives
    later through the callback endpoint.
    """
    result = await initiator.initiate(request.order_id, request.amount, request.phone)
    return CreatePaymentResponse(
        checkout_request_id=result.correlation_id,
        merchant_request_id=result.merchant_request_id,
        customer_message=result.customer_message,
    )


@payment_router.get(
    "/{checkout_request_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment attempt",
    description="Look up a payment attempt by its CheckoutRequestID",
)
async def get_payment_status(
    checkout_request_id: str,
    store: CorrelationStore = Depends(get_store),
) -> PaymentStatusResponse:
    """Get the current state of a payment attempt."""
    attempt = await store.get(checkout_request_id)
    if attempt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Payment attempt {checkout_request_id} not found",
        )

    return PaymentStatusResponse(
        checkout_request_id=attempt.correlation_id,
        order_id=attempt.order_id,
        amount=attempt.amount,
        state=attempt.state,
        result_code=attempt.result_code,
        result_desc=attempt.result_desc,
        mpesa_receipt_number=attempt.mpesa_receipt_number,
        created_at=attempt.created_at.isoformat(),
        resolved_at=attempt.resolved_at.isoformat() if attempt.resolved_at else None,
    )


@callback_router.post(
    "/callback",
    response_model=CallbackAck,
    summary="M-Pesa STK callback",
    description="Receive the asynchronous STK Push result from the gateway",
    responses={400: {"model": ErrorResponse}},
)
async def mpesa_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> CallbackAck:
    """
    Reconcile a gateway callback.

    Unknown and duplicate deliveries are acknowledged too, so the gateway
    stops redelivering them. The order status update is committed before the
    acknowledgement and delivered after it; anything undelivered stays in
    the backlog for replay.
    """
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError as e:
        metrics.record_callback("malformed")
        logger.error("callback_invalid_json", error=str(e))
        raise MalformedCallback("Invalid callback format", detail="Body is not valid JSON")

    result = await reconciler.apply(payload)
    if result.backlog_id is not None:
        background_tasks.add_task(reconciler.deliver, result)
    return CallbackAck(outcome=result.outcome.value)


@admin_router.get(
    "/backlog",
    response_model=BacklogResponse,
    summary="Reconciliation backlog",
    description="Count order status updates still waiting for delivery",
)
async def get_backlog_status(
    backlog: ReconciliationBacklog = Depends(get_backlog),
) -> BacklogResponse:
    """Pending backlog depth."""
    pending = await backlog.get_pending_count()
    return BacklogResponse(pending=pending)


@admin_router.post(
    "/backlog/replay",
    response_model=BacklogResponse,
    summary="Replay backlog",
    description="Deliver one batch of pending order status updates now",
)
async def replay_backlog(
    backlog: ReconciliationBacklog = Depends(get_backlog),
) -> BacklogResponse:
    """Run one replay batch and report what is left."""
    delivered = await backlog.process_batch()
    pending = await backlog.get_pending_count()
    logger.info("backlog_replay_requested", delivered=delivered, pending=pending)
    return BacklogResponse(pending=pending, delivered=delivered)


@admin_router.get(
    "/attempts/summary",
    summary="Attempt summary",
    description="Count payment attempts by state",
)
async def attempts_summary(
    store: CorrelationStore = Depends(get_store),
) -> Dict[str, int]:
    """Attempt counts keyed by state."""
    return await store.count_by_state()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
