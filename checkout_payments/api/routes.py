"""
API routes for checkout, payments and webhooks.
"""
import time
from typing import Any, Dict
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from checkout_payments.container import ServiceContainer
from checkout_payments.core.collaborators import Requester

from .dependencies import get_container, get_requester
from .schemas import (
    CancelOrderRequest,
    CancelOrderResponse,
    CaptureRequest,
    CaptureResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    ErrorResponse,
    HealthCheckResponse,
    InitiateCryptoRequest,
    PaymentStatusResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Create an order",
    description="Convert the caller's cart into a pending order and start payment",
)
async def create_order(
    request: CreateOrderRequest,
    requester: Requester = Depends(get_requester),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Check out the current cart."""
    logger.info(
        "api_create_order_request",
        payment_method=request.payment_method.value,
        shipping_method_id=str(request.shipping_method_id),
    )

    result = await container.orchestrator.create_order(
        requester=requester,
        shipping_address=request.shipping_address.model_dump(exclude_none=True),
        shipping_method_id=request.shipping_method_id,
        rail=request.payment_method.value,
        billing_address=(
            request.billing_address.model_dump(exclude_none=True)
            if request.billing_address
            else None
        ),
        customer_email=request.customer_email,
    )
    order = result.order

    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "payment_method": order.payment_method_type,
        "payment_status": order.payment_status,
        "status": order.status,
        "totals": {
            "subtotal": str(order.subtotal),
            "shipping_cost": str(order.shipping_cost),
            "discount_amount": str(order.discount_amount),
            "total_amount": str(order.total_amount),
            "currency": order.currency,
        },
        "promotion_code": order.promotion_code,
        "rail_handle": result.rail_handle,
    }


@order_router.get(
    "/{order_id}/payment-status",
    response_model=PaymentStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Get payment status",
    description="Retrieve payment progress, including crypto confirmations and expiry",
)
async def get_payment_status(
    order_id: UUID,
    requester: Requester = Depends(get_requester),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Get payment status by order ID."""
    return await container.orchestrator.get_payment_status(order_id, requester)


@order_router.post(
    "/{order_id}/cancel",
    response_model=CancelOrderResponse,
    responses=ERROR_RESPONSES,
    summary="Cancel an order",
    description="Cancel an order that has not shipped; paid orders are refunded",
)
async def cancel_order(
    order_id: UUID,
    background_tasks: BackgroundTasks,
    request: CancelOrderRequest | None = None,
    requester: Requester = Depends(get_requester),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Cancel an order."""
    reason = request.reason if request else None
    result = await container.cancellation.cancel_order(order_id, requester, reason=reason)
    background_tasks.add_task(container.outbox.process_batch)

    logger.info("api_cancel_order_success", order_id=str(order_id))

    return {
        "order_id": str(result.order.id),
        "status": result.order.status,
        "payment_status": result.order.payment_status,
        "refund": result.refund.as_dict() if result.refund else None,
    }


@payment_router.post(
    "/gateway/capture",
    response_model=CaptureResponse,
    responses=ERROR_RESPONSES,
    summary="Capture a gateway payment",
    description="Capture a payment the customer approved on the gateway page",
)
async def capture_gateway_payment(
    request: CaptureRequest,
    background_tasks: BackgroundTasks,
    requester: Requester = Depends(get_requester),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Capture an approved gateway order."""
    start_time = time.time()
    result = await container.orchestrator.capture(
        request.order_id, request.provider_order_id, requester
    )
    background_tasks.add_task(container.outbox.process_batch)

    logger.info(
        "api_capture_success",
        order_id=str(request.order_id),
        capture_id=result.get("capture_id"),
        duration_seconds=time.time() - start_time,
    )
    return result


@payment_router.post(
    "/crypto/initiate",
    responses=ERROR_RESPONSES,
    summary="Get the crypto payment handle",
    description="Return the address or invoice for a pending crypto order, re-quoting a lapsed rate",
)
async def initiate_crypto_payment(
    request: InitiateCryptoRequest,
    requester: Requester = Depends(get_requester),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Fetch or refresh a crypto payment handle."""
    return await container.orchestrator.initiate_async_payment(request.order_id, requester)


@webhook_router.post(
    "/{rail}",
    response_model=WebhookResponse,
    responses=ERROR_RESPONSES,
    summary="Payment provider webhook",
    description="Receive payment notifications from a provider",
)
async def provider_webhook(
    rail: str,
    request: Request,
    background_tasks: BackgroundTasks,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Handle a provider notification.

    Verifies authenticity, deduplicates and applies the event. Completion
    side effects run in the background after the commit.
    """
    body = await request.body()
    headers = {name.lower(): value for name, value in request.headers.items()}

    outcome = await container.reconciler.handle(rail, headers, body)
    if outcome.completed:
        background_tasks.add_task(container.outbox.process_batch)

    return outcome.ack()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await container.health.check_all()
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
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await container.health.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
