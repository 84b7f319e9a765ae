"""
API routes for orders, payments, webhooks and monitoring.

Engine errors are not caught here; they propagate to the exception
handler in ``main`` which renders them with their own HTTP status.
"""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from order_engine.domain.exceptions import NotFoundError, SignatureInvalidError, ValidationError
from order_engine.domain.models import OrderStatus, PaymentStatus
from order_engine.ledger.base import OrderFilter

from .dependencies import ServiceContainer, get_container
from .schemas import (
    AddNoteRequest,
    CancelOrderRequest,
    ConfirmIntentRequest,
    CreateIntentRequest,
    CreateOrderRequest,
    HealthCheckResponse,
    OrderListResponse,
    OrderResponse,
    PaymentResponse,
    PaymentSummaryResponse,
    RefundRequest,
    RefundResponse,
    ResendConfirmationResponse,
    TimelineEntryResponse,
    TransitionStatusRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"

# Create routers
store_router = APIRouter(prefix=f"{API_PREFIX}/stores/{{store_id}}/orders", tags=["orders"])
order_router = APIRouter(prefix=f"{API_PREFIX}/orders", tags=["orders"])
payment_router = APIRouter(prefix=f"{API_PREFIX}/payments", tags=["payments"])
webhook_router = APIRouter(prefix=f"{API_PREFIX}/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def actor_header(x_actor: str = Header(default="api", alias="X-Actor")) -> str:
    """Who is making the change, recorded on timeline entries."""
    return x_actor


def _order_filter(
    store_id: Optional[str],
    customer_id: Optional[str],
    order_status: Optional[OrderStatus],
    payment_status: Optional[PaymentStatus],
    created_from: Optional[datetime],
    created_to: Optional[datetime],
    search: Optional[str],
    page: int = 1,
    limit: int = 20,
) -> OrderFilter:
    return OrderFilter(
        store_id=store_id,
        customer_id=customer_id,
        status=order_status,
        payment_status=payment_status,
        created_from=created_from,
        created_to=created_to,
        search=search,
        page=page,
        limit=limit,
    )


# Store-scoped order routes


@store_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Price items from the catalog, reserve stock and create a pending order",
)
async def create_order(
    store_id: str,
    request: CreateOrderRequest,
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    logger.info(
        "api_create_order_request",
        store_id=store_id,
        customer_id=request.customer_id,
        line_count=len(request.items),
    )
    result = await container.orders.create_order(
        store_id,
        request.customer_id,
        request.items,
        request.shipping_address,
        shipping_cents=request.shipping_cents,
        metadata=request.metadata,
    )
    return OrderResponse.from_domain(result.order)


@store_router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
    description="Filtered, paginated orders of a store, newest first",
)
async def list_orders(
    store_id: str,
    customer_id: Optional[str] = None,
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    payment_status: Optional[PaymentStatus] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    container: ServiceContainer = Depends(get_container),
) -> OrderListResponse:
    listing = await container.queries.list_orders(
        _order_filter(
            store_id,
            customer_id,
            order_status,
            payment_status,
            created_from,
            created_to,
            search,
            page,
            limit,
        )
    )
    return OrderListResponse(
        orders=[OrderResponse.from_domain(o) for o in listing["orders"]],
        pagination=listing["pagination"],
    )


@store_router.get(
    "/analytics",
    summary="Store analytics",
    description="Order counts, revenue net of refunds and top products over 7d, 30d, 90d or 1y",
)
async def analytics(
    store_id: str,
    period: str = "30d",
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await container.queries.get_analytics(store_id, period)


@store_router.get(
    "/export",
    summary="Export orders as CSV",
    response_class=Response,
)
async def export_orders(
    store_id: str,
    customer_id: Optional[str] = None,
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    payment_status: Optional[PaymentStatus] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    search: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
) -> Response:
    content = await container.queries.export_csv(
        store_id,
        _order_filter(
            store_id, customer_id, order_status, payment_status, created_from, created_to, search
        ),
    )
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="orders-{store_id}.csv"'},
    )


@store_router.get(
    "/by-number/{order_number}",
    response_model=OrderResponse,
    summary="Get order by number",
)
async def get_order_by_number(
    store_id: str,
    order_number: str,
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.queries.get_order_by_number(store_id, order_number)
    return OrderResponse.from_domain(order)


# Order routes


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get order")
async def get_order(
    order_id: str,
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    return OrderResponse.from_domain(await container.queries.get_order(order_id))


@order_router.patch(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Update an order",
    description="Change shipping address or metadata, or append a note. Unknown fields are rejected.",
)
async def update_order(
    order_id: str,
    changes: Dict[str, Any] = Body(...),
    expected_version: Optional[int] = None,
    actor: str = Depends(actor_header),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    result = await container.orders.update_order(
        order_id, changes, actor, expected_version=expected_version
    )
    return OrderResponse.from_domain(result.order)


@order_router.post(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Transition order status",
    description="Move an order along a fulfillment edge",
)
async def transition_status(
    order_id: str,
    request: TransitionStatusRequest,
    actor: str = Depends(actor_header),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    result = await container.orders.transition_status(
        order_id,
        request.status,
        actor,
        note=request.note,
        expected_version=request.expected_version,
    )
    return OrderResponse.from_domain(result.order)


@order_router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order",
    description="Cancel the open payment at the gateway, release stock and cancel the order",
)
async def cancel_order(
    order_id: str,
    request: CancelOrderRequest,
    actor: str = Depends(actor_header),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    result = await container.orders.cancel_order(
        order_id, request.reason, actor, expected_version=request.expected_version
    )
    return OrderResponse.from_domain(result.order)


@order_router.post(
    "/{order_id}/notes",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a note",
)
async def add_note(
    order_id: str,
    request: AddNoteRequest,
    actor: str = Depends(actor_header),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    result = await container.orders.add_note(order_id, request.note, actor)
    return OrderResponse.from_domain(result.order)


@order_router.get(
    "/{order_id}/notes",
    response_model=List[TimelineEntryResponse],
    summary="List notes",
)
async def get_notes(
    order_id: str,
    container: ServiceContainer = Depends(get_container),
) -> List[TimelineEntryResponse]:
    return [TimelineEntryResponse.from_domain(e) for e in await container.queries.get_notes(order_id)]


@order_router.get(
    "/{order_id}/timeline",
    response_model=List[TimelineEntryResponse],
    summary="Order timeline",
    description="Every status change, payment update and note, oldest first",
)
async def get_timeline(
    order_id: str,
    container: ServiceContainer = Depends(get_container),
) -> List[TimelineEntryResponse]:
    return [
        TimelineEntryResponse.from_domain(e) for e in await container.queries.get_timeline(order_id)
    ]


@order_router.post(
    "/{order_id}/resend-confirmation",
    response_model=ResendConfirmationResponse,
    summary="Resend order confirmation",
)
async def resend_confirmation(
    order_id: str,
    container: ServiceContainer = Depends(get_container),
) -> ResendConfirmationResponse:
    sent = await container.orders.resend_confirmation(order_id)
    return ResendConfirmationResponse(order_id=order_id, sent=sent)


# Payment routes


@payment_router.post(
    "/intents",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
    description="Create, or reuse, the gateway payment intent for a pending order",
)
async def create_intent(
    request: CreateIntentRequest,
    container: ServiceContainer = Depends(get_container),
) -> PaymentResponse:
    start_time = time.time()
    payment = await container.payments.create_intent(
        request.amount_cents, request.currency, request.order_id, request.customer_ref
    )
    logger.info(
        "api_create_intent_success",
        order_id=request.order_id,
        payment_intent_id=payment.id,
        duration_seconds=time.time() - start_time,
    )
    return PaymentResponse.from_domain(payment)


@payment_router.post(
    "/{intent_id}/confirm",
    response_model=PaymentResponse,
    summary="Confirm a payment intent",
)
async def confirm_intent(
    intent_id: str,
    request: Optional[ConfirmIntentRequest] = None,
    container: ServiceContainer = Depends(get_container),
) -> PaymentResponse:
    method = request.payment_method if request else None
    return PaymentResponse.from_domain(await container.payments.confirm_intent(intent_id, method))


@payment_router.post(
    "/{intent_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a payment",
    description="Create a full or partial refund for a captured payment",
)
async def refund_payment(
    intent_id: str,
    request: RefundRequest,
    container: ServiceContainer = Depends(get_container),
) -> RefundResponse:
    logger.info(
        "api_refund_payment_request",
        payment_intent_id=intent_id,
        amount_cents=request.amount_cents,
        reason=request.reason,
    )
    refund = await container.payments.refund(intent_id, request.amount_cents, request.reason)
    return RefundResponse.from_domain(refund)


@payment_router.get(
    "/{intent_id}",
    response_model=PaymentSummaryResponse,
    summary="Get payment summary",
    description="Payment status, refunds and the amount still refundable",
)
async def get_payment(
    intent_id: str,
    container: ServiceContainer = Depends(get_container),
) -> PaymentSummaryResponse:
    return PaymentSummaryResponse.from_domain(await container.queries.get_payment_summary(intent_id))


# Webhooks


@webhook_router.post(
    "/{source}",
    response_model=WebhookResponse,
    summary="Provider webhook endpoint",
    description="Verify, deduplicate and apply a provider event",
)
async def receive_webhook(
    source: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Handle a webhook from a registered source.

    The raw body is verified against the source's signature header before
    anything is parsed.
    """
    webhook_source = container.source(source)
    if webhook_source is None:
        raise NotFoundError("Webhook source", source)

    body = await request.body()
    signature = request.headers.get(webhook_source.signature_header)
    try:
        result = await container.reconciliation.handle(source, body, signature)
    except ValidationError as e:
        # Verified but unusable; a redelivery would fail the same way.
        logger.warning("api_webhook_malformed", source=source, error=e.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict()["error"])
    except SignatureInvalidError:
        logger.warning("api_webhook_rejected", source=source)
        raise
    return result.to_dict()


# Monitoring


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
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    result = await container.health.readiness()
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
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
