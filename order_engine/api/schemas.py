"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from order_engine.core.projections import PaymentSummary
from order_engine.domain.commands import OrderItemRequest
from order_engine.domain.models import LineItem, Order, Payment, Refund, TimelineEntry


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    customer_id: str = Field(..., min_length=1, description="Customer identifier")
    items: List[OrderItemRequest] = Field(..., description="Requested lines")
    shipping_address: Optional[Dict[str, Any]] = Field(default=None, description="Shipping address")
    shipping_cents: int = Field(default=0, ge=0, description="Shipping charge in cents")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Free-form order metadata")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "customer_id": "cus_123",
                    "items": [
                        {"product_id": "prod_tee", "variant_id": "m", "quantity": 2},
                        {"product_id": "prod_mug", "quantity": 1, "discount_cents": 200},
                    ],
                    "shipping_address": {"line1": "1 Main St", "city": "Springfield", "country": "US"},
                    "shipping_cents": 500,
                }
            ]
        }
    }


class TransitionStatusRequest(BaseModel):
    """Request schema for moving an order along a fulfillment edge."""

    status: str = Field(..., description="Target order status")
    note: Optional[str] = Field(default=None, max_length=2000, description="Optional note")
    expected_version: Optional[int] = Field(default=None, ge=1, description="Optimistic check")


class CancelOrderRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500, description="Cancellation reason")
    expected_version: Optional[int] = Field(default=None, ge=1, description="Optimistic check")


class AddNoteRequest(BaseModel):
    note: str = Field(..., description="Note text (max 2000 characters)")


class CreateIntentRequest(BaseModel):
    """Request schema for creating a payment intent for an order."""

    order_id: str = Field(..., description="Order to pay for")
    amount_cents: int = Field(..., gt=0, description="Amount in cents, must equal the order total")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., usd)")
    customer_ref: Optional[str] = Field(default=None, description="Gateway customer reference")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.lower()


class ConfirmIntentRequest(BaseModel):
    payment_method: Optional[str] = Field(default=None, description="Gateway payment method id")


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Amount to refund in cents (None = everything refundable)"
    )
    reason: str = Field(default="requested_by_customer", description="Refund reason")


class LineItemResponse(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str = ""
    sku: Optional[str] = None
    quantity: int
    unit_price_cents: int
    tax_cents: int
    discount_cents: int
    subtotal_cents: int
    total_cents: int

    @classmethod
    def from_domain(cls, item: LineItem) -> "LineItemResponse":
        return cls(
            product_id=item.product_id,
            variant_id=item.variant_id,
            product_name=item.product_name,
            sku=item.sku,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            tax_cents=item.tax_cents,
            discount_cents=item.discount_cents,
            subtotal_cents=item.subtotal_cents,
            total_cents=item.total_cents,
        )


class TotalsResponse(BaseModel):
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int


class TimelineEntryResponse(BaseModel):
    kind: str
    actor: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: TimelineEntry) -> "TimelineEntryResponse":
        return cls(
            kind=entry.kind.value,
            actor=entry.actor,
            from_status=entry.from_status.value if entry.from_status else None,
            to_status=entry.to_status.value if entry.to_status else None,
            note=entry.note,
            created_at=entry.created_at,
        )


class OrderResponse(BaseModel):
    """Response schema for an order."""

    id: str = Field(..., description="Order ID")
    store_id: str
    customer_id: str
    order_number: str = Field(..., description="Human-readable number, ORD-YYYYMMDD-NNNN")
    status: str
    payment_status: str
    payment_flagged: bool
    currency: str
    items: List[LineItemResponse]
    totals: TotalsResponse
    shipping_address: Dict[str, Any]
    metadata: Dict[str, Any]
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            store_id=order.store_id,
            customer_id=order.customer_id,
            order_number=order.order_number,
            status=order.status.value,
            payment_status=order.payment_status.value,
            payment_flagged=order.payment_flagged,
            currency=order.currency,
            items=[LineItemResponse.from_domain(item) for item in order.items],
            totals=TotalsResponse(
                subtotal_cents=order.totals.subtotal_cents,
                tax_cents=order.totals.tax_cents,
                shipping_cents=order.totals.shipping_cents,
                discount_cents=order.totals.discount_cents,
                total_cents=order.totals.total_cents,
            ),
            shipping_address=order.shipping_address,
            metadata=order.metadata,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: PaginationResponse


class ResendConfirmationResponse(BaseModel):
    order_id: str
    sent: bool = Field(..., description="Whether the notification was handed to the dispatcher")


class PaymentResponse(BaseModel):
    """Response schema for a payment intent."""

    id: str = Field(..., description="Gateway payment intent ID")
    order_id: Optional[str] = None
    amount_cents: int
    currency: str
    status: str
    amount_refunded_cents: int
    client_secret: Optional[str] = Field(default=None, description="Handed to the browser to confirm")
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            status=payment.status.value,
            amount_refunded_cents=payment.amount_refunded_cents,
            client_secret=payment.client_secret,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "pi_1234567890",
                    "order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "amount_cents": 4999,
                    "currency": "usd",
                    "status": "pending",
                    "amount_refunded_cents": 0,
                    "client_secret": "pi_1234567890_secret_abc",
                    "created_at": "2025-01-06T10:00:00Z",
                    "updated_at": "2025-01-06T10:00:00Z",
                }
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for a refund."""

    id: str = Field(..., description="Refund ID")
    payment_id: str = Field(..., description="Payment intent the refund belongs to")
    amount_cents: int
    reason: str
    status: str
    gateway_refund_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, refund: Refund) -> "RefundResponse":
        return cls(
            id=refund.id,
            payment_id=refund.payment_id,
            amount_cents=refund.amount_cents,
            reason=refund.reason,
            status=refund.status.value,
            gateway_refund_id=refund.gateway_refund_id,
            created_at=refund.created_at,
        )


class PaymentSummaryResponse(BaseModel):
    payment: PaymentResponse
    refunds: List[RefundResponse]
    refunded_cents: int
    refundable_cents: int

    @classmethod
    def from_domain(cls, summary: PaymentSummary) -> "PaymentSummaryResponse":
        return cls(
            payment=PaymentResponse.from_domain(summary.payment),
            refunds=[RefundResponse.from_domain(r) for r in summary.refunds],
            refunded_cents=summary.refunded_cents,
            refundable_cents=summary.refundable_cents,
        )


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="applied, duplicate, already_applied, stale, ignored or acknowledged")
    event_id: str = Field(..., description="Provider event ID")
    event_type: str = Field(..., description="Event type")
    source: str = Field(..., description="Webhook source")
    order_id: Optional[str] = None
    payment_id: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    model_config = ConfigDict(extra="allow")

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(default_factory=dict, description="Individual component checks")
