"""
Ledger entities: Order, Payment, Refund.

All money is held as integer minor units (cents). Line items and totals are
fixed when the order is placed; refunds never edit an order's total, they are
recorded as Refund entries against the payment.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, Enum):
    """
    Order lifecycle states.

    pending → confirmed → processing → shipped → delivered
       ↓          ↓            ↓
    cancelled  cancelled   cancelled

    Any post-payment state → refunded | partially_refunded
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentStatus(str, Enum):
    """
    Payment states.

    pending → processing → succeeded | failed
    succeeded → partially_refunded → refunded
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TimelineKind(str, Enum):
    STATUS_CHANGE = "status_change"
    NOTE = "note"
    PAYMENT = "payment"


def compute_line_tax(line_amount_cents: int, tax_rate_bps: int) -> int:
    """Tax for one line in cents, rounded half up."""
    if line_amount_cents <= 0 or tax_rate_bps <= 0:
        return 0
    tax = Decimal(line_amount_cents) * Decimal(tax_rate_bps) / Decimal(10000)
    return int(tax.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class LineItem:
    """A purchased product snapshot. Immutable once the order is placed."""

    product_id: str
    quantity: int
    unit_price_cents: int
    variant_id: str | None = None
    product_name: str = ""
    sku: str | None = None
    tax_cents: int = 0
    discount_cents: int = 0

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents - self.discount_cents


@dataclass(frozen=True)
class OrderTotals:
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int

    @classmethod
    def compute(cls, items: Iterable[LineItem], shipping_cents: int = 0) -> OrderTotals:
        items = list(items)
        subtotal = sum(item.subtotal_cents for item in items)
        tax = sum(item.tax_cents for item in items)
        discount = sum(item.discount_cents for item in items)
        return cls(
            subtotal_cents=subtotal,
            tax_cents=tax,
            shipping_cents=shipping_cents,
            discount_cents=discount,
            total_cents=subtotal + tax + shipping_cents - discount,
        )

    def is_balanced(self) -> bool:
        return self.total_cents == (
            self.subtotal_cents + self.tax_cents + self.shipping_cents - self.discount_cents
        )


@dataclass(frozen=True)
class TimelineEntry:
    """One append-only entry in an order's history."""

    kind: TimelineKind
    actor: str
    from_status: OrderStatus | None = None
    to_status: OrderStatus | None = None
    note: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Order:
    """Order aggregate. Mutated only by the order state machine."""

    store_id: str
    customer_id: str
    order_number: str
    items: tuple[LineItem, ...]
    totals: OrderTotals
    currency: str = "usd"
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_flagged: bool = False
    shipping_address: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timeline: list[TimelineEntry] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def total_cents(self) -> int:
        return self.totals.total_cents

    @property
    def was_confirmed(self) -> bool:
        return any(
            entry.to_status == OrderStatus.CONFIRMED
            for entry in self.timeline
            if entry.kind == TimelineKind.STATUS_CHANGE
        )

    def record(self, entry: TimelineEntry) -> None:
        self.timeline.append(entry)
        self.updated_at = entry.created_at


@dataclass
class Payment:
    """
    A payment attempt, keyed by the gateway's payment-intent id.

    The amount never changes after creation; refunds are tracked as Refund
    rows plus the gateway-reported ``amount_refunded_cents``.
    """

    id: str
    amount_cents: int
    currency: str
    order_id: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    amount_refunded_cents: int = 0
    gateway_metadata: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None
    client_secret: str | None = None
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        """Whether the customer can still complete this payment."""
        return self.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

    @property
    def holds_funds(self) -> bool:
        return self.status in (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED)


@dataclass
class Refund:
    payment_id: str
    amount_cents: int
    reason: str
    status: RefundStatus = RefundStatus.PENDING
    gateway_refund_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def counts_against_payment(self) -> bool:
        return self.status in (RefundStatus.PENDING, RefundStatus.SUCCEEDED)


def committed_refund_cents(refunds: Iterable[Refund]) -> int:
    """Sum of refund amounts that are in flight or done."""
    return sum(r.amount_cents for r in refunds if r.counts_against_payment)


def refundable_cents(payment: Payment, refunds: Iterable[Refund]) -> int:
    if not payment.holds_funds:
        return 0
    already = max(committed_refund_cents(refunds), payment.amount_refunded_cents)
    return max(payment.amount_cents - already, 0)
