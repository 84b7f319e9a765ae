"""
Domain events emitted by the state machine, and provider events consumed by
the reconciliation engine.

Domain events describe past facts and are immutable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .models import OrderStatus, PaymentStatus, utcnow


class DomainEvent(BaseModel):
    """Base class for all domain events."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    occurred_at: datetime = Field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return type(self).__name__


class OrderCreated(DomainEvent):
    store_id: str
    order_number: str
    total_cents: int
    currency: str


class OrderStatusChanged(DomainEvent):
    from_status: OrderStatus
    to_status: OrderStatus
    actor: str


class PaymentSettled(DomainEvent):
    """A payment result was applied to the order."""

    payment_status: PaymentStatus
    payment_id: str | None = None


class RefundRecorded(DomainEvent):
    payment_id: str
    refund_id: str
    amount_cents: int


class ProviderEvent(BaseModel):
    """
    A verified webhook event, normalised across sources.

    ``data`` is the source's event object (for Stripe, ``data.object``).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    source: str
    data: dict[str, Any] = Field(default_factory=dict)
    created: int | None = None

    @property
    def claim_key(self) -> str:
        return f"{self.source}:{self.id}"
