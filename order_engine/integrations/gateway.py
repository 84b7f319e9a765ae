"""
Payment gateway interface.

Everything the engine knows about the external processor goes through
``PaymentGateway``. Implementations translate processor objects into the
small ``GatewayIntent``/``GatewayRefund`` records below and raise
``GatewayError`` for every upstream failure, including timeouts.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from order_engine.domain.models import PaymentStatus, RefundStatus

INTENT_STATUS_MAP: Dict[str, PaymentStatus] = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELLED,
}

REFUND_STATUS_MAP: Dict[str, RefundStatus] = {
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.CANCELLED,
}


def payment_status_from_gateway(status: str, has_error: bool = False) -> PaymentStatus:
    """
    Map a processor intent status to a payment status.

    An intent back in ``requires_payment_method`` after an attempt carries
    the attempt's error and counts as failed.
    """
    if status == "requires_payment_method" and has_error:
        return PaymentStatus.FAILED
    return INTENT_STATUS_MAP.get(status, PaymentStatus.PENDING)


def refund_status_from_gateway(status: Optional[str]) -> RefundStatus:
    return REFUND_STATUS_MAP.get(status or "pending", RefundStatus.PENDING)


@dataclass(frozen=True)
class GatewayIntent:
    id: str
    amount_cents: int
    currency: str
    status: PaymentStatus
    raw_status: str
    client_secret: Optional[str] = None
    failure_reason: Optional[str] = None
    amount_refunded_cents: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    payment_intent_id: str
    amount_cents: int
    status: RefundStatus
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """External payment processor."""

    @abstractmethod
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        order_id: str,
        customer_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayIntent:
        """Create a payment intent for an order."""

    @abstractmethod
    async def confirm_intent(
        self, intent_id: str, method_ref: Optional[str] = None
    ) -> GatewayIntent:
        """Confirm an intent, optionally with a payment method."""

    @abstractmethod
    async def cancel_intent(self, intent_id: str) -> GatewayIntent:
        """Cancel an intent that has not succeeded."""

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        """Fetch the processor's current view of an intent."""

    @abstractmethod
    async def refund(
        self,
        intent_id: str,
        amount_cents: Optional[int],
        reason: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayRefund:
        """Refund part or all of a succeeded intent."""
