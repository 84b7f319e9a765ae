"""
Payment gateway adapter.

Owns the Payment and Refund rows that mirror the processor's intents and
refunds. Every mutating gateway call carries an idempotency key derived
from ledger state, so a retried request collapses onto the same intent or
refund at the gateway:

- intents: ``order:{order_id}:{attempt}``
- refunds: ``refund:{refund_id}``

Order state is not touched here; payment results reach orders through the
reconciliation engine.
"""
from typing import Optional

import structlog

from order_engine.domain.events import ProviderEvent
from order_engine.domain.exceptions import (
    ConflictError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from order_engine.domain.models import (
    OrderStatus,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    refundable_cents,
    utcnow,
)
from order_engine.domain.state_machine import can_transition_payment
from order_engine.integrations.gateway import GatewayIntent, PaymentGateway
from order_engine.integrations.webhook_sources import WebhookSource
from order_engine.ledger.base import LedgerSession, LedgerStore
from order_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_REFUND_REASON = "requested_by_customer"


def advance_payment(
    payment: Payment, status: PaymentStatus, failure_reason: Optional[str] = None
) -> bool:
    """
    Move a payment forward to ``status`` if the edge is allowed.

    Returns False (and leaves the payment alone) for repeats and for
    stale, backwards moves.
    """
    if status == payment.status:
        return False
    if not can_transition_payment(payment.status, status):
        logger.info(
            "payment_transition_ignored",
            payment_id=payment.id,
            from_status=payment.status.value,
            to_status=status.value,
        )
        return False
    payment.status = status
    if status == PaymentStatus.FAILED:
        payment.failure_reason = failure_reason
    payment.version += 1
    payment.updated_at = utcnow()
    metrics.record_payment_transition(status.value)
    return True


class PaymentGatewayAdapter:
    """Payment intents and refunds, backed by the ledger."""

    def __init__(self, ledger: LedgerStore, gateway: PaymentGateway, webhook_source: WebhookSource):
        self.ledger = ledger
        self.gateway = gateway
        self.webhook_source = webhook_source

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        order_id: str,
        customer_ref: Optional[str] = None,
    ) -> Payment:
        """
        Create (or reuse) the payment intent for a pending order.

        Raises:
            ValidationError: Amount or currency differs from the order total
            InvalidTransitionError: Order is not pending
            ConflictError: Order already has a captured payment
            GatewayError: The processor call failed
        """
        currency = currency.lower()
        async with self.ledger.unit_of_work() as session:
            order = await session.lock_order(order_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidTransitionError(
                    order.status.value,
                    OrderStatus.PENDING.value,
                    f"Payments can only be created for pending orders (order is {order.status.value})",
                )
            if amount_cents != order.total_cents or currency != order.currency:
                raise ValidationError(
                    "Payment amount must equal the order total",
                    expected_amount_cents=order.total_cents,
                    expected_currency=order.currency,
                    amount_cents=amount_cents,
                    currency=currency,
                )

            payments = await session.list_payments(order_id)
            if any(p.holds_funds for p in payments):
                raise ConflictError(f"Order {order.order_number} is already paid")
            for existing in payments:
                if existing.is_open:
                    logger.info("payment_intent_reused", order_id=order_id, payment_intent_id=existing.id)
                    return existing
            for failed in payments:
                if failed.status == PaymentStatus.FAILED:
                    await self._retire_failed_intent(session, failed)

            attempt = len(payments) + 1
            intent = await self.gateway.create_intent(
                amount_cents,
                currency,
                order_id,
                customer_ref=customer_ref,
                idempotency_key=f"order:{order_id}:{attempt}",
                metadata={"store_id": order.store_id, "order_number": order.order_number},
            )

            payment, created = await session.upsert_payment(
                Payment(
                    id=intent.id,
                    amount_cents=intent.amount_cents,
                    currency=intent.currency,
                    order_id=order_id,
                    client_secret=intent.client_secret,
                    gateway_metadata=dict(intent.metadata),
                )
            )
            if not created:
                # A webhook got here first and left a shadow record.
                payment.order_id = payment.order_id or order_id
                payment.client_secret = payment.client_secret or intent.client_secret
            advance_payment(payment, intent.status, intent.failure_reason)
            await session.save_payment(payment)

        logger.info(
            "payment_recorded",
            order_id=order_id,
            payment_intent_id=payment.id,
            attempt=attempt,
            shadow=not created,
        )
        return payment

    async def confirm_intent(self, intent_id: str, method_ref: Optional[str] = None) -> Payment:
        payment = await self.ledger.get_payment(intent_id)
        if payment is None:
            raise NotFoundError("Payment", intent_id)
        intent = await self.gateway.confirm_intent(intent_id, method_ref)
        return await self._record_intent(intent)

    async def cancel_intent(self, intent_id: str) -> Payment:
        payment = await self.ledger.get_payment(intent_id)
        if payment is None:
            raise NotFoundError("Payment", intent_id)
        intent = await self.gateway.cancel_intent(intent_id)
        return await self._record_intent(intent)

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        return await self.gateway.retrieve_intent(intent_id)

    async def _record_intent(self, intent: GatewayIntent) -> Payment:
        async with self.ledger.unit_of_work() as session:
            payment = await session.lock_payment(intent.id)
            if advance_payment(payment, intent.status, intent.failure_reason):
                await session.save_payment(payment)
        return payment

    async def _retire_failed_intent(self, session: LedgerSession, payment: Payment) -> None:
        """Cancel a declined intent at the gateway so it cannot be completed later."""
        try:
            intent = await self.gateway.cancel_intent(payment.id)
        except GatewayError as e:
            # A late success on it is refunded as a duplicate.
            logger.warning("failed_intent_cancel_failed", payment_intent_id=payment.id, error=e.message)
            return
        locked = await session.lock_payment(payment.id)
        if advance_payment(locked, intent.status, intent.failure_reason):
            await session.save_payment(locked)
            logger.info("failed_intent_cancelled", payment_intent_id=payment.id, order_id=payment.order_id)

    async def refund(
        self,
        intent_id: str,
        amount_cents: Optional[int] = None,
        reason: str = DEFAULT_REFUND_REASON,
    ) -> Refund:
        """
        Refund part or all of a captured payment.

        The refund row is reserved as pending before the gateway is called,
        so concurrent refunds can never add up to more than the payment.

        Raises:
            NotFoundError: Unknown payment
            ConflictError: Payment holds no captured funds
            ValidationError: Amount is not positive or exceeds what is refundable
            GatewayError: The processor call failed (the reservation is marked failed)
        """
        async with self.ledger.unit_of_work() as session:
            payment = await session.lock_payment(intent_id)
            if not payment.holds_funds:
                raise ConflictError(
                    f"Payment {intent_id} has no captured funds to refund",
                    status=payment.status.value,
                )
            available = refundable_cents(payment, await session.list_refunds(intent_id))
            amount = available if amount_cents is None else amount_cents
            if amount <= 0:
                raise ValidationError("Refund amount must be positive", refundable_cents=available)
            if amount > available:
                raise ValidationError(
                    "Refund amount exceeds the refundable amount",
                    amount_cents=amount,
                    refundable_cents=available,
                )
            refund = Refund(payment_id=intent_id, amount_cents=amount, reason=reason)
            await session.add_refund(refund)

        metrics.record_refund(RefundStatus.PENDING.value, amount)
        logger.info(
            "refund_reserved",
            payment_intent_id=intent_id,
            refund_id=refund.id,
            amount_cents=amount,
            reason=reason,
        )

        try:
            gateway_refund = await self.gateway.refund(
                intent_id,
                amount,
                reason,
                idempotency_key=f"refund:{refund.id}",
                metadata={"refund_id": refund.id, "order_id": payment.order_id or ""},
            )
        except GatewayError:
            await self._update_refund(refund, RefundStatus.FAILED)
            metrics.record_refund(RefundStatus.FAILED.value)
            logger.error("refund_failed", payment_intent_id=intent_id, refund_id=refund.id)
            raise

        return await self._update_refund(refund, gateway_refund.status, gateway_refund.id)

    async def _update_refund(
        self, refund: Refund, status: RefundStatus, gateway_refund_id: Optional[str] = None
    ) -> Refund:
        async with self.ledger.unit_of_work() as session:
            await session.lock_payment(refund.payment_id)
            current = next(
                (r for r in await session.list_refunds(refund.payment_id) if r.id == refund.id),
                refund,
            )
            # A webhook may already have settled it.
            if current.status == RefundStatus.PENDING:
                current.status = status
            current.gateway_refund_id = current.gateway_refund_id or gateway_refund_id
            current.updated_at = utcnow()
            await session.save_refund(current)
        logger.info(
            "refund_updated",
            refund_id=current.id,
            gateway_refund_id=current.gateway_refund_id,
            status=current.status.value,
        )
        return current

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> ProviderEvent:
        """
        Authenticate a processor webhook and normalise it.

        Raises:
            SignatureInvalidError: Tampered, stale, unsigned or unverifiable
        """
        body = self.webhook_source.verify(raw_payload, signature_header)
        return self.webhook_source.to_domain_event(body)
