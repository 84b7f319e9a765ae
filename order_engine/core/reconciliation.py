"""
Webhook reconciliation engine.

Turns verified provider events into ledger updates, under three rules:

1. Nothing is trusted before the source verifies the signature.
2. Each event is applied at most once (claim keyed by ``{source}:{event_id}``).
3. Payment updates are monotonic, so redelivered or out-of-order events
   make no change and are still acknowledged.

Locks are always taken order first, then payment.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from order_engine.domain.events import ProviderEvent
from order_engine.domain.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    OrderEngineError,
    ValidationError,
)
from order_engine.domain.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    committed_refund_cents,
    utcnow,
)
from order_engine.domain.state_machine import FULFILLMENT_PATH
from order_engine.integrations.gateway import refund_status_from_gateway
from order_engine.integrations.webhook_sources import WebhookSource
from order_engine.ledger.base import LedgerSession, LedgerStore
from order_engine.monitoring.metrics import metrics

from .idempotency import EventClaimStore
from .orders import OrderResult, OrderStateMachine, PaymentOutcome
from .payments import PaymentGatewayAdapter, advance_payment

logger = structlog.get_logger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
ALREADY_APPLIED = "already_applied"
STALE = "stale"
IGNORED = "ignored"
ACKNOWLEDGED = "acknowledged"

AUTO_REFUND_REASON = "order_cancelled"
DUPLICATE_REFUND_REASON = "duplicate"
CARRIER_ACTOR = "system:carrier"

SHIPMENT_TARGETS = {
    "shipment.in_transit": OrderStatus.SHIPPED,
    "shipment.delivered": OrderStatus.DELIVERED,
}


@dataclass
class WebhookResult:
    status: str
    event_id: str
    event_type: str
    source: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "source": self.source,
        }
        if self.order_id:
            body["order_id"] = self.order_id
        if self.payment_id:
            body["payment_id"] = self.payment_id
        return body


@dataclass
class _PaymentUpdate:
    """Working state for one payment event inside a unit of work."""

    session: LedgerSession
    order: Optional[Order]
    payment: Payment
    changed: bool = False
    stale: bool = False
    order_results: List[OrderResult] = field(default_factory=list)


Handler = Callable[[ProviderEvent], Awaitable[WebhookResult]]


def _order_ref(metadata: Any) -> Optional[str]:
    if not isinstance(metadata, dict):
        return None
    return metadata.get("order_id") or metadata.get("orderId")


def _require(data: Dict[str, Any], key: str, event: ProviderEvent) -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise ValidationError(f"{event.type} event is missing {key}", event_id=event.id)
    return value


class WebhookReconciliationEngine:
    """Applies verified provider events to the ledger exactly once."""

    def __init__(
        self,
        sources: Dict[str, WebhookSource],
        claims: EventClaimStore,
        ledger: LedgerStore,
        orders: OrderStateMachine,
        payments: PaymentGatewayAdapter,
    ):
        self.sources = sources
        self.claims = claims
        self.ledger = ledger
        self.orders = orders
        self.payments = payments
        self._handlers: Dict[Tuple[str, str], Handler] = {}
        self._fallbacks: Dict[str, Handler] = {}

        self.register_handler("stripe", "payment_intent.succeeded", self._on_intent_succeeded)
        self.register_handler("stripe", "payment_intent.payment_failed", self._on_intent_failed)
        self.register_handler("stripe", "payment_intent.processing", self._on_intent_processing)
        self.register_handler("stripe", "payment_intent.canceled", self._on_intent_canceled)
        self.register_handler("stripe", "charge.refunded", self._on_charge_refunded)
        for event_type in SHIPMENT_TARGETS:
            self.register_handler("shipping", event_type, self._on_shipment)
        for name in sources:
            if name not in ("stripe", "shipping"):
                self._fallbacks[name] = self._acknowledge

    def register_handler(self, source: str, event_type: str, handler: Handler) -> None:
        self._handlers[(source, event_type)] = handler
        logger.debug("webhook_handler_registered", source=source, event_type=event_type)

    async def handle(self, source_name: str, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify, claim and apply one raw webhook delivery.

        Raises:
            NotFoundError: Unknown source
            SignatureInvalidError: Unverifiable delivery (no state change)
            ValidationError: Verified but malformed payload
            ConflictError: Another worker holds the claim for this event
            RetryableError: Ledger write failed; the claim is released
        """
        source = self.sources.get(source_name)
        if source is None:
            raise NotFoundError("Webhook source", source_name)
        body = source.verify(payload, signature)
        event = source.to_domain_event(body)
        return await self.process(event)

    async def process(self, event: ProviderEvent) -> WebhookResult:
        start = time.perf_counter()
        logger.info(
            "processing_webhook_event",
            source=event.source,
            event_id=event.id,
            event_type=event.type,
        )
        try:
            async with self.claims.claim(event.claim_key) as duplicate:
                if duplicate:
                    logger.info("webhook_event_already_processed", claim_key=event.claim_key)
                    result = WebhookResult(DUPLICATE, event.id, event.type, event.source)
                else:
                    result = await self.apply_event(event)
        except OrderEngineError as e:
            metrics.record_webhook_event(event.source, event.type, "error", time.perf_counter() - start)
            logger.error(
                "webhook_event_processing_failed",
                source=event.source,
                event_id=event.id,
                event_type=event.type,
                error_code=e.error_code,
                error=e.message,
            )
            raise

        metrics.record_webhook_event(event.source, event.type, result.status, time.perf_counter() - start)
        logger.info("webhook_event_processed", **result.to_dict())
        return result

    async def apply_event(self, event: ProviderEvent) -> WebhookResult:
        """Apply an event without claiming it. Also used by the sweeper."""
        handler = self._handlers.get((event.source, event.type)) or self._fallbacks.get(event.source)
        if handler is None:
            logger.info("webhook_event_ignored", source=event.source, event_id=event.id, event_type=event.type)
            return WebhookResult(IGNORED, event.id, event.type, event.source)
        return await handler(event)

    # Payment events

    async def _on_intent_succeeded(self, event: ProviderEvent) -> WebhookResult:
        async def steps(update: _PaymentUpdate) -> None:
            await self._settle(update, PaymentStatus.SUCCEEDED)

        return await self._reconcile_intent(event, steps)

    async def _on_intent_failed(self, event: ProviderEvent) -> WebhookResult:
        last_error = event.data.get("last_payment_error") or {}
        reason = last_error.get("message") if isinstance(last_error, dict) else None

        async def steps(update: _PaymentUpdate) -> None:
            await self._settle(update, PaymentStatus.FAILED, failure_reason=reason)

        return await self._reconcile_intent(event, steps)

    async def _on_intent_processing(self, event: ProviderEvent) -> WebhookResult:
        async def steps(update: _PaymentUpdate) -> None:
            await self._settle(update, PaymentStatus.PROCESSING)

        return await self._reconcile_intent(event, steps)

    async def _on_intent_canceled(self, event: ProviderEvent) -> WebhookResult:
        async def steps(update: _PaymentUpdate) -> None:
            await self._settle(update, PaymentStatus.CANCELLED)

        return await self._reconcile_intent(event, steps)

    async def _reconcile_intent(
        self, event: ProviderEvent, steps: Callable[[_PaymentUpdate], Awaitable[None]]
    ) -> WebhookResult:
        intent = event.data
        return await self._reconcile_payment(
            event,
            intent_id=_require(intent, "id", event),
            amount_cents=intent.get("amount"),
            currency=intent.get("currency"),
            metadata=intent.get("metadata"),
            steps=steps,
        )

    async def _on_charge_refunded(self, event: ProviderEvent) -> WebhookResult:
        charge = event.data
        refunded_total = int(charge.get("amount_refunded") or 0)
        refunds = charge.get("refunds") or {}
        gateway_refunds = (refunds.get("data") or []) if isinstance(refunds, dict) else []

        async def steps(update: _PaymentUpdate) -> None:
            payment = update.payment
            if not payment.holds_funds and payment.status != PaymentStatus.REFUNDED:
                # The refund proves the capture; a late succeeded event is then stale.
                await self._settle(update, PaymentStatus.SUCCEEDED)
                if update.stale:
                    return
            if await self._reconcile_refunds(update, refunded_total, gateway_refunds):
                update.changed = True
            if refunded_total > payment.amount_refunded_cents:
                payment.amount_refunded_cents = refunded_total
                payment.updated_at = utcnow()
                update.changed = True
            target = (
                PaymentStatus.REFUNDED
                if payment.amount_refunded_cents >= payment.amount_cents
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            await self._settle(update, target)

        return await self._reconcile_payment(
            event,
            intent_id=_require(charge, "payment_intent", event),
            amount_cents=charge.get("amount"),
            currency=charge.get("currency"),
            metadata=charge.get("metadata"),
            steps=steps,
        )

    async def _reconcile_payment(
        self,
        event: ProviderEvent,
        intent_id: str,
        amount_cents: Any,
        currency: Any,
        metadata: Any,
        steps: Callable[[_PaymentUpdate], Awaitable[None]],
    ) -> WebhookResult:
        existing = await self.ledger.get_payment(intent_id)
        order_id = (existing.order_id if existing else None) or _order_ref(metadata)

        async with self.ledger.unit_of_work() as session:
            order = await self._lock_order_if_exists(session, order_id)
            payment, created = await session.upsert_payment(
                Payment(
                    id=intent_id,
                    amount_cents=int(amount_cents or 0),
                    currency=str(currency or "usd").lower(),
                    order_id=order.id if order else None,
                    gateway_metadata=dict(metadata) if isinstance(metadata, dict) else {},
                )
            )
            if created:
                logger.info("payment_shadow_created", payment_intent_id=intent_id, order_id=payment.order_id)
            if payment.order_id and (order is None or order.id != payment.order_id):
                # Linked to an order after we looked; retrying takes the locks in order.
                raise ConflictError(
                    f"Payment {intent_id} was linked to an order concurrently",
                    payment_id=intent_id,
                )

            update = _PaymentUpdate(session=session, order=order, payment=payment, changed=created)
            if payment.order_id is None and order is not None:
                payment.order_id = order.id
                update.changed = True

            await steps(update)
            if update.changed:
                await session.save_payment(payment)

        if update.changed:
            status = APPLIED
        elif update.stale:
            status = STALE
        else:
            status = ALREADY_APPLIED

        refund_reason = None
        for order_result in update.order_results:
            await self.orders.dispatch(order_result.notifications)
            if order_result.outcome == PaymentOutcome.REQUIRES_REFUND:
                refund_reason = (
                    AUTO_REFUND_REASON
                    if order_result.order.status == OrderStatus.CANCELLED
                    else DUPLICATE_REFUND_REASON
                )
        if refund_reason:
            await self._auto_refund(payment, refund_reason)

        return WebhookResult(
            status,
            event.id,
            event.type,
            event.source,
            order_id=payment.order_id,
            payment_id=payment.id,
        )

    async def _lock_order_if_exists(self, session: LedgerSession, order_id: Optional[str]) -> Optional[Order]:
        if not order_id:
            return None
        try:
            return await session.lock_order(order_id)
        except NotFoundError:
            logger.warning("webhook_order_not_found", order_id=order_id)
            return None

    async def _settle(
        self, update: _PaymentUpdate, status: PaymentStatus, failure_reason: Optional[str] = None
    ) -> None:
        """Move the payment to ``status`` and carry the result onto its order."""
        payment = update.payment
        if advance_payment(payment, status, failure_reason):
            update.changed = True
        elif payment.status != status:
            logger.info(
                "webhook_event_stale",
                payment_intent_id=payment.id,
                current_status=payment.status.value,
                event_status=status.value,
            )
            update.stale = True
            return

        if update.order is None:
            return
        order_result = await self.orders.apply_payment_result_to(
            update.session, update.order, payment.status, payment_id=payment.id
        )
        update.order_results.append(order_result)
        if order_result.changed:
            update.changed = True

    async def _reconcile_refunds(
        self, update: _PaymentUpdate, refunded_total: int, gateway_refunds: List[Any]
    ) -> bool:
        """
        Bring Refund rows in line with the processor.

        Gateway refunds are matched by our ``refund_id`` metadata or by the
        gateway id. Any refunded amount still unaccounted for settles
        pending reservations oldest first, then becomes a refund row of its
        own (refunds issued from the processor's dashboard).
        """
        session, payment = update.session, update.payment
        local = await session.list_refunds(payment.id)
        changed = False

        for raw in gateway_refunds:
            if not isinstance(raw, dict):
                continue
            gateway_id = raw.get("id")
            refund_id = (raw.get("metadata") or {}).get("refund_id")
            status = refund_status_from_gateway(raw.get("status"))
            match = next(
                (
                    r for r in local
                    if (refund_id and r.id == refund_id)
                    or (gateway_id and r.gateway_refund_id == gateway_id)
                ),
                None,
            )
            if match is None:
                match = Refund(
                    payment_id=payment.id,
                    amount_cents=int(raw.get("amount") or 0),
                    reason=raw.get("reason") or "gateway",
                    status=status,
                    gateway_refund_id=gateway_id,
                )
                await session.add_refund(match)
                local.append(match)
                changed = True
                metrics.record_refund(status.value, match.amount_cents)
                continue
            touched = False
            if match.gateway_refund_id is None and gateway_id:
                match.gateway_refund_id = gateway_id
                touched = True
            if match.status == RefundStatus.PENDING and status != RefundStatus.PENDING:
                match.status = status
                metrics.record_refund(status.value)
                touched = True
            if touched:
                changed = True
                match.updated_at = utcnow()
                await session.save_refund(match)

        covered = sum(r.amount_cents for r in local if r.status == RefundStatus.SUCCEEDED)
        for refund in local:
            if covered >= refunded_total:
                break
            if refund.status == RefundStatus.PENDING and refund.amount_cents <= refunded_total - covered:
                refund.status = RefundStatus.SUCCEEDED
                refund.updated_at = utcnow()
                await session.save_refund(refund)
                covered += refund.amount_cents
                changed = True

        remainder = min(
            refunded_total - covered,
            payment.amount_cents - committed_refund_cents(local),
        )
        if remainder > 0:
            await session.add_refund(
                Refund(
                    payment_id=payment.id,
                    amount_cents=remainder,
                    reason="gateway",
                    status=RefundStatus.SUCCEEDED,
                )
            )
            metrics.record_refund(RefundStatus.SUCCEEDED.value, remainder)
            changed = True
        return changed

    async def _auto_refund(self, payment: Payment, reason: str) -> None:
        """Refund a payment that succeeded on a cancelled or already paid order."""
        try:
            refund = await self.payments.refund(payment.id, None, reason=reason)
        except GatewayError as e:
            # The sweeper picks cancelled-but-paid orders up again. Duplicates need an operator.
            logger.error("auto_refund_failed", payment_intent_id=payment.id, reason=reason, error=e.message)
            return
        except (ConflictError, ValidationError) as e:
            logger.info("auto_refund_skipped", payment_intent_id=payment.id, reason=e.message)
            return
        logger.info(
            "auto_refund_issued",
            payment_intent_id=payment.id,
            refund_id=refund.id,
            amount_cents=refund.amount_cents,
            reason=reason,
        )

    # Shipping and other sources

    async def _on_shipment(self, event: ProviderEvent) -> WebhookResult:
        target = SHIPMENT_TARGETS[event.type]
        order_id = event.data.get("order_id") or _order_ref(event.data.get("metadata"))
        if not order_id:
            raise ValidationError(f"{event.type} event is missing order_id", event_id=event.id)
        tracking = event.data.get("tracking_number")
        note = f"Carrier update ({tracking})" if tracking else "Carrier update"

        if await self.ledger.get_order(str(order_id)) is None:
            logger.warning("shipment_event_unknown_order", order_id=order_id, event_id=event.id)
            return WebhookResult(IGNORED, event.id, event.type, event.source)

        async with self.ledger.unit_of_work() as session:
            order = await session.lock_order(str(order_id))
            if order.status == target or (
                order.status in FULFILLMENT_PATH
                and FULFILLMENT_PATH.index(order.status) >= FULFILLMENT_PATH.index(target)
            ):
                status = ALREADY_APPLIED
                order_result = OrderResult(order=order)
            else:
                order_result = await self.orders.advance_fulfillment(
                    session, order, target, CARRIER_ACTOR, note
                )
                status = APPLIED if order_result.changed else IGNORED

        if status == IGNORED:
            logger.warning(
                "shipment_event_not_applicable",
                order_id=order.id,
                order_status=order.status.value,
                event_type=event.type,
            )
        await self.orders.dispatch(order_result.notifications)
        return WebhookResult(status, event.id, event.type, event.source, order_id=order.id)

    async def _acknowledge(self, event: ProviderEvent) -> WebhookResult:
        logger.info(
            "webhook_event_acknowledged",
            source=event.source,
            event_id=event.id,
            event_type=event.type,
            order_id=event.data.get("order_id"),
        )
        return WebhookResult(ACKNOWLEDGED, event.id, event.type, event.source)
