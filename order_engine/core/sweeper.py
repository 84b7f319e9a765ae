"""
Stale payment sweeper.

Webhooks can be lost. Payments stuck in pending/processing longer than
``stale_payment_minutes`` are re-read from the gateway, and any status
change is fed back through the reconciliation engine as a synthetic
provider event. The sweep also retries automatic refunds for cancelled
orders whose payment succeeded.
"""
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from order_engine.domain.events import ProviderEvent
from order_engine.domain.exceptions import GatewayError, OrderEngineError
from order_engine.domain.models import Payment, PaymentStatus, refundable_cents, utcnow
from order_engine.integrations.gateway import GatewayIntent
from order_engine.ledger.base import LedgerStore
from order_engine.monitoring.metrics import metrics

from .payments import PaymentGatewayAdapter
from .reconciliation import AUTO_REFUND_REASON, WebhookReconciliationEngine

logger = structlog.get_logger(__name__)

STALE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

INTENT_EVENT_TYPES = {
    PaymentStatus.SUCCEEDED: "payment_intent.succeeded",
    PaymentStatus.FAILED: "payment_intent.payment_failed",
    PaymentStatus.PROCESSING: "payment_intent.processing",
    PaymentStatus.CANCELLED: "payment_intent.canceled",
}


def synthetic_event(payment: Payment, intent: GatewayIntent) -> Optional[ProviderEvent]:
    """The provider event the gateway would have sent for ``intent``'s current status."""
    event_type = INTENT_EVENT_TYPES.get(intent.status)
    if event_type is None:
        return None
    metadata = dict(intent.metadata)
    if payment.order_id:
        metadata["order_id"] = payment.order_id
    data: Dict[str, Any] = {
        "id": intent.id,
        "amount": intent.amount_cents,
        "currency": intent.currency,
        "status": intent.raw_status,
        "metadata": metadata,
    }
    if intent.failure_reason:
        data["last_payment_error"] = {"message": intent.failure_reason}
    return ProviderEvent(
        id=f"sweep:{intent.id}:{intent.raw_status}",
        type=event_type,
        source="stripe",
        data=data,
    )


class PaymentSweeper:
    def __init__(
        self,
        ledger: LedgerStore,
        payments: PaymentGatewayAdapter,
        engine: WebhookReconciliationEngine,
        stale_after_minutes: int = 30,
        batch_size: int = 100,
    ):
        self.ledger = ledger
        self.payments = payments
        self.engine = engine
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.batch_size = batch_size

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run one pass. Returns counters for what was found and done."""
        start = time.perf_counter()
        now = now or utcnow()
        summary = {
            "checked": 0,
            "reconciled": 0,
            "unchanged": 0,
            "errors": 0,
            "refunds_issued": 0,
            "refund_errors": 0,
        }

        stale = await self.ledger.find_stale_payments(
            STALE_STATUSES, now - self.stale_after, self.batch_size
        )
        for payment in stale:
            summary["checked"] += 1
            outcome = await self._check_payment(payment)
            summary[outcome] += 1
            metrics.record_stale_payment(outcome)

        for order in await self.ledger.find_orders_requiring_refund(self.batch_size):
            for payment in await self.ledger.list_payments(order.id):
                if not payment.holds_funds:
                    continue
                if refundable_cents(payment, await self.ledger.list_refunds(payment.id)) <= 0:
                    continue
                try:
                    await self.payments.refund(payment.id, None, reason=AUTO_REFUND_REASON)
                    summary["refunds_issued"] += 1
                except OrderEngineError as e:
                    summary["refund_errors"] += 1
                    logger.error(
                        "sweep_refund_failed",
                        order_id=order.id,
                        payment_intent_id=payment.id,
                        error=e.message,
                    )

        metrics.record_sweep(time.perf_counter() - start)
        logger.info("payment_sweep_completed", **summary)
        return summary

    async def _check_payment(self, payment: Payment) -> str:
        try:
            intent = await self.payments.retrieve_intent(payment.id)
        except GatewayError as e:
            logger.warning("sweep_retrieve_failed", payment_intent_id=payment.id, error=e.message)
            return "errors"

        if intent.status == payment.status:
            return "unchanged"
        event = synthetic_event(payment, intent)
        if event is None:
            return "unchanged"

        try:
            result = await self.engine.apply_event(event)
        except OrderEngineError as e:
            logger.error(
                "sweep_reconcile_failed",
                payment_intent_id=payment.id,
                error_code=e.error_code,
                error=e.message,
            )
            return "errors"

        logger.info(
            "stale_payment_reconciled",
            payment_intent_id=payment.id,
            from_status=payment.status.value,
            to_status=intent.status.value,
            result=result.status,
        )
        return "reconciled"
