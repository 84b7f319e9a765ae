"""
Tests for webhook reconciliation.

Events go through ``engine.handle`` with real signatures so the whole
verify, claim and apply path is exercised.
"""
import json

import pytest

from order_engine.api.dependencies import assemble
from order_engine.core.reconciliation import (
    ACKNOWLEDGED,
    ALREADY_APPLIED,
    APPLIED,
    DUPLICATE,
    IGNORED,
    STALE,
)
from order_engine.domain.exceptions import (
    NotFoundError,
    RetryableError,
    SignatureInvalidError,
    ValidationError,
)
from order_engine.domain.models import OrderStatus, PaymentStatus, RefundStatus
from order_engine.integrations.notifications import (
    ORDER_CONFIRMATION,
    ORDER_DELIVERED,
    ORDER_SHIPPED,
    PAYMENT_FAILED,
    REFUND_NOTICE,
)

from .conftest import CUSTOMER_ID, STORE_ID, TWO_ITEM_ORDER
from .fakes import (
    FlakyLedgerStore,
    charge_refunded_object,
    hmac_signature,
    intent_object,
    stripe_event,
    stripe_signature,
)


@pytest.fixture
def deliver(engine, test_settings):
    """Send a signed Stripe event through the engine."""

    async def _deliver(event_id, event_type, obj, secret=None):
        payload = stripe_event(event_id, event_type, obj)
        header = stripe_signature(payload, secret or test_settings.stripe_webhook_secret)
        return await engine.handle("stripe", payload, header)

    return _deliver


@pytest.fixture
def ship(engine, test_settings):
    """Send a signed shipping carrier event through the engine."""

    async def _ship(event_id, event_type, data):
        payload = json.dumps({"id": event_id, "type": event_type, "data": data}).encode("utf-8")
        return await engine.handle(
            "shipping", payload, hmac_signature(payload, test_settings.shipping_webhook_secret)
        )

    return _ship


class TestPaymentIntentEvents:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_confirms_order(self, deliver, pending_order, intent, ledger, notifier) -> None:
        result = await deliver(
            "evt_1", "payment_intent.succeeded", intent_object(intent.id, 4999, "succeeded", pending_order.id)
        )

        assert result.status == APPLIED
        assert result.order_id == pending_order.id
        assert result.payment_id == intent.id
        order = await ledger.get_order(pending_order.id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.SUCCEEDED
        assert (await ledger.get_payment(intent.id)).status == PaymentStatus.SUCCEEDED
        assert notifier.kinds() == [ORDER_CONFIRMATION]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_delivery_applies_once(self, deliver, pending_order, intent, ledger, notifier) -> None:
        obj = intent_object(intent.id, 4999, "succeeded", pending_order.id)
        first = await deliver("evt_1", "payment_intent.succeeded", obj)
        version = (await ledger.get_order(pending_order.id)).version

        second = await deliver("evt_1", "payment_intent.succeeded", obj)

        assert first.status == APPLIED
        assert second.status == DUPLICATE
        assert (await ledger.get_order(pending_order.id)).version == version
        assert notifier.kinds() == [ORDER_CONFIRMATION]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_result_under_new_event_id(self, deliver, pending_order, intent) -> None:
        obj = intent_object(intent.id, 4999, "succeeded", pending_order.id)
        await deliver("evt_1", "payment_intent.succeeded", obj)

        result = await deliver("evt_2", "payment_intent.succeeded", obj)
        assert result.status == ALREADY_APPLIED

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type,raw_status",
        [
            ("payment_intent.payment_failed", "requires_payment_method"),
            ("payment_intent.processing", "processing"),
            ("payment_intent.canceled", "canceled"),
        ],
    )
    async def test_late_events_after_success_are_stale(
        self, deliver, pending_order, intent, ledger, event_type, raw_status
    ) -> None:
        await deliver("evt_1", "payment_intent.succeeded", intent_object(intent.id, 4999, "succeeded", pending_order.id))

        result = await deliver("evt_2", event_type, intent_object(intent.id, 4999, raw_status, pending_order.id))

        assert result.status == STALE
        assert (await ledger.get_payment(intent.id)).status == PaymentStatus.SUCCEEDED
        assert (await ledger.get_order(pending_order.id)).status == OrderStatus.CONFIRMED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_flags_order(self, deliver, pending_order, intent, ledger, notifier) -> None:
        result = await deliver(
            "evt_1",
            "payment_intent.payment_failed",
            intent_object(intent.id, 4999, "requires_payment_method", pending_order.id, error="Insufficient funds"),
        )

        assert result.status == APPLIED
        payment = await ledger.get_payment(intent.id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Insufficient funds"
        order = await ledger.get_order(pending_order.id)
        assert order.status == OrderStatus.PENDING
        assert order.payment_flagged
        assert notifier.kinds() == [PAYMENT_FAILED]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_intent_creates_linked_shadow(self, deliver, pending_order, ledger) -> None:
        result = await deliver(
            "evt_1", "payment_intent.succeeded", intent_object("pi_external", 4999, "succeeded", pending_order.id)
        )

        assert result.status == APPLIED
        payment = await ledger.get_payment("pi_external")
        assert payment.order_id == pending_order.id
        assert payment.status == PaymentStatus.SUCCEEDED
        assert (await ledger.get_order(pending_order.id)).status == OrderStatus.CONFIRMED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_intent_without_order(self, deliver, ledger) -> None:
        result = await deliver("evt_1", "payment_intent.processing", intent_object("pi_orphan", 1200, "processing"))

        assert result.status == APPLIED
        payment = await ledger.get_payment("pi_orphan")
        assert payment.order_id is None
        assert payment.status == PaymentStatus.PROCESSING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_metadata_for_missing_order(self, deliver, ledger) -> None:
        result = await deliver(
            "evt_1", "payment_intent.succeeded", intent_object("pi_x", 100, "succeeded", "order_gone")
        )
        assert result.status == APPLIED
        assert (await ledger.get_payment("pi_x")).order_id is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored(self, deliver) -> None:
        result = await deliver("evt_1", "customer.created", {"id": "cus_123"})
        assert result.status == IGNORED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_intent_id(self, deliver) -> None:
        with pytest.raises(ValidationError, match="missing id"):
            await deliver("evt_1", "payment_intent.succeeded", {"amount": 100})


class TestSignatures:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_forged_event_changes_nothing(self, deliver, pending_order, intent, ledger, claims) -> None:
        obj = intent_object(intent.id, 4999, "succeeded", pending_order.id)

        with pytest.raises(SignatureInvalidError):
            await deliver("evt_1", "payment_intent.succeeded", obj, secret="whsec_attacker")

        assert (await ledger.get_payment(intent.id)).status == PaymentStatus.PENDING
        assert (await ledger.get_order(pending_order.id)).status == OrderStatus.PENDING
        assert not await claims.is_processed("stripe:evt_1")

        # The genuine delivery of the same event is still applied.
        result = await deliver("evt_1", "payment_intent.succeeded", obj)
        assert result.status == APPLIED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsigned_delivery(self, engine) -> None:
        with pytest.raises(SignatureInvalidError):
            await engine.handle("stripe", b'{"id": "evt_1"}', None)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_source(self, engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.handle("paypal", b"{}", "sig")


class TestRefundEvents:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_settles_local_refund(
        self, deliver, payments, paid_order, intent, ledger, notifier
    ) -> None:
        refund = await payments.refund(intent.id, 2000)

        result = await deliver(
            "evt_refund_1",
            "charge.refunded",
            charge_refunded_object(
                intent.id,
                4999,
                2000,
                paid_order.id,
                refunds=[
                    {
                        "id": refund.gateway_refund_id,
                        "amount": 2000,
                        "status": "succeeded",
                        "metadata": {"refund_id": refund.id},
                    }
                ],
            ),
        )

        assert result.status == APPLIED
        payment = await ledger.get_payment(intent.id)
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.amount_refunded_cents == 2000
        order = await ledger.get_order(paid_order.id)
        assert order.status == OrderStatus.PARTIALLY_REFUNDED
        assert [r.id for r in await ledger.list_refunds(intent.id)] == [refund.id]
        assert notifier.kinds()[-1] == REFUND_NOTICE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dashboard_full_refund(self, deliver, paid_order, intent, ledger) -> None:
        result = await deliver(
            "evt_refund_1",
            "charge.refunded",
            charge_refunded_object(
                intent.id,
                4999,
                4999,
                paid_order.id,
                refunds=[{"id": "re_dashboard", "amount": 4999, "status": "succeeded"}],
            ),
        )

        assert result.status == APPLIED
        assert (await ledger.get_payment(intent.id)).status == PaymentStatus.REFUNDED
        assert (await ledger.get_order(paid_order.id)).status == OrderStatus.REFUNDED
        refunds = await ledger.list_refunds(intent.id)
        assert [(r.amount_cents, r.status, r.gateway_refund_id) for r in refunds] == [
            (4999, RefundStatus.SUCCEEDED, "re_dashboard")
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_before_success_event(self, deliver, pending_order, intent, ledger) -> None:
        result = await deliver(
            "evt_refund_1",
            "charge.refunded",
            charge_refunded_object(intent.id, 4999, 1000, pending_order.id),
        )

        assert result.status == APPLIED
        payment = await ledger.get_payment(intent.id)
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        order = await ledger.get_order(pending_order.id)
        assert order.status == OrderStatus.PARTIALLY_REFUNDED
        assert order.was_confirmed
        assert sum(r.amount_cents for r in await ledger.list_refunds(intent.id)) == 1000

        late = await deliver(
            "evt_success", "payment_intent.succeeded", intent_object(intent.id, 4999, "succeeded", pending_order.id)
        )
        assert late.status == STALE


class TestAutoRefund:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_after_cancel_is_refunded(self, deliver, orders, pending_order, gateway, ledger) -> None:
        await orders.cancel_order(pending_order.id, "changed mind", "customer")

        result = await deliver(
            "evt_1", "payment_intent.succeeded", intent_object("pi_late", 4999, "succeeded", pending_order.id)
        )

        assert result.status == APPLIED
        assert [r.metadata["reason"] for r in gateway.refunds] == ["order_cancelled"]
        assert gateway.refunds[0].amount_cents == 4999
        order = await ledger.get_order(pending_order.id)
        assert order.status == OrderStatus.CANCELLED
        refunds = await ledger.list_refunds("pi_late")
        assert [r.status for r in refunds] == [RefundStatus.SUCCEEDED]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_auto_refund_is_left_for_the_sweeper(
        self, deliver, orders, pending_order, gateway, ledger
    ) -> None:
        await orders.cancel_order(pending_order.id, "changed mind", "customer")
        gateway.fail_next("refund")

        result = await deliver(
            "evt_1", "payment_intent.succeeded", intent_object("pi_late", 4999, "succeeded", pending_order.id)
        )

        assert result.status == APPLIED
        assert [o.id for o in await ledger.find_orders_requiring_refund(10)] == [pending_order.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_success_after_retry_is_refunded(
        self, deliver, payments, pending_order, intent, gateway, ledger
    ) -> None:
        """Test an order keeps one payment when a declined attempt and its retry both succeed."""
        await deliver(
            "evt_declined",
            "payment_intent.payment_failed",
            intent_object(intent.id, 4999, "requires_payment_method", pending_order.id, error="Card declined"),
        )
        gateway.fail_next("cancel_intent")
        retry = await payments.create_intent(4999, "usd", pending_order.id)
        await deliver(
            "evt_retry_paid", "payment_intent.succeeded", intent_object(retry.id, 4999, "succeeded", pending_order.id)
        )

        late = await deliver(
            "evt_first_paid", "payment_intent.succeeded", intent_object(intent.id, 4999, "succeeded", pending_order.id)
        )

        assert late.status == APPLIED
        assert [(r.payment_intent_id, r.metadata["reason"]) for r in gateway.refunds] == [(intent.id, "duplicate")]
        order = await ledger.get_order(pending_order.id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.SUCCEEDED

        refund = (await ledger.list_refunds(intent.id))[0]
        await deliver(
            "evt_first_refunded",
            "charge.refunded",
            charge_refunded_object(
                intent.id,
                4999,
                4999,
                pending_order.id,
                refunds=[
                    {
                        "id": refund.gateway_refund_id,
                        "amount": 4999,
                        "status": "succeeded",
                        "metadata": {"refund_id": refund.id},
                    }
                ],
            ),
        )

        funded = [p.id for p in await ledger.list_payments(pending_order.id) if p.holds_funds]
        assert funded == [retry.id]
        order = await ledger.get_order(pending_order.id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.SUCCEEDED


class TestShippingEvents:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_carrier_moves_order_forward(self, ship, paid_order, ledger, notifier) -> None:
        in_transit = await ship("shp_1", "shipment.in_transit", {"order_id": paid_order.id, "tracking_number": "1Z999"})
        delivered = await ship("shp_2", "shipment.delivered", {"order_id": paid_order.id})

        assert in_transit.status == APPLIED
        assert delivered.status == APPLIED
        order = await ledger.get_order(paid_order.id)
        assert order.status == OrderStatus.DELIVERED
        assert any(e.note == "Carrier update (1Z999)" for e in order.timeline)
        assert notifier.kinds()[-2:] == [ORDER_SHIPPED, ORDER_DELIVERED]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_in_transit_after_delivery(self, ship, paid_order, ledger) -> None:
        await ship("shp_2", "shipment.delivered", {"order_id": paid_order.id})

        result = await ship("shp_1", "shipment.in_transit", {"order_id": paid_order.id})

        assert result.status == ALREADY_APPLIED
        assert (await ledger.get_order(paid_order.id)).status == OrderStatus.DELIVERED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_order_is_not_shipped(self, ship, pending_order, ledger) -> None:
        result = await ship("shp_1", "shipment.in_transit", {"order_id": pending_order.id})

        assert result.status == IGNORED
        assert (await ledger.get_order(pending_order.id)).status == OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, ship) -> None:
        result = await ship("shp_1", "shipment.delivered", {"order_id": "nope"})
        assert result.status == IGNORED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_order_id(self, ship) -> None:
        with pytest.raises(ValidationError):
            await ship("shp_1", "shipment.delivered", {"tracking_number": "1Z"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_ids_are_scoped_per_source(self, deliver, ship, paid_order) -> None:
        await ship("evt_shared", "shipment.in_transit", {"order_id": paid_order.id})
        result = await deliver("evt_shared", "customer.created", {"id": "cus_1"})
        assert result.status == IGNORED


class TestOtherSources:
    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("source,secret", [("email", "email_test_secret"), ("custom", "custom_test_secret")])
    async def test_acknowledged(self, engine, source: str, secret: str) -> None:
        payload = json.dumps({"id": "ev_1", "type": "message.delivered", "data": {"order_id": "o1"}}).encode()

        result = await engine.handle(source, payload, hmac_signature(payload, secret))

        assert result.status == ACKNOWLEDGED
        assert result.source == source


class TestRetryableFailures:
    @pytest.fixture
    def flaky_ledger(self) -> FlakyLedgerStore:
        return FlakyLedgerStore(failures=0)

    @pytest.fixture
    def flaky(self, test_settings, flaky_ledger, gateway, catalog, customers, notifier, claims):
        return assemble(
            test_settings,
            ledger=flaky_ledger,
            gateway=gateway,
            catalog=catalog,
            customers=customers,
            notifier=notifier,
            claims=claims,
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_write_leaves_event_claimable(self, flaky, flaky_ledger, claims, test_settings) -> None:
        order = (await flaky.orders.create_order(STORE_ID, CUSTOMER_ID, TWO_ITEM_ORDER)).order
        intent = await flaky.payments.create_intent(4999, "usd", order.id)
        payload = stripe_event("evt_1", "payment_intent.succeeded", intent_object(intent.id, 4999, "succeeded", order.id))
        header = stripe_signature(payload, test_settings.stripe_webhook_secret)

        flaky_ledger.failures = 1
        with pytest.raises(RetryableError):
            await flaky.reconciliation.handle("stripe", payload, header)

        assert claims.held() == ()
        assert not await claims.is_processed("stripe:evt_1")
        assert (await flaky_ledger.get_order(order.id)).status == OrderStatus.PENDING

        result = await flaky.reconciliation.handle("stripe", payload, header)
        assert result.status == APPLIED
        assert (await flaky_ledger.get_order(order.id)).status == OrderStatus.CONFIRMED
