"""
Tests for the payment gateway adapter.
"""
import pytest

from order_engine.domain.exceptions import (
    ConflictError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    SignatureInvalidError,
    ValidationError,
)
from order_engine.domain.models import OrderStatus, PaymentStatus, RefundStatus, refundable_cents

from .fakes import intent_object, stripe_event, stripe_signature


def _keys(gateway, operation):
    return [params.get("idempotency_key") for name, params in gateway.calls if name == operation]


class TestCreateIntent:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_pending_payment(self, payments, pending_order, gateway, ledger) -> None:
        payment = await payments.create_intent(4999, "USD", pending_order.id)

        assert payment.status == PaymentStatus.PENDING
        assert payment.order_id == pending_order.id
        assert payment.amount_cents == 4999
        assert payment.client_secret
        assert await ledger.get_payment(payment.id) is not None
        assert _keys(gateway, "create_intent") == [f"order:{pending_order.id}:1"]
        assert gateway.intents[payment.id]["metadata"]["order_number"] == pending_order.order_number

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_intent_is_reused(self, payments, pending_order, intent, gateway) -> None:
        again = await payments.create_intent(4999, "usd", pending_order.id)

        assert again.id == intent.id
        assert gateway.operations().count("create_intent") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_attempt_after_failure(self, payments, pending_order, intent, gateway, ledger) -> None:
        declined = await payments.confirm_intent(intent.id, "pm_card_declined")
        assert declined.status == PaymentStatus.FAILED
        assert declined.failure_reason == "Your card was declined."

        retry = await payments.create_intent(4999, "usd", pending_order.id)

        assert retry.id != intent.id
        assert _keys(gateway, "create_intent")[-1] == f"order:{pending_order.id}:2"
        assert gateway.operations()[-2:] == ["cancel_intent", "create_intent"]
        assert gateway.intents[intent.id]["status"] == "canceled"
        assert (await ledger.get_payment(intent.id)).status == PaymentStatus.CANCELLED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_survives_failed_cancel_of_declined_intent(
        self, payments, pending_order, intent, gateway, ledger
    ) -> None:
        await payments.confirm_intent(intent.id, "pm_card_declined")
        gateway.fail_next("cancel_intent")

        retry = await payments.create_intent(4999, "usd", pending_order.id)

        assert retry.status == PaymentStatus.PENDING
        assert (await ledger.get_payment(intent.id)).status == PaymentStatus.FAILED
        third = await payments.create_intent(4999, "usd", pending_order.id)
        assert third.id == retry.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,currency", [(4998, "usd"), (5000, "usd"), (4999, "eur")])
    async def test_amount_must_match_order(self, payments, pending_order, gateway, amount, currency) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await payments.create_intent(amount, currency, pending_order.id)

        assert exc_info.value.details["expected_amount_cents"] == 4999
        assert gateway.operations() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_pending_orders(self, payments, paid_order) -> None:
        with pytest.raises(InvalidTransitionError):
            await payments.create_intent(4999, "usd", paid_order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, payments) -> None:
        with pytest.raises(NotFoundError):
            await payments.create_intent(100, "usd", "missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_failure_records_nothing(self, payments, pending_order, gateway, ledger) -> None:
        gateway.fail_next("create_intent")

        with pytest.raises(GatewayError):
            await payments.create_intent(4999, "usd", pending_order.id)

        assert await ledger.list_payments(pending_order.id) == []


class TestConfirmAndCancel:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_updates_payment_only(self, payments, pending_order, intent, ledger) -> None:
        payment = await payments.confirm_intent(intent.id, "pm_card_visa")

        assert payment.status == PaymentStatus.SUCCEEDED
        # The order follows once the processor's webhook arrives.
        order = await ledger.get_order(pending_order.id)
        assert order.status == OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_unknown_intent(self, payments) -> None:
        with pytest.raises(NotFoundError):
            await payments.confirm_intent("pi_missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_intent(self, payments, intent) -> None:
        payment = await payments.cancel_intent(intent.id)
        assert payment.status == PaymentStatus.CANCELLED


class TestRefund:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund(self, payments, paid_order, intent, gateway, ledger) -> None:
        refund = await payments.refund(intent.id, 2000)

        assert refund.status == RefundStatus.SUCCEEDED
        assert refund.amount_cents == 2000
        assert refund.gateway_refund_id == "re_test_1"
        assert _keys(gateway, "refund") == [f"refund:{refund.id}"]

        payment = await ledger.get_payment(intent.id)
        assert refundable_cents(payment, await ledger.list_refunds(intent.id)) == 2999

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund_by_default(self, payments, paid_order, intent) -> None:
        refund = await payments.refund(intent.id)
        assert refund.amount_cents == 4999
        assert refund.reason == "requested_by_customer"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refunds_cannot_exceed_payment(self, payments, paid_order, intent) -> None:
        await payments.refund(intent.id, 3000)

        with pytest.raises(ValidationError) as exc_info:
            await payments.refund(intent.id, 2000)
        assert exc_info.value.details["refundable_cents"] == 1999

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount(self, payments, paid_order, intent, amount: int) -> None:
        with pytest.raises(ValidationError, match="positive"):
            await payments.refund(intent.id, amount)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_payment(self, payments, intent) -> None:
        with pytest.raises(ConflictError):
            await payments.refund(intent.id, 100)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_failure_frees_the_reservation(
        self, payments, paid_order, intent, gateway, ledger
    ) -> None:
        gateway.fail_next("refund")

        with pytest.raises(GatewayError):
            await payments.refund(intent.id, 2000)

        refunds = await ledger.list_refunds(intent.id)
        assert [r.status for r in refunds] == [RefundStatus.FAILED]
        payment = await ledger.get_payment(intent.id)
        assert refundable_cents(payment, refunds) == 4999


class TestVerifySignature:
    @pytest.mark.unit
    def test_valid_signature(self, payments, test_settings) -> None:
        payload = stripe_event("evt_1", "payment_intent.succeeded", intent_object("pi_1", 4999, "succeeded"))
        header = stripe_signature(payload, test_settings.stripe_webhook_secret)

        event = payments.verify_signature(payload, header)

        assert event.id == "evt_1"
        assert event.source == "stripe"
        assert event.data["id"] == "pi_1"

    @pytest.mark.unit
    def test_tampered_payload(self, payments, test_settings) -> None:
        payload = stripe_event("evt_1", "payment_intent.succeeded", intent_object("pi_1", 4999, "succeeded"))
        header = stripe_signature(payload, test_settings.stripe_webhook_secret)

        with pytest.raises(SignatureInvalidError):
            payments.verify_signature(payload.replace(b"4999", b"1"), header)

    @pytest.mark.unit
    def test_stale_timestamp(self, payments, test_settings) -> None:
        payload = stripe_event("evt_1", "payment_intent.succeeded", intent_object("pi_1", 4999, "succeeded"))
        header = stripe_signature(payload, test_settings.stripe_webhook_secret, timestamp=1_000_000)

        with pytest.raises(SignatureInvalidError):
            payments.verify_signature(payload, header)

    @pytest.mark.unit
    def test_missing_header(self, payments) -> None:
        with pytest.raises(SignatureInvalidError, match="missing"):
            payments.verify_signature(b"{}", None)
