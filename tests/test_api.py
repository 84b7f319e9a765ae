"""
HTTP tests for the FastAPI app over the in-memory container.
"""
import csv
import io
import json

import pytest

from .conftest import CUSTOMER_ID, STORE_ID, TWO_ITEM_ORDER
from .fakes import hmac_signature, intent_object, stripe_event, stripe_signature

ORDERS_URL = f"/api/v1/stores/{STORE_ID}/orders"


async def create_order(client, **overrides) -> dict:
    body = {"customer_id": CUSTOMER_ID, "items": TWO_ITEM_ORDER, **overrides}
    response = await client.post(ORDERS_URL, json=body)
    assert response.status_code == 201, response.text
    return response.json()


async def deliver_stripe(client, event_id: str, event_type: str, obj: dict, secret: str = "whsec_test_fake_secret"):
    payload = stripe_event(event_id, event_type, obj)
    return await client.post(
        "/api/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload, secret), "Content-Type": "application/json"},
    )


async def paid(client, gateway) -> tuple:
    """Create an order, open an intent and deliver its success webhook."""
    order = await create_order(client)
    intent = (
        await client.post(
            "/api/v1/payments/intents",
            json={"order_id": order["id"], "amount_cents": 4999, "currency": "USD"},
        )
    ).json()
    gateway.set_status(intent["id"], "succeeded")
    response = await deliver_stripe(
        client, "evt_ok", "payment_intent.succeeded", intent_object(intent["id"], 4999, "succeeded", order["id"])
    )
    assert response.status_code == 200
    return order, intent


class TestOrderEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order(self, client) -> None:
        order = await create_order(client, shipping_cents=500, metadata={"channel": "web"})

        assert order["status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["store_id"] == STORE_ID
        assert order["order_number"].startswith("ORD-")
        assert order["totals"]["total_cents"] == 5499
        assert order["metadata"] == {"channel": "web"}
        assert [i["product_id"] for i in order["items"]] == ["prod_tee", "prod_mug"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_request_validation(self, client) -> None:
        """Test schema errors are rendered in the engine error shape."""
        response = await client.post(
            ORDERS_URL,
            json={"customer_id": CUSTOMER_ID, "items": [{"product_id": "prod_tee", "quantity": 0}]},
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert any("quantity" in e["field"] for e in error["details"]["errors"])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_unavailable_product(self, client) -> None:
        response = await client.post(
            ORDERS_URL,
            json={"customer_id": CUSTOMER_ID, "items": [{"product_id": "prod_retired", "quantity": 1}]},
        )

        assert response.status_code == 422
        assert response.json()["error"]["details"]["product_id"] == "prod_retired"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_customer_is_not_found(self, client) -> None:
        response = await client.post(ORDERS_URL, json={"customer_id": "cus_ghost", "items": TWO_ITEM_ORDER})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_list_and_by_number(self, client) -> None:
        order = await create_order(client)
        await create_order(client, customer_id="cus_2")

        fetched = await client.get(f"/api/v1/orders/{order['id']}")
        listing = await client.get(ORDERS_URL, params={"customer_id": CUSTOMER_ID, "status": "pending"})
        by_number = await client.get(f"{ORDERS_URL}/by-number/{order['order_number']}")

        assert fetched.json()["id"] == order["id"]
        assert [o["id"] for o in listing.json()["orders"]] == [order["id"]]
        assert listing.json()["pagination"]["total"] == 1
        assert by_number.json()["id"] == order["id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_rejects_unknown_status(self, client) -> None:
        response = await client.get(ORDERS_URL, params={"status": "lost"})
        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_order(self, client) -> None:
        response = await client.get("/api/v1/orders/ord_missing")
        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_patch_order(self, client) -> None:
        order = await create_order(client)

        response = await client.patch(
            f"/api/v1/orders/{order['id']}",
            params={"expected_version": order["version"]},
            json={"shipping_address": {"line1": "2 Elm St"}, "note": "gift wrap"},
            headers={"X-Actor": "staff:ana"},
        )
        stale = await client.patch(
            f"/api/v1/orders/{order['id']}",
            params={"expected_version": order["version"]},
            json={"metadata": {"late": True}},
        )
        unknown = await client.patch(f"/api/v1/orders/{order['id']}", json={"status": "shipped"})

        assert response.status_code == 200
        assert response.json()["shipping_address"] == {"line1": "2 Elm St"}
        assert response.json()["version"] == order["version"] + 1
        assert stale.status_code == 409
        assert stale.json()["error"]["code"] == "conflict"
        assert unknown.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_illegal_transition(self, client) -> None:
        order = await create_order(client)

        response = await client.post(f"/api/v1/orders/{order['id']}/status", json={"status": "shipped"})

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "invalid_transition"
        assert error["details"] == {"from_status": "pending", "to_status": "shipped"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fulfillment_flow(self, client, gateway) -> None:
        order, _ = await paid(client, gateway)
        url = f"/api/v1/orders/{order['id']}"

        for target in ("processing", "shipped", "delivered"):
            response = await client.post(f"{url}/status", json={"status": target, "note": f"now {target}"})
            assert response.status_code == 200
            assert response.json()["status"] == target

        timeline = (await client.get(f"{url}/timeline")).json()
        assert [e["to_status"] for e in timeline if e["kind"] == "status_change"] == [
            "pending",
            "confirmed",
            "processing",
            "shipped",
            "delivered",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel(self, client, gateway) -> None:
        order = await create_order(client)

        response = await client.post(f"/api/v1/orders/{order['id']}/cancel", json={"reason": "changed mind"})
        again = await client.post(f"/api/v1/orders/{order['id']}/cancel", json={"reason": "changed mind"})

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert again.status_code == 200
        assert again.json()["version"] == response.json()["version"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_paid_order_conflicts(self, client, gateway) -> None:
        order, _ = await paid(client, gateway)
        response = await client.post(f"/api/v1/orders/{order['id']}/cancel", json={"reason": "too late"})
        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_notes(self, client) -> None:
        order = await create_order(client)
        url = f"/api/v1/orders/{order['id']}/notes"

        created = await client.post(url, json={"note": "call before delivery"}, headers={"X-Actor": "staff:bo"})
        empty = await client.post(url, json={"note": "   "})
        notes = (await client.get(url)).json()

        assert created.status_code == 201
        assert empty.status_code == 422
        assert [(n["note"], n["actor"]) for n in notes] == [("call before delivery", "staff:bo")]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resend_confirmation(self, client, gateway, notifier) -> None:
        pending = await create_order(client)
        order, _ = await paid(client, gateway)

        rejected = await client.post(f"/api/v1/orders/{pending['id']}/resend-confirmation")
        response = await client.post(f"/api/v1/orders/{order['id']}/resend-confirmation")

        assert rejected.status_code == 409
        assert response.json() == {"order_id": order["id"], "sent": True}
        assert notifier.kinds().count("order_confirmation") == 2


class TestStoreReports:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_analytics(self, client, gateway) -> None:
        await create_order(client)
        await paid(client, gateway)

        response = await client.get(f"{ORDERS_URL}/analytics", params={"period": "7d"})
        bad = await client.get(f"{ORDERS_URL}/analytics", params={"period": "forever"})

        assert response.status_code == 200
        assert response.json()["total_orders"] == 2
        assert response.json()["revenue_cents"] == 4999
        assert bad.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_export(self, client) -> None:
        order = await create_order(client)

        response = await client.get(f"{ORDERS_URL}/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert f"orders-{STORE_ID}.csv" in response.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert [r["order_id"] for r in rows] == [order["id"]]


class TestPaymentEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_confirm_intent(self, client, gateway) -> None:
        order = await create_order(client)

        created = await client.post(
            "/api/v1/payments/intents",
            json={"order_id": order["id"], "amount_cents": 4999, "currency": "USD"},
        )
        confirmed = await client.post(
            f"/api/v1/payments/{created.json()['id']}/confirm", json={"payment_method": "pm_card_visa"}
        )

        assert created.status_code == 201
        assert created.json()["currency"] == "usd"
        assert created.json()["order_id"] == order["id"]
        assert created.json()["client_secret"]
        assert confirmed.status_code == 200
        assert "confirm_intent" in gateway.operations()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch(self, client) -> None:
        order = await create_order(client)
        response = await client.post(
            "/api/v1/payments/intents",
            json={"order_id": order["id"], "amount_cents": 100, "currency": "usd"},
        )
        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_is_bad_gateway(self, client, gateway) -> None:
        order = await create_order(client)
        gateway.fail_next("create_intent")

        response = await client.post(
            "/api/v1/payments/intents",
            json={"order_id": order["id"], "amount_cents": 4999, "currency": "usd"},
        )

        assert response.status_code == 502
        assert response.json()["error"]["retryable"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_and_summary(self, client, gateway) -> None:
        _, intent = await paid(client, gateway)

        refund = await client.post(
            f"/api/v1/payments/{intent['id']}/refunds", json={"amount_cents": 1999, "reason": "damaged"}
        )
        too_much = await client.post(f"/api/v1/payments/{intent['id']}/refunds", json={"amount_cents": 4000})
        summary = await client.get(f"/api/v1/payments/{intent['id']}")

        assert refund.status_code == 201
        assert refund.json()["amount_cents"] == 1999
        assert refund.json()["payment_id"] == intent["id"]
        assert too_much.status_code == 422
        assert summary.json()["refunded_cents"] == 1999
        assert summary.json()["refundable_cents"] == 3000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment(self, client) -> None:
        response = await client.get("/api/v1/payments/pi_missing")
        assert response.status_code == 404


class TestWebhookEndpoint:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_event_is_applied_once(self, client, gateway) -> None:
        order = await create_order(client)
        intent = (
            await client.post(
                "/api/v1/payments/intents",
                json={"order_id": order["id"], "amount_cents": 4999, "currency": "usd"},
            )
        ).json()
        obj = intent_object(intent["id"], 4999, "succeeded", order["id"])

        first = await deliver_stripe(client, "evt_1", "payment_intent.succeeded", obj)
        second = await deliver_stripe(client, "evt_1", "payment_intent.succeeded", obj)

        assert first.status_code == 200
        assert first.json() == {
            "status": "applied",
            "event_id": "evt_1",
            "event_type": "payment_intent.succeeded",
            "source": "stripe",
            "order_id": order["id"],
            "payment_id": intent["id"],
        }
        assert second.json()["status"] == "duplicate"
        assert (await client.get(f"/api/v1/orders/{order['id']}")).json()["status"] == "confirmed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature(self, client) -> None:
        response = await deliver_stripe(
            client, "evt_1", "payment_intent.succeeded", intent_object("pi_1", 100, "succeeded"), secret="whsec_wrong"
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "signature_invalid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_source(self, client) -> None:
        response = await client.post("/api/v1/webhooks/fax", content=b"{}")
        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_payload(self, client) -> None:
        """Test a correctly signed but unusable body is rejected without a retry hint."""
        payload = b"not json"

        response = await client.post(
            "/api/v1/webhooks/shipping",
            content=payload,
            headers={"X-Shipping-Signature": hmac_signature(payload, "ship_test_secret")},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_shipping_event(self, client, gateway) -> None:
        order, _ = await paid(client, gateway)
        payload = json.dumps(
            {"id": "ship_1", "type": "shipment.in_transit", "data": {"order_id": order["id"]}}
        ).encode("utf-8")

        response = await client.post(
            "/api/v1/webhooks/shipping",
            content=payload,
            headers={"X-Shipping-Signature": hmac_signature(payload, "ship_test_secret")},
        )

        assert response.json()["status"] == "applied"
        assert (await client.get(f"/api/v1/orders/{order['id']}")).json()["status"] == "shipped"


class TestMonitoringEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["ledger"]["backend"] == "memory"
        assert body["checks"]["redis"]["status"] == "skipped"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_probes(self, client) -> None:
        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_fails_when_ledger_is_down(self, client, ledger, mocker) -> None:
        mocker.patch.object(ledger, "ping", side_effect=ConnectionError("down"))
        response = await client.get("/health/ready")
        assert response.status_code == 503

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client) -> None:
        await create_order(client)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "orders_created_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client) -> None:
        response = await client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["service"] == "order-engine-test"
