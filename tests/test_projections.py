"""
Tests for read-side projections: listings, timelines, analytics and export.
"""
import csv
import io

import pytest

from order_engine.domain.events import ProviderEvent
from order_engine.domain.exceptions import NotFoundError, ValidationError
from order_engine.domain.models import OrderStatus, PaymentStatus
from order_engine.ledger.base import OrderFilter

from .conftest import STORE_ID
from .fakes import intent_object


async def pay(container, order):
    """Create an intent for ``order`` and deliver its success webhook."""
    payment = await container.payments.create_intent(order.total_cents, order.currency, order.id)
    container.gateway.set_status(payment.id, "succeeded")
    await container.reconciliation.process(
        ProviderEvent(
            id=f"evt_{payment.id}",
            type="payment_intent.succeeded",
            source="stripe",
            data=intent_object(payment.id, payment.amount_cents, "succeeded", order.id),
        )
    )
    return payment


class TestListOrders:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pagination(self, queries, place_order) -> None:
        placed = [await place_order() for _ in range(3)]

        first = await queries.list_orders(OrderFilter(store_id=STORE_ID, limit=2))
        second = await queries.list_orders(OrderFilter(store_id=STORE_ID, limit=2, page=2))

        assert first["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert len(first["orders"]) == 2
        assert len(second["orders"]) == 1
        seen = {o.id for o in first["orders"] + second["orders"]}
        assert seen == {o.id for o in placed}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_filters(self, container, queries, place_order) -> None:
        mine = await place_order()
        theirs = await place_order(customer_id="cus_2")
        await pay(container, theirs)

        by_customer = await queries.list_orders(OrderFilter(store_id=STORE_ID, customer_id="cus_2"))
        by_status = await queries.list_orders(OrderFilter(store_id=STORE_ID, status=OrderStatus.PENDING))
        by_payment = await queries.list_orders(
            OrderFilter(store_id=STORE_ID, payment_status=PaymentStatus.SUCCEEDED)
        )
        by_number = await queries.list_orders(OrderFilter(store_id=STORE_ID, search=mine.order_number[-4:]))

        assert [o.id for o in by_customer["orders"]] == [theirs.id]
        assert [o.id for o in by_status["orders"]] == [mine.id]
        assert [o.id for o in by_payment["orders"]] == [theirs.id]
        assert [o.id for o in by_number["orders"]] == [mine.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "order_filter",
        [
            OrderFilter(store_id=STORE_ID, page=0),
            OrderFilter(store_id=STORE_ID, limit=0),
            OrderFilter(store_id=STORE_ID, limit=101),
            OrderFilter(),
        ],
    )
    async def test_invalid_filters(self, queries, order_filter) -> None:
        with pytest.raises(ValidationError):
            await queries.list_orders(order_filter)


class TestLookups:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_by_number(self, queries, pending_order) -> None:
        found = await queries.get_order_by_number(STORE_ID, pending_order.order_number)
        assert found.id == pending_order.id

        with pytest.raises(NotFoundError):
            await queries.get_order_by_number("store_other", pending_order.order_number)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_order(self, queries) -> None:
        with pytest.raises(NotFoundError):
            await queries.get_order("nope")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeline_and_notes(self, orders, queries, paid_order) -> None:
        await orders.add_note(paid_order.id, "leave at the door", "customer:cus_1")
        await orders.transition_status(paid_order.id, "processing", "staff")

        timeline = await queries.get_timeline(paid_order.id)
        notes = await queries.get_notes(paid_order.id)

        assert [e.created_at for e in timeline] == sorted(e.created_at for e in timeline)
        assert timeline[0].to_status == OrderStatus.PENDING
        assert timeline[-1].to_status == OrderStatus.PROCESSING
        assert [n.note for n in notes] == ["leave at the door"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_summary(self, payments, queries, paid_order, intent) -> None:
        await payments.refund(intent.id, 2000)

        summary = await queries.get_payment_summary(intent.id)

        assert summary.refundable_cents == 2999
        assert summary.refunded_cents == 2000
        assert len(summary.refunds) == 1

        with pytest.raises(NotFoundError):
            await queries.get_payment_summary("pi_missing")


class TestAnalytics:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_revenue_is_net_of_refunds(self, container, queries, place_order) -> None:
        first = await place_order()
        second = await place_order([{"product_id": "prod_tee", "variant_id": "m", "quantity": 2}])
        await place_order([{"product_id": "prod_ebook", "quantity": 1}])
        first_payment = await pay(container, first)
        await pay(container, second)
        await container.payments.refund(first_payment.id, 2000)

        analytics = await queries.get_analytics(STORE_ID, "7d")

        assert analytics["total_orders"] == 3
        assert analytics["paid_orders"] == 2
        assert analytics["revenue_cents"] == 4999 + 4000 - 2000
        # Gross over paid orders: (4999 + 4000) / 2 = 4499.5
        assert analytics["average_order_value_cents"] == 4500
        assert analytics["orders_by_status"]["confirmed"] == 2
        assert analytics["orders_by_status"]["pending"] == 1
        assert sum(day["orders"] for day in analytics["revenue_by_day"]) == 2
        top = analytics["top_products"][0]
        assert (top["product_id"], top["variant_id"], top["quantity"]) == ("prod_tee", "m", 3)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_store(self, queries) -> None:
        analytics = await queries.get_analytics(STORE_ID)
        assert analytics["total_orders"] == 0
        assert analytics["average_order_value_cents"] == 0
        assert analytics["top_products"] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_period(self, queries) -> None:
        with pytest.raises(ValidationError, match="period"):
            await queries.get_analytics(STORE_ID, "2w")


class TestExport:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_csv_rows(self, container, queries, place_order) -> None:
        pending = await place_order()
        paid = await place_order()
        await pay(container, paid)

        rows = list(csv.DictReader(io.StringIO(await queries.export_csv(STORE_ID))))
        confirmed_only = list(
            csv.DictReader(
                io.StringIO(await queries.export_csv(STORE_ID, OrderFilter(status=OrderStatus.CONFIRMED)))
            )
        )

        assert {r["order_id"] for r in rows} == {pending.id, paid.id}
        row = next(r for r in rows if r["order_id"] == pending.id)
        assert row["status"] == "pending"
        assert row["items"] == "2"
        assert row["total_cents"] == "4999"
        assert [r["order_id"] for r in confirmed_only] == [paid.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_export_is_scoped_to_store(self, queries, place_order) -> None:
        await place_order()
        text = await queries.export_csv("store_other", OrderFilter(store_id=STORE_ID))
        assert text.splitlines()[0].startswith("order_number,order_id")
        assert len(text.splitlines()) == 1
