"""
Read-only order views: lookups, listings, timelines, payment summaries,
store analytics and CSV export. Nothing here writes to the ledger.
"""
from __future__ import annotations

import csv
import io
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import structlog

from order_engine.domain.exceptions import NotFoundError, ValidationError
from order_engine.domain.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    TimelineEntry,
    TimelineKind,
    refundable_cents,
    utcnow,
)
from order_engine.ledger.base import LedgerStore, OrderFilter

logger = structlog.get_logger(__name__)

ANALYTICS_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
MAX_PAGE_SIZE = 100
TOP_PRODUCTS = 10

PAID_STATUSES = (
    PaymentStatus.SUCCEEDED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
)

CSV_COLUMNS = (
    "order_number",
    "order_id",
    "created_at",
    "status",
    "payment_status",
    "customer_id",
    "currency",
    "items",
    "subtotal_cents",
    "tax_cents",
    "shipping_cents",
    "discount_cents",
    "total_cents",
)


@dataclass
class PaymentSummary:
    payment: Payment
    refunds: list[Refund]
    refundable_cents: int

    @property
    def refunded_cents(self) -> int:
        succeeded = sum(r.amount_cents for r in self.refunds if r.status == RefundStatus.SUCCEEDED)
        return max(succeeded, self.payment.amount_refunded_cents)


def _half_up(numerator: int, denominator: int) -> int:
    if denominator == 0:
        return 0
    value = Decimal(numerator) / Decimal(denominator)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class OrderQueryService:
    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    async def get_order(self, order_id: str) -> Order:
        order = await self.ledger.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_order_by_number(self, store_id: str, order_number: str) -> Order:
        order = await self.ledger.get_order_by_number(store_id, order_number)
        if order is None:
            raise NotFoundError("Order", order_number, store_id=store_id)
        return order

    async def list_orders(self, order_filter: OrderFilter) -> dict[str, Any]:
        """One page of orders plus pagination info."""
        if order_filter.page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= order_filter.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if order_filter.store_id is None and order_filter.customer_id is None:
            raise ValidationError("Filter by store or customer")

        orders, total = await self.ledger.find_orders(order_filter)
        return {
            "orders": orders,
            "pagination": {
                "page": order_filter.page,
                "limit": order_filter.limit,
                "total": total,
                "pages": (total + order_filter.limit - 1) // order_filter.limit,
            },
        }

    async def get_timeline(self, order_id: str) -> list[TimelineEntry]:
        order = await self.get_order(order_id)
        return sorted(order.timeline, key=lambda entry: entry.created_at)

    async def get_notes(self, order_id: str) -> list[TimelineEntry]:
        return [e for e in await self.get_timeline(order_id) if e.kind == TimelineKind.NOTE]

    async def get_payment_summary(self, intent_id: str) -> PaymentSummary:
        payment = await self.ledger.get_payment(intent_id)
        if payment is None:
            raise NotFoundError("Payment", intent_id)
        refunds = await self.ledger.list_refunds(intent_id)
        return PaymentSummary(
            payment=payment,
            refunds=refunds,
            refundable_cents=refundable_cents(payment, refunds),
        )

    async def get_analytics(
        self, store_id: str, period: str = "30d", now: Optional[datetime] = None
    ) -> dict[str, Any]:
        """
        Store analytics over a trailing period.

        Revenue counts paid orders only and is net of refunds. The average
        order value is gross, over paid orders.
        """
        days = ANALYTICS_PERIODS.get(period)
        if days is None:
            raise ValidationError(
                f"Unknown analytics period {period}", allowed=sorted(ANALYTICS_PERIODS)
            )
        now = now or utcnow()
        start = now - timedelta(days=days)
        orders = await self.ledger.iter_orders(
            OrderFilter(store_id=store_id, created_from=start, created_to=now, newest_first=False)
        )

        paid = [o for o in orders if o.payment_status in PAID_STATUSES]
        refunded_by_order = await self._refunded_by_order(paid)

        by_status = {status.value: 0 for status in OrderStatus}
        for order in orders:
            by_status[order.status.value] += 1

        revenue_by_day: dict[str, dict[str, int]] = defaultdict(lambda: {"revenue_cents": 0, "orders": 0})
        quantities: Counter = Counter()
        product_revenue: Counter = Counter()
        names: dict[tuple, str] = {}
        gross = 0
        revenue = 0
        for order in paid:
            net = order.total_cents - refunded_by_order.get(order.id, 0)
            gross += order.total_cents
            revenue += net
            day = revenue_by_day[order.created_at.date().isoformat()]
            day["revenue_cents"] += net
            day["orders"] += 1
            for item in order.items:
                key = (item.product_id, item.variant_id)
                quantities[key] += item.quantity
                product_revenue[key] += item.total_cents
                names.setdefault(key, item.product_name)

        top = sorted(quantities, key=lambda k: (-quantities[k], -product_revenue[k], k[0]))[:TOP_PRODUCTS]
        return {
            "store_id": store_id,
            "period": period,
            "from": start.isoformat(),
            "to": now.isoformat(),
            "total_orders": len(orders),
            "paid_orders": len(paid),
            "revenue_cents": revenue,
            "average_order_value_cents": _half_up(gross, len(paid)),
            "orders_by_status": by_status,
            "revenue_by_day": [
                {"date": date, **values} for date, values in sorted(revenue_by_day.items())
            ],
            "top_products": [
                {
                    "product_id": key[0],
                    "variant_id": key[1],
                    "name": names.get(key, ""),
                    "quantity": quantities[key],
                    "revenue_cents": product_revenue[key],
                }
                for key in top
            ],
        }

    async def _refunded_by_order(self, orders: list[Order]) -> dict[str, int]:
        if not orders:
            return {}
        refunded: dict[str, int] = defaultdict(int)
        for payment in await self.ledger.list_payments_for_orders([o.id for o in orders]):
            if payment.order_id is None or payment.status not in PAID_STATUSES:
                continue
            refunds = await self.ledger.list_refunds(payment.id)
            summary = PaymentSummary(payment=payment, refunds=refunds, refundable_cents=0)
            refunded[payment.order_id] += summary.refunded_cents
        return refunded

    async def export_csv(self, store_id: str, order_filter: Optional[OrderFilter] = None) -> str:
        """Every matching order of a store as CSV, one row per order."""
        base = order_filter or OrderFilter()
        scoped = OrderFilter(
            store_id=store_id,
            customer_id=base.customer_id,
            status=base.status,
            payment_status=base.payment_status,
            created_from=base.created_from,
            created_to=base.created_to,
            search=base.search,
            newest_first=base.newest_first,
        )
        orders = await self.ledger.iter_orders(scoped)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for order in orders:
            writer.writerow(
                [
                    order.order_number,
                    order.id,
                    order.created_at.isoformat(),
                    order.status.value,
                    order.payment_status.value,
                    order.customer_id,
                    order.currency,
                    sum(item.quantity for item in order.items),
                    order.totals.subtotal_cents,
                    order.totals.tax_cents,
                    order.totals.shipping_cents,
                    order.totals.discount_cents,
                    order.totals.total_cents,
                ]
            )
        logger.info("orders_exported", store_id=store_id, rows=len(orders))
        return buffer.getvalue()
