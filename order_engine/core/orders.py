"""
Order state machine.

The only component that mutates Orders. Each operation runs in one ledger
unit of work under the order's lock, appends to the order timeline and
returns the domain events it produced. Customer-facing notifications are
dispatched after commit; their failure is logged and counted, never raised.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

import structlog

from order_engine.domain.commands import (
    OrderItemRequest,
    OrderUpdateCommand,
    parse_order_items,
    parse_order_update,
)
from order_engine.domain.events import (
    DomainEvent,
    OrderCreated,
    OrderStatusChanged,
    PaymentSettled,
)
from order_engine.domain.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OrderEngineError,
    ValidationError,
)
from order_engine.domain.models import (
    LineItem,
    Order,
    OrderStatus,
    OrderTotals,
    PaymentStatus,
    TimelineEntry,
    TimelineKind,
    compute_line_tax,
    new_id,
    utcnow,
)
from order_engine.domain.state_machine import (
    CANCELLABLE_STATES,
    POST_PAYMENT_STATES,
    REFUND_STATES,
    can_fulfill,
    can_transition_payment,
    fulfillment_steps,
)
from order_engine.integrations.collaborators import (
    CatalogService,
    CustomerDirectory,
    ItemKey,
    StockLine,
)
from order_engine.integrations.gateway import PaymentGateway
from order_engine.integrations.notifications import (
    ORDER_CANCELLED,
    ORDER_CONFIRMATION,
    ORDER_DELIVERED,
    ORDER_SHIPPED,
    PAYMENT_FAILED,
    REFUND_NOTICE,
    Notification,
    NotificationDispatcher,
)
from order_engine.ledger.base import DuplicateKeyError, LedgerSession, LedgerStore
from order_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_ACTOR = "system:payments"
MAX_NOTE_LENGTH = 2000

STATUS_NOTIFICATIONS = {
    OrderStatus.CONFIRMED: ORDER_CONFIRMATION,
    OrderStatus.SHIPPED: ORDER_SHIPPED,
    OrderStatus.DELIVERED: ORDER_DELIVERED,
    OrderStatus.CANCELLED: ORDER_CANCELLED,
    OrderStatus.REFUNDED: REFUND_NOTICE,
    OrderStatus.PARTIALLY_REFUNDED: REFUND_NOTICE,
}

FUNDED = (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED)


class PaymentOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REQUIRES_REFUND = "requires_refund"


@dataclass
class OrderResult:
    """What an operation did to an order."""

    order: Order
    changed: bool = False
    events: list[DomainEvent] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)
    outcome: PaymentOutcome = PaymentOutcome.APPLIED


def _day_bounds(moment: datetime) -> tuple[datetime, datetime]:
    start = datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def format_order_number(day: datetime, sequence: int) -> str:
    return f"ORD-{day:%Y%m%d}-{sequence:04d}"


class OrderStateMachine:
    """
    Order lifecycle.

    Fulfillment edges are driven by ``transition_status``; refund edges only
    by ``apply_payment_result``. Every mutation bumps ``Order.version``.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        catalog: CatalogService,
        customers: CustomerDirectory,
        notifier: NotificationDispatcher,
        gateway: PaymentGateway,
        max_line_items: int = 100,
        order_number_max_retries: int = 5,
    ):
        self.ledger = ledger
        self.catalog = catalog
        self.customers = customers
        self.notifier = notifier
        self.gateway = gateway
        self.max_line_items = max_line_items
        self.order_number_max_retries = order_number_max_retries

    # Creation

    async def create_order(
        self,
        store_id: str,
        customer_id: str,
        items: Sequence[OrderItemRequest | dict[str, Any]],
        shipping_address: Optional[dict[str, Any]] = None,
        *,
        shipping_cents: int = 0,
        metadata: Optional[dict[str, Any]] = None,
    ) -> OrderResult:
        """
        Validate items against the catalog, reserve stock and persist a pending order.

        Raises:
            ValidationError: Empty or oversized item list, unknown/inactive
                product, insufficient stock, discount above line amount
            NotFoundError: Store or customer missing
            ConflictError: No free order number after the configured retries
        """
        requests = parse_order_items(list(items))
        if not requests:
            raise ValidationError("Order must contain at least one item")
        if len(requests) > self.max_line_items:
            raise ValidationError(
                f"Order cannot contain more than {self.max_line_items} items",
                max_line_items=self.max_line_items,
            )
        if shipping_cents < 0:
            raise ValidationError("Shipping cost cannot be negative")

        store = await self.catalog.get_store(store_id)
        if store is None or not store.active:
            raise NotFoundError("Store", store_id)
        if not await self.customers.customer_exists(store_id, customer_id):
            raise NotFoundError("Customer", customer_id)

        lines, stock = await self._price_items(store_id, requests)
        totals = OrderTotals.compute(lines, shipping_cents)

        order_id = new_id()
        await self.catalog.reserve(store_id, order_id, stock)
        try:
            order = await self._insert_order(
                order_id=order_id,
                store_id=store_id,
                customer_id=customer_id,
                currency=store.currency,
                lines=lines,
                totals=totals,
                shipping_address=shipping_address or {},
                metadata=metadata or {},
            )
        except Exception:
            await self._release_stock(store_id, order_id)
            raise

        metrics.record_order_created(order.currency, order.total_cents)
        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            store_id=store_id,
            customer_id=customer_id,
            total_cents=order.total_cents,
            items=len(lines),
        )
        event = OrderCreated(
            order_id=order.id,
            store_id=store_id,
            order_number=order.order_number,
            total_cents=order.total_cents,
            currency=order.currency,
        )
        return OrderResult(order=order, changed=True, events=[event])

    async def _price_items(
        self, store_id: str, requests: list[OrderItemRequest]
    ) -> tuple[list[LineItem], list[StockLine]]:
        keys: list[ItemKey] = list(OrderedDict.fromkeys((r.product_id, r.variant_id) for r in requests))
        snapshot = await self.catalog.lookup_items(store_id, keys)

        requested: dict[ItemKey, int] = {}
        lines = []
        for position, request in enumerate(requests):
            key = (request.product_id, request.variant_id)
            item = snapshot.get(key)
            if item is None or not item.purchasable:
                raise ValidationError(
                    f"Product {request.product_id} is not available",
                    product_id=request.product_id,
                    variant_id=request.variant_id,
                    position=position,
                )
            line_amount = item.unit_price_cents * request.quantity
            if request.discount_cents > line_amount:
                raise ValidationError(
                    "Line discount exceeds line amount",
                    product_id=request.product_id,
                    position=position,
                )
            lines.append(
                LineItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=item.name,
                    sku=item.sku,
                    quantity=request.quantity,
                    unit_price_cents=item.unit_price_cents,
                    discount_cents=request.discount_cents,
                    tax_cents=compute_line_tax(line_amount - request.discount_cents, item.tax_rate_bps),
                )
            )
            requested[key] = requested.get(key, 0) + request.quantity

        stock = []
        for key, quantity in requested.items():
            item = snapshot[key]
            if item.track_inventory and item.available_quantity < quantity:
                raise ValidationError(
                    f"Insufficient stock for {item.name or item.product_id}",
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    available=item.available_quantity,
                    requested=quantity,
                )
            stock.append(StockLine(product_id=key[0], variant_id=key[1], quantity=quantity))
        return lines, stock

    async def _insert_order(
        self,
        order_id: str,
        store_id: str,
        customer_id: str,
        currency: str,
        lines: list[LineItem],
        totals: OrderTotals,
        shipping_address: dict[str, Any],
        metadata: dict[str, Any],
    ) -> Order:
        for attempt in range(self.order_number_max_retries):
            created_at = utcnow()
            day_start, day_end = _day_bounds(created_at)
            try:
                async with self.ledger.unit_of_work() as session:
                    count = await session.count_orders_for_day(store_id, day_start, day_end)
                    order = Order(
                        id=order_id,
                        store_id=store_id,
                        customer_id=customer_id,
                        order_number=format_order_number(created_at, count + 1 + attempt),
                        items=tuple(lines),
                        totals=totals,
                        currency=currency,
                        shipping_address=shipping_address,
                        metadata=metadata,
                        created_at=created_at,
                        updated_at=created_at,
                    )
                    order.record(
                        TimelineEntry(
                            kind=TimelineKind.STATUS_CHANGE,
                            actor=f"customer:{customer_id}",
                            to_status=OrderStatus.PENDING,
                            note="Order placed",
                            created_at=created_at,
                        )
                    )
                    await session.add_order(order)
                return order
            except DuplicateKeyError:
                logger.warning("order_number_collision", store_id=store_id, attempt=attempt + 1)
        raise ConflictError(
            "Could not allocate an order number, please retry",
            store_id=store_id,
            attempts=self.order_number_max_retries,
        )

    # Fulfillment

    async def transition_status(
        self,
        order_id: str,
        target_status: OrderStatus | str,
        actor: str,
        *,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> OrderResult:
        """
        Move an order along a fulfillment edge.

        Targeting the current status is a no-op. Targeting ``cancelled``
        goes through ``cancel_order``. Refund states cannot be targeted.

        Raises:
            InvalidTransitionError: Edge not allowed
            ConflictError: ``expected_version`` is stale
        """
        target = self._coerce_status(target_status)
        if target == OrderStatus.CANCELLED:
            return await self.cancel_order(
                order_id, note or "Cancelled", actor, expected_version=expected_version
            )

        async with self.ledger.unit_of_work() as session:
            order = await session.lock_order(order_id)
            self._check_version(order, expected_version)
            if order.status == target:
                logger.info("order_transition_noop", order_id=order_id, status=target.value)
                return OrderResult(order=order)
            if target in REFUND_STATES:
                metrics.record_transition_rejected("refund_state")
                raise InvalidTransitionError(
                    order.status.value,
                    target.value,
                    "Refund states are set by payment reconciliation only",
                )
            if not can_fulfill(order.status, target):
                metrics.record_transition_rejected("illegal_edge")
                raise InvalidTransitionError(order.status.value, target.value)

            result = OrderResult(order=order, changed=True)
            self._move(result, target, actor, note)
            await session.save_order(order)

        await self.dispatch(result.notifications)
        return result

    # Payment results

    async def apply_payment_result(
        self,
        order_id: str,
        payment_status: PaymentStatus | str,
        *,
        payment_id: Optional[str] = None,
    ) -> OrderResult:
        """Apply a payment result in its own unit of work."""
        async with self.ledger.unit_of_work() as session:
            order = await session.lock_order(order_id)
            result = await self.apply_payment_result_to(session, order, payment_status, payment_id=payment_id)
        await self.dispatch(result.notifications)
        return result

    async def apply_payment_result_to(
        self,
        session: LedgerSession,
        order: Order,
        payment_status: PaymentStatus | str,
        *,
        payment_id: Optional[str] = None,
    ) -> OrderResult:
        """
        Apply a payment result to an order already locked in ``session``.

        Notifications are returned, not sent; the caller dispatches them
        after its unit of work commits.

        - succeeded: pending order becomes confirmed. A cancelled order, or
          one already funded by another payment, returns REQUIRES_REFUND.
        - failed: order stays pending and is flagged.
        - refunded / partially_refunded: order moves to the matching state
          from any post-payment state.
        - processing / cancelled: payment status only.

        Reapplying a result already reflected returns NOOP.
        """
        try:
            status = PaymentStatus(payment_status)
        except ValueError as e:
            raise ValidationError(f"Unknown payment status: {payment_status}") from e
        result = OrderResult(order=order, outcome=PaymentOutcome.NOOP)
        current = order.payment_status

        if status == PaymentStatus.SUCCEEDED:
            if order.status == OrderStatus.CANCELLED:
                if current == PaymentStatus.REFUNDED:
                    return result
                if current not in FUNDED:
                    self._set_payment_status(result, status, payment_id, "Payment succeeded after cancellation")
                result.outcome = PaymentOutcome.REQUIRES_REFUND
                logger.warning("payment_succeeded_on_cancelled_order", order_id=order.id, payment_id=payment_id)
            elif current in FUNDED:
                if await self._funded_by_other(session, order, payment_id):
                    result.outcome = PaymentOutcome.REQUIRES_REFUND
                    logger.warning("duplicate_payment_succeeded", order_id=order.id, payment_id=payment_id)
                return result
            else:
                self._set_payment_status(result, status, payment_id, "Payment succeeded")
                order.payment_flagged = False
                if order.status == OrderStatus.PENDING:
                    self._move(result, OrderStatus.CONFIRMED, PAYMENT_ACTOR, "Payment received")

        elif status == PaymentStatus.FAILED:
            if (
                order.status == OrderStatus.CANCELLED
                or current in FUNDED
                or (current == PaymentStatus.FAILED and order.payment_flagged)
            ):
                return result
            self._set_payment_status(result, status, payment_id, "Payment failed")
            order.payment_flagged = True
            result.notifications.append(self._notification(PAYMENT_FAILED, order))

        elif status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED):
            if current == PaymentStatus.REFUNDED:
                return result
            if await self._funded_by_other(session, order, payment_id):
                # Refund of a duplicate; the order's own payment is untouched.
                return result
            if current != status:
                self._set_payment_status(result, status, payment_id, f"Payment {status.value}")
            target = OrderStatus(status.value)
            if order.status in POST_PAYMENT_STATES and order.status != target:
                self._move(result, target, PAYMENT_ACTOR, f"Payment {status.value}")

        else:
            if current == status or not can_transition_payment(current, status):
                return result
            self._set_payment_status(result, status, payment_id, f"Payment {status.value}")

        if result.changed:
            if result.outcome == PaymentOutcome.NOOP:
                result.outcome = PaymentOutcome.APPLIED
            await session.save_order(order)
        return result

    async def advance_fulfillment(
        self,
        session: LedgerSession,
        order: Order,
        target: OrderStatus,
        actor: str,
        note: Optional[str] = None,
    ) -> OrderResult:
        """
        Walk a locked order forward along the fulfillment path up to ``target``.

        Does nothing when the order is already at or past ``target``, or is
        not on the path at all (pending, cancelled, refunded).
        """
        result = OrderResult(order=order)
        for step in fulfillment_steps(order.status, target):
            if not can_fulfill(order.status, step):
                break
            self._move(result, step, actor, note)
        if result.changed:
            await session.save_order(order)
        return result

    # Cancellation

    async def cancel_order(
        self,
        order_id: str,
        reason: str,
        actor: str,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderResult:
        """
        Cancel an order that has not been paid.

        Open payment intents are cancelled at the gateway while the order
        lock is held, so a payment cannot complete against the order
        half-way through. Stock is released after commit.

        Raises:
            InvalidTransitionError: Order is past processing
            ConflictError: Order holds a succeeded payment (refund it first)
            GatewayError: An open intent could not be cancelled
        """
        async with self.ledger.unit_of_work() as session:
            order = await session.lock_order(order_id)
            self._check_version(order, expected_version)
            if order.status == OrderStatus.CANCELLED:
                logger.info("order_cancel_noop", order_id=order_id)
                return OrderResult(order=order)
            if order.status not in CANCELLABLE_STATES:
                metrics.record_transition_rejected("not_cancellable")
                raise InvalidTransitionError(
                    order.status.value,
                    OrderStatus.CANCELLED.value,
                    f"Order {order.order_number} cannot be cancelled while {order.status.value}",
                )

            payments = await session.list_payments(order_id)
            if any(p.holds_funds for p in payments):
                metrics.record_transition_rejected("payment_captured")
                raise ConflictError(
                    f"Order {order.order_number} has a captured payment; refund it before cancelling",
                    status=order.status.value,
                )

            for payment in payments:
                if not (payment.is_open or payment.status == PaymentStatus.FAILED):
                    continue
                locked = await session.lock_payment(payment.id)
                intent = await self.gateway.cancel_intent(locked.id)
                if intent.status == PaymentStatus.CANCELLED and can_transition_payment(
                    locked.status, PaymentStatus.CANCELLED
                ):
                    locked.status = PaymentStatus.CANCELLED
                    locked.updated_at = utcnow()
                    locked.version += 1
                    await session.save_payment(locked)
                    metrics.record_payment_transition(PaymentStatus.CANCELLED.value)

            result = OrderResult(order=order, changed=True)
            self._move(result, OrderStatus.CANCELLED, actor, reason)
            if order.payment_status not in FUNDED:
                order.payment_status = PaymentStatus.CANCELLED
            await session.save_order(order)

        await self._release_stock(order.store_id, order.id)
        await self.dispatch(result.notifications)
        return result

    # Edits

    async def update_order(
        self,
        order_id: str,
        command: OrderUpdateCommand | dict[str, Any],
        actor: str,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderResult:
        if not isinstance(command, OrderUpdateCommand):
            command = parse_order_update(command)

        async with self.ledger.unit_of_work() as session:
            order = await session.lock_order(order_id)
            self._check_version(order, expected_version)
            result = OrderResult(order=order, changed=True)

            if command.shipping_address is not None:
                if order.status not in CANCELLABLE_STATES:
                    raise InvalidTransitionError(
                        order.status.value,
                        order.status.value,
                        f"Shipping address cannot change once the order is {order.status.value}",
                    )
                order.shipping_address = dict(command.shipping_address)
            if command.metadata is not None:
                order.metadata = {**order.metadata, **command.metadata}
            if command.note is not None:
                order.record(TimelineEntry(kind=TimelineKind.NOTE, actor=actor, note=command.note))
            order.updated_at = utcnow()
            order.version += 1
            await session.save_order(order)

        logger.info(
            "order_updated",
            order_id=order_id,
            actor=actor,
            fields=sorted(command.model_dump(exclude_none=True)),
        )
        return result

    async def add_note(self, order_id: str, note: str, actor: str) -> OrderResult:
        note = (note or "").strip()
        if not note:
            raise ValidationError("Note cannot be empty")
        if len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(f"Note cannot exceed {MAX_NOTE_LENGTH} characters")

        async with self.ledger.unit_of_work() as session:
            order = await session.lock_order(order_id)
            order.record(TimelineEntry(kind=TimelineKind.NOTE, actor=actor, note=note))
            order.version += 1
            await session.save_order(order)

        logger.info("order_note_added", order_id=order_id, actor=actor)
        return OrderResult(order=order, changed=True)

    async def resend_confirmation(self, order_id: str) -> bool:
        """Send the confirmation message again. Returns whether dispatch succeeded."""
        order = await self.ledger.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if not order.was_confirmed:
            raise InvalidTransitionError(
                order.status.value,
                OrderStatus.CONFIRMED.value,
                "Order has not been confirmed yet",
            )
        return await self.dispatch([self._notification(ORDER_CONFIRMATION, order, resend=True)])

    # Helpers

    @staticmethod
    def _coerce_status(value: OrderStatus | str) -> OrderStatus:
        try:
            return OrderStatus(value)
        except ValueError as e:
            raise ValidationError(f"Unknown order status: {value}") from e

    @staticmethod
    def _check_version(order: Order, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != order.version:
            raise ConflictError(
                f"Order {order.id} was modified concurrently",
                expected_version=expected_version,
                current_version=order.version,
            )

    @staticmethod
    async def _funded_by_other(session: LedgerSession, order: Order, payment_id: Optional[str]) -> bool:
        """Whether a payment other than ``payment_id`` holds the order's funds."""
        if payment_id is None:
            return False
        payments = await session.list_payments(order.id)
        return any(p.holds_funds and p.id != payment_id for p in payments)

    def _move(
        self, result: OrderResult, target: OrderStatus, actor: str, note: Optional[str] = None
    ) -> None:
        order = result.order
        previous = order.status
        order.status = target
        order.version += 1
        order.record(
            TimelineEntry(
                kind=TimelineKind.STATUS_CHANGE,
                actor=actor,
                from_status=previous,
                to_status=target,
                note=note,
            )
        )
        result.changed = True
        result.events.append(
            OrderStatusChanged(order_id=order.id, from_status=previous, to_status=target, actor=actor)
        )
        kind = STATUS_NOTIFICATIONS.get(target)
        if kind:
            result.notifications.append(self._notification(kind, order, from_status=previous.value))

        metrics.record_order_transition(previous.value, target.value)
        logger.info(
            "order_status_changed",
            order_id=order.id,
            from_status=previous.value,
            to_status=target.value,
            actor=actor,
        )

    def _set_payment_status(
        self,
        result: OrderResult,
        status: PaymentStatus,
        payment_id: Optional[str],
        note: str,
    ) -> None:
        order = result.order
        order.payment_status = status
        order.version += 1
        order.record(TimelineEntry(kind=TimelineKind.PAYMENT, actor=PAYMENT_ACTOR, note=note))
        result.changed = True
        result.events.append(PaymentSettled(order_id=order.id, payment_status=status, payment_id=payment_id))
        logger.info("order_payment_status_changed", order_id=order.id, payment_status=status.value)

    @staticmethod
    def _notification(kind: str, order: Order, **extra: Any) -> Notification:
        return Notification(
            kind=kind,
            order_id=order.id,
            store_id=order.store_id,
            customer_id=order.customer_id,
            payload={
                "order_number": order.order_number,
                "status": order.status.value,
                "total_cents": order.total_cents,
                "currency": order.currency,
                **extra,
            },
        )

    async def dispatch(self, notifications: Iterable[Notification]) -> bool:
        """Fire-and-forget delivery. Returns False if any notification failed."""
        delivered = True
        for notification in notifications:
            try:
                await self.notifier.dispatch(notification)
            except Exception as e:
                delivered = False
                metrics.record_notification_failure(notification.kind)
                logger.error(
                    "notification_dispatch_failed",
                    kind=notification.kind,
                    order_id=notification.order_id,
                    error=str(e),
                )
        return delivered

    async def _release_stock(self, store_id: str, order_id: str) -> None:
        try:
            await self.catalog.release(store_id, order_id)
        except OrderEngineError as e:
            logger.error("stock_release_failed", store_id=store_id, order_id=order_id, error=str(e))
