"""
PostgreSQL Ledger Store on SQLAlchemy's async ORM.

Per-entity serialization uses ``SELECT ... FOR UPDATE`` on the primary key,
bounded by ``SET LOCAL lock_timeout`` so no request waits forever. Driver
errors are translated at the unit-of-work boundary:

- unique violation -> DuplicateKeyError
- lock timeout (SQLSTATE 55P03) -> ConflictError
- anything else from the driver -> RetryableError
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Sequence

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_engine.database.models import (
    OrderItemRecord,
    OrderRecord,
    OrderTimelineRecord,
    PaymentRecord,
    RefundRecord,
)
from order_engine.domain.exceptions import ConflictError, NotFoundError, RetryableError
from order_engine.domain.models import (
    LineItem,
    Order,
    OrderStatus,
    OrderTotals,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    TimelineEntry,
    TimelineKind,
)
from order_engine.monitoring.metrics import metrics

from .base import DuplicateKeyError, LedgerSession, LedgerStore, OrderFilter

logger = structlog.get_logger(__name__)

LOCK_NOT_AVAILABLE = "55P03"


def _order_from_record(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        order_number=record.order_number,
        store_id=record.store_id,
        customer_id=record.customer_id,
        items=tuple(
            LineItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                product_name=item.product_name,
                sku=item.sku,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                tax_cents=item.tax_cents,
                discount_cents=item.discount_cents,
            )
            for item in record.items
        ),
        totals=OrderTotals(
            subtotal_cents=record.subtotal_cents,
            tax_cents=record.tax_cents,
            shipping_cents=record.shipping_cents,
            discount_cents=record.discount_cents,
            total_cents=record.total_cents,
        ),
        currency=record.currency,
        status=OrderStatus(record.status),
        payment_status=PaymentStatus(record.payment_status),
        payment_flagged=record.payment_flagged,
        shipping_address=dict(record.shipping_address or {}),
        metadata=dict(record.extra_metadata or {}),
        timeline=[
            TimelineEntry(
                kind=TimelineKind(entry.kind),
                actor=entry.actor,
                from_status=OrderStatus(entry.from_status) if entry.from_status else None,
                to_status=OrderStatus(entry.to_status) if entry.to_status else None,
                note=entry.note,
                created_at=entry.created_at,
            )
            for entry in record.timeline
        ],
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _timeline_record(position: int, entry: TimelineEntry) -> OrderTimelineRecord:
    return OrderTimelineRecord(
        position=position,
        kind=entry.kind.value,
        from_status=entry.from_status.value if entry.from_status else None,
        to_status=entry.to_status.value if entry.to_status else None,
        actor=entry.actor,
        note=entry.note,
        created_at=entry.created_at,
    )


def _record_from_order(order: Order) -> OrderRecord:
    return OrderRecord(
        id=order.id,
        order_number=order.order_number,
        store_id=order.store_id,
        customer_id=order.customer_id,
        status=order.status.value,
        payment_status=order.payment_status.value,
        payment_flagged=order.payment_flagged,
        currency=order.currency,
        subtotal_cents=order.totals.subtotal_cents,
        tax_cents=order.totals.tax_cents,
        shipping_cents=order.totals.shipping_cents,
        discount_cents=order.totals.discount_cents,
        total_cents=order.totals.total_cents,
        shipping_address=dict(order.shipping_address),
        extra_metadata=dict(order.metadata),
        version=order.version,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[
            OrderItemRecord(
                position=position,
                product_id=item.product_id,
                variant_id=item.variant_id,
                product_name=item.product_name,
                sku=item.sku,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                tax_cents=item.tax_cents,
                discount_cents=item.discount_cents,
            )
            for position, item in enumerate(order.items)
        ],
        timeline=[_timeline_record(i, entry) for i, entry in enumerate(order.timeline)],
    )


def _payment_from_record(record: PaymentRecord) -> Payment:
    return Payment(
        id=record.id,
        order_id=record.order_id,
        amount_cents=record.amount_cents,
        currency=record.currency,
        status=PaymentStatus(record.status),
        amount_refunded_cents=record.amount_refunded_cents,
        gateway_metadata=dict(record.gateway_metadata or {}),
        failure_reason=record.failure_reason,
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _payment_values(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
        "status": payment.status.value,
        "amount_refunded_cents": payment.amount_refunded_cents,
        "gateway_metadata": dict(payment.gateway_metadata),
        "failure_reason": payment.failure_reason,
        "version": payment.version,
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }


def _refund_from_record(record: RefundRecord) -> Refund:
    return Refund(
        id=record.id,
        payment_id=record.payment_id,
        amount_cents=record.amount_cents,
        reason=record.reason,
        status=RefundStatus(record.status),
        gateway_refund_id=record.gateway_refund_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _sqlstate(exc: DBAPIError) -> str | None:
    for candidate in (exc.orig, getattr(exc.orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code
    return None


def _filter_clauses(order_filter: OrderFilter) -> list[Any]:
    clauses = []
    if order_filter.store_id is not None:
        clauses.append(OrderRecord.store_id == order_filter.store_id)
    if order_filter.customer_id is not None:
        clauses.append(OrderRecord.customer_id == order_filter.customer_id)
    if order_filter.status is not None:
        clauses.append(OrderRecord.status == order_filter.status.value)
    if order_filter.payment_status is not None:
        clauses.append(OrderRecord.payment_status == order_filter.payment_status.value)
    if order_filter.created_from is not None:
        clauses.append(OrderRecord.created_at >= order_filter.created_from)
    if order_filter.created_to is not None:
        clauses.append(OrderRecord.created_at < order_filter.created_to)
    if order_filter.search:
        clauses.append(OrderRecord.order_number.ilike(f"%{order_filter.search}%"))
    return clauses


class SqlAlchemyLedgerSession(LedgerSession):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def _flush(self) -> None:
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise DuplicateKeyError(str(exc.orig)) from exc

    async def lock_order(self, order_id: str) -> Order:
        stmt = (
            select(OrderRecord)
            .where(OrderRecord.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise NotFoundError("Order", order_id)
        return _order_from_record(record)

    async def get_order(self, order_id: str) -> Order | None:
        record = await self._session.get(OrderRecord, order_id)
        return _order_from_record(record) if record else None

    async def add_order(self, order: Order) -> None:
        self._session.add(_record_from_order(order))
        await self._flush()

    async def save_order(self, order: Order) -> None:
        record = await self._session.get(OrderRecord, order.id)
        if record is None:
            raise NotFoundError("Order", order.id)
        record.status = order.status.value
        record.payment_status = order.payment_status.value
        record.payment_flagged = order.payment_flagged
        record.shipping_address = dict(order.shipping_address)
        record.extra_metadata = dict(order.metadata)
        record.version = order.version
        record.updated_at = order.updated_at
        persisted = len(record.timeline)
        for position, entry in enumerate(order.timeline[persisted:], start=persisted):
            record.timeline.append(_timeline_record(position, entry))
        await self._flush()

    async def count_orders_for_day(self, store_id: str, day_start: datetime, day_end: datetime) -> int:
        stmt = select(func.count(OrderRecord.id)).where(
            OrderRecord.store_id == store_id,
            OrderRecord.created_at >= day_start,
            OrderRecord.created_at < day_end,
        )
        return int((await self._session.execute(stmt)).scalar() or 0)

    async def lock_payment(self, payment_id: str) -> Payment:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise NotFoundError("Payment", payment_id)
        return _payment_from_record(record)

    async def get_payment(self, payment_id: str) -> Payment | None:
        record = await self._session.get(PaymentRecord, payment_id)
        return _payment_from_record(record) if record else None

    async def upsert_payment(self, payment: Payment) -> tuple[Payment, bool]:
        stmt = (
            pg_insert(PaymentRecord)
            .values(**_payment_values(payment))
            .on_conflict_do_nothing(index_elements=[PaymentRecord.id])
        )
        result = await self._session.execute(stmt)
        created = bool(result.rowcount)
        return await self.lock_payment(payment.id), created

    async def save_payment(self, payment: Payment) -> None:
        record = await self._session.get(PaymentRecord, payment.id)
        if record is None:
            raise NotFoundError("Payment", payment.id)
        for key, value in _payment_values(payment).items():
            if key not in ("id", "created_at"):
                setattr(record, key, value)
        await self._flush()

    async def list_payments(self, order_id: str) -> list[Payment]:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .order_by(PaymentRecord.created_at)
        )
        result = await self._session.execute(stmt)
        return [_payment_from_record(r) for r in result.scalars().all()]

    async def add_refund(self, refund: Refund) -> None:
        self._session.add(
            RefundRecord(
                id=refund.id,
                payment_id=refund.payment_id,
                amount_cents=refund.amount_cents,
                reason=refund.reason,
                status=refund.status.value,
                gateway_refund_id=refund.gateway_refund_id,
                created_at=refund.created_at,
                updated_at=refund.updated_at,
            )
        )
        await self._flush()

    async def save_refund(self, refund: Refund) -> None:
        record = await self._session.get(RefundRecord, refund.id)
        if record is None:
            await self.add_refund(refund)
            return
        record.status = refund.status.value
        record.gateway_refund_id = refund.gateway_refund_id
        record.updated_at = refund.updated_at
        await self._flush()

    async def list_refunds(self, payment_id: str) -> list[Refund]:
        stmt = (
            select(RefundRecord)
            .where(RefundRecord.payment_id == payment_id)
            .order_by(RefundRecord.created_at)
        )
        result = await self._session.execute(stmt)
        return [_refund_from_record(r) for r in result.scalars().all()]


class SqlAlchemyLedgerStore(LedgerStore):
    """Ledger backed by PostgreSQL."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_timeout_seconds: float = 5.0,
    ):
        self._session_factory = session_factory
        self.lock_timeout_ms = int(lock_timeout_seconds * 1000)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlAlchemyLedgerSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        text(f"SET LOCAL lock_timeout = '{self.lock_timeout_ms}ms'")
                    )
                    yield SqlAlchemyLedgerSession(session)
        except IntegrityError as exc:
            raise DuplicateKeyError(str(exc.orig)) from exc
        except DBAPIError as exc:
            if _sqlstate(exc) == LOCK_NOT_AVAILABLE:
                metrics.record_lock_timeout("row")
                logger.warning("ledger_lock_timeout", error=str(exc.orig))
                raise ConflictError("Timed out waiting for a row lock") from exc
            logger.error("ledger_unavailable", error=str(exc))
            raise RetryableError("Ledger temporarily unavailable") from exc

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("ledger_read_failed", error=str(exc))
            raise RetryableError("Ledger temporarily unavailable") from exc

    async def get_order(self, order_id: str) -> Order | None:
        async with self._read() as session:
            record = await session.get(OrderRecord, order_id)
            return _order_from_record(record) if record else None

    async def get_order_by_number(self, store_id: str, order_number: str) -> Order | None:
        async with self._read() as session:
            stmt = select(OrderRecord).where(
                OrderRecord.store_id == store_id,
                OrderRecord.order_number == order_number,
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _order_from_record(record) if record else None

    def _ordering(self, order_filter: OrderFilter) -> Any:
        if order_filter.newest_first:
            return OrderRecord.created_at.desc()
        return OrderRecord.created_at.asc()

    async def find_orders(self, order_filter: OrderFilter) -> tuple[list[Order], int]:
        clauses = _filter_clauses(order_filter)
        async with self._read() as session:
            total = (
                await session.execute(select(func.count(OrderRecord.id)).where(*clauses))
            ).scalar() or 0
            stmt = (
                select(OrderRecord)
                .where(*clauses)
                .order_by(self._ordering(order_filter))
                .offset(order_filter.offset)
                .limit(order_filter.limit)
            )
            result = await session.execute(stmt)
            return [_order_from_record(r) for r in result.scalars().all()], int(total)

    async def iter_orders(self, order_filter: OrderFilter) -> list[Order]:
        async with self._read() as session:
            stmt = (
                select(OrderRecord)
                .where(*_filter_clauses(order_filter))
                .order_by(self._ordering(order_filter))
            )
            result = await session.execute(stmt)
            return [_order_from_record(r) for r in result.scalars().all()]

    async def get_payment(self, payment_id: str) -> Payment | None:
        async with self._read() as session:
            record = await session.get(PaymentRecord, payment_id)
            return _payment_from_record(record) if record else None

    async def list_payments(self, order_id: str) -> list[Payment]:
        async with self._read() as session:
            return await SqlAlchemyLedgerSession(session).list_payments(order_id)

    async def list_payments_for_orders(self, order_ids: Sequence[str]) -> list[Payment]:
        if not order_ids:
            return []
        async with self._read() as session:
            stmt = select(PaymentRecord).where(PaymentRecord.order_id.in_(list(order_ids)))
            result = await session.execute(stmt)
            return [_payment_from_record(r) for r in result.scalars().all()]

    async def list_refunds(self, payment_id: str) -> list[Refund]:
        async with self._read() as session:
            return await SqlAlchemyLedgerSession(session).list_refunds(payment_id)

    async def find_stale_payments(
        self, statuses: Sequence[PaymentStatus], updated_before: datetime, limit: int
    ) -> list[Payment]:
        async with self._read() as session:
            stmt = (
                select(PaymentRecord)
                .where(
                    PaymentRecord.status.in_([s.value for s in statuses]),
                    PaymentRecord.updated_at < updated_before,
                )
                .order_by(PaymentRecord.updated_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_payment_from_record(r) for r in result.scalars().all()]

    async def find_orders_requiring_refund(self, limit: int) -> list[Order]:
        async with self._read() as session:
            stmt = (
                select(OrderRecord)
                .where(
                    OrderRecord.status == OrderStatus.CANCELLED.value,
                    OrderRecord.payment_status.in_([
                        PaymentStatus.SUCCEEDED.value,
                        PaymentStatus.PARTIALLY_REFUNDED.value,
                    ]),
                )
                .order_by(OrderRecord.updated_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_order_from_record(r) for r in result.scalars().all()]

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
