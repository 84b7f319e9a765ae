"""
In-memory Ledger Store for tests and single-process development.

Each order and payment id has its own ``asyncio.Lock``, kept only while a
session holds it or waits for it. A unit of work stages deep copies and
writes them back on commit, so a failed unit of work leaves nothing behind.
"""

from __future__ import annotations

import asyncio
import copy
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Sequence

import structlog

from order_engine.domain.exceptions import ConflictError, NotFoundError
from order_engine.domain.models import Order, OrderStatus, Payment, PaymentStatus, Refund
from order_engine.monitoring.metrics import metrics

from .base import DuplicateKeyError, LedgerSession, LedgerStore, OrderFilter

logger = structlog.get_logger(__name__)


class InMemoryLedgerSession(LedgerSession):
    def __init__(self, store: InMemoryLedgerStore):
        self._store = store
        self._held: list[asyncio.Lock] = []
        self._locked_keys: set[str] = set()
        self._orders: dict[str, Order] = {}
        self._new_orders: dict[str, Order] = {}
        self._payments: dict[str, Payment] = {}
        self._refunds: dict[str, Refund] = {}
        self._dirty_orders: set[str] = set()
        self._dirty_payments: set[str] = set()

    async def _acquire(self, entity: str, entity_id: str) -> None:
        key = f"{entity}:{entity_id}"
        if key in self._locked_keys:
            return
        lock = self._store._lock_for(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._store.lock_timeout_seconds)
        except asyncio.TimeoutError:
            metrics.record_lock_timeout(entity)
            logger.warning("ledger_lock_timeout", entity=entity, entity_id=entity_id)
            raise ConflictError(
                f"Timed out waiting for {entity} {entity_id}", entity=entity, id=entity_id
            )
        self._held.append(lock)
        self._locked_keys.add(key)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()
        self._locked_keys.clear()

    # Orders

    async def lock_order(self, order_id: str) -> Order:
        await self._acquire("order", order_id)
        if order_id in self._orders:
            return self._orders[order_id]
        if order_id in self._new_orders:
            return self._new_orders[order_id]
        stored = self._store._orders.get(order_id)
        if stored is None:
            raise NotFoundError("Order", order_id)
        working = copy.deepcopy(stored)
        self._orders[order_id] = working
        return working

    async def get_order(self, order_id: str) -> Order | None:
        if order_id in self._orders:
            return self._orders[order_id]
        if order_id in self._new_orders:
            return self._new_orders[order_id]
        return await self._store.get_order(order_id)

    async def add_order(self, order: Order) -> None:
        self._store._check_unique_order(order, pending=self._new_orders.values())
        self._new_orders[order.id] = order

    async def save_order(self, order: Order) -> None:
        if order.id in self._new_orders:
            self._new_orders[order.id] = order
            return
        if f"order:{order.id}" not in self._locked_keys:
            raise RuntimeError(f"order {order.id} saved without holding its lock")
        self._orders[order.id] = order
        self._dirty_orders.add(order.id)

    async def count_orders_for_day(self, store_id: str, day_start: datetime, day_end: datetime) -> int:
        candidates = list(self._store._orders.values()) + list(self._new_orders.values())
        return sum(
            1 for o in candidates
            if o.store_id == store_id and day_start <= o.created_at < day_end
        )

    # Payments

    async def lock_payment(self, payment_id: str) -> Payment:
        await self._acquire("payment", payment_id)
        if payment_id in self._payments:
            return self._payments[payment_id]
        stored = self._store._payments.get(payment_id)
        if stored is None:
            raise NotFoundError("Payment", payment_id)
        working = copy.deepcopy(stored)
        self._payments[payment_id] = working
        return working

    async def get_payment(self, payment_id: str) -> Payment | None:
        if payment_id in self._payments:
            return self._payments[payment_id]
        return await self._store.get_payment(payment_id)

    async def upsert_payment(self, payment: Payment) -> tuple[Payment, bool]:
        await self._acquire("payment", payment.id)
        if payment.id in self._payments:
            return self._payments[payment.id], False
        stored = self._store._payments.get(payment.id)
        if stored is not None:
            working = copy.deepcopy(stored)
            self._payments[payment.id] = working
            return working, False
        self._payments[payment.id] = payment
        self._dirty_payments.add(payment.id)
        return payment, True

    async def save_payment(self, payment: Payment) -> None:
        if f"payment:{payment.id}" not in self._locked_keys:
            raise RuntimeError(f"payment {payment.id} saved without holding its lock")
        self._payments[payment.id] = payment
        self._dirty_payments.add(payment.id)

    async def list_payments(self, order_id: str) -> list[Payment]:
        merged = {
            p.id: copy.deepcopy(p)
            for p in self._store._payments.values()
            if p.order_id == order_id
        }
        merged.update({p.id: p for p in self._payments.values() if p.order_id == order_id})
        return sorted(merged.values(), key=lambda p: p.created_at)

    # Refunds

    async def add_refund(self, refund: Refund) -> None:
        self._refunds[refund.id] = refund

    async def save_refund(self, refund: Refund) -> None:
        self._refunds[refund.id] = refund

    async def list_refunds(self, payment_id: str) -> list[Refund]:
        merged = {
            r.id: copy.deepcopy(r)
            for r in self._store._refunds.values()
            if r.payment_id == payment_id
        }
        merged.update({r.id: r for r in self._refunds.values() if r.payment_id == payment_id})
        return sorted(merged.values(), key=lambda r: r.created_at)

    def commit(self) -> None:
        for order in self._new_orders.values():
            self._store._check_unique_order(order)
        for order in self._new_orders.values():
            self._store._orders[order.id] = copy.deepcopy(order)
        for order_id in self._dirty_orders:
            self._store._orders[order_id] = copy.deepcopy(self._orders[order_id])
        for payment_id in self._dirty_payments:
            self._store._payments[payment_id] = copy.deepcopy(self._payments[payment_id])
        for refund in self._refunds.values():
            self._store._refunds[refund.id] = copy.deepcopy(refund)


class InMemoryLedgerStore(LedgerStore):
    """Ledger kept in process memory. Not shared between processes."""

    def __init__(self, lock_timeout_seconds: float = 5.0):
        self.lock_timeout_seconds = lock_timeout_seconds
        self._orders: dict[str, Order] = {}
        self._payments: dict[str, Payment] = {}
        self._refunds: dict[str, Refund] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _check_unique_order(self, order: Order, pending: Sequence[Order] | None = None) -> None:
        existing = list(self._orders.values()) + list(pending or [])
        for other in existing:
            if other.id == order.id:
                raise DuplicateKeyError(f"order id {order.id} already exists")
            if other.store_id == order.store_id and other.order_number == order.order_number:
                raise DuplicateKeyError(
                    f"order number {order.order_number} already used in store {order.store_id}"
                )

    def _commit(self, session: InMemoryLedgerSession) -> None:
        session.commit()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryLedgerSession]:
        session = InMemoryLedgerSession(self)
        try:
            yield session
            self._commit(session)
        finally:
            session.release()

    async def get_order(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def get_order_by_number(self, store_id: str, order_number: str) -> Order | None:
        for order in self._orders.values():
            if order.store_id == store_id and order.order_number == order_number:
                return copy.deepcopy(order)
        return None

    def _matching(self, order_filter: OrderFilter) -> list[Order]:
        matches = [o for o in self._orders.values() if order_filter.matches(o)]
        matches.sort(key=lambda o: o.created_at, reverse=order_filter.newest_first)
        return matches

    async def find_orders(self, order_filter: OrderFilter) -> tuple[list[Order], int]:
        matches = self._matching(order_filter)
        page = matches[order_filter.offset:order_filter.offset + order_filter.limit]
        return [copy.deepcopy(o) for o in page], len(matches)

    async def iter_orders(self, order_filter: OrderFilter) -> list[Order]:
        return [copy.deepcopy(o) for o in self._matching(order_filter)]

    async def get_payment(self, payment_id: str) -> Payment | None:
        payment = self._payments.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    async def list_payments(self, order_id: str) -> list[Payment]:
        payments = [p for p in self._payments.values() if p.order_id == order_id]
        return [copy.deepcopy(p) for p in sorted(payments, key=lambda p: p.created_at)]

    async def list_payments_for_orders(self, order_ids: Sequence[str]) -> list[Payment]:
        wanted = set(order_ids)
        return [copy.deepcopy(p) for p in self._payments.values() if p.order_id in wanted]

    async def list_refunds(self, payment_id: str) -> list[Refund]:
        refunds = [r for r in self._refunds.values() if r.payment_id == payment_id]
        return [copy.deepcopy(r) for r in sorted(refunds, key=lambda r: r.created_at)]

    async def find_stale_payments(
        self, statuses: Sequence[PaymentStatus], updated_before: datetime, limit: int
    ) -> list[Payment]:
        stale = [
            p for p in self._payments.values()
            if p.status in statuses and p.updated_at < updated_before
        ]
        stale.sort(key=lambda p: p.updated_at)
        return [copy.deepcopy(p) for p in stale[:limit]]

    async def find_orders_requiring_refund(self, limit: int) -> list[Order]:
        orders = [
            o for o in self._orders.values()
            if o.status == OrderStatus.CANCELLED
            and o.payment_status in (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED)
        ]
        orders.sort(key=lambda o: o.updated_at)
        return [copy.deepcopy(o) for o in orders[:limit]]

    async def ping(self) -> None:
        return None
