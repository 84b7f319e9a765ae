"""
Ledger Store interface.

The ledger is the single source of truth for Orders, Payments and Refunds.
Writes happen inside a unit of work; every ``lock_*`` call takes the
entity's serialization point (row lock or per-key mutex) and holds it until
the unit of work ends. Callers lock the order before its payments.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncContextManager, Sequence

from order_engine.domain.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Refund,
)


class LedgerError(Exception):
    """Base class for storage-level failures."""


class DuplicateKeyError(LedgerError):
    """A unique key (order number, payment id) already exists."""


@dataclass(frozen=True)
class OrderFilter:
    store_id: str | None = None
    customer_id: str | None = None
    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    search: str | None = None
    page: int = 1
    limit: int = 20
    newest_first: bool = True

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def matches(self, order: Order) -> bool:
        """Reference predicate, used by the in-memory backend."""
        if self.store_id is not None and order.store_id != self.store_id:
            return False
        if self.customer_id is not None and order.customer_id != self.customer_id:
            return False
        if self.status is not None and order.status != self.status:
            return False
        if self.payment_status is not None and order.payment_status != self.payment_status:
            return False
        if self.created_from is not None and order.created_at < self.created_from:
            return False
        if self.created_to is not None and order.created_at >= self.created_to:
            return False
        if self.search and self.search.lower() not in order.order_number.lower():
            return False
        return True


class LedgerSession(ABC):
    """A unit of work. Changes become visible to others only on commit."""

    @abstractmethod
    async def lock_order(self, order_id: str) -> Order:
        """Lock and return an order. Raises NotFoundError if absent."""

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None:
        """Read an order without locking it."""

    @abstractmethod
    async def add_order(self, order: Order) -> None:
        """Stage a new order. Raises DuplicateKeyError on an order-number clash."""

    @abstractmethod
    async def save_order(self, order: Order) -> None:
        """Persist changes to a locked order, including new timeline entries."""

    @abstractmethod
    async def count_orders_for_day(self, store_id: str, day_start: datetime, day_end: datetime) -> int:
        """Orders created for a store in [day_start, day_end)."""

    @abstractmethod
    async def lock_payment(self, payment_id: str) -> Payment:
        """Lock and return a payment. Raises NotFoundError if absent."""

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Payment | None:
        """Read a payment without locking it."""

    @abstractmethod
    async def upsert_payment(self, payment: Payment) -> tuple[Payment, bool]:
        """
        Insert ``payment`` unless one with the same id exists.

        Returns the locked stored payment and whether it was created.
        """

    @abstractmethod
    async def save_payment(self, payment: Payment) -> None:
        """Persist changes to a locked payment."""

    @abstractmethod
    async def list_payments(self, order_id: str) -> list[Payment]:
        """Payments for an order, oldest first."""

    @abstractmethod
    async def add_refund(self, refund: Refund) -> None:
        pass

    @abstractmethod
    async def save_refund(self, refund: Refund) -> None:
        pass

    @abstractmethod
    async def list_refunds(self, payment_id: str) -> list[Refund]:
        """Refunds for a payment, oldest first."""


class LedgerStore(ABC):
    """Factory for units of work plus the read paths used by projections."""

    @abstractmethod
    def unit_of_work(self) -> AsyncContextManager[LedgerSession]:
        """
        Open a unit of work.

        Commits when the block exits normally, rolls back when it raises,
        and releases every lock taken inside it either way.
        """

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None:
        pass

    @abstractmethod
    async def get_order_by_number(self, store_id: str, order_number: str) -> Order | None:
        pass

    @abstractmethod
    async def find_orders(self, order_filter: OrderFilter) -> tuple[list[Order], int]:
        """One page of matching orders plus the total match count."""

    @abstractmethod
    async def iter_orders(self, order_filter: OrderFilter) -> list[Order]:
        """Every matching order, ignoring pagination."""

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Payment | None:
        pass

    @abstractmethod
    async def list_payments(self, order_id: str) -> list[Payment]:
        pass

    @abstractmethod
    async def list_payments_for_orders(self, order_ids: Sequence[str]) -> list[Payment]:
        pass

    @abstractmethod
    async def list_refunds(self, payment_id: str) -> list[Refund]:
        pass

    @abstractmethod
    async def find_stale_payments(
        self, statuses: Sequence[PaymentStatus], updated_before: datetime, limit: int
    ) -> list[Payment]:
        """Payments stuck in ``statuses`` since before ``updated_before``."""

    @abstractmethod
    async def find_orders_requiring_refund(self, limit: int) -> list[Order]:
        """Cancelled orders that still hold a succeeded payment."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the backing store is unreachable."""

    async def close(self) -> None:
        """Release connections. No-op by default."""
