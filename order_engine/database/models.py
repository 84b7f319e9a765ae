"""SQLAlchemy database models for the order ledger."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")

ORDER_STATUSES = (
    "'pending', 'confirmed', 'processing', 'shipped', 'delivered', "
    "'cancelled', 'refunded', 'partially_refunded'"
)
PAYMENT_STATUSES = (
    "'pending', 'processing', 'succeeded', 'failed', 'cancelled', "
    "'refunded', 'partially_refunded'"
)
REFUND_STATUSES = "'pending', 'succeeded', 'failed', 'cancelled'"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderRecord(Base):
    """
    Orders table.

    Totals are written once at creation; the check constraint keeps the
    grand total consistent with its parts.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    extra_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    items: Mapped[List["OrderItemRecord"]] = relationship(
        back_populates="order",
        order_by="OrderItemRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    timeline: Mapped[List["OrderTimelineRecord"]] = relationship(
        back_populates="order",
        order_by="OrderTimelineRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("store_id", "order_number", name="uq_orders_store_number"),
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents + shipping_cents - discount_cents",
            name="balanced_totals",
        ),
        CheckConstraint(f"status IN ({ORDER_STATUSES})", name="valid_order_status"),
        CheckConstraint(f"payment_status IN ({PAYMENT_STATUSES})", name="valid_order_payment_status"),
        Index("idx_orders_store_created", "store_id", "created_at"),
        Index("idx_orders_status_payment", "status", "payment_status"),
    )

    def __repr__(self) -> str:
        return f"<OrderRecord(id={self.id}, number={self.order_number}, status={self.status})>"


class OrderItemRecord(Base):
    """Line items. Immutable once written."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    variant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    order: Mapped[OrderRecord] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price_cents >= 0", name="non_negative_price"),
    )


class OrderTimelineRecord(Base):
    """Append-only order history."""

    __tablename__ = "order_timeline"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    order: Mapped[OrderRecord] = relationship(back_populates="timeline")

    __table_args__ = (
        UniqueConstraint("order_id", "position", name="uq_order_timeline_position"),
    )


class PaymentRecord(Base):
    """
    Payments table, keyed by the gateway's payment-intent id.

    ``order_id`` is nullable for shadow records created from a webhook that
    carried no order reference.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=True, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    amount_refunded_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    gateway_metadata: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="non_negative_amount"),
        CheckConstraint(
            "amount_refunded_cents >= 0 AND amount_refunded_cents <= amount_cents",
            name="refunded_within_amount",
        ),
        CheckConstraint(f"status IN ({PAYMENT_STATUSES})", name="valid_payment_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payments_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class RefundRecord(Base):
    """Refunds against a payment."""

    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    payment_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("payments.id"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_refund_amount"),
        CheckConstraint(f"status IN ({REFUND_STATUSES})", name="valid_refund_status"),
    )
