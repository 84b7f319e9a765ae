"""
Order and payment transition tables.

Orders move along two kinds of edges:

- fulfillment edges, driven by ``transition_status`` (staff, carriers);
- refund edges, driven only by payment results coming out of
  reconciliation.

Payment edges are monotonic: an event that would move a payment backwards
is stale and is acknowledged without change.
"""
from .models import OrderStatus, PaymentStatus

FULFILLMENT_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.PARTIALLY_REFUNDED: set(),
    OrderStatus.REFUNDED: set(),
}

POST_PAYMENT_STATES: frozenset[OrderStatus] = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.PARTIALLY_REFUNDED,
})

REFUND_STATES: frozenset[OrderStatus] = frozenset({
    OrderStatus.REFUNDED,
    OrderStatus.PARTIALLY_REFUNDED,
})

TERMINAL_STATES: frozenset[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})

CANCELLABLE_STATES: frozenset[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
})

# Order in which a carrier moves an order forward.
FULFILLMENT_PATH: tuple[OrderStatus, ...] = (
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    # A failed intent can be retried with another payment method.
    PaymentStatus.FAILED: {
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.SUCCEEDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
    },
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.CANCELLED: set(),
}


def can_fulfill(current: OrderStatus, target: OrderStatus) -> bool:
    return target in FULFILLMENT_TRANSITIONS.get(current, set())


def can_refund(current: OrderStatus) -> bool:
    return current in POST_PAYMENT_STATES


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def fulfillment_steps(current: OrderStatus, target: OrderStatus) -> list[OrderStatus]:
    """
    Statuses to pass through to move ``current`` forward to ``target``.

    Returns an empty list when the order is already at or past ``target``
    or is not on the fulfillment path at all.
    """
    if current not in FULFILLMENT_PATH or target not in FULFILLMENT_PATH:
        return []
    start = FULFILLMENT_PATH.index(current)
    end = FULFILLMENT_PATH.index(target)
    return list(FULFILLMENT_PATH[start + 1:end + 1])
