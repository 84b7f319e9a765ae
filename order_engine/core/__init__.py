"""Order engine core: state machine, payments, reconciliation, projections."""
from .idempotency import EventClaimStore, InMemoryEventClaims, RedisEventClaims
from .orders import OrderResult, OrderStateMachine, PaymentOutcome
from .payments import PaymentGatewayAdapter
from .projections import OrderQueryService
from .reconciliation import WebhookReconciliationEngine, WebhookResult
from .sweeper import PaymentSweeper

__all__ = [
    "EventClaimStore",
    "InMemoryEventClaims",
    "OrderQueryService",
    "OrderResult",
    "OrderStateMachine",
    "PaymentGatewayAdapter",
    "PaymentOutcome",
    "PaymentSweeper",
    "RedisEventClaims",
    "WebhookReconciliationEngine",
    "WebhookResult",
]
