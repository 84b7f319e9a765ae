"""External collaborators: payment processor, webhook sources, catalog, customers, notifications."""
from .gateway import GatewayIntent, GatewayRefund, PaymentGateway
from .stripe_client import CircuitBreaker, StripeGateway
from .webhook_sources import WebhookSource, build_sources

__all__ = [
    "CircuitBreaker",
    "GatewayIntent",
    "GatewayRefund",
    "PaymentGateway",
    "StripeGateway",
    "WebhookSource",
    "build_sources",
]
