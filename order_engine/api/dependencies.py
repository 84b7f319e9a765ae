"""
Service wiring for the API and the workers.

Everything the routes need hangs off one ``ServiceContainer`` stored on
``app.state``. Tests build a container from in-memory parts and hand it to
``create_app``; production builds one from settings.
"""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Request

from order_engine.config import Settings
from order_engine.core import (
    EventClaimStore,
    OrderQueryService,
    OrderStateMachine,
    PaymentGatewayAdapter,
    PaymentSweeper,
    RedisEventClaims,
    WebhookReconciliationEngine,
)
from order_engine.database import close_db, create_engine, create_session_factory
from order_engine.integrations import PaymentGateway, StripeGateway, WebhookSource, build_sources
from order_engine.integrations.collaborators import (
    CatalogService,
    CustomerDirectory,
    HttpCatalogClient,
    HttpCustomerDirectory,
    InMemoryCatalog,
    InMemoryCustomerDirectory,
)
from order_engine.integrations.notifications import (
    NotificationDispatcher,
    RedisStreamNotificationDispatcher,
)
from order_engine.ledger import InMemoryLedgerStore, LedgerStore
from order_engine.ledger.sql import SqlAlchemyLedgerStore
from order_engine.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)

Closer = Callable[[], Awaitable[None]]


@dataclass
class ServiceContainer:
    settings: Settings
    ledger: LedgerStore
    gateway: PaymentGateway
    sources: dict
    orders: OrderStateMachine
    payments: PaymentGatewayAdapter
    reconciliation: WebhookReconciliationEngine
    queries: OrderQueryService
    sweeper: PaymentSweeper
    health: HealthCheck
    redis_client: Optional[aioredis.Redis] = None
    closers: List[Closer] = field(default_factory=list)

    def source(self, name: str) -> Optional[WebhookSource]:
        return self.sources.get(name)

    async def aclose(self) -> None:
        """Close clients and connection pools, newest first."""
        while self.closers:
            closer = self.closers.pop()
            try:
                await closer()
            except Exception as e:
                logger.warning("service_close_failed", error=str(e))


def assemble(
    settings: Settings,
    ledger: LedgerStore,
    gateway: PaymentGateway,
    catalog: CatalogService,
    customers: CustomerDirectory,
    notifier: NotificationDispatcher,
    claims: EventClaimStore,
    redis_client: Optional[aioredis.Redis] = None,
) -> ServiceContainer:
    """Wire the core services around the given collaborators."""
    sources = build_sources(settings)
    orders = OrderStateMachine(
        ledger,
        catalog,
        customers,
        notifier,
        gateway,
        max_line_items=settings.max_line_items,
        order_number_max_retries=settings.order_number_max_retries,
    )
    payments = PaymentGatewayAdapter(ledger, gateway, sources["stripe"])
    reconciliation = WebhookReconciliationEngine(sources, claims, ledger, orders, payments)
    sweeper = PaymentSweeper(
        ledger,
        payments,
        reconciliation,
        stale_after_minutes=settings.stale_payment_minutes,
        batch_size=settings.sweep_batch_size,
    )
    return ServiceContainer(
        settings=settings,
        ledger=ledger,
        gateway=gateway,
        sources=sources,
        orders=orders,
        payments=payments,
        reconciliation=reconciliation,
        queries=OrderQueryService(ledger),
        sweeper=sweeper,
        health=HealthCheck(ledger, settings, redis_client),
        redis_client=redis_client,
    )


async def build_container(settings: Settings) -> ServiceContainer:
    """Production wiring: configured ledger, Stripe, Redis and HTTP collaborators."""
    closers: List[Closer] = []

    if settings.ledger_backend == "memory":
        ledger: LedgerStore = InMemoryLedgerStore(settings.lock_timeout_seconds)
    else:
        engine = create_engine(settings)
        ledger = SqlAlchemyLedgerStore(
            create_session_factory(engine), settings.lock_timeout_seconds
        )
        closers.append(lambda: close_db(engine))

    redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    closers.append(redis_client.aclose)

    if settings.catalog_service_url:
        catalog_client = HttpCatalogClient(
            settings.catalog_service_url, settings.collaborator_timeout_seconds
        )
        closers.append(catalog_client.aclose)
        catalog: CatalogService = catalog_client
    else:
        logger.warning("catalog_service_not_configured", fallback="in_memory")
        catalog = InMemoryCatalog()

    if settings.customer_service_url:
        customer_client = HttpCustomerDirectory(
            settings.customer_service_url, settings.collaborator_timeout_seconds
        )
        closers.append(customer_client.aclose)
        customers: CustomerDirectory = customer_client
    else:
        logger.warning("customer_service_not_configured", fallback="in_memory")
        customers = InMemoryCustomerDirectory()

    container = assemble(
        settings,
        ledger=ledger,
        gateway=StripeGateway(settings),
        catalog=catalog,
        customers=customers,
        notifier=RedisStreamNotificationDispatcher(
            redis_client, settings.notification_stream_key
        ),
        claims=RedisEventClaims(
            redis_client,
            claim_ttl_seconds=settings.claim_ttl_seconds,
            processed_ttl_seconds=settings.webhook_processed_ttl_seconds,
        ),
        redis_client=redis_client,
    )
    container.closers.extend(closers)
    logger.info(
        "service_container_built",
        ledger_backend=settings.ledger_backend,
        sources=sorted(container.sources),
    )
    return container


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
