"""
Notification dispatch.

The engine hands customer-facing messages (order confirmation, shipping,
cancellation, refund notices) to a dispatcher and moves on. Delivery is the
dispatcher's problem; a dispatcher failure is logged and counted by the
caller and never changes the outcome of an order operation.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List

import redis.asyncio as aioredis
import structlog

from order_engine.domain.models import utcnow

logger = structlog.get_logger(__name__)

ORDER_CONFIRMATION = "order_confirmation"
ORDER_SHIPPED = "order_shipped"
ORDER_DELIVERED = "order_delivered"
ORDER_CANCELLED = "order_cancelled"
REFUND_NOTICE = "refund_notice"
PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class Notification:
    kind: str
    order_id: str
    store_id: str
    customer_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_message(self) -> Dict[str, str]:
        body = asdict(self)
        body["created_at"] = self.created_at.isoformat()
        body["payload"] = json.dumps(self.payload, default=str)
        return body


class NotificationDispatcher(ABC):
    @abstractmethod
    async def dispatch(self, notification: Notification) -> None:
        """Accept a notification for delivery."""


class InMemoryNotificationDispatcher(NotificationDispatcher):
    def __init__(self) -> None:
        self.sent: List[Notification] = []

    async def dispatch(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> List[str]:
        return [n.kind for n in self.sent]


class RedisStreamNotificationDispatcher(NotificationDispatcher):
    """Appends notifications to a Redis stream consumed by the mailer."""

    def __init__(self, redis_client: aioredis.Redis, stream_key: str, max_len: int = 100_000):
        self.redis_client = redis_client
        self.stream_key = stream_key
        self.max_len = max_len

    async def dispatch(self, notification: Notification) -> None:
        await self.redis_client.xadd(
            self.stream_key,
            notification.to_message(),
            maxlen=self.max_len,
            approximate=True,
        )
        logger.info(
            "notification_enqueued",
            kind=notification.kind,
            order_id=notification.order_id,
            stream=self.stream_key,
        )
