"""
Webhook event claims.

A provider may deliver the same event several times, sometimes at once.
Processing runs under a claim keyed by ``{source}:{event_id}``:

- a processed marker (kept for days) turns later deliveries into duplicates;
- a short-lived claim lock stops two workers applying the same event at the
  same time. The loser gets ``ConflictError`` and the provider redelivers.

The marker is only written when processing succeeds, so a failed attempt
leaves the event claimable again.
"""
import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from order_engine.domain.exceptions import ConflictError

logger = structlog.get_logger(__name__)

# Deletes the claim only if it still holds our token.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class EventClaimStore(ABC):
    """Processed markers plus mutually exclusive claims."""

    @abstractmethod
    async def is_processed(self, key: str) -> bool:
        pass

    @abstractmethod
    async def try_acquire(self, key: str) -> Optional[str]:
        """Take the claim for ``key``. Returns a release token, or None if held elsewhere."""

    @abstractmethod
    async def mark_processed(self, key: str) -> None:
        pass

    @abstractmethod
    async def release(self, key: str, token: str) -> None:
        pass

    @asynccontextmanager
    async def claim(self, key: str) -> AsyncIterator[bool]:
        """
        Hold the claim for one event while it is processed.

        Yields True when the event was already processed (the body should
        do nothing). The processed marker is written only if the body
        exits normally.

        Raises:
            ConflictError: If another worker holds the claim
        """
        if await self.is_processed(key):
            yield True
            return

        token = await self.try_acquire(key)
        if token is None:
            logger.info("webhook_claim_contended", claim_key=key)
            raise ConflictError(f"Event {key} is being processed by another worker", claim_key=key)

        try:
            # The holder before us may have finished between our two checks.
            if await self.is_processed(key):
                yield True
                return
            yield False
            await self.mark_processed(key)
        finally:
            await self.release(key, token)


class InMemoryEventClaims(EventClaimStore):
    """Claims for tests and single-process runs."""

    def __init__(self, processed_ttl_seconds: int = 86400 * 7):
        self.processed_ttl_seconds = processed_ttl_seconds
        self._processed: Dict[str, float] = {}
        self._claims: Dict[str, str] = {}
        self._mutex = asyncio.Lock()

    async def is_processed(self, key: str) -> bool:
        expires_at = self._processed.get(key)
        if expires_at is None:
            return False
        if expires_at < time.monotonic():
            del self._processed[key]
            return False
        return True

    async def try_acquire(self, key: str) -> Optional[str]:
        async with self._mutex:
            if key in self._claims:
                return None
            token = uuid.uuid4().hex
            self._claims[key] = token
            return token

    async def mark_processed(self, key: str) -> None:
        self._processed[key] = time.monotonic() + self.processed_ttl_seconds

    async def release(self, key: str, token: str) -> None:
        async with self._mutex:
            if self._claims.get(key) == token:
                del self._claims[key]

    def held(self) -> Tuple[str, ...]:
        return tuple(self._claims)


class RedisEventClaims(EventClaimStore):
    """
    Claims stored in Redis.

    Keys:
    - ``webhook:claim:{key}``: claim token, SET NX with a TTL
    - ``webhook:processed:{key}``: processed marker, SETEX

    When Redis is unreachable the event is processed anyway rather than lost;
    the ledger's monotonic transitions keep a double application harmless.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        claim_ttl_seconds: int = 60,
        processed_ttl_seconds: int = 86400 * 7,
    ):
        self.redis_client = redis_client
        self.claim_ttl_seconds = claim_ttl_seconds
        self.processed_ttl_seconds = processed_ttl_seconds

    @staticmethod
    def _claim_key(key: str) -> str:
        return f"webhook:claim:{key}"

    @staticmethod
    def _processed_key(key: str) -> str:
        return f"webhook:processed:{key}"

    async def is_processed(self, key: str) -> bool:
        try:
            return bool(await self.redis_client.exists(self._processed_key(key)))
        except RedisError as e:
            logger.warning("webhook_dedup_check_error", error=str(e), claim_key=key)
            return False

    async def try_acquire(self, key: str) -> Optional[str]:
        token = uuid.uuid4().hex
        try:
            acquired = await self.redis_client.set(
                self._claim_key(key), token, nx=True, ex=self.claim_ttl_seconds
            )
        except RedisError as e:
            logger.warning("webhook_claim_error", error=str(e), claim_key=key)
            return token
        return token if acquired else None

    async def mark_processed(self, key: str) -> None:
        try:
            await self.redis_client.setex(self._processed_key(key), self.processed_ttl_seconds, "1")
            logger.info("webhook_marked_processed", claim_key=key)
        except RedisError as e:
            logger.warning("webhook_mark_processed_error", error=str(e), claim_key=key)

    async def release(self, key: str, token: str) -> None:
        try:
            await self.redis_client.eval(RELEASE_SCRIPT, 1, self._claim_key(key), token)
        except RedisError as e:
            logger.warning("webhook_claim_release_error", error=str(e), claim_key=key)
