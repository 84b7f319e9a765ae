"""
Tests for webhook event claims.
"""
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from order_engine.core.idempotency import InMemoryEventClaims, RedisEventClaims
from order_engine.domain.exceptions import ConflictError


class TestInMemoryEventClaims:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_claim_processes_then_duplicates(self) -> None:
        claims = InMemoryEventClaims()

        async with claims.claim("stripe:evt_1") as duplicate:
            assert duplicate is False
        async with claims.claim("stripe:evt_1") as duplicate:
            assert duplicate is True

        assert await claims.is_processed("stripe:evt_1")
        assert claims.held() == ()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_contended_claim_conflicts(self) -> None:
        claims = InMemoryEventClaims()
        token = await claims.try_acquire("stripe:evt_1")

        with pytest.raises(ConflictError):
            async with claims.claim("stripe:evt_1"):
                pass

        await claims.release("stripe:evt_1", token)
        async with claims.claim("stripe:evt_1") as duplicate:
            assert duplicate is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_leaves_event_unprocessed(self) -> None:
        """Test a failed body releases the claim without marking the event."""
        claims = InMemoryEventClaims()

        with pytest.raises(RuntimeError):
            async with claims.claim("stripe:evt_1"):
                raise RuntimeError("ledger down")

        assert not await claims.is_processed("stripe:evt_1")
        assert claims.held() == ()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_needs_the_owner_token(self) -> None:
        claims = InMemoryEventClaims()
        await claims.try_acquire("k")
        await claims.release("k", "someone-else")
        assert claims.held() == ("k",)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processed_marker_expires(self) -> None:
        claims = InMemoryEventClaims(processed_ttl_seconds=-1)
        await claims.mark_processed("k")
        assert not await claims.is_processed("k")


class TestRedisEventClaims:
    @pytest.fixture
    def redis_client(self) -> AsyncMock:
        client = AsyncMock()
        client.exists.return_value = 0
        client.set.return_value = True
        return client

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_uses_set_nx_and_marks_processed(self, redis_client) -> None:
        claims = RedisEventClaims(redis_client, claim_ttl_seconds=30, processed_ttl_seconds=3600)

        async with claims.claim("stripe:evt_1") as duplicate:
            assert duplicate is False

        set_call = redis_client.set.call_args
        assert set_call.args[0] == "webhook:claim:stripe:evt_1"
        assert set_call.kwargs == {"nx": True, "ex": 30}
        redis_client.setex.assert_awaited_once_with("webhook:processed:stripe:evt_1", 3600, "1")
        token = set_call.args[1]
        assert redis_client.eval.call_args.args[1:] == (1, "webhook:claim:stripe:evt_1", token)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processed_event_is_duplicate(self, redis_client) -> None:
        redis_client.exists.return_value = 1
        claims = RedisEventClaims(redis_client)

        async with claims.claim("stripe:evt_1") as duplicate:
            assert duplicate is True
        redis_client.set.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_held_claim_conflicts(self, redis_client) -> None:
        redis_client.set.return_value = None
        claims = RedisEventClaims(redis_client)

        with pytest.raises(ConflictError):
            async with claims.claim("stripe:evt_1"):
                pass
        redis_client.setex.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_processes_anyway(self, redis_client) -> None:
        """Test an unreachable Redis degrades to processing rather than dropping the event."""
        redis_client.exists.side_effect = RedisConnectionError("down")
        redis_client.set.side_effect = RedisConnectionError("down")
        redis_client.setex.side_effect = RedisConnectionError("down")
        redis_client.eval.side_effect = RedisConnectionError("down")
        claims = RedisEventClaims(redis_client)

        async with claims.claim("stripe:evt_1") as duplicate:
            assert duplicate is False
