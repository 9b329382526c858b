"""
Tests for the shared Redis client and the global event publisher.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from railway_orchestrator import redis_client
from railway_orchestrator.services.deployment import events


@pytest.fixture(autouse=True)
def reset_globals():
    redis_client._client = None
    events._event_publisher = None
    yield
    redis_client._client = None
    events._event_publisher = None


@pytest.mark.unit
class TestRedisClient:

    def test_client_is_created_once(self):
        fake = MagicMock()
        with patch("railway_orchestrator.redis_client.Redis.from_url", return_value=fake) as from_url:
            first = redis_client.get_redis_client("redis://broker:6379/2")
            second = redis_client.get_redis_client()

        assert first is second is fake
        from_url.assert_called_once_with("redis://broker:6379/2", decode_responses=True)

    @pytest.mark.asyncio
    async def test_health_check(self):
        fake = MagicMock()
        fake.ping = AsyncMock(return_value=True)
        redis_client._client = fake

        assert await redis_client.check_redis_health() is True

    @pytest.mark.asyncio
    async def test_health_check_failure_returns_false(self):
        fake = MagicMock()
        fake.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        redis_client._client = fake

        assert await redis_client.check_redis_health() is False

    @pytest.mark.asyncio
    async def test_close(self):
        fake = MagicMock()
        fake.aclose = AsyncMock()
        redis_client._client = fake

        await redis_client.close_redis_client()

        fake.aclose.assert_awaited_once()
        assert redis_client._client is None


@pytest.mark.unit
class TestGlobalPublisher:

    @pytest.mark.asyncio
    async def test_publisher_uses_shared_client_and_channel(self):
        fake = MagicMock()
        fake.publish = AsyncMock(return_value=1)
        redis_client._client = fake

        publisher = events.get_event_publisher()
        await publisher.publish_deployment_status("ws-1", "p", "s", "api", "queued")

        assert events.get_event_publisher() is publisher
        assert fake.publish.call_args.args[0] == "deployment:events"
