"""
Unit tests for the Redis store backend with a mocked client.

Tests cover:
- Connection check and error wrapping
- Command argument shapes
- Pub/sub message translation
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from kvmap.kvmap_engine.config import RedisConfig
from kvmap.kvmap_engine.store.base import DistanceUnit, StoreConnectionError, StoreError
from kvmap.kvmap_engine.store.redis import RedisKeyValueStore, RedisSubscription


class FakePubSub:
    """Pub/sub double yielding canned messages."""

    def __init__(self, messages):
        self.messages = messages
        self.punsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message


class TestRedisKeyValueStore:
    """Tests for RedisKeyValueStore."""

    @pytest.fixture
    def client(self):
        return AsyncMock()

    @pytest.fixture
    def store(self, client):
        return RedisKeyValueStore(RedisConfig(), client=client)

    @pytest.mark.asyncio
    async def test_connect_pings(self, store, client):
        """Test connect verifies the server."""
        await store.connect()
        client.ping.assert_awaited_once()
        assert store.is_connected

    @pytest.mark.asyncio
    async def test_connect_failure(self, store, client):
        """Test connection failures are wrapped."""
        client.ping.side_effect = RedisConnectionError("refused")
        with pytest.raises(StoreConnectionError):
            await store.connect()
        assert not store.is_connected

    @pytest.mark.asyncio
    async def test_command_errors_wrapped(self, store, client):
        """Test server errors become StoreError."""
        client.hgetall.side_effect = ResponseError("WRONGTYPE")
        with pytest.raises(StoreError):
            await store.hgetall("k")

    @pytest.mark.asyncio
    async def test_hset_uses_mapping(self, store, client):
        """Test hset sends a mapping and skips empty writes."""
        client.hset.return_value = 1
        await store.hset("k", {"a": b"1"})
        client.hset.assert_awaited_once_with("k", mapping={"a": b"1"})

        assert await store.hset("k", {}) == 0
        assert client.hset.await_count == 1

    @pytest.mark.asyncio
    async def test_geosearch_radius(self, store, client):
        """Test radius searches are sorted nearest first."""
        client.geosearch.return_value = [b"oslo"]

        hits = await store.geosearch_radius("g", 10.7, 59.9, 5, DistanceUnit.KILOMETERS)

        assert hits == [b"oslo"]
        client.geosearch.assert_awaited_once_with(
            "g", longitude=10.7, latitude=59.9, radius=5, unit="km", sort="ASC"
        )

    @pytest.mark.asyncio
    async def test_georem_uses_zrem(self, store, client):
        """Test geo members are removed from the sorted set."""
        client.zrem.return_value = 1
        assert await store.georem("g", "oslo") == 1
        client.zrem.assert_awaited_once_with("g", "oslo")

    @pytest.mark.asyncio
    async def test_config_get_decodes(self, store, client):
        """Test CONFIG GET results are decoded to str."""
        client.config_get.return_value = {b"notify-keyspace-events": b"Ex"}
        assert await store.config_get("notify-keyspace-events") == {"notify-keyspace-events": "Ex"}

    @pytest.mark.asyncio
    async def test_psubscribe(self, store, client):
        """Test subscriptions use a dedicated pub/sub connection."""
        pubsub = FakePubSub([])
        pubsub.psubscribe = AsyncMock()
        client.pubsub = MagicMock(return_value=pubsub)

        subscription = await store.psubscribe("__keyevent@*__:expired")

        client.pubsub.assert_called_once_with(ignore_subscribe_messages=True)
        pubsub.psubscribe.assert_awaited_once_with("__keyevent@*__:expired")
        assert subscription.pattern == "__keyevent@*__:expired"


class TestRedisSubscription:
    """Tests for RedisSubscription."""

    @pytest.mark.asyncio
    async def test_translates_pmessages(self):
        """Test only pmessages are yielded, as KeyspaceMessage."""
        pubsub = FakePubSub(
            [
                {"type": "psubscribe", "pattern": None, "channel": b"x", "data": 1},
                {
                    "type": "pmessage",
                    "pattern": b"__keyevent@*__:expired",
                    "channel": b"__keyevent@0__:expired",
                    "data": b"persons:1",
                },
            ]
        )
        subscription = RedisSubscription(pubsub, "__keyevent@*__:expired")

        messages = [m async for m in subscription.listen()]

        assert len(messages) == 1
        assert messages[0].key == "persons:1"
        assert messages[0].channel == "__keyevent@0__:expired"

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        """Test close unsubscribes once."""
        pubsub = FakePubSub([])
        subscription = RedisSubscription(pubsub, "p")

        await subscription.close()
        await subscription.close()

        pubsub.punsubscribe.assert_awaited_once_with("p")
        pubsub.aclose.assert_awaited_once()
