"""
Redis store implementation.

This module provides the production backend for the KeyValueStore
protocol on top of redis-py's asyncio client. It works with:
- Redis 6.2+ (GEOSEARCH)
- Valkey
- Managed Redis services (CONFIG may be refused)

Invariants:
    - The client runs with decode_responses=False: values stay bytes
    - Client errors are wrapped into StoreError / StoreConnectionError
    - Pub/sub uses a dedicated connection per subscription

How to change safely:
    - Test against a real Redis before deploying
    - Keep return shapes identical to InMemoryKeyValueStore
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .base import (
    DistanceUnit,
    KeyspaceMessage,
    KeyT,
    StoreConnectionError,
    StoreError,
)

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisSubscription:
    """Pattern subscription on a dedicated redis pub/sub connection."""

    def __init__(self, pubsub: Any, pattern: str) -> None:
        self._pubsub = pubsub
        self.pattern = pattern
        self._closed = False

    async def listen(self) -> AsyncIterator[KeyspaceMessage]:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                data = message.get("data")
                if not isinstance(data, bytes):
                    data = _text(data).encode("utf-8")
                yield KeyspaceMessage(
                    pattern=_text(message.get("pattern") or self.pattern),
                    channel=_text(message.get("channel")),
                    data=data,
                )
        except RedisConnectionError as e:
            if self._closed:
                return
            raise StoreConnectionError(f"Subscription connection lost: {e}") from e
        except RedisError as e:
            if self._closed:
                return
            raise StoreError(f"Subscription failed: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.punsubscribe(self.pattern)
        except RedisError as e:
            logger.warning(f"Error unsubscribing from {self.pattern}: {e}")
        try:
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error closing pub/sub connection: {e}")


class RedisKeyValueStore:
    """Redis implementation of the KeyValueStore protocol.

    Attributes:
        config: RedisConfig instance with connection settings

    Example:
        >>> store = RedisKeyValueStore(RedisConfig(url="redis://localhost:6379/0"))
        >>> await store.connect()
        >>> await store.sadd("persons", "1")
    """

    def __init__(self, config: Any, client: Optional[aioredis.Redis] = None) -> None:
        """Initialize the Redis store.

        Args:
            config: RedisConfig instance
            client: Pre-built client (tests, shared pools)
        """
        self.config = config
        self._client: Optional[aioredis.Redis] = client
        self._owns_client = client is None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to Redis."""
        return self._connected and self._client is not None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise StoreConnectionError("Not connected to Redis")
        return self._client

    async def connect(self) -> None:
        """Connect to Redis and verify with PING.

        Raises:
            StoreConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            if self._client is None:
                self._client = self._build_client()
            await self._client.ping()
            self._connected = True
            logger.info(
                "Connected to Redis",
                extra={"url": self.config.safe_url, "db": self.config.db},
            )
        except RedisError as e:
            self._connected = False
            raise StoreConnectionError(f"Failed to connect to Redis: {e}") from e

    def _build_client(self) -> aioredis.Redis:
        options: Dict[str, Any] = {
            "decode_responses": False,
            "socket_timeout": self.config.socket_timeout,
            "socket_connect_timeout": self.config.socket_timeout,
        }
        if self.config.url:
            return aioredis.Redis.from_url(self.config.url, **options)
        return aioredis.Redis(
            host=self.config.host,
            port=self.config.port,
            db=self.config.db,
            username=self.config.username,
            password=self.config.password,
            ssl=self.config.ssl,
            **options,
        )

    async def close(self) -> None:
        """Close the client connection pool."""
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis client: {e}")
            self._client = None
        self._connected = False
        logger.info("Redis connection closed")

    async def _call(self, command: str, *args: Any, **kwargs: Any) -> Any:
        method = getattr(self.client, command)
        try:
            return await method(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._connected = False
            raise StoreConnectionError(f"Redis {command} failed: {e}") from e
        except RedisError as e:
            raise StoreError(f"Redis {command} failed: {e}") from e

    # Hashes

    async def hgetall(self, key: KeyT) -> Dict[bytes, bytes]:
        return await self._call("hgetall", key) or {}

    async def hkeys(self, key: KeyT) -> List[bytes]:
        return list(await self._call("hkeys", key))

    async def hmget(self, key: KeyT, fields: Iterable[KeyT]) -> List[Optional[bytes]]:
        fields = list(fields)
        if not fields:
            return []
        return list(await self._call("hmget", key, fields))

    async def hset(self, key: KeyT, mapping: Mapping[KeyT, bytes]) -> int:
        if not mapping:
            return 0
        return await self._call("hset", key, mapping=dict(mapping))

    async def hdel(self, key: KeyT, *fields: KeyT) -> int:
        if not fields:
            return 0
        return await self._call("hdel", key, *fields)

    # Keys

    async def delete(self, *keys: KeyT) -> int:
        if not keys:
            return 0
        return await self._call("delete", *keys)

    async def exists(self, key: KeyT) -> bool:
        return bool(await self._call("exists", key))

    async def expire(self, key: KeyT, seconds: int) -> bool:
        return bool(await self._call("expire", key, seconds))

    async def persist(self, key: KeyT) -> bool:
        return bool(await self._call("persist", key))

    async def ttl(self, key: KeyT) -> int:
        return int(await self._call("ttl", key))

    # Sets

    async def sadd(self, key: KeyT, *members: KeyT) -> int:
        if not members:
            return 0
        return await self._call("sadd", key, *members)

    async def srem(self, key: KeyT, *members: KeyT) -> int:
        if not members:
            return 0
        return await self._call("srem", key, *members)

    async def smembers(self, key: KeyT) -> Set[bytes]:
        return set(await self._call("smembers", key))

    async def sinter(self, *keys: KeyT) -> Set[bytes]:
        if not keys:
            return set()
        return set(await self._call("sinter", list(keys)))

    async def sunion(self, *keys: KeyT) -> Set[bytes]:
        if not keys:
            return set()
        return set(await self._call("sunion", list(keys)))

    async def scard(self, key: KeyT) -> int:
        return int(await self._call("scard", key))

    # Geo

    async def geoadd(self, key: KeyT, longitude: float, latitude: float, member: KeyT) -> int:
        return await self._call("geoadd", key, [longitude, latitude, member])

    async def georem(self, key: KeyT, *members: KeyT) -> int:
        # Geo structures are sorted sets
        if not members:
            return 0
        return await self._call("zrem", key, *members)

    async def geosearch_radius(
        self,
        key: KeyT,
        longitude: float,
        latitude: float,
        radius: float,
        unit: DistanceUnit = DistanceUnit.METERS,
    ) -> List[bytes]:
        return list(
            await self._call(
                "geosearch",
                key,
                longitude=longitude,
                latitude=latitude,
                radius=radius,
                unit=unit.value,
                sort="ASC",
            )
        )

    async def geosearch_box(
        self,
        key: KeyT,
        longitude: float,
        latitude: float,
        width: float,
        height: float,
        unit: DistanceUnit = DistanceUnit.METERS,
    ) -> List[bytes]:
        return list(
            await self._call(
                "geosearch",
                key,
                longitude=longitude,
                latitude=latitude,
                width=width,
                height=height,
                unit=unit.value,
                sort="ASC",
            )
        )

    # Server

    async def config_get(self, parameter: str) -> Dict[str, str]:
        result = await self._call("config_get", parameter)
        return {_text(k): _text(v) for k, v in (result or {}).items()}

    async def config_set(self, parameter: str, value: str) -> None:
        await self._call("config_set", parameter, value)

    async def psubscribe(self, pattern: str) -> RedisSubscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.psubscribe(pattern)
        except RedisError as e:
            raise StoreConnectionError(f"Failed to subscribe to {pattern}: {e}") from e
        logger.info("Subscribed to Redis pattern", extra={"pattern": pattern})
        return RedisSubscription(pubsub, pattern)
