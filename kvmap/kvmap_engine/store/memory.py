"""
In-memory key-value store implementation for testing.

This module provides an in-memory KeyValueStore backend for:
- Unit tests
- Integration tests (expiration flows included)
- Local development without a Redis server

It simulates the Redis behaviour the engine relies on: hashes, sets
and geo structures, per-key expiry, CONFIG notify-keyspace-events and
`__keyevent@0__:expired` pattern notifications.

Invariants:
    - All data is lost on process exit
    - Time comes from an injectable clock plus a manual offset
    - Expired keys are removed lazily on access or by advance()
    - Expired notifications are published only when notify-keyspace-events
      enables them, exactly like Redis

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep return shapes identical to RedisKeyValueStore
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import math
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .base import (
    DistanceUnit,
    KeyspaceMessage,
    KeyT,
    StoreConnectionError,
    StoreError,
    to_bytes,
)

logger = logging.getLogger(__name__)

# Earth radius used by Redis geo commands
EARTH_RADIUS_METERS = 6372797.560856

EXPIRED_CHANNEL = "__keyevent@0__:expired"

_CLOSED = object()


def haversine(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


class InMemorySubscription:
    """Pattern subscription fed by the in-memory store."""

    def __init__(self, store: InMemoryKeyValueStore, pattern: str) -> None:
        self._store = store
        self.pattern = pattern
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def matches(self, channel: str) -> bool:
        return fnmatch.fnmatchcase(channel, self.pattern)

    def deliver(self, message: KeyspaceMessage) -> None:
        if not self._closed:
            self._queue.put_nowait(message)

    async def listen(self) -> AsyncIterator[KeyspaceMessage]:
        while not self._closed:
            message = await self._queue.get()
            if message is _CLOSED:
                return
            yield message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._subscriptions.discard(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryKeyValueStore:
    """In-memory implementation of KeyValueStore for testing.

    Attributes:
        config: Simulated server configuration (CONFIG GET/SET)
        refuse_config: Simulate a managed server that rejects CONFIG

    Example:
        >>> store = InMemoryKeyValueStore()
        >>> await store.connect()
        >>> await store.hset("persons:1", {"name": b"rand"})
        >>> await store.expire("persons:1", 10)
        >>> store.advance(11)
        >>> await store.exists("persons:1")
        False
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        refuse_config: bool = False,
    ) -> None:
        """Initialize in-memory store.

        Args:
            clock: Time source in seconds (defaults to time.monotonic)
            refuse_config: Make CONFIG GET/SET fail like managed Redis
        """
        self._clock = clock or time.monotonic
        self._offset = 0.0
        self._data: Dict[bytes, Any] = {}
        self._expiry: Dict[bytes, float] = {}
        self._subscriptions: Set[InMemorySubscription] = set()
        self._connected = False
        self.refuse_config = refuse_config
        self.config: Dict[str, str] = {"notify-keyspace-events": ""}

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryKeyValueStore connected")

    async def close(self) -> None:
        """Close subscriptions and clear all data."""
        for subscription in list(self._subscriptions):
            await subscription.close()
        self._connected = False
        self._data.clear()
        self._expiry.clear()
        logger.debug("InMemoryKeyValueStore closed")

    # Internals

    def now(self) -> float:
        """Current simulated time in seconds."""
        return self._clock() + self._offset

    def _check(self) -> None:
        if not self._connected:
            raise StoreConnectionError("Not connected")

    def _live(self, key: bytes) -> Any:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self.now():
            self._expire_key(key)
        return self._data.get(key)

    def _expire_key(self, key: bytes) -> None:
        self._expiry.pop(key, None)
        if self._data.pop(key, None) is None:
            return
        logger.debug("Key expired", extra={"key": key.decode("utf-8", "replace")})
        if self._notifications_enabled():
            self._publish(EXPIRED_CHANNEL, key)

    def _notifications_enabled(self) -> bool:
        flags = self.config.get("notify-keyspace-events", "")
        return ("E" in flags) and ("x" in flags or "A" in flags)

    def _publish(self, channel: str, data: bytes) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(channel):
                subscription.deliver(
                    KeyspaceMessage(pattern=subscription.pattern, channel=channel, data=data)
                )

    def _typed(self, key: KeyT, kind: type, create: bool = False) -> Any:
        self._check()
        raw_key = to_bytes(key)
        value = self._live(raw_key)
        if value is None:
            if not create:
                return None
            value = kind()
            self._data[raw_key] = value
        elif not isinstance(value, kind):
            raise StoreError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def _drop_if_empty(self, key: KeyT) -> None:
        raw_key = to_bytes(key)
        if not self._data.get(raw_key):
            self._data.pop(raw_key, None)
            self._expiry.pop(raw_key, None)

    # Hashes

    async def hgetall(self, key: KeyT) -> Dict[bytes, bytes]:
        value = self._typed(key, _Hash)
        return dict(value) if value else {}

    async def hkeys(self, key: KeyT) -> List[bytes]:
        value = self._typed(key, _Hash)
        return list(value) if value else []

    async def hmget(self, key: KeyT, fields: Iterable[KeyT]) -> List[Optional[bytes]]:
        value = self._typed(key, _Hash) or {}
        return [value.get(to_bytes(f)) for f in fields]

    async def hset(self, key: KeyT, mapping: Mapping[KeyT, bytes]) -> int:
        if not mapping:
            return 0
        value = self._typed(key, _Hash, create=True)
        added = 0
        for field, item in mapping.items():
            raw_field = to_bytes(field)
            if raw_field not in value:
                added += 1
            value[raw_field] = to_bytes(item)
        return added

    async def hdel(self, key: KeyT, *fields: KeyT) -> int:
        value = self._typed(key, _Hash)
        if not value:
            return 0
        removed = 0
        for field in fields:
            if value.pop(to_bytes(field), None) is not None:
                removed += 1
        self._drop_if_empty(key)
        return removed

    # Keys

    async def delete(self, *keys: KeyT) -> int:
        self._check()
        removed = 0
        for key in keys:
            raw_key = to_bytes(key)
            if self._live(raw_key) is not None:
                removed += 1
            self._data.pop(raw_key, None)
            self._expiry.pop(raw_key, None)
        return removed

    async def exists(self, key: KeyT) -> bool:
        self._check()
        return self._live(to_bytes(key)) is not None

    async def expire(self, key: KeyT, seconds: int) -> bool:
        self._check()
        raw_key = to_bytes(key)
        if self._live(raw_key) is None:
            return False
        if seconds <= 0:
            self._expire_key(raw_key)
            return True
        self._expiry[raw_key] = self.now() + seconds
        return True

    async def persist(self, key: KeyT) -> bool:
        self._check()
        raw_key = to_bytes(key)
        if self._live(raw_key) is None:
            return False
        return self._expiry.pop(raw_key, None) is not None

    async def ttl(self, key: KeyT) -> int:
        self._check()
        raw_key = to_bytes(key)
        if self._live(raw_key) is None:
            return -2
        deadline = self._expiry.get(raw_key)
        if deadline is None:
            return -1
        return int(deadline - self.now() + 0.5)

    # Sets

    async def sadd(self, key: KeyT, *members: KeyT) -> int:
        if not members:
            return 0
        value = self._typed(key, _Set, create=True)
        before = len(value)
        value.update(to_bytes(m) for m in members)
        return len(value) - before

    async def srem(self, key: KeyT, *members: KeyT) -> int:
        value = self._typed(key, _Set)
        if not value:
            return 0
        before = len(value)
        value.difference_update(to_bytes(m) for m in members)
        removed = before - len(value)
        self._drop_if_empty(key)
        return removed

    async def smembers(self, key: KeyT) -> Set[bytes]:
        value = self._typed(key, _Set)
        return set(value) if value else set()

    async def sinter(self, *keys: KeyT) -> Set[bytes]:
        if not keys:
            return set()
        result = await self.smembers(keys[0])
        for key in keys[1:]:
            result &= await self.smembers(key)
        return result

    async def sunion(self, *keys: KeyT) -> Set[bytes]:
        result: Set[bytes] = set()
        for key in keys:
            result |= await self.smembers(key)
        return result

    async def scard(self, key: KeyT) -> int:
        value = self._typed(key, _Set)
        return len(value) if value else 0

    # Geo

    async def geoadd(self, key: KeyT, longitude: float, latitude: float, member: KeyT) -> int:
        if not (-180.0 <= longitude <= 180.0 and -85.05112878 <= latitude <= 85.05112878):
            raise StoreError(f"ERR invalid longitude,latitude pair {longitude},{latitude}")
        value = self._typed(key, _Geo, create=True)
        raw_member = to_bytes(member)
        added = 0 if raw_member in value else 1
        value[raw_member] = (float(longitude), float(latitude))
        return added

    async def georem(self, key: KeyT, *members: KeyT) -> int:
        value = self._typed(key, _Geo)
        if not value:
            return 0
        removed = 0
        for member in members:
            if value.pop(to_bytes(member), None) is not None:
                removed += 1
        self._drop_if_empty(key)
        return removed

    async def geosearch_radius(
        self,
        key: KeyT,
        longitude: float,
        latitude: float,
        radius: float,
        unit: DistanceUnit = DistanceUnit.METERS,
    ) -> List[bytes]:
        limit = radius * unit.meters
        hits = [
            (distance, member)
            for member, distance in self._distances(key, longitude, latitude)
            if distance <= limit
        ]
        return [member for _, member in sorted(hits)]

    async def geosearch_box(
        self,
        key: KeyT,
        longitude: float,
        latitude: float,
        width: float,
        height: float,
        unit: DistanceUnit = DistanceUnit.METERS,
    ) -> List[bytes]:
        half_width = width * unit.meters / 2
        half_height = height * unit.meters / 2
        value = self._typed(key, _Geo) or {}
        hits = []
        for member, (lon, lat) in value.items():
            dy = EARTH_RADIUS_METERS * math.radians(abs(lat - latitude))
            dx = haversine(longitude, lat, lon, lat)
            if dx <= half_width and dy <= half_height:
                hits.append((haversine(longitude, latitude, lon, lat), member))
        return [member for _, member in sorted(hits)]

    def _distances(self, key: KeyT, longitude: float, latitude: float) -> List[Tuple[bytes, float]]:
        value = self._typed(key, _Geo) or {}
        return [
            (member, haversine(longitude, latitude, lon, lat))
            for member, (lon, lat) in value.items()
        ]

    # Server

    async def config_get(self, parameter: str) -> Dict[str, str]:
        self._check()
        if self.refuse_config:
            raise StoreError("ERR unknown command 'CONFIG'")
        return {k: v for k, v in self.config.items() if fnmatch.fnmatchcase(k, parameter)}

    async def config_set(self, parameter: str, value: str) -> None:
        self._check()
        if self.refuse_config:
            raise StoreError("ERR unknown command 'CONFIG'")
        self.config[parameter] = value

    async def psubscribe(self, pattern: str) -> InMemorySubscription:
        self._check()
        subscription = InMemorySubscription(self, pattern)
        self._subscriptions.add(subscription)
        logger.debug("Subscribed to in-memory pattern", extra={"pattern": pattern})
        return subscription

    # Testing helpers

    def advance(self, seconds: float) -> List[str]:
        """Move the clock forward and expire every key now due (testing helper).

        Returns:
            Keys that expired
        """
        self._offset += seconds
        now = self.now()
        due = sorted(k for k, deadline in self._expiry.items() if deadline <= now)
        for key in due:
            self._expire_key(key)
        return [k.decode("utf-8") for k in due]

    def expire_now(self, key: KeyT) -> bool:
        """Expire a key immediately, as if its TTL ran out (testing helper)."""
        raw_key = to_bytes(key)
        if raw_key not in self._data:
            return False
        self._expire_key(raw_key)
        return True

    def keys(self, pattern: str = "*") -> List[str]:
        """Live keys matching a glob pattern (testing helper)."""
        now = self.now()
        return sorted(
            k.decode("utf-8")
            for k in self._data
            if self._expiry.get(k, math.inf) > now
            and fnmatch.fnmatchcase(k.decode("utf-8"), pattern)
        )

    def deadline(self, key: KeyT) -> Optional[float]:
        """Absolute expiry time of a key, if any (testing helper)."""
        return self._expiry.get(to_bytes(key))


class _Hash(dict):
    pass


class _Set(set):
    pass


class _Geo(dict):
    pass
