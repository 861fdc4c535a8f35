"""
Base protocol and types for the key-value store abstraction.

This module defines the KeyValueStore protocol that all backends must
implement, along with the pub/sub message type and the store error
family.

Values cross the protocol as bytes. Keys, field names and set members
may be passed as str; backends return them as bytes.

Invariants:
    - Every backend exposes the same command surface and TTL semantics
    - ttl() returns -2 for a missing key and -1 for a key without expiry
    - Backend client errors surface as StoreError (raise ... from e)

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the in-memory backend in step with Redis behaviour
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Union,
    runtime_checkable,
    TYPE_CHECKING,
)

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)

KeyT = Union[str, bytes]


class StoreError(Exception):
    """Base exception for store operations."""
    pass


class StoreConnectionError(StoreError):
    """Connection to the store backend failed."""
    pass


class DistanceUnit(Enum):
    """Distance units accepted by geo searches."""

    METERS = "m"
    KILOMETERS = "km"
    MILES = "mi"
    FEET = "ft"

    @property
    def meters(self) -> float:
        """Length of one unit in meters."""
        return _UNIT_METERS[self]


_UNIT_METERS = {
    DistanceUnit.METERS: 1.0,
    DistanceUnit.KILOMETERS: 1000.0,
    DistanceUnit.MILES: 1609.34,
    DistanceUnit.FEET: 0.3048,
}


@dataclass(frozen=True)
class KeyspaceMessage:
    """A message delivered to a pattern subscription.

    Attributes:
        pattern: Subscribed pattern that matched
        channel: Channel the message was published on
        data: Payload (for keyevent notifications, the affected key)
    """
    pattern: str
    channel: str
    data: bytes

    @property
    def key(self) -> str:
        """Payload decoded as a key name."""
        return self.data.decode("utf-8")


@runtime_checkable
class Subscription(Protocol):
    """An open pattern subscription."""

    @abstractmethod
    def listen(self) -> AsyncIterator[KeyspaceMessage]:
        """Iterate over messages until the subscription is closed."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Unsubscribe and release the connection."""
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for key-value store backends.

    The command surface mirrors the Redis commands the engine needs:
    hashes, sets, geo structures, expiry, CONFIG and pattern pub/sub.

    Example:
        >>> store = RedisKeyValueStore(config.redis)
        >>> await store.connect()
        >>> await store.hset("persons:1", {"name": b"rand"})
        >>> await store.hgetall("persons:1")
        {b'name': b'rand'}
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StoreConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    # Hashes

    @abstractmethod
    async def hgetall(self, key: KeyT) -> Dict[bytes, bytes]:
        """All fields of a hash (empty dict when missing)."""
        ...

    @abstractmethod
    async def hkeys(self, key: KeyT) -> List[bytes]:
        """Field names of a hash."""
        ...

    @abstractmethod
    async def hmget(self, key: KeyT, fields: Iterable[KeyT]) -> List[Optional[bytes]]:
        """Values of the given fields, None where absent."""
        ...

    @abstractmethod
    async def hset(self, key: KeyT, mapping: Mapping[KeyT, bytes]) -> int:
        """Set hash fields; returns the number of new fields."""
        ...

    @abstractmethod
    async def hdel(self, key: KeyT, *fields: KeyT) -> int:
        """Delete hash fields; returns the number removed."""
        ...

    # Keys

    @abstractmethod
    async def delete(self, *keys: KeyT) -> int:
        """Delete keys of any type; returns the number removed."""
        ...

    @abstractmethod
    async def exists(self, key: KeyT) -> bool:
        """Whether a key exists."""
        ...

    @abstractmethod
    async def expire(self, key: KeyT, seconds: int) -> bool:
        """Set a time-to-live; False if the key does not exist."""
        ...

    @abstractmethod
    async def persist(self, key: KeyT) -> bool:
        """Remove a time-to-live; True if one was removed."""
        ...

    @abstractmethod
    async def ttl(self, key: KeyT) -> int:
        """Remaining seconds, -1 without expiry, -2 when missing."""
        ...

    # Sets

    @abstractmethod
    async def sadd(self, key: KeyT, *members: KeyT) -> int:
        ...

    @abstractmethod
    async def srem(self, key: KeyT, *members: KeyT) -> int:
        ...

    @abstractmethod
    async def smembers(self, key: KeyT) -> Set[bytes]:
        ...

    @abstractmethod
    async def sinter(self, *keys: KeyT) -> Set[bytes]:
        ...

    @abstractmethod
    async def sunion(self, *keys: KeyT) -> Set[bytes]:
        ...

    @abstractmethod
    async def scard(self, key: KeyT) -> int:
        ...

    # Geo

    @abstractmethod
    async def geoadd(self, key: KeyT, longitude: float, latitude: float, member: KeyT) -> int:
        """Add or move a member of a geo structure."""
        ...

    @abstractmethod
    async def georem(self, key: KeyT, *members: KeyT) -> int:
        """Remove members from a geo structure."""
        ...

    @abstractmethod
    async def geosearch_radius(
        self,
        key: KeyT,
        longitude: float,
        latitude: float,
        radius: float,
        unit: DistanceUnit = DistanceUnit.METERS,
    ) -> List[bytes]:
        """Members within radius of a point."""
        ...

    @abstractmethod
    async def geosearch_box(
        self,
        key: KeyT,
        longitude: float,
        latitude: float,
        width: float,
        height: float,
        unit: DistanceUnit = DistanceUnit.METERS,
    ) -> List[bytes]:
        """Members within a width x height box centred on a point."""
        ...

    # Server

    @abstractmethod
    async def config_get(self, parameter: str) -> Dict[str, str]:
        """Read a server configuration parameter.

        Raises:
            StoreError: If the server refuses CONFIG
        """
        ...

    @abstractmethod
    async def config_set(self, parameter: str, value: str) -> None:
        """Write a server configuration parameter.

        Raises:
            StoreError: If the server refuses CONFIG
        """
        ...

    @abstractmethod
    async def psubscribe(self, pattern: str) -> Subscription:
        """Open a pattern subscription."""
        ...


def to_bytes(value: Any) -> bytes:
    """Normalise a key, field or member to bytes."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return str(value).encode("utf-8")


def create_store(config: "EngineConfig") -> KeyValueStore:
    """Factory function to create a store from configuration.

    Args:
        config: Engine configuration

    Returns:
        Appropriate KeyValueStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryKeyValueStore
    from .redis import RedisKeyValueStore

    if config.store_backend == StoreBackend.REDIS:
        return RedisKeyValueStore(config.redis)
    elif config.store_backend == StoreBackend.MEMORY:
        return InMemoryKeyValueStore()
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
