"""
Key-value store abstraction for kvmap.

This module provides a pluggable store interface supporting:
- Redis (redis.asyncio, production)
- In-memory (tests and local development)

Invariants:
    - Both backends expose the same command surface and TTL semantics
    - Client errors surface as StoreError

How to change safely:
    - New backends must implement the KeyValueStore protocol
    - Keep the in-memory backend in step with Redis behaviour
"""

from .base import (
    DistanceUnit,
    KeyspaceMessage,
    KeyValueStore,
    StoreConnectionError,
    StoreError,
    Subscription,
    create_store,
)
from .memory import InMemoryKeyValueStore
from .redis import RedisKeyValueStore

__all__ = [
    # Protocol and types
    "KeyValueStore",
    "Subscription",
    "KeyspaceMessage",
    "DistanceUnit",
    "StoreError",
    "StoreConnectionError",
    # Factory
    "create_store",
    # Implementations
    "RedisKeyValueStore",
    "InMemoryKeyValueStore",
]
