"""
Expiration manager: TTL, phantom copies and expiration events.

An entity saved with a positive time-to-live gets
- EXPIRE on its primary key `keyspace:id`
- a phantom copy `keyspace:id:phantom` expiring `grace` seconds later

When the store notifies that a primary key expired, its content is gone.
The phantom still holds the last state, so the manager can remove the
index entries derived from it, drop the id from the keyspace set and
publish a KeyExpiredEvent carrying the expired object.

State per entity:
    NoTTL -> TTLSet -> (renewed -> TTLSet | expired -> PhantomActive -> PhantomGone)

Invariants:
    - A phantom exists iff the entity currently has a positive TTL
    - The manager never deletes a phantom on expiry; it expires on its own
    - A missing phantom means no event and no index cleanup
    - Callback failures are logged and never stop other callbacks
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import KvMapError
from ..index.maintainer import IndexMaintainer
from ..mapping.converter import HashConverter
from ..mapping.registry import PersistentEntity, TypeRegistry
from ..store.base import KeyValueStore

if TYPE_CHECKING:
    from .listener import KeyExpirationListener

logger = logging.getLogger(__name__)

PHANTOM_SUFFIX = ":phantom"
DEFAULT_GRACE_SECONDS = 300


@dataclass(frozen=True)
class KeyExpiredEvent:
    """Published when a stored entity expired.

    Attributes:
        key: Expired primary key (`keyspace:id`)
        keyspace: Keyspace of the entity
        id: Entity id
        value: Last stored state read from the phantom (None if unreadable)
    """

    key: str
    keyspace: str
    id: str
    value: Any


ExpirationCallback = Callable[[KeyExpiredEvent], Any]
HashReader = Callable[[Mapping, type], Awaitable[Any]]


def phantom_key(key: str) -> str:
    """Phantom key of a primary key."""
    return key + PHANTOM_SUFFIX


def is_phantom_key(key: str) -> bool:
    return key.endswith(PHANTOM_SUFFIX)


class ExpirationManager:
    """Applies TTLs, keeps phantoms in step and publishes expirations.

    Attributes:
        grace_seconds: Extra lifetime of a phantom after its primary

    Example:
        >>> manager = ExpirationManager(registry, store, converter, indexes)
        >>> manager.register_callback(lambda event: print(event.key))
    """

    def __init__(
        self,
        registry: TypeRegistry,
        store: KeyValueStore,
        converter: HashConverter,
        indexes: IndexMaintainer,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self.registry = registry
        self.store = store
        self.converter = converter
        self.indexes = indexes
        self.grace_seconds = grace_seconds
        self.listener: Optional[KeyExpirationListener] = None
        self.reader: Optional[HashReader] = None
        self._callbacks: List[ExpirationCallback] = []
        self._published = 0

    # Wiring

    def attach_listener(self, listener: KeyExpirationListener) -> None:
        """Listener started on demand by the first expiring save."""
        self.listener = listener

    def register_callback(self, callback: ExpirationCallback) -> None:
        """Register a sync or async callback for KeyExpiredEvent."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: ExpirationCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    # Write side

    async def apply(
        self,
        meta: PersistentEntity,
        entity_id: str,
        ttl: Optional[int],
        fields: Optional[Dict[str, bytes]] = None,
    ) -> None:
        """Apply the effective TTL of a just-written entity.

        Args:
            meta: Entity metadata
            entity_id: Entity id
            ttl: Effective TTL in seconds; None or <= 0 means no expiry
            fields: Hash content for the phantom (read back when omitted)
        """
        key = meta.key_for(entity_id)
        phantom = phantom_key(key)

        if ttl is None or ttl <= 0:
            await self.store.persist(key)
            await self.store.delete(phantom)
            return

        await self.store.expire(key, ttl)
        if fields is None:
            fields = await self.store.hgetall(key)
        await self.store.delete(phantom)
        if fields:
            await self.store.hset(phantom, fields)
            await self.store.expire(phantom, ttl + self.grace_seconds)

        logger.debug(
            "Expiration applied",
            extra={"key": key, "ttl": ttl, "phantom_ttl": ttl + self.grace_seconds},
        )
        if self.listener is not None:
            await self.listener.start_on_demand()

    async def mirror(
        self,
        meta: PersistentEntity,
        entity_id: str,
        written: Mapping[str, bytes],
        removed: List[str],
    ) -> None:
        """Apply partial field changes to an existing phantom."""
        phantom = phantom_key(meta.key_for(entity_id))
        if not await self.store.exists(phantom):
            return
        if removed:
            await self.store.hdel(phantom, *removed)
        if written:
            await self.store.hset(phantom, dict(written))

    async def discard(self, meta: PersistentEntity, entity_id: str) -> None:
        """Remove the phantom of a deleted entity."""
        await self.store.delete(phantom_key(meta.key_for(entity_id)))

    # Expiry side

    def split_key(self, key: str) -> Optional[Tuple[PersistentEntity, str]]:
        """Resolve a primary key to (entity metadata, id), None if unknown."""
        position = key.find(":")
        while position != -1:
            meta = self.registry.get_by_keyspace(key[:position])
            if meta is not None and position + 1 < len(key):
                return meta, key[position + 1:]
            position = key.find(":", position + 1)
        return None

    async def on_expired(self, key: str) -> Optional[KeyExpiredEvent]:
        """Handle an expired-key notification.

        Returns:
            The published event, or None when the key was ignored
        """
        if is_phantom_key(key):
            return None
        resolved = self.split_key(key)
        if resolved is None:
            logger.debug(f"Ignoring expiration of unmapped key {key}")
            return None
        meta, entity_id = resolved

        if await self.store.exists(key):
            logger.debug(
                "Expired key was written again; skipping event",
                extra={"key": key, "keyspace": meta.keyspace},
            )
            return None

        raw = await self.store.hgetall(phantom_key(key))
        if not raw:
            logger.debug(
                "No phantom for expired key; skipping event",
                extra={"key": key, "keyspace": meta.keyspace},
            )
            return None

        entries = self.indexes.indexes_from_hash(meta.entity_type, raw)
        await self.indexes.remove_all(meta.keyspace, entity_id, entries)
        await self.store.srem(meta.keyspace, entity_id)

        value = await self._read(raw, meta)
        event = KeyExpiredEvent(key=key, keyspace=meta.keyspace, id=entity_id, value=value)
        await self.publish(event)
        logger.info(
            "Entity expired",
            extra={"key": key, "keyspace": meta.keyspace, "indexes_removed": len(entries)},
        )
        return event

    async def _read(self, raw: Mapping, meta: PersistentEntity) -> Any:
        try:
            if self.reader is not None:
                return await self.reader(raw, meta.entity_type)
            return self.converter.read(raw, meta.entity_type)
        except KvMapError as e:
            logger.warning(
                f"Cannot read phantom of expired entity: {e}",
                extra={"keyspace": meta.keyspace},
            )
            return None

    async def publish(self, event: KeyExpiredEvent) -> None:
        """Deliver an event to every registered callback."""
        self._published += 1
        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Expiration callback failed: {e}", exc_info=True)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "callbacks": len(self._callbacks),
            "published": self._published,
            "grace_seconds": self.grace_seconds,
        }
