"""
Hash mapping adapter: the CRUD surface over the mapping engine.

Orchestrates the converter, the index maintainer, the expiration
manager and the partial update engine so that every write path keeps
the hash, the index sets, the keyspace set and the TTL state consistent.

Persisted layout:
    keyspace:id            hash with the flattened entity
    keyspace               set of stored ids
    keyspace:path:value    simple index set
    keyspace:path          geo index
    keyspace:id:phantom    phantom copy of an expiring entity

Invariants:
    - save() is write-then-recreate: the hash is deleted and rewritten
    - Conversion happens before the first store mutation
    - Deletes are idempotent
    - Index lookups on unknown keyspaces or paths return no ids

Example:
    >>> adapter = HashMappingAdapter(registry, store)
    >>> person_id = await adapter.save(Person(firstname="rand"))
    >>> await adapter.find_by_id(Person, person_id)
    Person(id='...', firstname='rand')
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from .errors import ConfigurationError, IndexUnavailableError
from .expiry.manager import DEFAULT_GRACE_SECONDS, ExpirationManager, phantom_key
from .index.maintainer import IndexMaintainer
from .index.query import IndexQuery
from .mapping.converter import HashConverter
from .mapping.flattener import type_hints, unwrap_optional
from .mapping.registry import PersistentEntity, TypeRegistry
from .store.base import KeyValueStore
from .update.partial import PartialUpdate, PartialUpdateEngine

logger = logging.getLogger(__name__)

KeyspaceOrType = Union[str, type]


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class HashMappingAdapter:
    """Stores, loads, queries and deletes mapped entities.

    Attributes:
        registry: Entity metadata
        store: Backing key-value store
        converter: Entity <-> hash conversion
        indexes: Secondary index maintenance
        expiration: TTL, phantom and expiration events
        partial_updates: Partial update engine
    """

    def __init__(
        self,
        registry: TypeRegistry,
        store: KeyValueStore,
        converter: Optional[HashConverter] = None,
        indexes: Optional[IndexMaintainer] = None,
        expiration: Optional[ExpirationManager] = None,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
    ) -> None:
        """Initialize the adapter.

        Collaborators not passed in are built from registry and store.

        Args:
            registry: TypeRegistry with entity metadata
            store: KeyValueStore implementation
            converter: Custom HashConverter
            indexes: Custom IndexMaintainer
            expiration: Custom ExpirationManager
            grace_seconds: Phantom grace period when building the manager
        """
        self.registry = registry
        self.store = store
        self.converter = converter or HashConverter(registry)
        self.indexes = indexes or IndexMaintainer(registry, store)
        self.expiration = expiration or ExpirationManager(
            registry, store, self.converter, self.indexes, grace_seconds
        )
        # Expired events carry objects with resolved references
        if self.expiration.reader is None:
            self.expiration.reader = self._read
        self.partial_updates = PartialUpdateEngine(
            registry, store, self.converter, self.indexes, self.expiration
        )

    # Write

    async def save(self, entity: Any) -> str:
        """Insert or replace an entity.

        A missing id is generated (UUID4) and written back onto the object.

        Returns:
            The entity id

        Raises:
            ConfigurationError: If the type declaration is invalid
            MappingError: If the object cannot be flattened
            ConversionError: If a converter fails
        """
        meta = self.registry.get_entity(type(entity))
        entity_id = meta.get_id(entity)
        if entity_id is None:
            meta.set_id(entity, str(uuid.uuid4()))
            entity_id = meta.get_id(entity)
        key = meta.key_for(entity_id)

        fields = self.converter.write(entity)
        new_entries = self.indexes.indexes_for(entity)

        previous_raw = await self.store.hgetall(key)
        if not previous_raw:
            # An expiry nobody observed leaves its index entries behind
            previous_raw = await self.store.hgetall(phantom_key(key))
        previous = self.indexes.indexes_from_hash(meta.entity_type, previous_raw)

        await self.store.delete(key)
        await self.store.hset(key, fields)
        await self.store.sadd(meta.keyspace, entity_id)
        await self.indexes.update(meta.keyspace, entity_id, previous, new_entries)
        await self.expiration.apply(meta, entity_id, meta.resolve_ttl(entity), fields)

        logger.debug(
            "Entity saved",
            extra={"key": key, "fields": len(fields), "indexes": len(new_entries)},
        )
        return entity_id

    async def apply_partial_update(self, update: PartialUpdate) -> str:
        """Apply a partial update; returns the entity id."""
        return await self.partial_updates.apply(update)

    async def delete_by_id(self, entity_type: type, entity_id: Any) -> Any:
        """Delete an entity, its index entries and its phantom.

        Returns:
            The deleted entity, or None when nothing was stored
        """
        meta = self.registry.get_entity(entity_type)
        entity_id = self._id_text(entity_id)
        key = meta.key_for(entity_id)

        raw = await self.store.hgetall(key)
        deleted = None
        if raw:
            deleted = await self._read(raw, meta.entity_type)
            entries = self.indexes.indexes_from_hash(meta.entity_type, raw)
            await self.indexes.remove_all(meta.keyspace, entity_id, entries)
            await self.store.delete(key)
        await self.store.srem(meta.keyspace, entity_id)
        await self.expiration.discard(meta, entity_id)

        if raw:
            logger.debug("Entity deleted", extra={"key": key})
        return deleted

    async def delete_all(self, keyspace_or_type: KeyspaceOrType) -> int:
        """Delete every entity of a keyspace; returns the number deleted."""
        meta = self._meta(keyspace_or_type)
        deleted = 0
        for entity_id in sorted(await self._ids(meta.keyspace)):
            if await self.delete_by_id(meta.entity_type, entity_id) is not None:
                deleted += 1
        await self.store.delete(meta.keyspace)
        logger.info("Keyspace cleared", extra={"keyspace": meta.keyspace, "deleted": deleted})
        return deleted

    # Read

    async def find_by_id(self, entity_type: type, entity_id: Any) -> Any:
        """Load an entity, or None when it does not exist."""
        meta = self.registry.get_entity(entity_type)
        key = meta.key_for(self._id_text(entity_id))
        raw = await self.store.hgetall(key)
        if not raw:
            return None
        entity = await self._read(raw, meta.entity_type)
        if entity is not None and meta.ttl_field is not None:
            await self._populate_ttl(meta, key, entity)
        return entity

    async def exists(self, entity_type: type, entity_id: Any) -> bool:
        meta = self.registry.get_entity(entity_type)
        return await self.store.exists(meta.key_for(self._id_text(entity_id)))

    async def count(self, keyspace_or_type: KeyspaceOrType) -> int:
        """Number of stored entities of a keyspace."""
        keyspace = self._keyspace(keyspace_or_type)
        return await self.store.scard(keyspace)

    async def find_all(self, entity_type: type) -> List[Any]:
        """All stored entities of a type, ordered by id."""
        meta = self.registry.get_entity(entity_type)
        return await self._load_many(meta, await self._ids(meta.keyspace))

    async def lookup_ids(self, keyspace_or_type: KeyspaceOrType, query: IndexQuery) -> Set[str]:
        """Ids matching an index query; empty when the index is unavailable."""
        keyspace = self._keyspace(keyspace_or_type)
        try:
            return await self.indexes.lookup(keyspace, query)
        except IndexUnavailableError as e:
            logger.debug(f"Index unavailable: {e.message}", extra={"keyspace": keyspace})
            return set()

    async def find_by_query(self, entity_type: type, query: IndexQuery) -> List[Any]:
        """Entities matching an index query, ordered by id."""
        meta = self.registry.get_entity(entity_type)
        return await self._load_many(meta, await self.lookup_ids(meta.keyspace, query))

    async def _load_many(self, meta: PersistentEntity, ids: Set[str]) -> List[Any]:
        result = []
        for entity_id in sorted(ids):
            entity = await self.find_by_id(meta.entity_type, entity_id)
            if entity is not None:
                result.append(entity)
        return result

    async def _ids(self, keyspace: str) -> Set[str]:
        return {_text(m) for m in await self.store.smembers(keyspace)}

    async def _read(self, raw: Mapping, entity_type: type) -> Any:
        """Read a hash, resolving references to other stored entities."""
        return await self._read_resolving(raw, entity_type, {}, set())

    async def _read_resolving(
        self,
        raw: Mapping,
        entity_type: type,
        resolved: Dict[str, Any],
        loading: Set[str],
    ) -> Any:
        wanted: Dict[str, Any] = {}

        def collect(key: str, declared: Any) -> Any:
            wanted.setdefault(key, declared)
            return resolved.get(key)

        entity = self.converter.read(raw, entity_type, collect)
        pending = {k: d for k, d in wanted.items() if k not in resolved and k not in loading}
        if not pending:
            return entity

        for key, declared in pending.items():
            resolved[key] = await self._load_reference(key, declared, resolved, loading)
        return self.converter.read(raw, entity_type, lambda key, declared: resolved.get(key))

    async def _load_reference(
        self,
        key: str,
        declared: Any,
        resolved: Dict[str, Any],
        loading: Set[str],
    ) -> Any:
        target = self._reference_type(key, declared)
        if target is None:
            logger.debug(f"Cannot resolve reference {key}: unknown keyspace")
            return None
        raw = await self.store.hgetall(key)
        if not raw:
            return None
        # A reference back into an object still being loaded reads as None
        loading.add(key)
        try:
            return await self._read_resolving(raw, target, resolved, loading)
        finally:
            loading.discard(key)

    def _reference_type(self, key: str, declared: Any) -> Optional[type]:
        declared = unwrap_optional(declared)
        if isinstance(declared, type) and self.registry.is_entity(declared):
            return declared
        resolved = self.expiration.split_key(key)
        return resolved[0].entity_type if resolved else None

    async def _populate_ttl(self, meta: PersistentEntity, key: str, entity: Any) -> None:
        remaining = await self.store.ttl(key)
        if remaining < 0:
            return
        declared = unwrap_optional(type_hints(meta.entity_type).get(meta.ttl_field))
        value: Any = remaining
        if declared is dt.timedelta:
            value = dt.timedelta(seconds=remaining)
        object.__setattr__(entity, meta.ttl_field, value)

    # Helpers

    def _meta(self, keyspace_or_type: KeyspaceOrType) -> PersistentEntity:
        if isinstance(keyspace_or_type, str):
            meta = self.registry.get_by_keyspace(keyspace_or_type)
            if meta is None:
                raise ConfigurationError(f"No entity registered for keyspace '{keyspace_or_type}'")
            return meta
        return self.registry.get_entity(keyspace_or_type)

    def _keyspace(self, keyspace_or_type: KeyspaceOrType) -> str:
        if isinstance(keyspace_or_type, str):
            return keyspace_or_type
        return self.registry.get_entity(keyspace_or_type).keyspace

    def _id_text(self, entity_id: Any) -> str:
        return self.converter.encode_value(entity_id).decode("utf-8")
