"""
Partial updates: mutate selected paths of a stored entity in place.

A PartialUpdate collects set/delete operations on dot-paths:

    PartialUpdate("4711", Person)
        .set("firstname", "mat")
        .set("address", Address(city="Emond's Field"))
        .delete("age")
        .refresh_ttl(True)

The PartialUpdateEngine applies them without rewriting the whole hash:
- scalar set: one HSET field
- structured set: fields under the prefix not rewritten are deleted,
  then the newly flattened fields are written
- delete: the field and every field under `path.` are removed

Index entries are diffed only for indexed paths the operations touch.
The TTL is reapplied when the TTL field is touched or refresh_ttl is
set; otherwise an existing phantom receives the same field changes.

Invariants:
    - The identifier is never modified by a partial update
    - Nothing is written below a BYTES-converted value
    - Updating a missing key creates it (type tag, id, keyspace membership)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..errors import UnsupportedOperationError
from ..expiry.manager import ExpirationManager
from ..index.maintainer import IndexMaintainer
from ..mapping import scalars
from ..mapping.converter import HashConverter
from ..mapping.flattener import TYPE_TAG, is_under, split_path
from ..mapping.registry import PersistentEntity, TypeRegistry
from ..store.base import KeyValueStore

logger = logging.getLogger(__name__)


class UpdateOp(Enum):
    SET = "set"
    DELETE = "delete"


@dataclass(frozen=True)
class PropertyUpdate:
    """One operation of a partial update."""

    path: str
    op: UpdateOp
    value: Any = None


class PartialUpdate:
    """Builder for a partial update of one entity.

    Attributes:
        id: Entity id
        target_type: Entity type
        updates: Operations in application order
    """

    def __init__(self, id: Any, target_type: type) -> None:
        self.id = id
        self.target_type = target_type
        self.updates: List[PropertyUpdate] = []
        self.refresh_ttl_enabled = False

    def set(self, path: str, value: Any) -> PartialUpdate:
        """Set the value at path; None deletes the path."""
        if not path:
            raise UnsupportedOperationError("Update path cannot be empty")
        if value is None:
            return self.delete(path)
        self.updates.append(PropertyUpdate(path, UpdateOp.SET, value))
        return self

    def delete(self, path: str) -> PartialUpdate:
        """Remove the value at path and everything below it."""
        if not path:
            raise UnsupportedOperationError("Update path cannot be empty")
        self.updates.append(PropertyUpdate(path, UpdateOp.DELETE))
        return self

    def refresh_ttl(self, refresh: bool = True) -> PartialUpdate:
        """Reapply the entity's TTL after the update."""
        self.refresh_ttl_enabled = refresh
        return self

    @property
    def paths(self) -> List[str]:
        return [u.path for u in self.updates]

    def __repr__(self) -> str:
        return f"PartialUpdate(id={self.id!r}, type={self.target_type.__name__}, updates={self.updates!r})"


class PartialUpdateEngine:
    """Applies PartialUpdate instances to the store."""

    def __init__(
        self,
        registry: TypeRegistry,
        store: KeyValueStore,
        converter: HashConverter,
        indexes: IndexMaintainer,
        expiration: ExpirationManager,
    ) -> None:
        self.registry = registry
        self.store = store
        self.converter = converter
        self.indexes = indexes
        self.expiration = expiration

    async def apply(self, update: PartialUpdate) -> str:
        """Apply a partial update.

        Returns:
            Id of the updated entity

        Raises:
            UnsupportedOperationError: Identifier or opaque subtree targeted
            MappingError: Path does not exist on the type
        """
        meta = self.registry.get_entity(update.target_type)
        self._validate(meta, update)
        entity_id = scalars.encode_text(update.id)
        key = meta.key_for(entity_id)
        touched = update.paths

        existed = await self.store.exists(key)
        fields: Set[str] = {_text(f) for f in await self.store.hkeys(key)}
        previous = self.indexes.indexes_from_hash(
            meta.entity_type, await self._index_fields(meta, key, fields, touched), touched
        )

        written: Dict[str, bytes] = {}
        removed: List[str] = []
        for item in update.updates:
            subtree = [f for f in fields if is_under(f, item.path)]
            if item.op == UpdateOp.SET:
                new = self.converter.write_path(meta.entity_type, item.path, item.value)
            else:
                new = {}
            stale = [f for f in subtree if f not in new]
            if stale:
                await self.store.hdel(key, *stale)
            if new:
                await self.store.hset(key, new)
            for f in stale:
                written.pop(f, None)
                removed.append(f)
            written.update(new)
            fields.difference_update(stale)
            fields.update(new)

        if not existed:
            created = {
                TYPE_TAG: meta.alias.encode("utf-8"),
                meta.id_field: entity_id.encode("utf-8"),
            }
            await self.store.hset(key, created)
            await self.store.sadd(meta.keyspace, entity_id)
            written.update(created)

        current = self.indexes.indexes_from_hash(
            meta.entity_type, await self._index_fields(meta, key, fields, touched), touched
        )
        await self.indexes.update(meta.keyspace, entity_id, previous, current)

        if not existed or update.refresh_ttl_enabled or self._touches_ttl(meta, touched):
            ttl = await self._effective_ttl(meta, key)
            await self.expiration.apply(meta, entity_id, ttl)
        else:
            await self.expiration.mirror(meta, entity_id, written, removed)

        logger.debug(
            "Partial update applied",
            extra={
                "key": key,
                "operations": len(update.updates),
                "written": len(written),
                "removed": len(removed),
                "created": not existed,
            },
        )
        return entity_id

    def _validate(self, meta: PersistentEntity, update: PartialUpdate) -> None:
        for item in update.updates:
            segments = split_path(item.path)
            if segments and segments[0] == meta.id_field:
                raise UnsupportedOperationError(
                    f"Cannot {item.op.value} the identifier '{meta.id_field}' in a partial update",
                    item.path,
                )
            # Raises MappingError for paths the type does not declare
            self.converter.declared_path(meta.entity_type, item.path)
            if item.op == UpdateOp.SET:
                opaque = self.converter.opaque_prefix(meta.entity_type, item.path)
                if opaque is not None:
                    raise UnsupportedOperationError(
                        f"Cannot set '{item.path}' inside custom-converted value '{opaque}'",
                        item.path,
                    )

    async def _index_fields(
        self, meta: PersistentEntity, key: str, fields: Set[str], touched: List[str]
    ) -> Dict[str, bytes]:
        paths = [
            index.path
            for index in meta.indexes
            if any(is_under(index.path, p) or is_under(p, index.path) for p in touched)
        ]
        wanted = sorted(f for f in fields if any(is_under(f, p) for p in paths))
        if not wanted:
            return {}
        values = await self.store.hmget(key, wanted)
        return {f: v for f, v in zip(wanted, values) if v is not None}

    def _touches_ttl(self, meta: PersistentEntity, touched: List[str]) -> bool:
        if meta.ttl_field is None:
            return False
        return any(is_under(p, meta.ttl_field) or is_under(meta.ttl_field, p) for p in touched)

    async def _effective_ttl(self, meta: PersistentEntity, key: str) -> Optional[int]:
        if meta.ttl is not None:
            return meta.ttl if meta.ttl > 0 else None
        if meta.ttl_field is None:
            return None
        (raw,) = await self.store.hmget(key, [meta.ttl_field])
        if raw is None:
            return None
        text = _text(raw)
        try:
            seconds = float(text)
        except ValueError:
            logger.warning(
                f"Unreadable TTL field value {text!r}; keeping entity without expiry",
                extra={"key": key},
            )
            return None
        seconds = int(seconds)
        return seconds if seconds > 0 else None


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)
