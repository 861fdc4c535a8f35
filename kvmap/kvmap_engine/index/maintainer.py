"""
Secondary index maintenance.

Index entries are derived from an entity's indexed paths:
- simple: the entity id is a member of the set `keyspace:path:value`
- geo:    the entity id is a member of the geo structure `keyspace:path`

Collection values produce one simple entry per element. Absent values
produce no entry.

Entries can be computed from a live object (indexes_for) or from a
stored hash (indexes_from_hash). The latter gives the previous state
before a save or delete, the last state from a phantom on expiry, and
the touched paths of a partial update.

Invariants:
    - update() removes exactly previous - new and adds exactly new - previous
    - Geo removals use the geo structure's own member removal
    - Entries for a path not indexed on the type are never written
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set, Union

from ..errors import ConversionError, IndexUnavailableError
from ..mapping import scalars
from ..mapping.flattener import _index_of, is_under, split_path
from ..mapping.registry import PersistentEntity, TypeRegistry
from ..mapping.types import ConverterTarget, IndexKind, Point
from ..store.base import KeyValueStore
from .query import Box, Circle, IndexQuery, Match

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimpleIndexEntry:
    """Membership in the set `keyspace:path:value`."""

    path: str
    value: str

    def key(self, keyspace: str) -> str:
        return f"{keyspace}:{self.path}:{self.value}"


@dataclass(frozen=True)
class GeoIndexEntry:
    """Membership in the geo structure `keyspace:path`."""

    path: str
    point: Point

    def key(self, keyspace: str) -> str:
        return f"{keyspace}:{self.path}"


IndexEntry = Union[SimpleIndexEntry, GeoIndexEntry]


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class IndexMaintainer:
    """Computes and applies secondary index entries.

    Attributes:
        registry: TypeRegistry with the indexed paths per type
        store: KeyValueStore holding the index structures
    """

    def __init__(self, registry: TypeRegistry, store: KeyValueStore) -> None:
        self.registry = registry
        self.store = store

    # Entry computation

    def indexes_for(self, entity: Any) -> Set[IndexEntry]:
        """Index entries of a live object."""
        meta = self.registry.get_entity(type(entity))
        entries: Set[IndexEntry] = set()
        for index in meta.indexes:
            for value in _values_at(entity, index.path):
                entry = self._entry_for(index.path, index.kind, value)
                if entry is not None:
                    entries.add(entry)
        return entries

    def indexes_from_hash(
        self,
        entity_type: type,
        raw: Mapping,
        paths: Optional[Iterable[str]] = None,
    ) -> Set[IndexEntry]:
        """Index entries of a stored hash.

        Args:
            entity_type: Entity type the hash belongs to
            raw: Stored field map (bytes or str keys)
            paths: Restrict to indexes overlapping these paths

        Returns:
            Set of entries (empty for an empty hash)
        """
        if not raw:
            return set()
        meta = self.registry.get_entity(entity_type)
        fields: Dict[str, Any] = {_text(k): v for k, v in raw.items()}
        entries: Set[IndexEntry] = set()
        for index in self._indexes_touching(meta, paths):
            if index.kind == IndexKind.GEO:
                x = fields.get(f"{index.path}.x")
                y = fields.get(f"{index.path}.y")
                if x is None or y is None:
                    continue
                try:
                    entries.add(GeoIndexEntry(index.path, Point(float(_text(x)), float(_text(y)))))
                except ValueError:
                    logger.warning(
                        "Skipping unreadable geo index value",
                        extra={"keyspace": meta.keyspace, "path": index.path},
                    )
                continue
            for field, value in fields.items():
                if field == index.path or _is_element_of(field, index.path):
                    entries.add(SimpleIndexEntry(index.path, _text(value)))
        return entries

    def _indexes_touching(self, meta: PersistentEntity, paths: Optional[Iterable[str]]):
        if paths is None:
            return list(meta.indexes)
        paths = list(paths)
        return [
            index
            for index in meta.indexes
            if any(is_under(index.path, p) or is_under(p, index.path) for p in paths)
        ]

    def _entry_for(self, path: str, kind: IndexKind, value: Any) -> Optional[IndexEntry]:
        if kind == IndexKind.GEO:
            if isinstance(value, Point):
                return GeoIndexEntry(path, value)
            logger.debug(f"Ignoring non-point value at geo index '{path}'")
            return None
        text = self._index_text(path, value)
        if text is None:
            logger.debug(f"Ignoring non-scalar value at index '{path}'")
            return None
        return SimpleIndexEntry(path, text)

    def _index_text(self, path: str, value: Any) -> Optional[str]:
        """Index value text, encoded the way the hash field is written."""
        converter = self.registry.converter_for(type(value))
        if converter is not None:
            if converter.target != ConverterTarget.BYTES:
                return None
            try:
                written = converter.writer(value)
            except Exception as e:
                raise ConversionError(
                    f"Custom writer for {type(value).__name__} failed: {e}", path, e
                ) from e
            return _text(written)
        if scalars.is_scalar(value) and not isinstance(value, bytes):
            return scalars.encode_text(value)
        return None

    # Store operations

    async def update(
        self,
        keyspace: str,
        entity_id: str,
        previous: Set[IndexEntry],
        new: Set[IndexEntry],
    ) -> None:
        """Replace previous entries with new ones, touching only the difference."""
        removed = previous - new
        added = new - previous
        for entry in removed:
            await self._remove(keyspace, entity_id, entry)
        for entry in added:
            await self._add(keyspace, entity_id, entry)
        if removed or added:
            logger.debug(
                "Index entries updated",
                extra={
                    "keyspace": keyspace,
                    "id": entity_id,
                    "removed": len(removed),
                    "added": len(added),
                },
            )

    async def remove_all(self, keyspace: str, entity_id: str, entries: Iterable[IndexEntry]) -> None:
        """Remove the given entries of one entity."""
        for entry in entries:
            await self._remove(keyspace, entity_id, entry)

    async def _add(self, keyspace: str, entity_id: str, entry: IndexEntry) -> None:
        if isinstance(entry, GeoIndexEntry):
            await self.store.geoadd(
                entry.key(keyspace), entry.point.longitude, entry.point.latitude, entity_id
            )
        else:
            await self.store.sadd(entry.key(keyspace), entity_id)

    async def _remove(self, keyspace: str, entity_id: str, entry: IndexEntry) -> None:
        if isinstance(entry, GeoIndexEntry):
            await self.store.georem(entry.key(keyspace), entity_id)
        else:
            await self.store.srem(entry.key(keyspace), entity_id)

    # Lookup

    async def lookup(self, keyspace: str, query: IndexQuery) -> Set[str]:
        """Ids matching an index query.

        Raises:
            IndexUnavailableError: Unknown keyspace or non-indexed path
        """
        meta = self.registry.get_by_keyspace(keyspace)
        if meta is None:
            raise IndexUnavailableError(f"No entity registered for keyspace '{keyspace}'", keyspace)

        geo = query.geo
        if geo is not None:
            index = meta.index_for(geo.path)
            if index is None or index.kind != IndexKind.GEO:
                raise IndexUnavailableError(
                    f"'{geo.path}' is not geo indexed", keyspace, geo.path
                )
            key = f"{keyspace}:{geo.path}"
            shape = geo.shape
            if isinstance(shape, Circle):
                members = await self.store.geosearch_radius(
                    key,
                    shape.center.longitude,
                    shape.center.latitude,
                    shape.radius.value,
                    shape.radius.unit,
                )
            elif isinstance(shape, Box):
                members = await self.store.geosearch_box(
                    key,
                    shape.center.longitude,
                    shape.center.latitude,
                    shape.width.in_meters,
                    shape.height.in_meters,
                )
            else:
                raise IndexUnavailableError(f"Unsupported shape at '{geo.path}'", keyspace, geo.path)
            return {_text(m) for m in members}

        keys = []
        for condition in query.conditions:
            index = meta.index_for(condition.path)
            if index is None or index.kind != IndexKind.SIMPLE:
                raise IndexUnavailableError(
                    f"'{condition.path}' is not indexed", keyspace, condition.path
                )
            text = self._index_text(condition.path, condition.value)
            if text is None:
                text = str(condition.value)
            keys.append(SimpleIndexEntry(condition.path, text).key(keyspace))

        if query.match == Match.ALL:
            members = await self.store.sinter(*keys)
        else:
            members = await self.store.sunion(*keys)
        return {_text(m) for m in members}


def _is_element_of(field: str, path: str) -> bool:
    """Whether field is a direct element of the collection at path."""
    if not field.startswith(path + "."):
        return False
    rest = split_path(field[len(path) + 1:])
    return len(rest) == 1 and rest[0].startswith("[")


def _values_at(obj: Any, path: str) -> list:
    """Values at a dot-path of an object; collections at the end expand."""
    current = obj
    for segment in split_path(path):
        if current is None:
            return []
        if segment.startswith("["):
            if isinstance(current, Mapping):
                current = current.get(segment[1:-1])
            elif isinstance(current, (list, tuple)):
                position = _index_of(segment)
                current = current[position] if 0 <= position < len(current) else None
            else:
                return []
        elif dataclasses.is_dataclass(current):
            current = getattr(current, segment, None)
        else:
            return []
    if current is None:
        return []
    if isinstance(current, (list, tuple, set, frozenset)):
        return [v for v in current if v is not None]
    if isinstance(current, Mapping):
        return [v for v in current.values() if v is not None]
    return [current]
