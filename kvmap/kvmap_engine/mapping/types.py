"""
Declaration types for mapped entities.

This module defines the plain data structures describing how a domain
type is stored:
- EntityDef: keyspace, identifier, indexes, TTL source, references
- IndexDef: one indexed dot-path and its kind (simple or geo)
- CustomConverter: user supplied writer/reader for a Python type
- Point: longitude/latitude value used by geo indexes

Declarations come from two places. Programmatic configuration builds an
EntityDef with entity() and hands it to the TypeRegistry. Class-level
declaration uses the @hash_entity decorator plus field markers
(identifier(), indexed(), geo_indexed(), time_to_live(), reference()) on
dataclass fields. When both exist, class-level values win.

Invariants:
    - A type has either a fixed TTL or a TTL field, never both
    - Index paths are dot-paths relative to the entity root
    - Declarations are immutable once built

Example:
    >>> @dataclass
    ... class Person:
    ...     id: str | None = identifier()
    ...     name: str = indexed(default="")
    ...     ttl: int | None = time_to_live()
    >>> Persons = entity(Person, keyspace="persons")
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any, Callable, Union

METADATA_KEY = "kvmap"
DECLARATION_ATTR = "__kvmap_entity__"

ROLE_ID = "id"
ROLE_INDEX = "index"
ROLE_GEO_INDEX = "geo_index"
ROLE_TTL = "ttl"
ROLE_REFERENCE = "reference"


class IndexKind(Enum):
    """Kinds of secondary index."""

    SIMPLE = "simple"  # set per value: keyspace:path:value
    GEO = "geo"  # geo structure per path: keyspace:path


class ConverterTarget(Enum):
    """Stored representation produced by a custom converter."""

    BYTES = "bytes"  # whole subtree becomes one hash field
    FIELDS = "fields"  # converter supplies its own relative paths


@dataclass(frozen=True)
class Point:
    """Geographic point.

    Attributes:
        x: Longitude in degrees
        y: Latitude in degrees
    """

    x: float
    y: float

    @property
    def longitude(self) -> float:
        return self.x

    @property
    def latitude(self) -> float:
        return self.y


@dataclass(frozen=True)
class IndexDef:
    """An indexed path on an entity.

    Attributes:
        path: Dot-path of the indexed value, relative to the root
        kind: Simple (set per value) or geo
    """

    path: str
    kind: IndexKind = IndexKind.SIMPLE

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("Index path cannot be empty")


@dataclass(frozen=True)
class CustomConverter:
    """Custom conversion for a Python type.

    Attributes:
        source_type: Python type handled by this converter
        target: BYTES (single field) or FIELDS (relative path map)
        writer: value -> bytes, or value -> dict[str, bytes]
        reader: bytes -> value, or dict[str, bytes] -> value
    """

    source_type: type
    target: ConverterTarget
    writer: Callable[[Any], Any]
    reader: Callable[[Any], Any]


@dataclass(frozen=True)
class EntityDef:
    """Storage declaration for one entity type.

    Attributes:
        entity_type: The dataclass being mapped
        keyspace: Key prefix (defaults to the qualified type name)
        id_field: Name of the identifier field
        indexes: Indexed paths
        ttl: Fixed time-to-live in seconds
        ttl_field: Field holding the time-to-live in seconds
        references: Fields persisted as keys of other entities
        alias: Type tag written to `_class` (defaults to qualified name)
    """

    entity_type: type
    keyspace: str | None = None
    id_field: str | None = None
    indexes: tuple[IndexDef, ...] = dataclass_field(default_factory=tuple)
    ttl: int | None = None
    ttl_field: str | None = None
    references: tuple[str, ...] = dataclass_field(default_factory=tuple)
    alias: str | None = None

    def merged_over(self, other: EntityDef | None) -> EntityDef:
        """Combine with a lower-precedence declaration.

        Values set on self win; index and reference lists are unioned.
        """
        if other is None:
            return self
        indexes = self.indexes + tuple(i for i in other.indexes if i not in self.indexes)
        references = self.references + tuple(
            r for r in other.references if r not in self.references
        )
        # A TTL source declared on self replaces the other's TTL source entirely
        if self.ttl is not None or self.ttl_field is not None:
            ttl, ttl_field = self.ttl, self.ttl_field
        else:
            ttl, ttl_field = other.ttl, other.ttl_field
        return EntityDef(
            entity_type=self.entity_type,
            keyspace=self.keyspace or other.keyspace,
            id_field=self.id_field or other.id_field,
            indexes=indexes,
            ttl=ttl,
            ttl_field=ttl_field,
            references=references,
            alias=self.alias or other.alias,
        )


def entity(
    entity_type: type,
    *,
    keyspace: str | None = None,
    id_field: str | None = None,
    indexes: tuple[Union[str, IndexDef], ...] | list[Union[str, IndexDef]] = (),
    geo_indexes: tuple[str, ...] | list[str] = (),
    ttl: int | None = None,
    ttl_field: str | None = None,
    references: tuple[str, ...] | list[str] = (),
    alias: str | None = None,
) -> EntityDef:
    """Build an EntityDef.

    This is the preferred way to declare entities programmatically.

    Args:
        entity_type: Dataclass to map
        keyspace: Keyspace name
        id_field: Identifier field name
        indexes: Simple indexed paths (str) or IndexDef instances
        geo_indexes: Geo indexed paths
        ttl: Fixed time-to-live in seconds
        ttl_field: Field holding the time-to-live
        references: Fields stored as references
        alias: Type tag for `_class`

    Returns:
        EntityDef instance

    Example:
        >>> entity(City, keyspace="cities", indexes=("name",), geo_indexes=("location",))
    """
    index_defs = [i if isinstance(i, IndexDef) else IndexDef(i) for i in indexes]
    index_defs.extend(IndexDef(p, IndexKind.GEO) for p in geo_indexes)
    return EntityDef(
        entity_type=entity_type,
        keyspace=keyspace,
        id_field=id_field,
        indexes=tuple(index_defs),
        ttl=ttl,
        ttl_field=ttl_field,
        references=tuple(references),
        alias=alias,
    )


def hash_entity(cls: type | None = None, **kwargs: Any) -> Any:
    """Class decorator attaching a storage declaration.

    Usable bare (@hash_entity) or with arguments accepted by entity().
    """

    def wrap(target: type) -> type:
        setattr(target, DECLARATION_ATTR, entity(target, **kwargs))
        return target

    if cls is not None:
        return wrap(cls)
    return wrap


def declared_entity(cls: type) -> EntityDef | None:
    """Get the class-level declaration of a type, ignoring inherited ones."""
    return cls.__dict__.get(DECLARATION_ATTR)


def _marked(role: str, default: Any, default_factory: Any) -> Any:
    return dataclass_field(
        default=default,
        default_factory=default_factory,
        metadata={METADATA_KEY: role},
    )


def identifier(default: Any = None) -> Any:
    """Mark a dataclass field as the entity identifier."""
    return _marked(ROLE_ID, default, dataclasses.MISSING)


def indexed(default: Any = dataclasses.MISSING, *, default_factory: Any = dataclasses.MISSING) -> Any:
    """Mark a dataclass field as a simple index."""
    return _marked(ROLE_INDEX, default, default_factory)


def geo_indexed(default: Any = None) -> Any:
    """Mark a Point field as a geo index."""
    return _marked(ROLE_GEO_INDEX, default, dataclasses.MISSING)


def time_to_live(default: Any = None) -> Any:
    """Mark an int field as the time-to-live source (seconds)."""
    return _marked(ROLE_TTL, default, dataclasses.MISSING)


def reference(default: Any = None, *, default_factory: Any = dataclasses.MISSING) -> Any:
    """Mark a field as a reference to other stored entities."""
    if default_factory is not dataclasses.MISSING:
        default = dataclasses.MISSING
    return _marked(ROLE_REFERENCE, default, default_factory)


def field_role(f: dataclasses.Field) -> str | None:
    """Get the kvmap role of a dataclass field, if marked."""
    return f.metadata.get(METADATA_KEY)
