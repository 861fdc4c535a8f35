"""
Object mapping for kvmap.

This module provides:
- Declarations: entity(), @hash_entity and field markers
- TypeRegistry: resolved entity metadata, converters and type tags
- PathFlattener: object graph <-> dot-path pairs
- HashConverter: entity <-> stored hash fields

Invariants:
    - Index and TTL declarations are validated when a type is resolved
    - The persisted path syntax never changes shape
"""

from .converter import HashConverter
from .flattener import TYPE_TAG, PathFlattener, SimpleTypeAliases
from .registry import PersistentEntity, TypeRegistry, get_registry, reset_registry
from .types import (
    ConverterTarget,
    CustomConverter,
    EntityDef,
    IndexDef,
    IndexKind,
    Point,
    entity,
    geo_indexed,
    hash_entity,
    identifier,
    indexed,
    reference,
    time_to_live,
)

__all__ = [
    # Declarations
    "EntityDef",
    "IndexDef",
    "IndexKind",
    "CustomConverter",
    "ConverterTarget",
    "Point",
    "entity",
    "hash_entity",
    "identifier",
    "indexed",
    "geo_indexed",
    "time_to_live",
    "reference",
    # Registry
    "TypeRegistry",
    "PersistentEntity",
    "get_registry",
    "reset_registry",
    # Conversion
    "PathFlattener",
    "SimpleTypeAliases",
    "HashConverter",
    "TYPE_TAG",
]
