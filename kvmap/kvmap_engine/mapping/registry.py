"""
Type Registry for kvmap.

The TypeRegistry is the central authority for entity metadata.
It provides:
- Programmatic configuration of entity types (EntityDef)
- Lazy, cached resolution of class-level declarations and field markers
- Custom converter lookup by (type, target representation)
- The `_class` type-tag table used to rebuild polymorphic values

Invariants:
    - A type is resolved exactly once; later lookups are dict hits
    - Class-level declarations win over programmatic configuration
    - A type whose resolution failed keeps failing with the same error
    - Keyspaces are unique across entity types

How to change safely:
    - Configure types and converters before the first save
    - Register polymorphic subtypes (register_alias) in every process
      that reads them

Example:
    >>> registry = TypeRegistry()
    >>> registry.configure(entity(Person, keyspace="persons", ttl=60))
    >>> registry.get_entity(Person).keyspace
    'persons'
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from ..errors import ConfigurationError, MappingError
from . import scalars
from .flattener import (
    DEFAULT_MAX_DEPTH,
    Kind,
    PathFlattener,
    SimpleTypeAliases,
    classify,
    default_alias,
    element_type,
    join_path,
    mapping_types,
    type_hints,
    unwrap_optional,
)
from .types import (
    ROLE_GEO_INDEX,
    ROLE_ID,
    ROLE_INDEX,
    ROLE_REFERENCE,
    ROLE_TTL,
    ConverterTarget,
    CustomConverter,
    EntityDef,
    IndexDef,
    IndexKind,
    Point,
    declared_entity,
    field_role,
)

logger = logging.getLogger(__name__)

_global_registry: Optional[TypeRegistry] = None
_registry_lock = threading.Lock()


@dataclasses.dataclass(frozen=True)
class PersistentEntity:
    """Resolved storage metadata for one entity type.

    Attributes:
        entity_type: Mapped dataclass
        keyspace: Key prefix
        id_field: Identifier field name
        alias: Type tag written at the root
        indexes: Indexed paths (simple and geo)
        ttl: Fixed time-to-live in seconds
        ttl_field: Field holding the time-to-live
        references: Top-level fields stored as references
    """

    entity_type: type
    keyspace: str
    id_field: str
    alias: str
    indexes: tuple[IndexDef, ...]
    ttl: int | None
    ttl_field: str | None
    references: frozenset[str]

    def key_for(self, entity_id: str) -> str:
        """Primary hash key for an id."""
        return f"{self.keyspace}:{entity_id}"

    def get_id(self, obj: Any) -> str | None:
        """Identifier of obj as stored text, or None if unset."""
        value = getattr(obj, self.id_field)
        if value is None or value == "":
            return None
        return scalars.encode_text(value)

    def set_id(self, obj: Any, entity_id: str) -> None:
        """Write an identifier back onto obj (frozen dataclasses included)."""
        declared = unwrap_optional(type_hints(self.entity_type).get(self.id_field, str))
        value = scalars.decode(entity_id, declared if scalars.is_scalar_type(declared) else str)
        object.__setattr__(obj, self.id_field, value)

    def resolve_ttl(self, obj: Any) -> int | None:
        """Effective time-to-live of obj in seconds, None when not expiring."""
        if self.ttl is not None:
            return self.ttl if self.ttl > 0 else None
        if self.ttl_field is None:
            return None
        value = getattr(obj, self.ttl_field)
        if value is None:
            return None
        if isinstance(value, dt.timedelta):
            value = value.total_seconds()
        seconds = int(value)
        return seconds if seconds > 0 else None

    def index_for(self, path: str) -> IndexDef | None:
        for index in self.indexes:
            if index.path == path:
                return index
        return None

    @property
    def indexed_paths(self) -> list[str]:
        return [i.path for i in self.indexes]

    @property
    def geo_paths(self) -> list[str]:
        return [i.path for i in self.indexes if i.kind == IndexKind.GEO]


class TypeRegistry:
    """Registry of entity metadata, converters and type tags.

    Thread-safety:
        - Resolution and registration use an internal lock
        - Lookups of resolved types are lock-free dict reads

    Attributes:
        max_depth: Depth bound used when walking nested declarations
    """

    def __init__(
        self,
        definitions: Iterable[EntityDef] = (),
        converters: Iterable[CustomConverter] = (),
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        """Initialize a registry.

        Args:
            definitions: Programmatic entity declarations
            converters: Custom converters
            max_depth: Depth bound for nested declarations
        """
        self.max_depth = max_depth
        self._configured: Dict[type, EntityDef] = {}
        self._entities: Dict[type, PersistentEntity] = {}
        self._failed: Dict[type, ConfigurationError] = {}
        self._by_keyspace: Dict[str, PersistentEntity] = {}
        self._converters: Dict[tuple[type, ConverterTarget], CustomConverter] = {}
        self._converter_cache: Dict[type, Optional[CustomConverter]] = {}
        self._aliases = SimpleTypeAliases()
        self._walker = PathFlattener(aliases=self._aliases, max_depth=max_depth)
        self._lock = threading.Lock()

        for definition in definitions:
            self.configure(definition)
        for converter in converters:
            self.register_converter(converter)

    # Configuration

    def configure(self, definition: EntityDef) -> None:
        """Add programmatic configuration for an entity type.

        Raises:
            ConfigurationError: If the type was already resolved
        """
        with self._lock:
            if definition.entity_type in self._entities:
                raise ConfigurationError(
                    f"Cannot configure {definition.entity_type.__qualname__}: already resolved",
                    definition.entity_type.__qualname__,
                )
            self._configured[definition.entity_type] = definition
            self._failed.pop(definition.entity_type, None)

    def register(self, target: type | EntityDef) -> PersistentEntity:
        """Configure (optionally) and resolve an entity type immediately."""
        if isinstance(target, EntityDef):
            self.configure(target)
            target = target.entity_type
        return self.get_entity(target)

    def register_converter(self, converter: CustomConverter) -> None:
        """Register a custom converter keyed by (source type, target)."""
        with self._lock:
            self._converters[(converter.source_type, converter.target)] = converter
            self._converter_cache.clear()
        logger.debug(
            f"Registered {converter.target.value} converter for {converter.source_type.__qualname__}"
        )

    def add_converter(
        self,
        source_type: type,
        target: ConverterTarget,
        writer: Callable[[Any], Any],
        reader: Callable[[Any], Any],
    ) -> None:
        """Convenience wrapper around register_converter."""
        self.register_converter(CustomConverter(source_type, target, writer, reader))

    def register_alias(self, cls: type, alias: str | None = None) -> str:
        """Register a type tag for a (polymorphic) type."""
        with self._lock:
            return self._aliases.register(cls, alias)

    # Lookup

    def converter_for(self, cls: type) -> Optional[CustomConverter]:
        """Custom converter for a type (walks the MRO, BYTES first)."""
        try:
            return self._converter_cache[cls]
        except KeyError:
            pass
        found = None
        for base in getattr(cls, "__mro__", (cls,)):
            found = self._converters.get((base, ConverterTarget.BYTES)) or self._converters.get(
                (base, ConverterTarget.FIELDS)
            )
            if found is not None:
                break
        self._converter_cache[cls] = found
        return found

    def alias_for(self, cls: type) -> str:
        entity = self._entities.get(cls)
        if entity is not None:
            return entity.alias
        return self._aliases.alias_for(cls)

    def type_for(self, alias: str) -> Optional[type]:
        cls = self._aliases.type_for(alias)
        if cls is None:
            # Configured but not yet resolved types register their aliases on resolution
            for pending in list(self._configured):
                if pending not in self._entities and pending not in self._failed:
                    try:
                        self.get_entity(pending)
                    except ConfigurationError:
                        continue
            cls = self._aliases.type_for(alias)
        return cls

    def is_entity(self, cls: Any) -> bool:
        """Whether cls is declared or configured as an entity."""
        if not isinstance(cls, type):
            return False
        return cls in self._entities or cls in self._configured or declared_entity(cls) is not None

    def get_entity(self, cls: type) -> PersistentEntity:
        """Resolved metadata for an entity type.

        Raises:
            ConfigurationError: If the declarations are invalid
        """
        entity = self._entities.get(cls)
        if entity is not None:
            return entity
        with self._lock:
            entity = self._entities.get(cls)
            if entity is not None:
                return entity
            if cls in self._failed:
                raise self._failed[cls]
            try:
                entity = self._resolve(cls)
            except ConfigurationError as e:
                self._failed[cls] = e
                raise
            existing = self._by_keyspace.get(entity.keyspace)
            if existing is not None and existing.entity_type is not cls:
                error = ConfigurationError(
                    f"Keyspace '{entity.keyspace}' already used by "
                    f"{existing.entity_type.__qualname__}",
                    cls.__qualname__,
                )
                self._failed[cls] = error
                raise error
            self._entities[cls] = entity
            self._by_keyspace[entity.keyspace] = entity
        logger.debug(
            f"Resolved entity {cls.__qualname__}",
            extra={
                "keyspace": entity.keyspace,
                "id_field": entity.id_field,
                "indexes": entity.indexed_paths,
                "ttl": entity.ttl,
                "ttl_field": entity.ttl_field,
            },
        )
        return entity

    def get_by_keyspace(self, keyspace: str) -> Optional[PersistentEntity]:
        """Resolved entity owning a keyspace, if any."""
        entity = self._by_keyspace.get(keyspace)
        if entity is None:
            for pending in list(self._configured):
                if pending not in self._entities and pending not in self._failed:
                    try:
                        self.get_entity(pending)
                    except ConfigurationError:
                        continue
            entity = self._by_keyspace.get(keyspace)
        return entity

    def entities(self) -> Iterator[PersistentEntity]:
        """Iterate over all resolved entities."""
        yield from list(self._entities.values())

    def is_reference(self, cls: type, field_name: str) -> bool:
        """Whether a top-level field of an entity is configured as a reference."""
        entity = self._entities.get(cls)
        return entity is not None and field_name in entity.references

    def declared_path(self, cls: type, path: str):
        """Walk a dot-path over the declared types of cls."""
        return self._walker.declared_path(cls, path)

    # Resolution

    def _resolve(self, cls: type) -> PersistentEntity:
        name = getattr(cls, "__qualname__", repr(cls))
        if not isinstance(cls, type) or not dataclasses.is_dataclass(cls):
            raise ConfigurationError(f"{name} is not a dataclass", name)

        declared = declared_entity(cls)
        configured = self._configured.get(cls)
        if declared is not None:
            definition = declared.merged_over(configured)
        else:
            definition = configured or EntityDef(entity_type=cls)

        fields = {f.name: f for f in dataclasses.fields(cls)}

        id_field = self._resolve_id_field(name, definition, fields)
        ttl, ttl_field = self._resolve_ttl(name, definition, fields)
        indexes = self._resolve_indexes(name, cls, definition)

        references = set(definition.references)
        references.update(n for n, f in fields.items() if field_role(f) == ROLE_REFERENCE)
        for ref in references:
            if ref not in fields:
                raise ConfigurationError(f"Reference field '{ref}' not found on {name}", name)

        alias = definition.alias or default_alias(cls)
        self._aliases.register(cls, alias)
        self._register_nested_aliases(cls, set())

        return PersistentEntity(
            entity_type=cls,
            keyspace=definition.keyspace or default_alias(cls),
            id_field=id_field,
            alias=alias,
            indexes=indexes,
            ttl=ttl,
            ttl_field=ttl_field,
            references=frozenset(references),
        )

    def _resolve_id_field(self, name: str, definition: EntityDef, fields: dict) -> str:
        marked = [n for n, f in fields.items() if field_role(f) == ROLE_ID]
        if len(marked) > 1:
            raise ConfigurationError(f"Ambiguous identifier on {name}: {marked}", name)
        if definition.id_field:
            if definition.id_field not in fields:
                raise ConfigurationError(
                    f"Identifier field '{definition.id_field}' not found on {name}", name
                )
            if marked and marked[0] != definition.id_field:
                raise ConfigurationError(
                    f"Ambiguous identifier on {name}: declared '{definition.id_field}', "
                    f"marked '{marked[0]}'",
                    name,
                )
            return definition.id_field
        if marked:
            return marked[0]
        if "id" in fields:
            return "id"
        raise ConfigurationError(f"No identifier field on {name}", name)

    def _resolve_ttl(
        self, name: str, definition: EntityDef, fields: dict
    ) -> tuple[int | None, str | None]:
        marked = [n for n, f in fields.items() if field_role(f) == ROLE_TTL]
        if len(marked) > 1:
            raise ConfigurationError(f"Multiple time-to-live fields on {name}: {marked}", name)
        ttl_field = definition.ttl_field
        if ttl_field and marked and marked[0] != ttl_field:
            raise ConfigurationError(
                f"Conflicting time-to-live fields on {name}: '{ttl_field}' and '{marked[0]}'",
                name,
            )
        ttl_field = ttl_field or (marked[0] if marked else None)
        if ttl_field is not None and ttl_field not in fields:
            raise ConfigurationError(f"Time-to-live field '{ttl_field}' not found on {name}", name)
        if definition.ttl is not None and ttl_field is not None:
            raise ConfigurationError(
                f"{name} declares both a fixed time-to-live and a time-to-live field", name
            )
        return definition.ttl, ttl_field

    def _resolve_indexes(self, name: str, cls: type, definition: EntityDef) -> tuple[IndexDef, ...]:
        found: list[IndexDef] = list(definition.indexes)
        self._collect_marked_indexes(cls, "", found, set(), 0)

        by_path: dict[str, IndexDef] = {}
        for index in found:
            existing = by_path.get(index.path)
            if existing is not None and existing.kind != index.kind:
                raise ConfigurationError(
                    f"Path '{index.path}' on {name} declared as both simple and geo index", name
                )
            try:
                steps = self._walker.declared_path(cls, index.path)
            except MappingError as e:
                raise ConfigurationError(f"Invalid index path on {name}: {e.message}", name) from e
            if index.kind == IndexKind.GEO:
                declared = unwrap_optional(steps[-1].declared)
                if classify(declared) != Kind.OPEN and not (
                    isinstance(declared, type) and issubclass(declared, Point)
                ):
                    raise ConfigurationError(
                        f"Geo index '{index.path}' on {name} must be a Point field", name
                    )
            by_path[index.path] = index
        return tuple(by_path.values())

    def _collect_marked_indexes(
        self, cls: type, prefix: str, found: list[IndexDef], seen: set, depth: int
    ) -> None:
        if cls in seen or depth > self.max_depth:
            return
        seen = seen | {cls}
        hints = type_hints(cls)
        for f in dataclasses.fields(cls):
            path = join_path(prefix, f.name)
            role = field_role(f)
            if role == ROLE_INDEX:
                found.append(IndexDef(path, IndexKind.SIMPLE))
            elif role == ROLE_GEO_INDEX:
                found.append(IndexDef(path, IndexKind.GEO))
            declared = unwrap_optional(hints.get(f.name))
            if role != ROLE_REFERENCE and classify(declared) == Kind.STRUCT:
                self._collect_marked_indexes(declared, path, found, seen, depth + 1)

    def _register_nested_aliases(self, cls: type, seen: set) -> None:
        if cls in seen:
            return
        seen.add(cls)
        self._aliases.alias_for(cls)
        for declared in type_hints(cls).values():
            for candidate in _nested_types(declared):
                if dataclasses.is_dataclass(candidate):
                    self._register_nested_aliases(candidate, seen)


def _nested_types(tp: Any) -> list[Any]:
    tp = unwrap_optional(tp)
    kind = classify(tp)
    if kind == Kind.STRUCT:
        return [tp]
    if kind == Kind.SEQUENCE:
        return _nested_types(element_type(tp))
    if kind == Kind.MAPPING:
        return _nested_types(mapping_types(tp)[1])
    return []


def get_registry() -> TypeRegistry:
    """Get the process-wide type registry.

    Creates a new registry if none exists.
    """
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = TypeRegistry()
        return _global_registry


def reset_registry() -> None:
    """Reset the process-wide registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
