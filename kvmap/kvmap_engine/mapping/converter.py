"""
Hash converter: entity <-> flat field map of a stored hash.

Builds on the PathFlattener and adds what only makes sense against a
store:
- leaf values are encoded to bytes with the default scalar converters
- custom converters (BYTES or FIELDS) registered in the TypeRegistry
- reference fields written as the referenced entity's primary key
- type tags resolved through the registry alias table

Reading returns a fully typed object. References are handed to a
caller-supplied resolver, so this module never touches the store.

Invariants:
    - write() output only contains bytes values
    - Every converter failure surfaces as ConversionError with a path
    - A BYTES-converted value is opaque: nothing below it is addressable
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Dict, Optional

from ..errors import ConversionError, MappingError
from . import scalars
from .flattener import (
    _ABSENT,
    PathFlattener,
    PathNode,
    PathStep,
    join_path,
    unwrap_optional,
)
from .registry import TypeRegistry
from .types import ROLE_REFERENCE, ConverterTarget, field_role

logger = logging.getLogger(__name__)

ReferenceResolver = Callable[[str, Any], Any]


class _HashFlattener(PathFlattener):
    """PathFlattener wired to a TypeRegistry."""

    def __init__(
        self,
        registry: TypeRegistry,
        resolve_reference: Optional[ReferenceResolver] = None,
    ) -> None:
        super().__init__(aliases=registry, max_depth=registry.max_depth)
        self.registry = registry
        self.resolve_reference = resolve_reference

    def _role_of(self, cls: type, f: dataclasses.Field) -> str | None:
        role = field_role(f)
        if role is None and self.registry.is_reference(cls, f.name):
            return ROLE_REFERENCE
        return role

    def _write_custom(self, path: str, value: Any, out: list) -> bool:
        converter = self.registry.converter_for(type(value))
        if converter is None:
            return False
        try:
            written = converter.writer(value)
        except Exception as e:
            raise ConversionError(f"Custom writer for {type(value).__name__} failed: {e}", path, e) from e

        if converter.target == ConverterTarget.BYTES:
            if isinstance(written, str):
                written = written.encode("utf-8")
            if not isinstance(written, (bytes, bytearray)):
                raise ConversionError(
                    f"Custom writer for {type(value).__name__} must return bytes", path
                )
            out.append((path, bytes(written)))
            return True

        if not isinstance(written, dict):
            raise ConversionError(
                f"Custom writer for {type(value).__name__} must return a dict", path
            )
        for relative, item in written.items():
            if item is None:
                continue
            out.append((join_path(path, str(relative)), item))
        return True

    def _write_reference(self, path: str, value: Any, out: list) -> bool:
        if not self.registry.is_entity(type(value)):
            raise MappingError(
                f"Reference target {type(value).__name__} is not a mapped entity", path
            )
        target = self.registry.get_entity(type(value))
        target_id = target.get_id(value)
        if target_id is None:
            raise MappingError(
                f"Referenced {type(value).__name__} has no identifier; save it first", path
            )
        out.append((path, target.key_for(target_id)))
        return True

    def _read_custom(self, node: PathNode, declared: Any, path: str) -> Any:
        cls = unwrap_optional(declared)
        if not isinstance(cls, type):
            return _ABSENT
        converter = self.registry.converter_for(cls)
        if converter is None:
            return _ABSENT

        if converter.target == ConverterTarget.BYTES:
            if not node.has_value:
                return _ABSENT
            raw = node.value
            if isinstance(raw, str):
                raw = raw.encode("utf-8")
            payload: Any = raw
        else:
            payload = {
                relative: value.encode("utf-8") if isinstance(value, str) else value
                for relative, value in node.items()
                if relative
            }
            if not payload:
                return _ABSENT
        try:
            return converter.reader(payload)
        except Exception as e:
            raise ConversionError(f"Custom reader for {cls.__name__} failed: {e}", path, e) from e

    def _read_reference(self, key: Any, declared: type, path: str) -> Any:
        if isinstance(key, bytes):
            key = key.decode("utf-8")
        if self.resolve_reference is None:
            return None
        return self.resolve_reference(key, declared)


class HashConverter:
    """Converts entities to stored hash fields and back.

    Attributes:
        registry: TypeRegistry holding entity metadata and converters

    Example:
        >>> converter = HashConverter(registry)
        >>> converter.write(Person(id="1", name="rand"))
        {'_class': b'app.Person', 'id': b'1', 'name': b'rand'}
    """

    def __init__(self, registry: TypeRegistry) -> None:
        self.registry = registry
        self._flattener = _HashFlattener(registry)

    def write(self, entity: Any) -> Dict[str, bytes]:
        """Flatten an entity into hash fields.

        Raises:
            MappingError: On cycles, excessive depth or unconvertible values
            ConversionError: If a converter fails
        """
        self._ensure_resolved(type(entity))
        return self._encode(self._flattener.flatten(entity))

    def read(
        self,
        raw: Dict[Any, Any],
        target_type: type,
        resolve_reference: Optional[ReferenceResolver] = None,
    ) -> Any:
        """Rebuild an entity from hash fields.

        Args:
            raw: Field map as returned by the store (bytes or str keys)
            target_type: Declared entity type
            resolve_reference: Callback (key, declared type) -> object for
                reference fields; unresolved references read as None

        Returns:
            The entity, or None when raw is empty
        """
        if not raw:
            return None
        self._ensure_resolved(target_type)
        flattener = self._flattener
        if resolve_reference is not None:
            flattener = _HashFlattener(self.registry, resolve_reference)
        return flattener.unflatten(raw, target_type)

    def write_path(self, entity_type: type, path: str, value: Any) -> Dict[str, bytes]:
        """Flatten a value positioned at path inside entity_type.

        Returns an empty dict when value is None.

        Raises:
            MappingError: If the path does not exist on the type
        """
        step = self.declared_path(entity_type, path)[-1]
        return self._encode(self._flattener.flatten_at(path, value, step.declared, step.role))

    def declared_path(self, entity_type: type, path: str) -> list[PathStep]:
        """Declared type and role of every segment of path."""
        return self._flattener.declared_path(entity_type, path)

    def declared_type_at(self, entity_type: type, path: str) -> Any:
        """Declared type at path inside entity_type."""
        return self.declared_path(entity_type, path)[-1].declared

    def opaque_prefix(self, entity_type: type, path: str) -> Optional[str]:
        """Path of a BYTES-converted value strictly above path, if any."""
        for step in self.declared_path(entity_type, path)[:-1]:
            cls = unwrap_optional(step.declared)
            if not isinstance(cls, type):
                continue
            converter = self.registry.converter_for(cls)
            if converter is not None and converter.target == ConverterTarget.BYTES:
                return step.path
        return None

    def encode_value(self, value: Any, path: str = "") -> bytes:
        """Encode a single leaf value."""
        try:
            return scalars.encode(value)
        except TypeError as e:
            raise ConversionError(f"Cannot convert value: {e}", path, e) from e

    def _ensure_resolved(self, cls: type) -> None:
        # Entity aliases and configured references are known once resolved
        if self.registry.is_entity(cls):
            self.registry.get_entity(cls)

    def _encode(self, pairs: list[tuple[str, Any]]) -> Dict[str, bytes]:
        fields: Dict[str, bytes] = {}
        for path, value in pairs:
            fields[path] = value if isinstance(value, bytes) else self.encode_value(value, path)
        return fields
