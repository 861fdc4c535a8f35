"""
Path flattener: object graph <-> ordered (dot-path, value) pairs.

Path rules:
    scalar field                 name
    nested dataclass             address.city
    sequence of scalars          tags.[0]
    sequence of dataclasses      items.[0].name
    mapping                      attrs.[key]  /  attrs.[key].nested
    type tag                     _class  /  address._class  /  items.[0]._class

Values on the flattened side are typed Python scalars. Bytes or text
values are decoded into the declared field type when unflattening, so
the same walker serves raw hash data.

Invariants:
    - The walker follows a bounded-depth tree; revisiting an object on the
      current path is a cycle and fails with MappingError
    - None values are never emitted
    - The root always carries a type tag; nested positions carry one only
      when the runtime type differs from the declared type
    - Type tags resolve through an explicit alias table, never by import

How to change safely:
    - Subclasses customise leaves through the _write_*/_read_* hooks
    - Keep path syntax stable: it is the persisted layout
"""

from __future__ import annotations

import dataclasses
import inspect
import re
import types
import typing
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from functools import lru_cache
from typing import Any, Iterator, Optional, Protocol, Union

from ..errors import ConversionError, MappingError
from . import scalars
from .types import ROLE_REFERENCE, field_role

TYPE_TAG = "_class"
DEFAULT_MAX_DEPTH = 32

_SEGMENT_RE = re.compile(r"\[[^\]]*\]|[^.\[\]]+")

_ABSENT = object()


class Kind(Enum):
    """Structural classification of a declared type."""

    SCALAR = "scalar"
    STRUCT = "struct"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    OPEN = "open"  # Any, object, abstract types, unions
    OTHER = "other"  # only storable through a custom converter


def join_path(prefix: str, segment: str) -> str:
    """Append a segment to a dot-path."""
    return f"{prefix}.{segment}" if prefix else segment


def split_path(path: str) -> list[str]:
    """Split a dot-path into segments, keeping [key] segments intact."""
    return _SEGMENT_RE.findall(path)


def is_under(path: str, prefix: str) -> bool:
    """Whether path equals prefix or lies in its subtree."""
    return path == prefix or path.startswith(prefix + ".")


def default_alias(cls: type) -> str:
    """Default type tag: the fully qualified class name."""
    return f"{cls.__module__}.{cls.__qualname__}"


class TypeAliases(Protocol):
    """Type-tag table used to write and resolve `_class` values."""

    def alias_for(self, cls: type) -> str:
        ...

    def type_for(self, alias: str) -> Optional[type]:
        ...


class SimpleTypeAliases:
    """Dictionary-backed TypeAliases.

    Types are registered under their default alias the first time they
    are written, so values flattened in-process always read back.
    """

    def __init__(self) -> None:
        self._by_alias: dict[str, type] = {}
        self._by_type: dict[type, str] = {}

    def register(self, cls: type, alias: str | None = None) -> str:
        alias = alias or default_alias(cls)
        self._by_alias[alias] = cls
        self._by_type[cls] = alias
        return alias

    def alias_for(self, cls: type) -> str:
        alias = self._by_type.get(cls)
        if alias is None:
            alias = self.register(cls)
        return alias

    def type_for(self, alias: str) -> Optional[type]:
        return self._by_alias.get(alias)


@lru_cache(maxsize=None)
def type_hints(cls: type) -> dict[str, Any]:
    """Resolved field annotations of a dataclass (cached)."""
    try:
        return typing.get_type_hints(cls)
    except Exception as e:
        raise MappingError(f"Cannot resolve annotations of {cls.__qualname__}: {e}") from e


def unwrap_optional(tp: Any) -> Any:
    """Strip None from Optional[X] / X | None."""
    origin = typing.get_origin(tp)
    if origin is Union or origin is types.UnionType:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def classify(tp: Any) -> Kind:
    """Classify a declared type for the walker."""
    tp = unwrap_optional(tp)
    if tp is None or tp is Any or tp is object:
        return Kind.OPEN
    origin = typing.get_origin(tp)
    if origin is Union or origin is types.UnionType:
        return Kind.OPEN
    if origin is not None:
        tp = origin
    if not isinstance(tp, type):
        return Kind.OPEN
    if scalars.is_scalar_type(tp):
        return Kind.SCALAR
    if dataclasses.is_dataclass(tp):
        return Kind.STRUCT
    if issubclass(tp, Mapping):
        return Kind.MAPPING
    if issubclass(tp, (list, tuple, set, frozenset)):
        return Kind.SEQUENCE
    if inspect.isabstract(tp) or getattr(tp, "_is_protocol", False):
        return Kind.OPEN
    return Kind.OTHER


def empty_value(tp: Any) -> Any:
    """Value of a required field with no stored fields.

    Empty collections write nothing, so a non-optional collection type
    reads back as an empty container. Everything else is None.
    """
    if unwrap_optional(tp) is not tp:
        return None
    kind = classify(tp)
    if kind == Kind.MAPPING:
        return {}
    if kind == Kind.SEQUENCE:
        container = typing.get_origin(tp) or tp
        if container in (tuple, set, frozenset):
            return container()
        return []
    return None


def element_type(tp: Any, index: int = 0) -> Any:
    """Declared element type of a sequence type."""
    args = typing.get_args(unwrap_optional(tp))
    if not args:
        return Any
    if len(args) == 2 and args[1] is Ellipsis:
        return args[0]
    if typing.get_origin(unwrap_optional(tp)) is tuple:
        return args[index] if index < len(args) else Any
    return args[0]


def mapping_types(tp: Any) -> tuple[Any, Any]:
    """Declared (key, value) types of a mapping type."""
    args = typing.get_args(unwrap_optional(tp))
    if len(args) == 2:
        return args[0], args[1]
    return str, Any


@dataclass
class PathNode:
    """One position of an unflattened path tree."""

    value: Any = _ABSENT
    children: dict[str, PathNode] = dataclass_field(default_factory=dict)

    @property
    def has_value(self) -> bool:
        return self.value is not _ABSENT

    def items(self, prefix: str = "") -> Iterator[tuple[str, Any]]:
        """Yield (relative path, value) for every leaf in this subtree."""
        if self.has_value:
            yield prefix, self.value
        for segment, child in self.children.items():
            yield from child.items(join_path(prefix, segment))


@dataclass(frozen=True)
class PathStep:
    """One step of a declared path walk."""

    path: str
    declared: Any
    role: str | None


def build_tree(pairs: Any) -> PathNode:
    """Group (path, value) pairs into a PathNode tree."""
    root = PathNode()
    items = pairs.items() if isinstance(pairs, Mapping) else pairs
    for path, value in items:
        if isinstance(path, bytes):
            path = path.decode("utf-8")
        node = root
        for segment in split_path(path):
            node = node.children.setdefault(segment, PathNode())
        node.value = value
    return root


def _index_of(segment: str) -> int:
    try:
        return int(segment[1:-1])
    except ValueError:
        return -1


class PathFlattener:
    """Converts dataclass object graphs to path/value pairs and back.

    Attributes:
        aliases: Type-tag table for `_class` values
        max_depth: Maximum structural nesting depth

    Example:
        >>> flattener = PathFlattener()
        >>> flattener.flatten(Person(id="1", address=Address(city="Oslo")))
        [('_class', 'app.Person'), ('id', '1'), ('address.city', 'Oslo')]
    """

    def __init__(
        self,
        aliases: TypeAliases | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.aliases = aliases or SimpleTypeAliases()
        self.max_depth = max_depth

    # Flatten

    def flatten(self, obj: Any) -> list[tuple[str, Any]]:
        """Flatten a dataclass instance into ordered (path, value) pairs.

        Raises:
            MappingError: On cycles, excessive depth or unconvertible values
        """
        out: list[tuple[str, Any]] = []
        if self._write_custom("", obj, out):
            return out
        if not dataclasses.is_dataclass(obj) or isinstance(obj, type):
            raise MappingError(f"Cannot flatten {type(obj).__name__}: not a dataclass instance", "")
        out.append((TYPE_TAG, self.aliases.alias_for(type(obj))))
        self._flatten_struct("", obj, out, 0, {id(obj)})
        return out

    def flatten_at(
        self,
        path: str,
        value: Any,
        declared: Any = Any,
        role: str | None = None,
    ) -> list[tuple[str, Any]]:
        """Flatten a single value positioned at path (subtree writes)."""
        out: list[tuple[str, Any]] = []
        self._flatten_value(path, value, declared, out, len(split_path(path)), set(), role)
        return out

    def _flatten_struct(
        self, path: str, obj: Any, out: list, depth: int, stack: set[int]
    ) -> None:
        hints = type_hints(type(obj))
        for f in dataclasses.fields(obj):
            value = getattr(obj, f.name)
            self._flatten_value(
                join_path(path, f.name),
                value,
                hints.get(f.name, Any),
                out,
                depth + 1,
                stack,
                self._role_of(type(obj), f),
            )

    def _flatten_value(
        self,
        path: str,
        value: Any,
        declared: Any,
        out: list,
        depth: int,
        stack: set[int],
        role: str | None = None,
    ) -> None:
        if value is None:
            return
        if depth > self.max_depth:
            raise MappingError(f"Maximum depth {self.max_depth} exceeded", path)
        if self._write_custom(path, value, out):
            return
        if scalars.is_scalar(value):
            out.append((path, value))
            return

        if id(value) in stack:
            raise MappingError("Cyclic reference detected", path)

        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            if role == ROLE_REFERENCE and self._write_reference(path, value, out):
                return
            runtime = type(value)
            if unwrap_optional(declared) is not runtime:
                out.append((join_path(path, TYPE_TAG), self.aliases.alias_for(runtime)))
            stack.add(id(value))
            try:
                self._flatten_struct(path, value, out, depth, stack)
            finally:
                stack.discard(id(value))
            return

        if isinstance(value, Mapping):
            _, value_type = mapping_types(declared)
            stack.add(id(value))
            try:
                for key, item in value.items():
                    segment = f"[{self._map_key(key, path)}]"
                    self._flatten_value(
                        join_path(path, segment), item, value_type, out, depth + 1, stack, role
                    )
            finally:
                stack.discard(id(value))
            return

        if isinstance(value, (list, tuple, set, frozenset)):
            stack.add(id(value))
            try:
                for index, item in enumerate(value):
                    self._flatten_value(
                        join_path(path, f"[{index}]"),
                        item,
                        element_type(declared, index),
                        out,
                        depth + 1,
                        stack,
                        role,
                    )
            finally:
                stack.discard(id(value))
            return

        raise MappingError(f"No converter for value of type {type(value).__name__}", path)

    def _map_key(self, key: Any, path: str) -> str:
        if not scalars.is_scalar(key) or isinstance(key, bytes):
            raise MappingError(f"Unsupported map key type {type(key).__name__}", path)
        text = scalars.encode_text(key)
        if "]" in text:
            raise MappingError(f"Map key '{text}' must not contain ']'", path)
        return text

    # Unflatten

    def unflatten(self, pairs: Any, target_type: type) -> Any:
        """Rebuild an object of target_type from (path, value) pairs.

        Args:
            pairs: Iterable of (path, value) or a mapping path -> value
            target_type: Declared root type

        Raises:
            ConversionError: If a value cannot be converted
        """
        root = build_tree(pairs)
        value = self._read_value(root, target_type, "", None)
        return None if value is _ABSENT else value

    def _read_value(self, node: PathNode, declared: Any, path: str, role: str | None) -> Any:
        custom = self._read_custom(node, declared, path)
        if custom is not _ABSENT:
            return custom

        declared = unwrap_optional(declared)
        tagged = self._tagged_type(node, declared, path)
        if tagged is not None:
            declared = tagged
        kind = classify(declared)

        if role == ROLE_REFERENCE and node.has_value and kind == Kind.STRUCT:
            return self._read_reference(node.value, declared, path)

        if kind == Kind.STRUCT:
            if node.has_value and not node.children:
                raise ConversionError(f"Expected nested fields for {declared.__name__}", path)
            return self._read_struct(node, declared, path)

        if kind == Kind.SEQUENCE:
            return self._read_sequence(node, declared, path, role)

        if kind == Kind.MAPPING:
            return self._read_mapping(node, declared, path, role)

        if kind == Kind.SCALAR:
            if not node.has_value:
                return _ABSENT
            return self._read_leaf(node.value, declared, path)

        if kind == Kind.OPEN:
            if node.has_value and not node.children:
                return self._read_leaf(node.value, Any, path)
            segments = [s for s in node.children if s != TYPE_TAG]
            if segments and all(s.startswith("[") for s in segments):
                if all(_index_of(s) >= 0 for s in segments):
                    return self._read_sequence(node, list, path, role)
                return self._read_mapping(node, dict, path, role)
            if not segments:
                return _ABSENT
            raise ConversionError("Cannot determine type of nested value without type tag", path)

        raise ConversionError(f"No converter registered for {getattr(declared, '__name__', declared)}", path)

    def _tagged_type(self, node: PathNode, declared: Any, path: str) -> Optional[type]:
        tag_node = node.children.get(TYPE_TAG)
        if tag_node is None or not tag_node.has_value:
            return None
        tag = tag_node.value
        if isinstance(tag, bytes):
            tag = tag.decode("utf-8")
        cls = self.aliases.type_for(tag)
        if cls is None:
            raise ConversionError(f"Unknown type tag '{tag}'", join_path(path, TYPE_TAG))
        declared_cls = typing.get_origin(declared) or declared
        if classify(declared) == Kind.OPEN:
            return cls
        if isinstance(declared_cls, type) and issubclass(cls, declared_cls):
            return cls
        return None

    def _read_struct(self, node: PathNode, cls: type, path: str) -> Any:
        hints = type_hints(cls)
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            if not f.init:
                continue
            child = node.children.get(f.name)
            value = _ABSENT
            if child is not None:
                value = self._read_value(
                    child, hints.get(f.name, Any), join_path(path, f.name), self._role_of(cls, f)
                )
            if value is _ABSENT:
                if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
                    kwargs[f.name] = empty_value(hints.get(f.name, Any))
                continue
            kwargs[f.name] = value
        try:
            return cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise ConversionError(f"Cannot construct {cls.__name__}: {e}", path, e) from e

    def _read_sequence(self, node: PathNode, declared: Any, path: str, role: str | None) -> Any:
        indexed = sorted(
            ((_index_of(s), s, child) for s, child in node.children.items() if s != TYPE_TAG),
            key=lambda t: t[0],
        )
        items = []
        for index, segment, child in indexed:
            if index < 0:
                raise ConversionError(f"Invalid collection index '{segment}'", path)
            value = self._read_value(
                child, element_type(declared, index), join_path(path, segment), role
            )
            if value is not _ABSENT:
                items.append(value)
        container = typing.get_origin(unwrap_optional(declared)) or unwrap_optional(declared)
        if container in (tuple, set, frozenset):
            return container(items)
        if isinstance(container, type) and issubclass(container, (set, frozenset)):
            return container(items)
        return items

    def _read_mapping(self, node: PathNode, declared: Any, path: str, role: str | None) -> Any:
        key_type, value_type = mapping_types(declared)
        result: dict[Any, Any] = {}
        for segment, child in node.children.items():
            if segment == TYPE_TAG:
                continue
            if not (segment.startswith("[") and segment.endswith("]")):
                raise ConversionError(f"Invalid map key segment '{segment}'", path)
            key_path = join_path(path, segment)
            try:
                key = scalars.decode(segment[1:-1], key_type if key_type is not Any else str)
            except (TypeError, ValueError) as e:
                raise ConversionError(f"Cannot convert map key: {e}", key_path, e) from e
            value = self._read_value(child, value_type, key_path, role)
            if value is not _ABSENT:
                result[key] = value
        return result

    def _read_leaf(self, value: Any, declared: Any, path: str) -> Any:
        if not isinstance(value, (bytes, str)):
            return value
        if isinstance(declared, type) and isinstance(value, declared):
            return value
        try:
            return scalars.decode(value, declared)
        except (TypeError, ValueError) as e:
            raise ConversionError(f"Cannot convert value: {e}", path, e) from e

    # Declared path walk

    def declared_path(self, cls: type, path: str) -> list[PathStep]:
        """Walk path over the declared types of cls.

        Returns:
            One PathStep per segment, root-most first

        Raises:
            MappingError: If the path does not exist on the type
        """
        steps: list[PathStep] = []
        current: Any = cls
        current_path = ""
        role: str | None = None
        for segment in split_path(path):
            current_path = join_path(current_path, segment)
            current = unwrap_optional(current)
            kind = classify(current)
            if segment.startswith("["):
                if kind == Kind.SEQUENCE:
                    current = element_type(current, max(_index_of(segment), 0))
                elif kind == Kind.MAPPING:
                    current = mapping_types(current)[1]
                elif kind == Kind.OPEN:
                    current = Any
                else:
                    raise MappingError(f"'{segment}' does not address a collection", current_path)
            elif kind == Kind.STRUCT:
                fields = {f.name: f for f in dataclasses.fields(current)}
                if segment not in fields:
                    raise MappingError(
                        f"{current.__name__} has no field '{segment}'", current_path
                    )
                role = self._role_of(current, fields[segment])
                current = type_hints(current).get(segment, Any)
            elif kind == Kind.OPEN:
                current = Any
            else:
                raise MappingError(f"Cannot address '{segment}' inside a scalar", current_path)
            steps.append(PathStep(current_path, current, role))
        return steps

    # Hooks

    def _role_of(self, cls: type, f: dataclasses.Field) -> str | None:
        """Storage role of a dataclass field."""
        return field_role(f)

    def _write_custom(self, path: str, value: Any, out: list) -> bool:
        """Write value through a custom converter; True if handled."""
        return False

    def _write_reference(self, path: str, value: Any, out: list) -> bool:
        """Write a referenced entity as its key; True if handled."""
        return False

    def _read_custom(self, node: PathNode, declared: Any, path: str) -> Any:
        """Read through a custom converter; _ABSENT if not handled."""
        return _ABSENT

    def _read_reference(self, key: Any, declared: type, path: str) -> Any:
        """Resolve a stored reference key."""
        return _ABSENT
