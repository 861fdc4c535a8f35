"""
Default scalar converters.

Pure functions mapping Python scalar values to the raw byte values
stored in hash fields, and back. Used by the flattener to decide what
is a leaf, by the hash converter for leaf encoding and by the index
maintainer for index key values.

Encoding rules:
    str       -> UTF-8
    bytes     -> unchanged
    bool      -> b"1" / b"0"
    int/float -> decimal text (repr for float)
    Decimal   -> text
    UUID      -> canonical text
    datetime  -> ISO-8601 (date and time likewise)
    timedelta -> seconds
    Enum      -> member name
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

SCALAR_TYPES: tuple[type, ...] = (
    str,
    bytes,
    bool,
    int,
    float,
    Decimal,
    UUID,
    dt.datetime,
    dt.date,
    dt.time,
    dt.timedelta,
    Enum,
)


def is_scalar(value: Any) -> bool:
    """Whether a value is handled by the default converters."""
    return isinstance(value, SCALAR_TYPES)


def is_scalar_type(tp: Any) -> bool:
    """Whether a declared type is handled by the default converters."""
    return isinstance(tp, type) and issubclass(tp, SCALAR_TYPES)


def encode(value: Any) -> bytes:
    """Encode a scalar value to its stored byte form.

    Raises:
        TypeError: If the value is not a supported scalar
    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, Enum):
        return value.name.encode("utf-8")
    if isinstance(value, bool):
        return b"1" if value else b"0"
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (int, Decimal, UUID)):
        return str(value).encode("utf-8")
    if isinstance(value, float):
        return repr(value).encode("utf-8")
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat().encode("utf-8")
    if isinstance(value, dt.timedelta):
        seconds = value.total_seconds()
        text = str(int(seconds)) if seconds.is_integer() else repr(seconds)
        return text.encode("utf-8")
    raise TypeError(f"No default converter for {type(value).__name__}")


def encode_text(value: Any) -> str:
    """Encode a scalar to text (index values and map keys)."""
    return encode(value).decode("utf-8")


def decode(raw: bytes | str, target: Any) -> Any:
    """Decode a stored value into the declared scalar type.

    Unknown or open targets (Any, object, None) decode to str.

    Raises:
        ValueError: If the raw value does not parse as the target type
        TypeError: If the target type is not a supported scalar
    """
    if isinstance(raw, str):
        if target is bytes:
            return raw.encode("utf-8")
        text = raw
    else:
        if target is bytes:
            return bytes(raw)
        text = raw.decode("utf-8")

    if target in (None, Any, object, str):
        return text
    if not isinstance(target, type):
        raise TypeError(f"No default converter for {target!r}")
    if issubclass(target, Enum):
        try:
            return target[text]
        except KeyError:
            raise ValueError(f"'{text}' is not a member of {target.__name__}") from None
    if issubclass(target, bool):
        if text in ("1", "true", "True"):
            return True
        if text in ("0", "false", "False"):
            return False
        raise ValueError(f"Invalid boolean value '{text}'")
    if issubclass(target, str):
        return target(text)
    if issubclass(target, int):
        return target(text)
    if issubclass(target, float):
        return target(text)
    if issubclass(target, Decimal):
        return Decimal(text)
    if issubclass(target, UUID):
        return UUID(text)
    if issubclass(target, dt.datetime):
        return dt.datetime.fromisoformat(text)
    if issubclass(target, dt.date):
        return dt.date.fromisoformat(text)
    if issubclass(target, dt.time):
        return dt.time.fromisoformat(text)
    if issubclass(target, dt.timedelta):
        return dt.timedelta(seconds=float(text))
    raise TypeError(f"No default converter for {target.__name__}")
