"""
Error types for the kvmap engine.

This module defines all exception types raised by the mapping, indexing
and lifecycle components:
- KvMapError: Base exception
- MappingError: Structural flattening failure
- ConversionError: Converter failure at a specific path
- ConfigurationError: Invalid type declarations or settings
- IndexUnavailableError: Index structure missing for a lookup
- UnsupportedOperationError: Partial update the engine refuses
- QueryError: Invalid index query construction

Invariants:
    - All errors inherit from KvMapError
    - Errors include context for debugging (path, type, keyspace)
    - IndexUnavailableError is never fatal to the adapter surface
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class KvMapError(Exception):
    """Base exception for all kvmap errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KVMAP_ERROR"
        self.details = details or {}


class MappingError(KvMapError):
    """Object graph could not be flattened or rebuilt.

    Raised when:
    - A cyclic structural reference is detected
    - The maximum nesting depth is exceeded
    - A value has no registered or default converter
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="MAPPING_ERROR", details={"path": path})
        self.path = path


class ConversionError(KvMapError):
    """A custom or default converter failed.

    The offending dot-path is always part of the message.
    """

    def __init__(self, message: str, path: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            f"{message} (path '{path}')",
            code="CONVERSION_ERROR",
            details={"path": path, "cause": repr(cause) if cause else None},
        )
        self.path = path


class ConfigurationError(KvMapError):
    """Type declaration or engine configuration is invalid.

    Raised when:
    - Both a fixed TTL and a TTL field are declared
    - The identifier is ambiguous or missing
    - A declared path does not exist on the type
    """

    def __init__(self, message: str, entity_type: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"entity_type": entity_type},
        )
        self.entity_type = entity_type


class IndexUnavailableError(KvMapError):
    """Index structure is not available for a lookup.

    Treated as an empty result by the adapter.
    """

    def __init__(self, message: str, keyspace: str, path: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="INDEX_UNAVAILABLE",
            details={"keyspace": keyspace, "path": path},
        )
        self.keyspace = keyspace
        self.path = path


class UnsupportedOperationError(KvMapError):
    """Partial update operation cannot be applied."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="UNSUPPORTED_OPERATION", details={"path": path})
        self.path = path


class QueryError(KvMapError):
    """Index query is malformed.

    Raised at construction time, before anything is executed.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, code="QUERY_ERROR")
