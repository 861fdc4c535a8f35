"""
kvmap engine - object-to-hash mapping for key-value stores.

This package maps dataclass object graphs onto hashes of a Redis-like
key-value store and keeps derived state consistent:
- Flattened hash representation with `_class` type tags
- Secondary indexes (equality sets and geo structures)
- Time-to-live with phantom copies and expiration events
- Partial in-place updates

Architecture:
    caller -> HashMappingAdapter -> KeyValueStore (Redis / in-memory)
                 |-- HashConverter + TypeRegistry   (object <-> hash)
                 |-- IndexMaintainer                (index sets, geo)
                 |-- ExpirationManager              (TTL, phantoms, events)
                 `-- PartialUpdateEngine            (in-place updates)
    KeyValueStore --expired--> KeyExpirationListener -> ExpirationManager

Invariants:
    - Every entity has exactly one resolvable identifier
    - Index entries equal the indexable values of the latest saved state
    - A phantom exists iff the entity currently has a positive TTL
    - Partial updates never alter the identifier
"""

from ._version import __version__
from .adapter import HashMappingAdapter
from .config import EngineConfig
from .engine import MappingEngine, setup_logging
from .errors import (
    ConfigurationError,
    ConversionError,
    IndexUnavailableError,
    KvMapError,
    MappingError,
    QueryError,
    UnsupportedOperationError,
)
from .expiry import KeyExpiredEvent, ListenerMode
from .index import Box, Circle, Distance, IndexQuery, near, where, within
from .mapping import (
    ConverterTarget,
    Point,
    TypeRegistry,
    entity,
    geo_indexed,
    hash_entity,
    identifier,
    indexed,
    reference,
    time_to_live,
)
from .update import PartialUpdate

__all__ = [
    "__version__",
    # Surface
    "HashMappingAdapter",
    "MappingEngine",
    "EngineConfig",
    "setup_logging",
    "PartialUpdate",
    "KeyExpiredEvent",
    "ListenerMode",
    # Declarations
    "TypeRegistry",
    "entity",
    "hash_entity",
    "identifier",
    "indexed",
    "geo_indexed",
    "time_to_live",
    "reference",
    "ConverterTarget",
    "Point",
    # Queries
    "IndexQuery",
    "where",
    "near",
    "within",
    "Circle",
    "Box",
    "Distance",
    # Errors
    "KvMapError",
    "MappingError",
    "ConversionError",
    "ConfigurationError",
    "IndexUnavailableError",
    "UnsupportedOperationError",
    "QueryError",
]
