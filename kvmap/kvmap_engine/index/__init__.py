"""
Secondary indexes for kvmap.

Simple indexes keep one set per indexed value (`keyspace:path:value`);
geo indexes keep one geo structure per path (`keyspace:path`).
"""

from .maintainer import GeoIndexEntry, IndexEntry, IndexMaintainer, SimpleIndexEntry
from .query import (
    Box,
    Circle,
    Distance,
    Equals,
    IndexQuery,
    Match,
    Within,
    all_of,
    any_of,
    near,
    where,
    within,
)

__all__ = [
    "IndexMaintainer",
    "IndexEntry",
    "SimpleIndexEntry",
    "GeoIndexEntry",
    "IndexQuery",
    "Match",
    "Equals",
    "Within",
    "Circle",
    "Box",
    "Distance",
    "where",
    "all_of",
    "any_of",
    "near",
    "within",
]
