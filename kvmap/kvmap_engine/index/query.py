"""
Index queries.

An IndexQuery is either
- one or more equality conditions combined with ALL (set intersection)
  or ANY (set union), or
- exactly one geo condition (near a point, or within a circle or box).

Queries are validated when they are built: a geo condition next to any
other condition raises QueryError before anything reaches the store.

Example:
    >>> where("firstname", "rand").and_("lastname", "al'thor")
    >>> where("city", "Oslo").or_("city", "Bergen")
    >>> near("location", Point(10.75, 59.91), Distance.kilometers(5))
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from ..errors import QueryError
from ..mapping.types import Point
from ..store.base import DistanceUnit


class Match(Enum):
    """How equality conditions combine."""

    ALL = "all"  # intersection
    ANY = "any"  # union


@dataclass(frozen=True)
class Distance:
    """A distance with its unit."""

    value: float
    unit: DistanceUnit = DistanceUnit.METERS

    @classmethod
    def meters(cls, value: float) -> Distance:
        return cls(value, DistanceUnit.METERS)

    @classmethod
    def kilometers(cls, value: float) -> Distance:
        return cls(value, DistanceUnit.KILOMETERS)

    @classmethod
    def miles(cls, value: float) -> Distance:
        return cls(value, DistanceUnit.MILES)

    @property
    def in_meters(self) -> float:
        return self.value * self.unit.meters


def _distance(value: Union[Distance, float, int]) -> Distance:
    if isinstance(value, Distance):
        distance = value
    else:
        distance = Distance(float(value))
    if distance.value < 0:
        raise QueryError(f"Distance must not be negative, got {distance.value}")
    return distance


@dataclass(frozen=True)
class Circle:
    """Circle around a center point."""

    center: Point
    radius: Distance


@dataclass(frozen=True)
class Box:
    """Axis-aligned box centred on a point."""

    center: Point
    width: Distance
    height: Distance


@dataclass(frozen=True)
class Equals:
    """Equality condition on a simple index."""

    path: str
    value: Any


@dataclass(frozen=True)
class Within:
    """Geo condition on a geo index."""

    path: str
    shape: Union[Circle, Box]


Condition = Union[Equals, Within]


class IndexQuery:
    """Validated set of index conditions.

    Attributes:
        conditions: Conditions in declaration order
        match: How equality conditions combine
    """

    def __init__(self, conditions: tuple[Condition, ...] | list[Condition], match: Match = Match.ALL) -> None:
        conditions = tuple(conditions)
        if not conditions:
            raise QueryError("Index query needs at least one condition")
        for condition in conditions:
            if not isinstance(condition, (Equals, Within)):
                raise QueryError(f"Unsupported condition {condition!r}")
            if not condition.path:
                raise QueryError("Condition path cannot be empty")
            if isinstance(condition, Equals) and condition.value is None:
                raise QueryError(f"Cannot match None on '{condition.path}'")
        geo = [c for c in conditions if isinstance(c, Within)]
        if geo and len(conditions) > 1:
            raise QueryError("A geo condition cannot be combined with other conditions")
        self.conditions = conditions
        self.match = match

    @property
    def geo(self) -> Optional[Within]:
        """The geo condition, if this is a geo query."""
        first = self.conditions[0]
        return first if isinstance(first, Within) else None

    @property
    def paths(self) -> list[str]:
        return [c.path for c in self.conditions]

    def and_(self, path: str, value: Any) -> IndexQuery:
        """Add an equality condition combined with ALL."""
        return self._extend(Equals(path, value), Match.ALL)

    def or_(self, path: str, value: Any) -> IndexQuery:
        """Add an equality condition combined with ANY."""
        return self._extend(Equals(path, value), Match.ANY)

    def _extend(self, condition: Equals, match: Match) -> IndexQuery:
        if len(self.conditions) > 1 and self.match != match:
            raise QueryError("Cannot mix ALL and ANY in one index query")
        return IndexQuery(self.conditions + (condition,), match)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IndexQuery):
            return NotImplemented
        return self.conditions == other.conditions and self.match == other.match

    def __hash__(self) -> int:
        return hash((self.conditions, self.match))

    def __repr__(self) -> str:
        return f"IndexQuery({list(self.conditions)!r}, match={self.match.name})"


def where(path: str, value: Any) -> IndexQuery:
    """Start a query with one equality condition."""
    return IndexQuery((Equals(path, value),))


def all_of(*conditions: Equals) -> IndexQuery:
    return IndexQuery(conditions, Match.ALL)


def any_of(*conditions: Equals) -> IndexQuery:
    return IndexQuery(conditions, Match.ANY)


def near(path: str, point: Point, distance: Union[Distance, float]) -> IndexQuery:
    """Geo query: members within distance of point."""
    return IndexQuery((Within(path, Circle(point, _distance(distance))),))


def within(path: str, shape: Union[Circle, Box]) -> IndexQuery:
    """Geo query: members inside a circle or box."""
    if not isinstance(shape, (Circle, Box)):
        raise QueryError(f"Unsupported geo shape {type(shape).__name__}")
    return IndexQuery((Within(path, shape),))
