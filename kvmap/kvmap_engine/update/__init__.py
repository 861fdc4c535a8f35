"""Partial updates for kvmap."""

from .partial import PartialUpdate, PartialUpdateEngine, PropertyUpdate, UpdateOp

__all__ = ["PartialUpdate", "PartialUpdateEngine", "PropertyUpdate", "UpdateOp"]
