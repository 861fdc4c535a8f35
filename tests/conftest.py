"""
Shared fixtures: fresh registry, connected in-memory store, adapter.
"""

import pytest
import pytest_asyncio

from kvmap.kvmap_engine.adapter import HashMappingAdapter
from kvmap.kvmap_engine.mapping.registry import TypeRegistry
from kvmap.kvmap_engine.mapping.types import ConverterTarget
from kvmap.kvmap_engine.store.memory import InMemoryKeyValueStore

from tests.domain import (
    Money,
    Priority,
    Temperature,
    money_from_bytes,
    money_to_bytes,
    priority_from_bytes,
    priority_to_bytes,
    temperature_from_fields,
    temperature_to_fields,
)


@pytest.fixture
def registry():
    """Registry with the custom converters the domain needs."""
    reg = TypeRegistry()
    reg.add_converter(Money, ConverterTarget.BYTES, money_to_bytes, money_from_bytes)
    reg.add_converter(Priority, ConverterTarget.BYTES, priority_to_bytes, priority_from_bytes)
    reg.add_converter(
        Temperature, ConverterTarget.FIELDS, temperature_to_fields, temperature_from_fields
    )
    return reg


@pytest_asyncio.fixture
async def store():
    """Connected in-memory store."""
    s = InMemoryKeyValueStore()
    await s.connect()
    yield s
    await s.close()


@pytest.fixture
def adapter(registry, store):
    """Adapter over the in-memory store."""
    return HashMappingAdapter(registry, store)
