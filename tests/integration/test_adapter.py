"""
Integration tests for HashMappingAdapter against the in-memory store.

Tests cover:
- Save with id generation and write-back
- Stored layout: primary hash, keyspace set, index sets
- Index maintenance on replacement and delete
- Index and geo queries
- Reference loading, including cycles
- Keyspace-wide operations
"""

import uuid

import pytest

from kvmap.kvmap_engine.errors import ConfigurationError, ConversionError
from kvmap.kvmap_engine.index.query import Box, Distance, Equals, any_of, near, where, within
from kvmap.kvmap_engine.mapping.types import ConverterTarget

from tests.domain import (
    BERGEN,
    DRAMMEN,
    OSLO,
    Account,
    Address,
    City,
    Money,
    Person,
    Priority,
    Tag,
    Ticket,
)


class TestSave:
    """Tests for save and the stored layout."""

    @pytest.mark.asyncio
    async def test_generates_id(self, adapter):
        """Test a missing id is generated and written back."""
        person = Person(firstname="rand")

        entity_id = await adapter.save(person)

        assert person.id == entity_id
        uuid.UUID(entity_id)

    @pytest.mark.asyncio
    async def test_generates_id_on_frozen_entity(self, adapter):
        """Test ids are written back onto frozen dataclasses."""
        tag = Tag(label="x")
        entity_id = await adapter.save(tag)
        assert tag.id == entity_id

    @pytest.mark.asyncio
    async def test_stored_layout(self, adapter, store):
        """Test primary hash, keyspace set and index sets."""
        await adapter.save(
            Person(id="1", firstname="rand", address=Address(city="Two Rivers"), nicknames=["dragon"])
        )

        raw = await store.hgetall("persons:1")
        assert raw[b"firstname"] == b"rand"
        assert raw[b"address.city"] == b"Two Rivers"
        assert await store.smembers("persons") == {b"1"}
        assert await store.smembers("persons:firstname:rand") == {b"1"}
        assert await store.smembers("persons:address.city:Two Rivers") == {b"1"}
        assert await store.smembers("persons:nicknames:dragon") == {b"1"}

    @pytest.mark.asyncio
    async def test_replace_removes_stale_fields(self, adapter, store):
        """Test saving again replaces the whole hash."""
        await adapter.save(Person(id="1", firstname="rand", age=20))
        await adapter.save(Person(id="1", firstname="rand"))

        assert b"age" not in await store.hgetall("persons:1")

    @pytest.mark.asyncio
    async def test_replace_moves_index_entries(self, adapter, store):
        """Test changed indexed values move to their new sets."""
        await adapter.save(Person(id="1", firstname="rand", nicknames=["dragon", "lord"]))
        await adapter.save(Person(id="1", firstname="mat", nicknames=["lord"]))

        assert store.keys("persons:firstname:*") == ["persons:firstname:mat"]
        assert store.keys("persons:nicknames:*") == ["persons:nicknames:lord"]

    @pytest.mark.asyncio
    async def test_replace_moves_custom_converted_index_entries(self, adapter, store):
        """Test index entries of BYTES-converted values use the stored encoding."""
        await adapter.save(Ticket(id="1", priority=Priority.HIGH))
        await adapter.save(Ticket(id="1", priority=Priority.LOW))

        assert (await store.hgetall("tickets:1"))[b"priority"] == b"l"
        assert store.keys("tickets:priority:*") == ["tickets:priority:l"]
        assert await adapter.lookup_ids(Ticket, where("priority", Priority.HIGH)) == set()
        assert await adapter.lookup_ids(Ticket, where("priority", Priority.LOW)) == {"1"}

        await adapter.delete_by_id(Ticket, "1")
        assert store.keys("tickets:priority:*") == []

    @pytest.mark.asyncio
    async def test_conversion_error_writes_nothing(self, registry, adapter, store):
        """Test a failing converter leaves the store untouched."""

        def broken(money):
            raise ValueError("no rate")

        registry.add_converter(Money, ConverterTarget.BYTES, broken, bytes)

        with pytest.raises(ConversionError):
            await adapter.save(Account(id="a", owner="x", balance=Money(1, "EUR")))
        assert store.keys() == []


class TestRead:
    """Tests for loading entities."""

    @pytest.mark.asyncio
    async def test_find_by_id(self, adapter):
        """Test a saved entity loads back equal."""
        person = Person(id="1", firstname="rand", address=Address(city="Two Rivers"), attributes={"a": "b"})
        await adapter.save(person)

        assert await adapter.find_by_id(Person, "1") == person

    @pytest.mark.asyncio
    async def test_find_missing(self, adapter):
        """Test missing ids load as None."""
        assert await adapter.find_by_id(Person, "nope") is None
        assert not await adapter.exists(Person, "nope")

    @pytest.mark.asyncio
    async def test_find_all_ordered(self, adapter):
        """Test find_all returns every entity ordered by id."""
        for entity_id in ("2", "3", "1"):
            await adapter.save(Person(id=entity_id))

        assert [p.id for p in await adapter.find_all(Person)] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_count(self, adapter):
        """Test count by keyspace or type."""
        await adapter.save(Person(id="1"))
        await adapter.save(Person(id="2"))

        assert await adapter.count("persons") == 2
        assert await adapter.count(Person) == 2
        assert await adapter.count("unknown") == 0


class TestReferences:
    """Tests for reference fields."""

    @pytest.mark.asyncio
    async def test_reference_loaded(self, adapter, store):
        """Test referenced entities are loaded from their own hashes."""
        mother = Person(id="1", firstname="tam")
        await adapter.save(mother)
        await adapter.save(Person(id="2", firstname="rand", mother=mother))

        loaded = await adapter.find_by_id(Person, "2")

        assert (await store.hgetall("persons:2"))[b"mother"] == b"persons:1"
        assert loaded.mother == mother

    @pytest.mark.asyncio
    async def test_dangling_reference(self, adapter):
        """Test references to deleted entities read as None."""
        mother = Person(id="1")
        await adapter.save(mother)
        await adapter.save(Person(id="2", mother=mother))
        await adapter.delete_by_id(Person, "1")

        assert (await adapter.find_by_id(Person, "2")).mother is None

    @pytest.mark.asyncio
    async def test_reference_cycle(self, adapter):
        """Test cyclic references terminate."""
        a = Person(id="a")
        b = Person(id="b", mother=a)
        a.mother = b
        await adapter.save(a)
        await adapter.save(b)

        loaded = await adapter.find_by_id(Person, "a")

        assert loaded.mother.id == "b"
        assert loaded.mother.mother.id == "a"
        assert loaded.mother.mother.mother is None


class TestDelete:
    """Tests for deletes."""

    @pytest.mark.asyncio
    async def test_delete_by_id(self, adapter, store):
        """Test delete removes hash, keyspace membership and indexes."""
        person = Person(id="1", firstname="rand", nicknames=["dragon"])
        await adapter.save(person)

        deleted = await adapter.delete_by_id(Person, "1")

        assert deleted == person
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, adapter):
        """Test deleting a missing entity returns None."""
        await adapter.save(Person(id="1"))
        await adapter.delete_by_id(Person, "1")
        assert await adapter.delete_by_id(Person, "1") is None

    @pytest.mark.asyncio
    async def test_delete_all(self, adapter, store):
        """Test delete_all clears a keyspace."""
        await adapter.save(Person(id="1", firstname="rand"))
        await adapter.save(Person(id="2", firstname="mat"))
        await adapter.save(City(id="c", name="oslo"))

        assert await adapter.delete_all(Person) == 2
        assert await adapter.count(Person) == 0
        assert store.keys("persons*") == []
        assert await adapter.count(City) == 1

    @pytest.mark.asyncio
    async def test_delete_all_unknown_keyspace(self, adapter):
        """Test unknown keyspaces are configuration errors."""
        with pytest.raises(ConfigurationError):
            await adapter.delete_all("unknown")


class TestQueries:
    """Tests for index queries."""

    @pytest.fixture
    def people(self):
        return [
            Person(id="1", firstname="rand", lastname="al'thor"),
            Person(id="2", firstname="rand", lastname="other"),
            Person(id="3", firstname="mat", lastname="cauthon"),
        ]

    @pytest.mark.asyncio
    async def test_all_conditions(self, adapter, people):
        """Test ALL queries intersect."""
        for person in people:
            await adapter.save(person)

        ids = await adapter.lookup_ids(Person, where("firstname", "rand").and_("lastname", "al'thor"))

        assert ids == {"1"}

    @pytest.mark.asyncio
    async def test_any_conditions(self, adapter, people):
        """Test ANY queries union."""
        for person in people:
            await adapter.save(person)

        query = any_of(Equals("lastname", "al'thor"), Equals("firstname", "mat"))

        assert await adapter.lookup_ids("persons", query) == {"1", "3"}

    @pytest.mark.asyncio
    async def test_find_by_query(self, adapter, people):
        """Test matching entities are loaded in id order."""
        for person in people:
            await adapter.save(person)

        found = await adapter.find_by_query(Person, where("firstname", "rand"))

        assert [p.id for p in found] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_unindexed_path_is_empty(self, adapter, people):
        """Test queries on non-indexed paths return nothing."""
        for person in people:
            await adapter.save(person)

        assert await adapter.lookup_ids(Person, where("age", 1)) == set()
        assert await adapter.lookup_ids("unknown", where("a", "b")) == set()

    @pytest.mark.asyncio
    async def test_geo_radius(self, adapter):
        """Test radius queries over a geo index."""
        await adapter.save(City(id="oslo", location=OSLO))
        await adapter.save(City(id="drammen", location=DRAMMEN))
        await adapter.save(City(id="bergen", location=BERGEN))

        ids = await adapter.lookup_ids(City, near("location", OSLO, Distance.kilometers(50)))

        assert ids == {"oslo", "drammen"}

    @pytest.mark.asyncio
    async def test_geo_box(self, adapter):
        """Test box queries over a geo index."""
        await adapter.save(City(id="oslo", location=OSLO))
        await adapter.save(City(id="drammen", location=DRAMMEN))

        box = Box(OSLO, Distance.kilometers(20), Distance.kilometers(20))

        assert await adapter.lookup_ids(City, within("location", box)) == {"oslo"}

    @pytest.mark.asyncio
    async def test_geo_moves_on_save(self, adapter):
        """Test a moved point is found at its new position only."""
        await adapter.save(City(id="c", location=OSLO))
        await adapter.save(City(id="c", location=BERGEN))

        near_oslo = await adapter.lookup_ids(City, near("location", OSLO, Distance.kilometers(10)))
        near_bergen = await adapter.lookup_ids(City, near("location", BERGEN, Distance.kilometers(10)))

        assert near_oslo == set()
        assert near_bergen == {"c"}
