"""
Integration tests for partial updates.

Tests cover:
- Setting scalars and subtrees
- Deleting paths
- Index maintenance for touched paths
- Rejected operations
- Upserting missing entities
- TTL refresh and phantom mirroring
"""

from decimal import Decimal

import pytest

from kvmap.kvmap_engine.errors import MappingError, UnsupportedOperationError
from kvmap.kvmap_engine.update.partial import PartialUpdate, UpdateOp

from tests.domain import Account, Address, Money, Person, Session, Token


@pytest.fixture
def rand():
    return Person(
        id="1",
        firstname="rand",
        lastname="al'thor",
        age=20,
        address=Address(city="Two Rivers", country="Andor"),
        nicknames=["dragon", "lord"],
    )


class TestPartialUpdateBuilder:
    """Tests for building updates."""

    def test_set_none_is_delete(self):
        """Test setting None records a delete."""
        update = PartialUpdate("1", Person).set("age", None)
        assert update.updates[0].op == UpdateOp.DELETE

    def test_paths(self):
        """Test touched paths in order."""
        update = PartialUpdate("1", Person).set("age", 3).delete("address")
        assert update.paths == ["age", "address"]

    def test_empty_path(self):
        """Test empty paths are rejected."""
        with pytest.raises(UnsupportedOperationError):
            PartialUpdate("1", Person).set("", 1)


class TestApply:
    """Tests for applying partial updates."""

    @pytest.mark.asyncio
    async def test_set_scalar(self, adapter, store, rand):
        """Test one field changes and the rest is kept."""
        await adapter.save(rand)

        await adapter.apply_partial_update(PartialUpdate("1", Person).set("age", 21))

        loaded = await adapter.find_by_id(Person, "1")
        assert loaded.age == 21
        assert loaded.firstname == "rand"
        assert loaded.nicknames == ["dragon", "lord"]

    @pytest.mark.asyncio
    async def test_set_indexed_value(self, adapter, store, rand):
        """Test index entries follow an updated value."""
        await adapter.save(rand)

        await adapter.apply_partial_update(PartialUpdate("1", Person).set("firstname", "mat"))

        assert store.keys("persons:firstname:*") == ["persons:firstname:mat"]
        assert await store.smembers("persons:lastname:al'thor") == {b"1"}

    @pytest.mark.asyncio
    async def test_set_subtree_replaces_it(self, adapter, store, rand):
        """Test setting a nested object replaces every field below it."""
        await adapter.save(rand)

        await adapter.apply_partial_update(
            PartialUpdate("1", Person).set("address", Address(city="Caemlyn"))
        )

        raw = await store.hgetall("persons:1")
        assert raw[b"address.city"] == b"Caemlyn"
        assert b"address.country" not in raw
        assert store.keys("persons:address.city:*") == ["persons:address.city:Caemlyn"]

    @pytest.mark.asyncio
    async def test_set_collection(self, adapter, store, rand):
        """Test replacing a list drops old elements and their index entries."""
        await adapter.save(rand)

        await adapter.apply_partial_update(PartialUpdate("1", Person).set("nicknames", ["car'a'carn"]))

        assert (await adapter.find_by_id(Person, "1")).nicknames == ["car'a'carn"]
        assert store.keys("persons:nicknames:*") == ["persons:nicknames:car'a'carn"]

    @pytest.mark.asyncio
    async def test_delete_subtree(self, adapter, store, rand):
        """Test deleting a path removes its fields and index entries."""
        await adapter.save(rand)

        await adapter.apply_partial_update(PartialUpdate("1", Person).delete("address").delete("nicknames"))

        loaded = await adapter.find_by_id(Person, "1")
        assert loaded.address is None
        assert loaded.nicknames == []
        assert store.keys("persons:address.city:*") == []
        assert store.keys("persons:nicknames:*") == []

    @pytest.mark.asyncio
    async def test_set_reference(self, adapter, store, rand):
        """Test reference paths store keys."""
        await adapter.save(rand)
        mother = Person(id="0", firstname="kari")
        await adapter.save(mother)

        await adapter.apply_partial_update(PartialUpdate("1", Person).set("mother", mother))

        assert (await store.hgetall("persons:1"))[b"mother"] == b"persons:0"
        assert (await adapter.find_by_id(Person, "1")).mother == mother

    @pytest.mark.asyncio
    async def test_upsert_missing_entity(self, adapter, store):
        """Test updating a missing id creates a minimal entity."""
        await adapter.apply_partial_update(PartialUpdate("9", Person).set("firstname", "egwene"))

        assert await adapter.find_by_id(Person, "9") == Person(id="9", firstname="egwene")
        assert await adapter.count(Person) == 1
        assert await store.smembers("persons:firstname:egwene") == {b"9"}


class TestRejected:
    """Tests for operations that are refused."""

    @pytest.mark.asyncio
    async def test_identifier(self, adapter, rand):
        """Test the identifier cannot be set or deleted."""
        await adapter.save(rand)
        with pytest.raises(UnsupportedOperationError):
            await adapter.apply_partial_update(PartialUpdate("1", Person).set("id", "2"))
        with pytest.raises(UnsupportedOperationError):
            await adapter.apply_partial_update(PartialUpdate("1", Person).delete("id"))

    @pytest.mark.asyncio
    async def test_inside_custom_converted_value(self, adapter, store):
        """Test paths below BYTES-converted values cannot be set."""
        await adapter.save(Account(id="a", balance=Money(Decimal("1"), "EUR")))

        with pytest.raises(UnsupportedOperationError):
            await adapter.apply_partial_update(
                PartialUpdate("a", Account).set("balance.amount", Decimal("2"))
            )

        await adapter.apply_partial_update(
            PartialUpdate("a", Account).set("balance", Money(Decimal("2"), "EUR"))
        )
        assert (await store.hgetall("accounts:a"))[b"balance"] == b"2 EUR"

    @pytest.mark.asyncio
    async def test_unknown_path(self, adapter, store, rand):
        """Test undeclared paths are rejected before any write."""
        await adapter.save(rand)
        before = await store.hgetall("persons:1")

        with pytest.raises(MappingError):
            await adapter.apply_partial_update(
                PartialUpdate("1", Person).set("age", 99).set("planet", "earth")
            )
        assert await store.hgetall("persons:1") == before


class TestTimeToLive:
    """Tests for TTL handling in partial updates."""

    @pytest.mark.asyncio
    async def test_ttl_kept_and_phantom_mirrored(self, adapter, store):
        """Test unrelated updates keep the TTL and update the phantom."""
        await adapter.save(Token(id="t", value="a", ttl=100))

        await adapter.apply_partial_update(PartialUpdate("t", Token).set("value", "b"))

        assert await store.ttl("tokens:t") == 100
        assert (await store.hgetall("tokens:t:phantom"))[b"value"] == b"b"

    @pytest.mark.asyncio
    async def test_setting_ttl_field(self, adapter, store):
        """Test updating the TTL field re-applies expiry."""
        await adapter.save(Token(id="t", ttl=100))

        await adapter.apply_partial_update(PartialUpdate("t", Token).set("ttl", 5))

        assert await store.ttl("tokens:t") == 5
        assert await store.ttl("tokens:t:phantom") == 305

    @pytest.mark.asyncio
    async def test_deleting_ttl_field(self, adapter, store):
        """Test removing the TTL field persists the entity."""
        await adapter.save(Token(id="t", ttl=100))

        await adapter.apply_partial_update(PartialUpdate("t", Token).set("ttl", None))

        assert await store.ttl("tokens:t") == -1
        assert not await store.exists("tokens:t:phantom")

    @pytest.mark.asyncio
    async def test_refresh_ttl(self, adapter, store):
        """Test refresh_ttl restarts a fixed TTL."""
        entity_id = await adapter.save(Session(user="u1"))
        store.advance(30)
        assert await store.ttl(f"sessions:{entity_id}") == 30

        await adapter.apply_partial_update(
            PartialUpdate(entity_id, Session).set("user", "u2").refresh_ttl()
        )

        assert await store.ttl(f"sessions:{entity_id}") == 60
        assert store.keys("sessions:user:*") == ["sessions:user:u2"]
