"""
Unit tests for the hash converter.

Tests cover:
- Byte encoding of written fields
- Round trips of nested, polymorphic and open values
- BYTES and FIELDS custom converters
- Reference fields
- Subtree writes and opaque paths
"""

import datetime as dt
from decimal import Decimal

import pytest

from kvmap.kvmap_engine.errors import ConversionError, MappingError
from kvmap.kvmap_engine.mapping.converter import HashConverter
from kvmap.kvmap_engine.mapping.flattener import default_alias
from kvmap.kvmap_engine.mapping.types import ConverterTarget

from tests.domain import (
    Account,
    Address,
    Cat,
    Dog,
    Gender,
    Money,
    Person,
    Reading,
    Temperature,
    Zoo,
)


@pytest.fixture
def converter(registry):
    return HashConverter(registry)


class TestWrite:
    """Tests for HashConverter.write."""

    def test_values_are_bytes(self, converter):
        """Test every written value is bytes."""
        fields = converter.write(Person(id="1", firstname="rand", age=30, gender=Gender.MALE))

        assert all(isinstance(v, bytes) for v in fields.values())
        assert fields["_class"] == default_alias(Person).encode()
        assert fields["age"] == b"30"
        assert fields["gender"] == b"MALE"
        assert fields["alive"] == b"1"

    def test_bytes_converter(self, converter):
        """Test BYTES converters produce a single field."""
        fields = converter.write(Account(id="a", balance=Money(Decimal("12.50"), "EUR")))

        assert fields["balance"] == b"12.50 EUR"
        assert not any(k.startswith("balance.") for k in fields)

    def test_fields_converter(self, converter):
        """Test FIELDS converters write below the value's path."""
        fields = converter.write(Reading(id="r", temperature=Temperature(21.5)))
        assert fields["temperature.celsius"] == b"21.5"

    def test_writer_failure(self, registry, converter):
        """Test writer exceptions surface as ConversionError with a path."""

        def broken(money):
            raise ValueError("no rate")

        registry.add_converter(Money, ConverterTarget.BYTES, broken, bytes)

        with pytest.raises(ConversionError) as exc_info:
            converter.write(Account(id="a", balance=Money(Decimal("1"), "EUR")))
        assert exc_info.value.path == "balance"
        assert "(path 'balance')" in str(exc_info.value)

    def test_reference_written_as_key(self, converter):
        """Test reference fields store the referenced primary key."""
        fields = converter.write(Person(id="2", mother=Person(id="1", firstname="tam")))

        assert fields["mother"] == b"persons:1"
        assert "mother.firstname" not in fields

    def test_unsaved_reference(self, converter):
        """Test references to entities without an id are rejected."""
        with pytest.raises(MappingError):
            converter.write(Person(id="2", mother=Person(firstname="tam")))


class TestRead:
    """Tests for HashConverter.read."""

    def test_round_trip(self, converter):
        """Test write then read rebuilds an equal entity."""
        person = Person(
            id="1",
            firstname="rand",
            age=20,
            gender=Gender.MALE,
            alive=False,
            address=Address(city="Two Rivers"),
            nicknames=["dragon", "lord"],
            attributes={"eyes": "grey"},
            born=dt.date(978, 1, 1),
        )
        assert converter.read(converter.write(person), Person) == person

    def test_empty_hash(self, converter):
        """Test an empty hash reads as None."""
        assert converter.read({}, Person) is None

    def test_str_keys_and_values(self, converter):
        """Test hashes with str keys and values are accepted."""
        restored = converter.read({"id": "7", "age": "12"}, Person)
        assert restored.id == "7"
        assert restored.age == 12

    def test_polymorphic_round_trip(self, converter):
        """Test subtypes and open values survive a round trip."""
        zoo = Zoo(id="z", star=Dog(name="rex"), animals=[Cat(name="tom")], anything=Cat(name="x"))

        restored = converter.read(converter.write(zoo), Zoo)

        assert restored == zoo
        assert isinstance(restored.anything, Cat)

    def test_custom_converters_round_trip(self, converter):
        """Test values written by custom converters read back."""
        account = Account(id="a", balance=Money(Decimal("3.10"), "NOK"))
        reading = Reading(id="r", temperature=Temperature(-4.0))

        assert converter.read(converter.write(account), Account) == account
        assert converter.read(converter.write(reading), Reading) == reading

    def test_reader_failure(self, converter):
        """Test reader exceptions surface as ConversionError with a path."""
        with pytest.raises(ConversionError) as exc_info:
            converter.read({"id": b"a", "balance": b"garbage"}, Account)
        assert exc_info.value.path == "balance"

    def test_reference_resolved(self, converter):
        """Test reference keys are handed to the resolver."""
        mother = Person(id="1", firstname="tam")
        raw = converter.write(Person(id="2", mother=mother))
        seen = []

        def resolve(key, declared):
            seen.append((key, declared))
            return mother

        restored = converter.read(raw, Person, resolve_reference=resolve)

        assert restored.mother is mother
        assert seen == [("persons:1", Person)]

    def test_reference_without_resolver(self, converter):
        """Test references read as None when nothing resolves them."""
        raw = converter.write(Person(id="2", mother=Person(id="1")))
        assert converter.read(raw, Person).mother is None


class TestPaths:
    """Tests for subtree writes and declared path helpers."""

    def test_write_path(self, converter):
        """Test a subtree is written under its path."""
        fields = converter.write_path(Person, "address", Address(city="Caemlyn"))
        assert fields == {"address.city": b"Caemlyn"}

    def test_write_path_scalar(self, converter):
        """Test leaf values are encoded."""
        assert converter.write_path(Person, "age", 41) == {"age": b"41"}

    def test_write_path_none(self, converter):
        """Test None writes nothing."""
        assert converter.write_path(Person, "address", None) == {}

    def test_write_path_reference(self, converter):
        """Test reference paths store keys."""
        fields = converter.write_path(Person, "mother", Person(id="9"))
        assert fields == {"mother": b"persons:9"}

    def test_write_path_invalid(self, converter):
        """Test unknown paths raise MappingError."""
        with pytest.raises(MappingError):
            converter.write_path(Person, "planet", "earth")

    def test_opaque_prefix(self, converter):
        """Test paths below BYTES-converted values are reported."""
        assert converter.opaque_prefix(Account, "balance.amount") == "balance"
        assert converter.opaque_prefix(Account, "balance") is None
        assert converter.opaque_prefix(Person, "address.city") is None

    def test_encode_value_unsupported(self, converter):
        """Test unsupported leaf values raise ConversionError."""
        with pytest.raises(ConversionError):
            converter.encode_value(object(), "x")
