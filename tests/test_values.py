"""
Tests for ValueStore and type-aware value equality.
"""

import pytest

from reactive.errors import SchemaError
from store.registry import ComponentSchema, Lifetime
from store.values import ValueStore, same_value


class TestSameValue:
    def test_numbers_of_different_types_differ(self):
        assert not same_value(1, 1.0)
        assert not same_value(1, True)
        assert not same_value(0, False)
        assert same_value(1.5, 1.5)

    def test_nested(self):
        assert same_value([1, {"a": [2]}], [1, {"a": [2]}])
        assert not same_value([1, {"a": [2]}], [1, {"a": [2.0]}])
        assert not same_value({"a": 1}, {"a": 1, "b": 2})
        assert not same_value([1], [1, 1])

    def test_none(self):
        assert same_value(None, None)
        assert not same_value(None, 0)


class TestValueStore:
    def test_hydrate_uses_defaults_and_initial(self, counter):
        store = ValueStore(counter).hydrate({"count": 4})
        assert store.get("count") == 4
        assert store.get("other") == 0

    def test_hydrate_rejects_unknown_names(self, counter):
        with pytest.raises(SchemaError):
            ValueStore(counter).hydrate({"nope": 1})

    def test_defaults_are_not_shared(self, cart):
        first = ValueStore(cart).hydrate()
        second = ValueStore(cart).hydrate()
        first.get("items").append({"id": 1, "qty": 1})
        assert second.get("items") == []

    def test_set_reports_change(self, counter):
        store = ValueStore(counter).hydrate()
        assert store.set("count", 1)
        assert not store.set("count", 1)

    def test_set_type_checked(self, counter):
        store = ValueStore(counter).hydrate()
        with pytest.raises(SchemaError):
            store.set("count", "one")
        with pytest.raises(SchemaError):
            store.set("count", None)
        assert store.get("count") == 0

    def test_derived_cannot_be_written(self, counter):
        store = ValueStore(counter).hydrate()
        with pytest.raises(SchemaError, match="derived"):
            store.set("doubled", 2)

    def test_get_unknown_and_uncomputed(self, counter):
        store = ValueStore(counter).hydrate()
        assert store.get("doubled") is None
        assert store.get("nope", 7) == 7
        with pytest.raises(KeyError):
            store.get("nope")

    def test_put_derived(self, counter):
        store = ValueStore(counter).hydrate()
        assert store.put_derived("doubled", 2)
        assert not store.put_derived("doubled", 2)
        assert store.put_derived("doubled", 2.0)
        assert store.has_value("doubled")

    def test_snapshot(self, counter):
        store = ValueStore(counter).hydrate({"count": 2})
        store.put_derived("doubled", 4)
        assert store.snapshot() == {
            "count": 2, "other": 0,
            "doubled": 4, "quadrupled": None, "other_plus": None,
        }
        assert store.snapshot(["count"]) == {"count": 2}


class TestPartitions:
    @pytest.fixture
    def editor(self):
        schema = ComponentSchema("editor")
        schema.field("doc_id", int, default=1)
        schema.field("cursor", int, default=0, lifetime=Lifetime.PRIVATE)
        schema.field("draft", str, default="", lifetime="transient")
        return schema.build()

    def test_values_land_in_their_lifetime(self, editor):
        store = ValueStore(editor).hydrate({"draft": "hello"})
        assert store.partition(Lifetime.SHAREABLE) == {"doc_id": 1}
        assert store.partition("private") == {"cursor": 0}
        assert store.partition(Lifetime.TRANSIENT) == {"draft": "hello"}

    def test_partition_is_a_copy(self, editor):
        store = ValueStore(editor).hydrate()
        store.partition("private")["cursor"] = 9
        assert store.get("cursor") == 0
