"""
Tests for the in-memory entity store.
"""
from dataclasses import dataclass

import pytest

from parcelflow.core.errors import ValidationError
from parcelflow.core.store import InMemoryStore


@dataclass
class Item:
    id: str
    name: str
    size: int = 0


@pytest.fixture
def store():
    return InMemoryStore("items")


class TestInMemoryStore:

    def test_create_and_get(self, store):
        store.create(Item("a", "first"))
        assert store.get("a").name == "first"
        assert store.get("missing") is None

    def test_duplicate_id_rejected(self, store):
        store.create(Item("a", "first"))
        with pytest.raises(ValidationError):
            store.create(Item("a", "again"))

    def test_list_preserves_insertion_order_and_filters(self, store):
        for i, name in enumerate(["x", "y", "z"]):
            store.create(Item(f"id{i}", name, size=i))
        assert [i.name for i in store.list()] == ["x", "y", "z"]
        assert [i.name for i in store.list(lambda i: i.size > 0)] == ["y", "z"]
        assert store.count(lambda i: i.size > 0) == 2

    def test_update_changes_fields(self, store):
        store.create(Item("a", "first"))
        updated = store.update("a", name="renamed", size=3)
        assert updated.name == "renamed"
        assert store.get("a").size == 3

    def test_update_unknown_field_rejected(self, store):
        store.create(Item("a", "first"))
        with pytest.raises(ValidationError):
            store.update("a", colour="red")

    def test_update_missing_returns_none(self, store):
        assert store.update("missing", name="x") is None

    def test_delete(self, store):
        store.create(Item("a", "first"))
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert "a" not in store
        assert len(store) == 0
