import pytest

from edgeengine.models import Application, Configuration
from edgeengine.store import KeyNotFoundError, ObjectStore


def test_upsert_and_get_round_trip():
    store = ObjectStore()
    cfg = Configuration(name="c", version="1", data={"k": "v"})
    store.upsert("key", cfg)
    assert store.get("key") == cfg


def test_get_missing_raises():
    with pytest.raises(KeyNotFoundError):
        ObjectStore().get("missing")


def test_stored_value_is_a_copy():
    store = ObjectStore()
    cfg = Configuration(name="c", data={"k": "v"})
    store.upsert("key", cfg)
    cfg.data["k"] = "changed"
    fetched = store.get("key")
    fetched.data["other"] = "x"
    assert store.get("key").data == {"k": "v"}


def test_upsert_replaces():
    store = ObjectStore()
    store.upsert("key", Configuration(name="a"))
    store.upsert("key", Configuration(name="b"))
    assert store.get("key").name == "b"
    assert len(store) == 1


def test_delete():
    store = ObjectStore()
    store.upsert("key", Configuration(name="a"))
    store.delete("key")
    assert "key" not in store
    with pytest.raises(KeyNotFoundError):
        store.delete("key")


def test_for_each_filters_by_type():
    store = ObjectStore()
    store.upsert("c1", Configuration(name="c1"))
    store.upsert("a1", Application(name="a1"))
    store.upsert("c2", Configuration(name="c2"))
    names = sorted(c.name for c in store.for_each(Configuration))
    assert names == ["c1", "c2"]
    assert [a.name for a in store.for_each(Application)] == ["a1"]


def test_delete_while_iterating():
    store = ObjectStore()
    for name in ("x", "y", "z"):
        store.upsert(name, Configuration(name=name))
    for cfg in store.for_each(Configuration):
        store.delete(cfg.name)
    assert len(store) == 0