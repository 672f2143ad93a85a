import pytest

from edgeengine.clean import recycle
from edgeengine.conflicts import make_key
from edgeengine.models import (
    AppInfo,
    Application,
    Configuration,
    Kind,
    Node,
    ObjectReference,
    Volume,
)
from edgeengine.store import KeyNotFoundError, ObjectStore


@pytest.fixture
def setup(tmp_path):
    store = ObjectStore()
    cfg1 = Configuration(name="cfg-meta-1", version="meta-1", data={"_object_cfg1": "cfg1"})
    cfg2 = Configuration(name="cfg-meta-2", version="meta-2", data={"_object_cfg2": "cfg2"})
    cfg3 = Configuration(name="cfg-3", version="3", data={"cfg3": "cfg3"})
    for cfg in (cfg1, cfg2):
        (tmp_path / cfg.name / cfg.version).mkdir(parents=True)
    keys = [make_key(Kind.CONFIGURATION, c.name, c.version) for c in (cfg1, cfg2, cfg3)]
    for key, cfg in zip(keys, (cfg1, cfg2, cfg3)):
        store.upsert(key, cfg)

    app = Application(
        name="app-1",
        version="1",
        volumes=[
            Volume(name="cfg1", config=ObjectReference(name="cfg-meta-1", version="meta-1"))
        ],
    )
    store.upsert(make_key(Kind.APPLICATION, app.name, app.version), app)
    node = Node()
    node.report.set_app_infos(False, [AppInfo(app.name, app.version)])
    return store, node, tmp_path, keys


def test_recycle(setup):
    store, node, directory, (key1, key2, key3) = setup
    removed = recycle(store, node, directory)
    assert removed == [key2]
    assert (directory / "cfg-meta-1").is_dir()
    assert not (directory / "cfg-meta-2").exists()
    assert store.get(key1).name == "cfg-meta-1"
    with pytest.raises(KeyNotFoundError):
        store.get(key2)
    assert store.get(key3).name == "cfg-3"


def test_recycle_keeps_configs_used_by_desire(setup):
    store, node, directory, (key1, key2, _) = setup
    app2 = Application(
        name="app-2",
        version="2",
        volumes=[
            Volume(name="cfg2", config=ObjectReference(name="cfg-meta-2", version="meta-2"))
        ],
    )
    store.upsert(make_key(Kind.APPLICATION, app2.name, app2.version), app2)
    node.desire.set_app_infos(True, [AppInfo(app2.name, app2.version)])
    assert recycle(store, node, directory) == []
    assert (directory / "cfg-meta-2").is_dir()
    assert store.get(key2).name == "cfg-meta-2"


def test_recycle_missing_application_raises(setup):
    store, node, directory, _ = setup
    node.report.set_app_infos(True, [AppInfo("ghost", "1")])
    with pytest.raises(KeyNotFoundError):
        recycle(store, node, directory)


def test_recycle_tolerates_missing_directory(tmp_path):
    store = ObjectStore()
    cfg = Configuration(name="obj", version="1", data={"_object_x": "x"})
    key = make_key(Kind.CONFIGURATION, cfg.name, cfg.version)
    store.upsert(key, cfg)
    assert recycle(store, Node(), tmp_path) == [key]
    assert key not in store