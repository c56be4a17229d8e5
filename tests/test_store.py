import pytest

from eseman.commons import StringIndexMapper
from eseman.node import EsemanNode
from eseman.store import (
    NodeStore,
    read_attributes,
    read_tracks,
    read_uuids,
    write_attributes,
    write_tracks,
    write_uuids,
)

MAP_SIZE = 10 * 1024 * 1024


@pytest.fixture
def store(tmp_path):
    return NodeStore(tmp_path / "traveler.db", MAP_SIZE)


def _node():
    node = EsemanNode.create(10, 250, 3)
    node.add_attribute("primitive", 0)
    node.add_attribute("ID", 4)
    node.add_attribute("ID", 7)
    node.left_child = "left-uuid"
    node.right_child = "right-uuid"
    return node


def test_save_and_load_round_trip(store):
    node = _node()
    with store.open(write=True):
        store.save(node)
    with store.open(write=False):
        loaded = store.load(node.uuid)
    assert loaded == node
    assert loaded.attribute_lists["ID"] == {4, 7}
    assert store.reads == 1


def test_load_empty_and_null_uuid(store):
    with store.open():
        assert store.load("") is None
        assert store.load("NULL") is None
    assert store.reads == 0


def test_load_missing_uuid(store):
    with store.open():
        assert store.load("no-such-node") is None


def test_delete_existing_and_missing(store):
    node = _node()
    with store.open(write=True):
        store.save(node)
    assert store.delete(node.uuid) is True
    assert store.delete(node.uuid) is False
    with store.open():
        assert store.load(node.uuid) is None


def test_delete_inside_open_transaction(store):
    node = _node()
    with store.open(write=True):
        store.save(node)
        assert store.delete(node.uuid) is True
        assert store.load(node.uuid) is None


def test_save_requires_open_store(store):
    with pytest.raises(RuntimeError):
        store.save(_node())


def test_save_rejected_when_read_only(store):
    with store.open(write=False):
        with pytest.raises(RuntimeError):
            store.save(_node())


def test_save_requires_uuid(store):
    with store.open(write=True):
        with pytest.raises(ValueError):
            store.save(EsemanNode(start_time=1, end_time=2))


def test_open_twice_raises(store):
    store.open()
    try:
        with pytest.raises(RuntimeError):
            store.open()
    finally:
        store.close()
    assert store.is_open is False


def test_exception_in_block_discards_writes(store):
    node = _node()
    with pytest.raises(KeyError):
        with store.open(write=True):
            store.save(node)
            raise KeyError("boom")
    with store.open():
        assert store.load(node.uuid) is None


def test_enter_opens_read_only(store):
    node = _node()
    with store.open(write=True):
        store.save(node)
    with store as opened:
        assert opened.writable is False
        assert opened.load(node.uuid) == node


def test_map_size_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("LMDB_DATABASE_TOTAL_SIZE", str(MAP_SIZE))
    assert NodeStore(tmp_path / "db").map_size == MAP_SIZE


def test_attributes_round_trip(tmp_path):
    primitives = StringIndexMapper()
    for name in ("first", "second"):
        primitives.insert(name)
    ids = StringIndexMapper()
    for name in ("100000", "320000", "iid_1"):
        ids.insert(name)
    path = tmp_path / "event_data_attributes.dat"
    write_attributes(path, {"primitive": primitives, "ID": ids})
    loaded = read_attributes(path)
    assert list(loaded["primitive"]) == ["first", "second"]
    assert list(loaded["ID"]) == ["100000", "320000", "iid_1"]
    assert loaded["ID"].index_of("iid_1") == 2


def test_attributes_missing_file(tmp_path):
    assert read_attributes(tmp_path / "absent.dat") == {}


def test_attributes_malformed(tmp_path):
    path = tmp_path / "bad.dat"
    path.write_text("2\nprimitive 3\nfirst\n")
    with pytest.raises(ValueError):
        read_attributes(path)


def test_tracks_file_format_and_round_trip(tmp_path):
    path = tmp_path / "event_tracks.dat"
    write_tracks(path, ["9", "1", "2"])
    assert path.read_text() == "3\n9\n1\n2\n"
    assert list(read_tracks(path)) == ["9", "1", "2"]


def test_tracks_missing_file(tmp_path):
    assert len(read_tracks(tmp_path / "absent.dat")) == 0


def test_uuids_keep_positions(tmp_path):
    path = tmp_path / "eseman_node_uuids.dat"
    write_uuids(path, ["", "abc", ""])
    assert read_uuids(path) == ["", "abc", ""]


def test_uuids_missing_file(tmp_path):
    assert read_uuids(tmp_path / "absent.dat") == []