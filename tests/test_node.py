import pytest

from eseman.node import EsemanNode


def _sample():
    node = EsemanNode.create(1307411956, 1445679055, 2)
    node.add_attribute("primitive", 0)
    node.add_attribute("primitive", 1)
    node.add_attribute("ID", 7)
    node.left_child = "left-uuid"
    node.right_child = "right-uuid"
    return node


def test_create_sets_single_track_and_uuid():
    a = EsemanNode.create(10, 20, 3)
    b = EsemanNode.create(10, 20, 3)
    assert a.start_track == a.end_track == 3
    assert a.start_time == 10.0 and a.end_time == 20.0
    assert a.uuid and a.uuid != b.uuid
    assert not a.has_left_child() and not a.has_right_child()


def test_add_attribute_and_keys():
    node = _sample()
    assert node.has_attribute("primitive")
    assert not node.has_attribute("missing")
    assert sorted(node.attribute_keys()) == ["ID", "primitive"]
    assert node.attribute_lists["primitive"] == {0, 1}
    node.add_attribute("primitive", 1)
    assert node.attribute_lists["primitive"] == {0, 1}


def test_merge_attributes():
    node = EsemanNode.create(0, 1, 0)
    node.add_attribute("ID", 1)
    node.merge_attributes(_sample())
    assert node.attribute_lists == {"ID": {1, 7}, "primitive": {0, 1}}


def test_serialize_first_line():
    node = _sample()
    first_line = node.serialize().splitlines()[0]
    assert first_line == "1307411956 1445679055 2 2"


def test_round_trip():
    node = _sample()
    restored = EsemanNode.deserialize(node.uuid, node.serialize())
    assert restored == node
    assert restored.has_left_child() and restored.has_right_child()


def test_round_trip_bytes_without_children():
    node = EsemanNode.create(5, 9, 1)
    node.add_attribute("ID", 2)
    restored = EsemanNode.deserialize(node.uuid, node.serialize().encode())
    assert restored == node
    assert restored.left_child == ""
    assert restored.right_child == ""


def test_child_links_not_compared_or_serialized():
    node = _sample()
    node.left_node = EsemanNode.create(0, 1, 0)
    restored = EsemanNode.deserialize(node.uuid, node.serialize())
    assert restored.left_node is None
    assert restored == node


def test_deserialize_malformed():
    with pytest.raises(ValueError):
        EsemanNode.deserialize("x", "12 abc")
    with pytest.raises(ValueError):
        EsemanNode.deserialize("x", "1 2 0 0\n1\nID 3\n1 2\n")