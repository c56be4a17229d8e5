import pytest

from eseman.commons import StringIndexMapper, make_event
from eseman.construct import SPLITTING_RULE_ENV, SplittingRule, TreeBuilder
from eseman.store import NodeStore

EVEN_INTERVALS = [(0, 10, "alpha", "a"), (20, 30, "alpha", "b"), (40, 50, "beta", "c"), (60, 70, "beta", "d")]


@pytest.fixture
def store(tmp_path):
    with NodeStore(tmp_path / "nodes.db", map_size=16 * 1024 * 1024).open(write=True) as opened:
        yield opened


def make_builder(store, tracks, rule=SplittingRule.FAIR):
    attributes = {"primitive": StringIndexMapper(), "ID": StringIndexMapper()}
    values = []
    for intervals in tracks:
        events = []
        for start, end, primitive, interval_id in intervals:
            events.append(make_event(start, primitive, interval_id))
            events.append(make_event(end, primitive, interval_id))
            attributes["primitive"].insert(primitive)
            attributes["ID"].insert(interval_id)
        values.append(events)
    return TreeBuilder(store, attributes, values, rule)


def walk(store, uuid):
    stack = [uuid]
    while stack:
        node = store.load(stack.pop())
        if node is None:
            continue
        yield node
        stack.extend(c for c in (node.left_child, node.right_child) if c)


def leaf_spans(store, uuid):
    return sorted(
        (n.start_track, n.start_time, n.end_time)
        for n in walk(store, uuid)
        if not n.has_left_child() and not n.has_right_child()
    )


def assert_attributes_are_unions(store, uuid):
    for node in walk(store, uuid):
        children = [store.load(c) for c in (node.left_child, node.right_child) if c]
        children = [c for c in children if c is not None]
        if not children:
            continue
        union = {}
        for child in children:
            for key, values in child.attribute_lists.items():
                union.setdefault(key, set()).update(values)
        assert node.attribute_lists == union


def test_single_interval_is_tagged_leaf(store):
    builder = make_builder(store, [[(5, 9, "alpha", "id-1")]])
    root = store.load(builder.build_track(0, 1, 0))
    assert (root.start_time, root.end_time) == (5.0, 9.0)
    assert root.attribute_lists == {"primitive": {0}, "ID": {0}}
    assert not root.has_left_child() and not root.has_right_child()


@pytest.mark.parametrize("start,end", [(1, 1), (2, 1), (0, 8), (8, 9)])
def test_empty_range_gives_no_tree(store, start, end):
    builder = make_builder(store, [EVEN_INTERVALS])
    assert builder.build_track(start, end, 0) == ""


@pytest.mark.parametrize("rule", list(SplittingRule))
def test_every_rule_puts_each_interval_in_a_leaf(store, rule):
    builder = make_builder(store, [EVEN_INTERVALS], rule)
    uuid = builder.build_track(0, 7, 0)
    root = store.load(uuid)
    assert (root.start_time, root.end_time) == (0.0, 70.0)
    assert leaf_spans(store, uuid) == [(0, float(s), float(e)) for s, e, _, _ in EVEN_INTERVALS]
    assert_attributes_are_unions(store, uuid)


def test_root_collects_all_attribute_indexes(store):
    builder = make_builder(store, [EVEN_INTERVALS])
    root = store.load(builder.build_track(0, 7, 0))
    assert root.attribute_lists["primitive"] == {0, 1}
    assert root.attribute_lists["ID"] == {0, 1, 2, 3}


def test_fair_rule_splits_in_half(store):
    builder = make_builder(store, [EVEN_INTERVALS], SplittingRule.FAIR)
    root = store.load(builder.build_track(0, 7, 0))
    left = store.load(root.left_child)
    right = store.load(root.right_child)
    assert (left.start_time, left.end_time) == (0.0, 30.0)
    assert (right.start_time, right.end_time) == (40.0, 70.0)


def test_midpoint_stops_on_zero_length_run(store):
    builder = make_builder(store, [[(5, 5, "alpha", "a"), (5, 5, "alpha", "b")]], SplittingRule.MIDPOINT)
    root = store.load(builder.build_track(0, 3, 0))
    assert (root.start_time, root.end_time) == (5.0, 5.0)
    assert root.attribute_lists == {}
    assert not root.has_left_child() and not root.has_right_child()


def test_rule_names(monkeypatch):
    monkeypatch.delenv(SPLITTING_RULE_ENV, raising=False)
    assert SplittingRule.from_environment() is SplittingRule.FAIR
    monkeypatch.setenv(SPLITTING_RULE_ENV, "MAX-DISTANCE")
    assert SplittingRule.from_environment() is SplittingRule.MAX_DISTANCE
    monkeypatch.setenv(SPLITTING_RULE_ENV, "bogus")
    assert SplittingRule.from_environment() is SplittingRule.FIRST


def test_builder_reads_rule_from_environment(store, monkeypatch):
    monkeypatch.setenv(SPLITTING_RULE_ENV, "MIDPOINT")
    builder = TreeBuilder(store, {}, [], None)
    assert builder.splitting_rule is SplittingRule.MIDPOINT
    assert TreeBuilder(store, {}, [], "FAIR").splitting_rule is SplittingRule.FAIR


def test_two_d_single_track_matches_track_tree(store):
    builder = make_builder(store, [EVEN_INTERVALS])
    uuid = builder.build_two_d(0, 70, 0, 0, 0)
    root = store.load(uuid)
    assert (root.start_time, root.end_time) == (0.0, 70.0)
    assert leaf_spans(store, uuid) == [(0, float(s), float(e)) for s, e, _, _ in EVEN_INTERVALS]


def test_two_d_single_track_window_cuts_edges(store):
    builder = make_builder(store, [EVEN_INTERVALS])
    root = store.load(builder.build_two_d(5, 65, 0, 0, 0))
    assert (root.start_time, root.end_time) == (5.0, 65.0)
    right = store.load(root.right_child)
    left = store.load(root.left_child)
    assert (right.start_time, right.end_time) == (60.0, 65.0)
    assert right.attribute_lists == {"primitive": {1}, "ID": {3}}
    assert (left.start_time, left.end_time) == (20.0, 50.0)


def test_two_d_multiple_tracks(store):
    track0 = [(0, 10, "alpha", "a"), (20, 30, "alpha", "b")]
    track1 = [(5, 15, "beta", "c"), (25, 35, "beta", "d")]
    builder = make_builder(store, [track0, track1])
    uuid = builder.build_two_d(0, 35, 0, 1, 0)
    root = store.load(uuid)
    assert (root.start_track, root.end_track) == (0, 1)
    assert root.attribute_lists["ID"] == {0, 1, 2, 3}
    expected = sorted(
        [(0, float(s), float(e)) for s, e, _, _ in track0]
        + [(1, float(s), float(e)) for s, e, _, _ in track1]
    )
    assert leaf_spans(store, uuid) == expected
    assert_attributes_are_unions(store, uuid)


@pytest.mark.parametrize(
    "args",
    [(0, 70, 1, 0, 0), (0, 70, 0, 2, 0), (70, 0, 0, 0, 0), (0, 70, -1, 0, 0)],
)
def test_two_d_invalid_region_gives_no_tree(store, args):
    builder = make_builder(store, [EVEN_INTERVALS, EVEN_INTERVALS])
    assert builder.build_two_d(*args) == ""


def test_two_d_empty_track_gives_no_tree(store):
    builder = make_builder(store, [[]])
    assert builder.build_two_d(0, 10, 0, 0, 0) == ""