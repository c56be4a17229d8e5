# eseman

Index event sequences (intervals on numbered tracks) so that a timeline view
can ask "which parts of each bin are busy?" quickly, at any zoom level.

Two index structures are provided:

- `eseman.agglomerate.AgglomerateClusters` builds an in-memory single-linkage
  cluster tree per track.
- `eseman.kdt.EseManKDT` builds an interval k-d tree per track (or one
  two-dimensional tree across all tracks), stores its nodes in an LMDB file
  and loads only the nodes that a query walks through.

Both answer the same queries:

- `binned_range_query(time_begin, time_end, locations, bins)` takes track
  names as strings and returns a dict that maps each found track, as an
  integer, to a list of `bins` values. A value is `1.0` where a bin is fully
  covered by an event, `0.5` where an event starts or ends inside it, and
  `0.0` where nothing happens. Tracks that are unknown are left out.
- `find_nearest_event(ctime, location)` returns the interval ID of the event
  found at time `ctime` on track `location`, or an empty string.

Filters added with `add_primitive_filter` and `add_id_filter` restrict the
next query to events with that primitive name or ID; they are cleared after
each query. `EseManKDT.clear_filters()` drops them without querying.

Each query logs one timing line (`AGC,...`, `ESEMAN,...` or
`ESEMAN_TWOD,...`) at INFO level through the standard `logging` module.

## Installation

```
pip install .
```

## In-memory clusters

```python
from eseman.agglomerate import AgglomerateClusters

clusters = AgglomerateClusters()
clusters.insert(0, 100, "1", "compute", "a1")
clusters.insert(150, 300, "1", "send", "a2")
clusters.insert(400, 900, "1", "compute", "a3")
clusters.build_all()

bins = clusters.binned_range_query(0, 1000, ["1"], 10)
print(bins[1])

print(clusters.find_nearest_event(200, 1))   # "a2"
```

Intervals must be inserted per track in time order; `insert` raises
`ValueError` when the start lies after the end.

## Persistent k-d tree

```python
from eseman.kdt import EseManKDT

kdt = EseManKDT("/tmp/eseman-data", "my_run", False)
kdt.insert(0, 100, "1", "compute", "a1")
kdt.insert(150, 300, "1", "send", "a2")
kdt.insert(0, 50, "2", "compute", "b1")
kdt.build()

kdt.open_read_only()
kdt.reload_nodes(True)
kdt.add_primitive_filter("compute")
print(kdt.binned_range_query(0, 400, ["1", "2"], 8))
print(kdt.find_nearest_event(200, 1))
kdt.close()
```

`build()` writes three small text files (`event_data_attributes.dat`,
`event_tracks.dat`, `eseman_node_uuids.dat`) and an LMDB database named
`traveler.db` into `<storage_path>/<dataset_id>`, then releases the inserted
events. A later process can open the same directory with `open_read_only()`
and `reload_nodes(True)` without inserting the events again.

Pass `True` as the third constructor argument to build one tree over all
tracks instead of one tree per track; the dataset directory is then prefixed
with `vertical_split_`, and track names must be integers.

Environment variables read while building:

- `ESEMAN_SPLITTING_RULE`: how per-track trees are split, `FAIR` (the
  default), `MIDPOINT` or `MAX-DISTANCE`; any other name splits off the first
  interval each time. It can also be set through the `splitting_rule`
  attribute or `eseman.construct.SplittingRule`.
- `ESEMAN_TASK_COUNT` and `ESEMAN_TASK_ID`: let several processes share the
  per-track trees, each building its own chunk of tracks.
- `LMDB_DATABASE_TOTAL_SIZE`: size of the LMDB map in bytes (20 GiB by
  default); the `map_size` attribute overrides it.

`write_dot(directory)` writes one Graphviz file, `track_<index>.dot`, per
stored tree for inspecting it; `write_dot_for_track(index, directory)` writes
a single one.

## Lower-level pieces

- `eseman.store.NodeStore` is the LMDB node store, usable as a context
  manager; `write_*`/`read_*` functions handle the text side files.
- `eseman.construct.TreeBuilder` builds trees into an open store.
- `eseman.search` holds the tree walks (`find_clusters`,
  `collect_track_intervals`, `find_node_in_time_range`) and
  `bin_track_intervals`.
- `eseman.commons` holds the binning helpers (`get_bin_size`,
  `get_bin_number`, `fill_bins`) and `StringIndexMapper`.

## What it does not do

This is a library only. It has no command-line program and no server: data
has to be inserted and queried from Python code, and reading event files or
serving queries over a network is left to the caller.

## Running the tests

```
pip install .[test]
pytest
```