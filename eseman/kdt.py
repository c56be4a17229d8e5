"""Event-sequence k-d trees over many tracks, persisted per dataset."""

from __future__ import annotations

import logging
import os
import sys
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any, Optional, Union

from .commons import (
    Event,
    StringIndexMapper,
    fill_bins,
    get_bin_size,
    get_event_id,
    get_event_primitive,
    get_event_time,
    make_event,
)
from .construct import SplittingRule, TreeBuilder
from .node import EsemanNode
from .search import (
    QueryStats,
    bin_track_intervals,
    collect_track_intervals,
    find_clusters,
    find_node_in_time_range,
)
from .store import (
    NodeStore,
    read_attributes,
    read_tracks,
    read_uuids,
    write_attributes,
    write_tracks,
    write_uuids,
)

logger = logging.getLogger(__name__)

ATTRIBUTES_FILE = "event_data_attributes.dat"
TRACKS_FILE = "event_tracks.dat"
UUIDS_FILE = "eseman_node_uuids.dat"
DATABASE_FILE = "traveler.db"
TASK_COUNT_ENV = "ESEMAN_TASK_COUNT"
TASK_ID_ENV = "ESEMAN_TASK_ID"
VERTICAL_PREFIX = "vertical_split_"
_INT64_MAX = (1 << 63) - 1


def _env_int(name: str) -> int:
    value = os.environ.get(name)
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


class EseManKDT:
    """Builds, stores and queries event trees for a dataset of tracks.

    Intervals are inserted per track in time order, :meth:`build` writes the
    trees to the dataset directory, and queries run against a read-only
    store opened with :meth:`open_read_only` after :meth:`reload_nodes`.
    """

    def __init__(
        self,
        storage_path: Union[str, os.PathLike[str]] = ".",
        dataset_id: str = "default_dataset",
        vertical_split: bool = False,
    ) -> None:
        self.storage_path = Path(storage_path)
        self.is_vertical_split = vertical_split
        self.dataset_id = dataset_id
        self.set_dataset_id(dataset_id)
        self.horizontal_resolution_divisor = 1
        self.vertical_resolution_divisor = 1
        self.map_size: Optional[int] = None
        self.splitting_rule: Union[SplittingRule, str, None] = None
        self.stats = QueryStats()
        self.event_tracks = StringIndexMapper()
        self.event_data_attributes: dict[str, StringIndexMapper] = {}
        self.event_data_values: list[list[Event]] = []
        self.roots: list[Optional[EsemanNode]] = []
        self.root_uuids: list[str] = []
        self._filters: list[dict[str, Any]] = []
        self._store: Optional[NodeStore] = None

    @property
    def dataset_path(self) -> Path:
        """Directory holding the dataset's database and side files."""
        return self.storage_path / self.dataset_id

    @property
    def _db_path(self) -> Path:
        return self.dataset_path / DATABASE_FILE

    def set_dataset_id(self, dataset_id: str) -> None:
        """Name the dataset; vertical-split datasets get a distinguishing prefix."""
        self.dataset_id = dataset_id
        if self.is_vertical_split:
            self.dataset_id = VERTICAL_PREFIX + dataset_id

    def insert(
        self,
        start_time: float,
        end_time: float,
        track: str,
        primitive_name: str,
        interval_id: str,
    ) -> None:
        """Append an interval to ``track`` and register its attribute values."""
        track_index = self.event_tracks.index_of(track)
        if track_index == len(self.event_tracks):
            self.event_tracks.insert(track)
            track_index = self.event_tracks.index_of(track)
            self.event_data_values.append([])
        events = self.event_data_values[track_index]
        events.append(make_event(start_time, primitive_name, interval_id))
        events.append(make_event(end_time, primitive_name, interval_id))
        self.event_data_attributes.setdefault("primitive", StringIndexMapper()).insert(primitive_name)
        self.event_data_attributes.setdefault("ID", StringIndexMapper()).insert(interval_id)

    # ------------------------------------------------------------------ build

    def _open_for_write(self) -> NodeStore:
        return NodeStore(self._db_path, self.map_size).open(write=True)

    def _task_chunk(self, track_count: int) -> tuple[int, int]:
        ntask = _env_int(TASK_COUNT_ENV)
        procid = _env_int(TASK_ID_ENV)
        start, end = 0, track_count - 1
        if ntask:
            chunk = (track_count + ntask - 1) // ntask
            start = procid * chunk
            end = min((procid + 1) * chunk - 1, track_count - 1)
        logger.debug(
            "Building KDT with (ntask, procid, start, end) : (%d,%d,%d,%d)",
            ntask, procid, start, end,
        )
        return start, end

    def _write_uuid_at(self, new_uuid: str, index: int) -> None:
        path = self.dataset_path / UUIDS_FILE
        uuids = read_uuids(path)
        if not uuids:
            uuids = [""] * (1 if self.is_vertical_split else len(self.event_data_values))
        if index >= len(uuids):
            uuids.extend([""] * (index + 1 - len(uuids)))
        uuids[index] = new_uuid
        write_uuids(path, uuids)
        self.root_uuids = uuids

    def build(self) -> None:
        """Build the trees of every inserted track and persist them.

        The inserted events are released afterwards.
        """
        self.dataset_path.mkdir(parents=True, exist_ok=True)

        if self.is_vertical_split:
            pairs = sorted(
                zip(list(self.event_tracks), self.event_data_values),
                key=lambda pair: int(pair[0]),
            )
            self.event_tracks = StringIndexMapper()
            for name, _ in pairs:
                self.event_tracks.insert(name)
            self.event_data_values = [values for _, values in pairs]

        self.clean_nodes_from_memory(True)
        self.reload_nodes(False)

        if self.is_vertical_split:
            logger.debug("Building KDT with vertical split")
            if not self.root_uuids:
                self.root_uuids = [""]
            spans = [
                (get_event_time(values[0]), get_event_time(values[-1]))
                for values in self.event_data_values
                if values
            ]
            global_min = min((s for s, _ in spans), default=sys.float_info.max)
            global_max = max((e for _, e in spans), default=-sys.float_info.max)
            logger.debug("Global min time: %s, max time: %s", global_min, global_max)
            with self._open_for_write() as store:
                builder = TreeBuilder(
                    store, self.event_data_attributes, self.event_data_values, self.splitting_rule
                )
                root_uuid = builder.build_two_d(
                    global_min, global_max, 0, len(self.event_tracks) - 1, 0
                )
            self._write_uuid_at(root_uuid, 0)
            self.event_data_values = []
            return

        if not self.root_uuids:
            self.root_uuids = [""] * len(self.event_data_values)
        start, end = self._task_chunk(len(self.event_data_values))
        for track_index in range(start, end + 1):
            values = self.event_data_values[track_index]
            if not values:
                continue
            with self._open_for_write() as store:
                builder = TreeBuilder(
                    store, self.event_data_attributes, self.event_data_values, self.splitting_rule
                )
                root_uuid = builder.build_track(0, len(values) - 1, track_index)
            self._write_uuid_at(root_uuid, track_index)
            logger.debug("Constructing KDT for track index: %s", self.event_tracks[track_index])
            self.event_data_values[track_index] = []
        self.event_data_values = []

    # ---------------------------------------------------------------- storage

    def open_read_only(self) -> None:
        """Open the dataset's node database for queries."""
        if self._store is not None and self._store.is_open:
            raise RuntimeError("node database is already open")
        self._store = NodeStore(self._db_path, self.map_size).open(write=False)

    def close(self) -> None:
        """Close the node database opened by :meth:`open_read_only`."""
        if self._store is not None:
            self._store.close()
            self._store = None

    def clean_nodes_from_memory(self, store_existing: bool = False) -> None:
        """Drop cached trees, tracks and attributes, saving the latter two first if asked."""
        if store_existing:
            logger.debug("eseman uuid size %d", len(self.root_uuids))
            self.dataset_path.mkdir(parents=True, exist_ok=True)
            write_attributes(self.dataset_path / ATTRIBUTES_FILE, self.event_data_attributes)
            write_tracks(self.dataset_path / TRACKS_FILE, self.event_tracks)
        self.roots = []
        self.event_data_attributes = {}
        self.event_tracks = StringIndexMapper()

    def reload_nodes(self, load_roots: bool = False) -> None:
        """Read attributes, tracks and root UUIDs back from the dataset directory.

        With ``load_roots`` the root node of every track is fetched from the
        open node database; a track without a tree gets None.
        """
        logger.debug("clearing memory and reloading")
        path = self.dataset_path
        self.event_data_attributes = read_attributes(path / ATTRIBUTES_FILE)
        self.event_tracks = read_tracks(path / TRACKS_FILE)
        self.root_uuids = read_uuids(path / UUIDS_FILE)
        if load_roots:
            if self._store is None or not self._store.is_open:
                raise RuntimeError("node database is not open")
            self.roots = [
                find_node_in_time_range(self._store, uuid, -1, _INT64_MAX, None)
                for uuid in self.root_uuids
            ]

    def _root(self, track_index: int) -> Optional[EsemanNode]:
        if 0 <= track_index < len(self.roots):
            return self.roots[track_index]
        return None

    def check_hot_nodes(
        self, start_time: float, end_time: float, track_index: int
    ) -> Optional[EsemanNode]:
        """Move the cached root of a track so that it covers the query window.

        Returns the node that was cached before when it may be reused below
        the new root, otherwise None.
        """
        root = self._root(track_index)
        if root is None or track_index >= len(self.root_uuids):
            return None
        start_time = max(0.0, float(start_time))
        end_time = max(0.0, float(end_time))
        width = end_time - start_time
        window_left = max(0.0, start_time - 2 * width)
        window_right = end_time + 2 * width
        grand_root = self.root_uuids[track_index]

        if end_time < root.start_time or root.end_time < start_time:
            self.roots[track_index] = find_node_in_time_range(
                self._store, grand_root, window_left, window_right, None
            )
            return None
        if start_time < root.start_time or root.end_time < end_time:
            if root.uuid == grand_root:
                return None
            found = find_node_in_time_range(
                self._store, grand_root, window_left, window_right, root
            )
            if found is None or found.uuid == root.uuid:
                return None
            self.roots[track_index] = found
            return root
        return None

    # ---------------------------------------------------------------- filters

    def add_primitive_filter(self, primitive: str) -> None:
        """Restrict the next query to intervals of ``primitive``."""
        if any(get_event_primitive(flt) == primitive for flt in self._filters):
            return
        self._filters.append({"primitive": primitive})

    def add_id_filter(self, interval_id: str) -> None:
        """Restrict the next query to intervals with ``interval_id``."""
        if any(get_event_id(flt) == interval_id for flt in self._filters):
            return
        self._filters.append({"ID": interval_id})

    def clear_filters(self) -> None:
        """Remove every pending filter."""
        self._filters = []

    def _resolved_filters(self) -> list[dict[str, Any]]:
        resolved = []
        for flt in self._filters:
            resolved.append(
                {
                    key: self.event_data_attributes.setdefault(key, StringIndexMapper()).index_of(value)
                    if isinstance(value, str)
                    else value
                    for key, value in flt.items()
                }
            )
        return [flt for flt in resolved if flt]

    # ---------------------------------------------------------------- queries

    def _query_track(
        self,
        time_begin: int,
        time_end: int,
        track_index: int,
        bins: int,
        replace_node: Optional[EsemanNode],
        filters: list[dict[str, Any]],
    ) -> list[float]:
        bin_size = get_bin_size(time_begin, time_end, bins)
        found = find_clusters(
            self._store,
            self._root(track_index),
            time_begin,
            time_end,
            bin_size * self.horizontal_resolution_divisor,
            replace_node,
            "",
            filters,
            self.stats,
        )
        return fill_bins(zip(found[0::2], found[1::2]), time_begin, time_end, bins)

    def _query_all_tracks(
        self,
        time_begin: int,
        time_end: int,
        track_begin: int,
        track_end: int,
        bins: int,
        filters: list[dict[str, Any]],
    ) -> dict[int, list[float]]:
        bin_size = get_bin_size(time_begin, time_end, bins)
        collected = collect_track_intervals(
            self._store,
            self._root(0),
            time_begin,
            time_end,
            track_begin,
            track_end,
            bin_size,
            filters,
            self.stats,
        )
        return {
            int(self.event_tracks[track]): bin_track_intervals(intervals, time_begin, time_end, bins)
            for track, intervals in collected.items()
        }

    def binned_range_query(
        self,
        time_begin: int,
        time_end: int,
        locations: Iterable[str],
        bins: int,
    ) -> dict[int, list[float]]:
        """Occupancy bins of each requested location; clears the filters afterwards."""
        filters = self._resolved_filters()
        self.stats = QueryStats()
        reads_before = self._store.reads if self._store is not None else 0
        clock_begin = time.perf_counter()
        results: dict[int, list[float]] = {}
        locations = list(locations)
        try:
            if self.is_vertical_split:
                if locations:
                    ordered = sorted(locations, key=int)
                    first = self.event_tracks.index_of(ordered[0])
                    last = self.event_tracks.index_of(ordered[-1])
                    results = self._query_all_tracks(time_begin, time_end, first, last, bins, filters)
                logger.debug("From vertical split")
            else:
                most_visited = 0
                for location in locations:
                    track_index = self.event_tracks.index_of(location)
                    if track_index == len(self.event_tracks):
                        logger.debug("Track not found in event tracks %s", location)
                        continue
                    self.stats.nodes_visited = 0
                    replace_node = self.check_hot_nodes(time_begin, time_end, track_index)
                    results[int(location)] = self._query_track(
                        time_begin, time_end, track_index, bins, replace_node, filters
                    )
                    most_visited = max(most_visited, self.stats.nodes_visited)
                    logger.debug("Track index: %d %s", track_index, location)
                self.stats.nodes_visited = most_visited
        finally:
            self._filters = []
        elapsed = int((time.perf_counter() - clock_begin) * 1_000_000)
        reads = (self._store.reads if self._store is not None else 0) - reads_before
        profiled = "ESEMAN_TWOD" if self.is_vertical_split else "ESEMAN"
        logger.info(
            "%s,ds_window,%d,%d,%d,%d", profiled, time_begin, time_end,
            self.horizontal_resolution_divisor, elapsed,
        )
        logger.debug("nodes read from store: %d", reads)
        return dict(sorted(results.items()))

    def find_nearest_event(self, ctime: int, location: int) -> str:
        """Interval ID active at ``ctime`` on ``location``, or an empty string."""
        track_index = self.event_tracks.index_of(str(location))
        root = self._root(track_index)
        if root is None:
            return ""
        bin_size = get_bin_size(ctime, ctime + 1, 1)
        found = find_clusters(
            self._store, root, ctime, ctime + 1, bin_size, None, "ID", (), self.stats
        )
        if not found or found[0] < 0:
            return ""
        try:
            return self.event_data_attributes["ID"][found[0]]
        except (KeyError, IndexError):
            return ""

    # -------------------------------------------------------------------- dot

    def _dot_lines(self, store: NodeStore, root_uuid: str) -> Iterator[str]:
        pending: list[tuple[str, str]] = [("node", root_uuid)] if root_uuid else []
        while pending:
            kind, value = pending.pop()
            if kind == "line":
                yield value
                continue
            node = store.load(value)
            if node is None:
                continue
            yield f'  "{node.start_time:g},{node.end_time:g}" [label="[{node.uuid}]"];'
            if node.has_right_child():
                pending.append(("node", node.right_child))
                pending.append(("line", f'  "{node.uuid}" -> "{node.right_child}";'))
            if node.has_left_child():
                pending.append(("node", node.left_child))
                pending.append(("line", f'  "{node.uuid}" -> "{node.left_child}";'))

    def _write_dot_file(self, store: NodeStore, track_index: int, directory: Path) -> Path:
        path = directory / f"track_{track_index}.dot"
        root_uuid = self.root_uuids[track_index] if track_index < len(self.root_uuids) else ""
        label = self.event_tracks[track_index] if track_index < len(self.event_tracks) else ""
        with path.open("w") as dot_file:
            dot_file.write("digraph G {\n")
            dot_file.write(f'  label = "Track {label}";\n')
            for line in self._dot_lines(store, root_uuid):
                dot_file.write(line + "\n")
            dot_file.write("}\n")
        return path

    def write_dot_for_track(
        self, track_index: int, directory: Union[str, os.PathLike[str]] = "."
    ) -> Path:
        """Write the tree of one track as a Graphviz file; returns its path."""
        directory = Path(directory)
        if self._store is not None and self._store.is_open:
            return self._write_dot_file(self._store, track_index, directory)
        with NodeStore(self._db_path, self.map_size) as store:
            return self._write_dot_file(store, track_index, directory)

    def write_dot(self, directory: Union[str, os.PathLike[str]] = ".") -> list[Path]:
        """Write a Graphviz file for every stored tree; returns their paths."""
        return [
            self.write_dot_for_track(track_index, directory)
            for track_index in range(len(self.root_uuids))
        ]