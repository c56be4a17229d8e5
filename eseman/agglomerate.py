"""One-dimensional single-linkage clustering of event intervals per track."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable, Sequence
from itertools import combinations
from typing import Any

from .commons import (
    Event,
    StringIndexMapper,
    fill_bins,
    filters_satisfied,
    get_bin_size,
    get_event_id,
    get_event_primitive,
    get_event_time,
    make_event,
)

logger = logging.getLogger(__name__)

Merge = tuple[int, int, float]


def change_merge(index: int, count: int) -> int:
    """Turn a merge label into a node index: leaves first, then merged clusters."""
    if index < 0:
        return -(index + 1)
    return index - 1 + count


def event_distance(s11: float, s12: float, s21: float, s22: float) -> float:
    """Gap between the intervals [s11, s12] and [s21, s22]."""
    if s12 < s21:
        return s21 - s12
    return s11 - s22


def _merge_order(label: int) -> tuple[int, int]:
    # Singletons (negative labels) come before clusters, then by magnitude.
    return (0, -label) if label < 0 else (1, label)


def single_linkage(count: int, distances: Sequence[float]) -> list[Merge]:
    """Single-linkage clustering of ``count`` points from a condensed distance list.

    Returns ``count - 1`` merges ``(a, b, height)`` in ascending height. A label
    ``-(i + 1)`` names point ``i``; a positive label ``k`` names the cluster
    formed by the ``k``-th merge.
    """
    if count < 0:
        raise ValueError("count must not be negative")
    expected = count * (count - 1) // 2
    if len(distances) != expected:
        raise ValueError(f"expected {expected} distances, got {len(distances)}")
    if count < 2:
        return []

    def condensed(i: int, j: int) -> int:
        if i > j:
            i, j = j, i
        return count * i - i * (i + 1) // 2 + (j - i - 1)

    # Prim's algorithm over the complete graph gives the minimum spanning tree.
    remaining = set(range(1, count))
    best = dict.fromkeys(remaining, math.inf)
    parent = dict.fromkeys(remaining, 0)
    current = 0
    edges: list[tuple[int, int, float]] = []
    while remaining:
        for other in remaining:
            d = distances[condensed(current, other)]
            if d < best[other]:
                best[other] = d
                parent[other] = current
        nxt = min(sorted(remaining), key=best.__getitem__)
        remaining.remove(nxt)
        edges.append((parent[nxt], nxt, best[nxt]))
        current = nxt
    edges.sort(key=lambda edge: edge[2])

    roots = list(range(count))
    labels = {point: -(point + 1) for point in range(count)}

    def find(point: int) -> int:
        while roots[point] != point:
            roots[point] = roots[roots[point]]
            point = roots[point]
        return point

    merges: list[Merge] = []
    for step, (u, v, height) in enumerate(edges, start=1):
        ru, rv = find(u), find(v)
        a, b = sorted((labels[ru], labels[rv]), key=_merge_order)
        roots[rv] = ru
        labels[ru] = step
        merges.append((a, b, height))
    return merges


class EventAgglomerateClustering:
    """Cluster hierarchy over the intervals of a single track."""

    def __init__(self, track: str = "") -> None:
        self.track = track
        self.filters: list[dict[str, Any]] = []
        self._data: list[Event] = []
        self._npoints = 0
        self._start: list[float] = []
        self._end: list[float] = []
        self._attributes: list[dict[str, set[int]]] = []
        self._children: dict[int, tuple[int, int]] = {}
        self._heights: list[float] = []

    def __len__(self) -> int:
        return len(self._data) // 2

    def insert(self, start_time: float, end_time: float, primitive_name: str, interval_id: str) -> None:
        """Append an interval as a start and an end event."""
        if start_time > end_time:
            raise ValueError("Invalid time range: start_time > end_time")
        self._data.append(make_event(start_time, primitive_name, interval_id))
        self._data.append(make_event(end_time, primitive_name, interval_id))

    def build(self, attributes: dict[str, StringIndexMapper]) -> None:
        """Cluster the inserted intervals and record spans and attributes per node."""
        logger.debug("Building Agglomerate Clusters...")
        count = len(self._data) // 2
        self._npoints = count
        spans = [
            (get_event_time(self._data[2 * i]), get_event_time(self._data[2 * i + 1]))
            for i in range(count)
        ]
        node_total = max(2 * count - 1, 0)
        self._start = [0.0] * node_total
        self._end = [0.0] * node_total
        self._attributes = [{} for _ in range(node_total)]
        self._children = {}
        self._heights = []
        if count == 0:
            return

        for leaf, (start, end) in enumerate(spans):
            self._start[leaf] = start
            self._end[leaf] = end
            for key, value in self._data[2 * leaf].items():
                if key == "time":
                    continue
                mapper = attributes.setdefault(key, StringIndexMapper())
                self.add_attribute_at(leaf, key, mapper.index_of(value))

        distances = [
            event_distance(a[0], a[1], b[0], b[1]) for a, b in combinations(spans, 2)
        ]
        merges = single_linkage(count, distances)
        for step, (a, b, height) in enumerate(merges):
            left = change_merge(a, count)
            right = change_merge(b, count)
            if self._end[left] > self._start[right]:
                left, right = right, left
            root = step + count
            self._children[root] = (left, right)
            self._heights.append(height)
            self._start[root] = self._start[left]
            self._end[root] = self._end[right]
            for child in (left, right):
                for key, indexes in self._attributes[child].items():
                    self._attributes[root].setdefault(key, set()).update(indexes)
        logger.debug("Building Agglomerate Clusters Done!")

    def _find_clusters(self, start_t: int, end_t: int, bin_size: int, return_key: str) -> list[int]:
        results: list[int] = []
        if self._npoints == 0:
            return results
        stack = [2 * self._npoints - 2]
        while stack:
            node = stack.pop()
            if not filters_satisfied(self._attributes[node], self.filters):
                continue
            start_time = int(self._start[node])
            end_time = int(self._end[node])
            if start_time >= end_t or end_time <= start_t:
                continue
            is_coarse = bin_size >= end_time - start_time + 1
            if not is_coarse and node >= self._npoints:
                left, right = self._children[node]
                stack.append(right)
                stack.append(left)
                continue
            if not is_coarse:
                start_time = max(start_time, start_t)
                end_time = min(end_time, end_t)
            if return_key:
                values = self._attributes[node].get(return_key)
                if not values:
                    logger.debug("Attribute not found at index: %d, key: %s", node, return_key)
                    continue
                results.append(min(values))
            else:
                results.extend((start_time, end_time))
        return results

    def binned_range_query(self, time_begin: int, time_end: int, bins: int, hrd: int = 1) -> list[float]:
        """Occupancy of each bin of the window; clears the filters afterwards."""
        bin_size = get_bin_size(time_begin, time_end, bins)
        found = self._find_clusters(time_begin, time_end, bin_size * hrd, "")
        self.filters = []
        return fill_bins(zip(found[::2], found[1::2]), time_begin, time_end, bins)

    def find_nearest_event(self, ctime: int) -> int:
        """Index of the interval ID active at ``ctime``, or -1."""
        bin_size = get_bin_size(ctime, ctime + 1, 1)
        found = self._find_clusters(ctime, ctime + 1, bin_size, "ID")
        return found[0] if found else -1

    def attribute_keys_at(self, index: int) -> list[str]:
        """Names of the attributes on node ``index``."""
        return list(self._attributes[index])

    def has_attribute_at(self, index: int, key: str) -> bool:
        return key in self._attributes[index]

    def add_attribute_at(self, index: int, key: str, attr_index: int) -> None:
        """Record value ``attr_index`` of attribute ``key`` on node ``index``."""
        self._attributes[index].setdefault(key, set()).add(attr_index)


class AgglomerateClusters:
    """Per-track clusterings sharing one attribute dictionary."""

    def __init__(self) -> None:
        self.horizontal_resolution_divisor = 1
        self.filters: list[dict[str, Any]] = []
        self.event_data_attributes: dict[str, StringIndexMapper] = {}
        self._clusters: dict[str, EventAgglomerateClustering] = {}

    def insert(
        self,
        start_time: float,
        end_time: float,
        track: str,
        primitive_name: str,
        interval_id: str,
    ) -> None:
        """Add an interval to ``track`` and register its attribute values."""
        if start_time > end_time:
            raise ValueError("Invalid time range: start_time > end_time")
        cluster = self._clusters.setdefault(track, EventAgglomerateClustering(track))
        cluster.insert(start_time, end_time, primitive_name, interval_id)
        self.event_data_attributes.setdefault("primitive", StringIndexMapper()).insert(primitive_name)
        self.event_data_attributes.setdefault("ID", StringIndexMapper()).insert(interval_id)

    def build_all(self) -> None:
        """Build the hierarchy of every track."""
        for track, cluster in sorted(self._clusters.items()):
            cluster.build(self.event_data_attributes)
            logger.debug("building agglomerate cluster for: %s", track)

    def binned_range_query(
        self,
        time_begin: int,
        time_end: int,
        locations: Iterable[str],
        bins: int,
    ) -> dict[int, list[float]]:
        """Occupancy bins for each known location; clears the filters afterwards."""
        resolved = [
            {
                key: self.event_data_attributes.setdefault(key, StringIndexMapper()).index_of(value)
                if isinstance(value, str)
                else value
                for key, value in flt.items()
            }
            for flt in self.filters
        ]
        clock_begin = time.perf_counter()
        results: dict[int, list[float]] = {}
        for location in locations:
            cluster = self._clusters.get(location)
            if cluster is None:
                logger.debug("Track not found in agglomerate clusters %s", location)
                continue
            if resolved:
                cluster.filters = [dict(flt) for flt in resolved]
            results[int(location)] = cluster.binned_range_query(
                time_begin, time_end, bins, self.horizontal_resolution_divisor
            )
        elapsed = int((time.perf_counter() - clock_begin) * 1_000_000)
        self.filters = []
        logger.info(
            "AGC,ds_window,%d,%d,%d,%d",
            time_begin,
            time_end,
            self.horizontal_resolution_divisor,
            elapsed,
        )
        return dict(sorted(results.items()))

    def find_nearest_event(self, ctime: int, location: int) -> str:
        """Interval ID active at ``ctime`` on ``location``, or an empty string."""
        cluster = self._clusters.get(str(location))
        if cluster is None:
            logger.debug("Track not found in agglomerate clusters %s", location)
            return ""
        result = cluster.find_nearest_event(ctime)
        if result < 0:
            return ""
        return self.event_data_attributes["ID"][result]

    def add_primitive_filter(self, primitive: str) -> None:
        """Restrict the next query to intervals of ``primitive``."""
        if any(get_event_primitive(flt) == primitive for flt in self.filters):
            return
        self.filters.append({"primitive": primitive})

    def add_id_filter(self, interval_id: str) -> None:
        """Restrict the next query to intervals with ``interval_id``."""
        if any(get_event_id(flt) == interval_id for flt in self.filters):
            return
        self.filters.append({"ID": interval_id})