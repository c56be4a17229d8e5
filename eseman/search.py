"""Traversals of stored event trees: cluster search, track collection and caching."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional

from .commons import fill_bins, filters_satisfied
from .node import EsemanNode
from .store import NodeStore

logger = logging.getLogger(__name__)


@dataclass
class QueryStats:
    """Counters gathered while a query walks a tree."""

    nodes_visited: int = 0
    max_depth_reached: int = 0

    def reached(self, depth: int) -> None:
        """Record that a result was produced at ``depth``."""
        self.max_depth_reached = max(self.max_depth_reached, depth)


def _load_children(store: Optional[NodeStore], node: EsemanNode) -> None:
    if node.right_node is None and node.right_child and store is not None:
        node.right_node = store.load(node.right_child)
    if node.left_node is None and node.left_child and store is not None:
        node.left_node = store.load(node.left_child)


def _push_children(stack: list[tuple[EsemanNode, int]], node: EsemanNode, depth: int) -> None:
    # Right first, so that the left child is handled first.
    if node.right_node is not None:
        stack.append((node.right_node, depth + 1))
    if node.left_node is not None:
        stack.append((node.left_node, depth + 1))


def _is_leaf(node: EsemanNode) -> bool:
    return not node.has_left_child() and not node.has_right_child()


def adopt_cached_node(node: EsemanNode, replace_node: Optional[EsemanNode]) -> bool:
    """Hang ``replace_node`` under ``node`` where it is the child with its UUID.

    Returns True when the node was adopted.
    """
    if node is None or replace_node is None:
        return False
    if node.has_left_child() and node.left_child == replace_node.uuid:
        node.left_node = replace_node
        logger.debug("reusing nodes")
        return True
    if node.has_right_child() and node.right_child == replace_node.uuid:
        node.right_node = replace_node
        logger.debug("reusing nodes")
        return True
    return False


def clear_deep_nodes(node: EsemanNode) -> None:
    """Drop the cached grandchildren of ``node``, keeping its cached children."""
    for child, present in (
        (node.left_node, node.has_left_child()),
        (node.right_node, node.has_right_child()),
    ):
        if present and child is not None:
            child.left_node = None
            child.right_node = None


def find_clusters(
    store: Optional[NodeStore],
    root: Optional[EsemanNode],
    start_t: int,
    end_t: int,
    bin_size: int,
    replace_node: Optional[EsemanNode] = None,
    return_key: str = "",
    filters: Iterable[Mapping[str, Any]] = (),
    stats: Optional[QueryStats] = None,
) -> list[int]:
    """Walk one track's tree and collect the spans overlapping ``[start_t, end_t]``.

    A node no wider than ``bin_size`` is reported whole; a leaf is reported
    clipped to the window. Spans come back flattened as start, end pairs, or,
    when ``return_key`` is given, as one attribute index per reported node.
    Children missing from the cache are loaded from ``store`` and kept.
    """
    results: list[int] = []
    if root is None:
        return results
    stats = stats if stats is not None else QueryStats()
    filters = list(filters)
    stack: list[tuple[EsemanNode, int]] = [(root, 0)]
    while stack:
        stats.nodes_visited += 1
        node, depth = stack.pop()
        if filters and not filters_satisfied(node.attribute_lists, filters):
            continue
        start_time = int(node.start_time)
        end_time = int(node.end_time)
        if start_time >= end_t or end_time <= start_t:
            continue

        adopt_cached_node(node, replace_node)

        is_coarse = bin_size >= end_time - start_time + 1
        if is_coarse or _is_leaf(node):
            if not is_coarse:
                start_time = max(start_time, start_t)
                end_time = min(end_time, end_t)
            if return_key:
                values = node.attribute_lists.get(return_key)
                if not values:
                    logger.debug("Attribute not found for key: %s", return_key)
                    continue
                results.append(min(values))
            else:
                results.extend((start_time, end_time))
            stats.reached(depth)
            logger.debug("Cluster: Start: %d, End: %d", start_time, end_time)
            continue

        _load_children(store, node)
        _push_children(stack, node, depth)
    return results


def collect_track_intervals(
    store: Optional[NodeStore],
    root: Optional[EsemanNode],
    time_begin: int,
    time_end: int,
    track_begin: int,
    track_end: int,
    bin_size: int,
    filters: Iterable[Mapping[str, Any]] = (),
    stats: Optional[QueryStats] = None,
) -> dict[int, list[tuple[int, int]]]:
    """Walk a two-dimensional tree and gather spans per track.

    Each reported node adds ``(start, id)`` and ``(end, id)`` to its track's
    list, where ``id`` is the node's first interval-ID index or -1. Tracks
    come back in ascending order.
    """
    results: dict[int, list[tuple[int, int]]] = {}
    if root is None:
        return results
    stats = stats if stats is not None else QueryStats()
    filters = list(filters)
    stack: list[tuple[EsemanNode, int]] = [(root, 0)]
    while stack:
        stats.nodes_visited += 1
        node, depth = stack.pop()
        if filters and not filters_satisfied(node.attribute_lists, filters):
            continue
        start_time = int(node.start_time)
        end_time = int(node.end_time)
        if start_time >= time_end or end_time <= time_begin:
            continue
        if node.start_track > track_end or node.end_track < track_begin:
            continue

        single_track = (
            node.start_track == node.end_track
            and node.start_track >= track_begin
            and node.end_track <= track_end
        )
        is_coarse = bin_size >= end_time - start_time + 1
        if single_track and (is_coarse or _is_leaf(node)):
            if not is_coarse:
                start_time = max(start_time, time_begin)
                end_time = min(end_time, time_end)
            ids = node.attribute_lists.get("ID")
            interval_id = min(ids) if ids else -1
            spans = results.setdefault(node.start_track, [])
            spans.append((start_time, interval_id))
            spans.append((end_time, interval_id))
            stats.reached(depth)
            logger.debug(
                "Cluster: Start: %d, End: %d, track: %d", start_time, end_time, node.start_track
            )
            continue

        _load_children(store, node)
        _push_children(stack, node, depth)
    return dict(sorted(results.items()))


def bin_track_intervals(
    intervals: Sequence[tuple[int, int]],
    time_begin: int,
    time_end: int,
    bins: int,
) -> list[float]:
    """Bin one track's ``(time, id)`` pairs, joining consecutive spans of one ID."""
    pairs = zip(intervals[0::2], intervals[1::2])
    runs = []
    for _, group in itertools.groupby(pairs, key=lambda pair: pair[0][1]):
        members = list(group)
        runs.append((members[0][0][0], members[-1][1][0]))
    return fill_bins(runs, time_begin, time_end, bins)


def find_node_in_time_range(
    store: Optional[NodeStore],
    uuid: str,
    s_time: float,
    e_time: float,
    cached_root: Optional[EsemanNode] = None,
) -> Optional[EsemanNode]:
    """Lowest node under ``uuid`` whose children both reach into ``[s_time, e_time]``.

    ``cached_root`` is used instead of loading when it carries ``uuid``.
    Returns None when the starting node cannot be loaded.
    """
    if cached_root is not None and cached_root.uuid == uuid:
        current: Optional[EsemanNode] = cached_root
    else:
        current = store.load(uuid) if store is not None else None
    while current is not None:
        _load_children(store, current)
        left, right = current.left_node, current.right_node
        has_left = current.has_left_child() and left is not None
        has_right = current.has_right_child() and right is not None

        if has_left and left.end_time > s_time and has_right and right.start_time < e_time:
            return current
        if has_right and right.start_time > e_time:
            if left is None:
                return current
            current = left
        elif has_left and left.end_time < s_time:
            if right is None:
                return current
            current = right
        else:
            return current
    return None