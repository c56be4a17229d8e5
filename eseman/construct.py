"""Construction of event-sequence k-d trees into a node store."""

from __future__ import annotations

import bisect
import enum
import logging
import math
import os
import sys
from collections.abc import Mapping, MutableMapping, Sequence
from typing import Optional, Union

from .commons import Event, StringIndexMapper, get_event_time
from .node import EsemanNode
from .store import NodeStore

logger = logging.getLogger(__name__)

SPLITTING_RULE_ENV = "ESEMAN_SPLITTING_RULE"


class SplittingRule(enum.Enum):
    """How a run of events on one track is split between two children."""

    FAIR = "FAIR"
    MIDPOINT = "MIDPOINT"
    MAX_DISTANCE = "MAX-DISTANCE"
    # Any unrecognised rule name: split off the first interval every time.
    FIRST = "FIRST"

    @classmethod
    def from_name(cls, name: str) -> "SplittingRule":
        """Rule called ``name``; unknown names give :attr:`FIRST`."""
        try:
            return cls(name)
        except ValueError:
            return cls.FIRST

    @classmethod
    def from_environment(cls) -> "SplittingRule":
        """Rule named by the environment, :attr:`FAIR` when it names none."""
        name = os.environ.get(SPLITTING_RULE_ENV)
        return cls.FAIR if name is None else cls.from_name(name)


class TreeBuilder:
    """Builds per-track and two-dimensional trees, saving every node to a store.

    ``event_data_values`` holds, per track, the start and end events of its
    intervals in time order: even positions are starts, odd positions ends.
    """

    def __init__(
        self,
        store: NodeStore,
        attributes: MutableMapping[str, StringIndexMapper],
        event_data_values: Sequence[Sequence[Event]],
        splitting_rule: Union[SplittingRule, str, None] = None,
    ) -> None:
        self.store = store
        self.attributes = attributes
        self.event_data_values = event_data_values
        if splitting_rule is None:
            self.splitting_rule = SplittingRule.from_environment()
        elif isinstance(splitting_rule, SplittingRule):
            self.splitting_rule = splitting_rule
        else:
            self.splitting_rule = SplittingRule.from_name(splitting_rule)

    def _tag(self, node: EsemanNode, event: Mapping[str, object]) -> None:
        for key, value in event.items():
            if key == "time":
                continue
            mapper = self.attributes.setdefault(key, StringIndexMapper())
            node.add_attribute(key, mapper.index_of(str(value)))

    def _finish(self, node: EsemanNode) -> str:
        for child in (node.left_child, node.right_child):
            if child:
                loaded = self.store.load(child)
                if loaded is not None:
                    node.merge_attributes(loaded)
        self.store.save(node)
        return node.uuid

    def _save_piece(self, start_time: float, end_time: float, track: int, event: Event) -> str:
        piece = EsemanNode.create(start_time, end_time, track)
        self._tag(piece, event)
        self.store.save(piece)
        return piece.uuid

    def _split_index(self, data: Sequence[Event], start: int, end: int) -> Optional[int]:
        """Position where the right child begins, or None to stop splitting."""
        rule = self.splitting_rule
        if rule is SplittingRule.FIRST:
            return start + 2
        if rule is SplittingRule.MAX_DISTANCE:
            mid = start + 2
            widest = 0.0
            for i in range(start + 1, end, 2):
                gap = get_event_time(data[i + 1]) - get_event_time(data[i])
                if gap > widest:
                    widest = gap
                    mid = i + 1
            return None if mid >= end else mid
        if rule is SplittingRule.MIDPOINT:
            first = get_event_time(data[start])
            middle = first + (get_event_time(data[end]) - first) / 2.0
            mid = bisect.bisect_right(data, middle, lo=start, hi=end + 1, key=get_event_time)
        else:
            mid = start + (end + 1 - start) // 2
        if mid % 2 == 1:
            mid -= 1
        if mid == start:
            mid = start + 2
        return None if mid >= end else mid

    def build_track(self, start_index: int, end_index: int, track_index: int) -> str:
        """Build the tree over events ``start_index..end_index`` of one track.

        Returns the root's UUID, or an empty string for an empty range.
        """
        data = self.event_data_values[track_index]
        finished: list[str] = []
        pending: list[Union[tuple[int, int], EsemanNode]] = [(start_index, end_index)]
        while pending:
            item = pending.pop()
            if isinstance(item, EsemanNode):
                item.right_child = finished.pop()
                item.left_child = finished.pop()
                finished.append(self._finish(item))
                continue
            start, end = item
            if start < 0 or start >= len(data) or end >= len(data) or start >= end:
                finished.append("")
                continue
            node = EsemanNode.create(
                get_event_time(data[start]), get_event_time(data[end]), track_index
            )
            if start + 1 == end:
                self._tag(node, data[start])
                self.store.save(node)
                finished.append(node.uuid)
                continue
            mid = self._split_index(data, start, end)
            if mid is None:
                self.store.save(node)
                finished.append(node.uuid)
                continue
            pending.append(node)
            pending.append((mid, end))
            pending.append((start, mid - 1))
        return finished.pop()

    def _build_track_window(self, start_time: float, end_time: float, track: int) -> str:
        data = self.event_data_values[track]
        if not data:
            return ""

        def time_at(index: int) -> float:
            return get_event_time(data[index])

        start_index = bisect.bisect_left(data, start_time, key=get_event_time)
        end_index = bisect.bisect_left(data, end_time, key=get_event_time)
        end_index = min(end_index, len(data) - 1)
        if start_index > end_index or start_index >= len(data) or end_index == 0:
            return ""

        node: Optional[EsemanNode] = None
        if start_index % 2 == 1:
            if time_at(start_index) < start_time:
                start_index += 1
            else:
                node = EsemanNode.create(start_time, end_time, track)
                node.left_child = self._save_piece(
                    start_time, time_at(start_index), track, data[start_index]
                )
                start_index += 1
                node.right_child = self.build_track(start_index, end_index, track)
        elif time_at(start_index) < start_time:
            node = EsemanNode.create(start_time, end_time, track)
            node.left_child = self._save_piece(
                start_time, time_at(start_index + 1), track, data[start_index + 1]
            )
            start_index += 1
            node.right_child = self.build_track(start_index + 1, end_index, track)

        if end_index % 2 == 1:
            if time_at(end_index) > end_time:
                node = EsemanNode.create(start_time, end_time, track)
                node.right_child = self._save_piece(
                    time_at(end_index - 1), end_time, track, data[end_index - 1]
                )
                end_index -= 1
                node.left_child = self.build_track(start_index, end_index - 1, track)
        elif time_at(end_index) > end_time:
            end_index -= 1
        else:
            node = EsemanNode.create(start_time, end_time, track)
            node.right_child = self._save_piece(
                time_at(end_index), end_time, track, data[end_index]
            )
            end_index -= 1
            node.left_child = self.build_track(start_index, end_index, track)

        if node is not None:
            return self._finish(node)
        return self.build_track(start_index, end_index, track)

    def build_two_d(
        self,
        start_time: float,
        end_time: float,
        start_track: int,
        end_track: int,
        depth: int = 0,
    ) -> str:
        """Build a tree over a time window and a track range.

        Even depths split time, odd depths split the tracks. Returns the
        root's UUID, or an empty string when the region is empty or invalid.
        """
        track_count = len(self.event_data_values)
        if (
            start_track < 0
            or end_track < 0
            or start_track >= track_count
            or end_track >= track_count
            or start_track > end_track
            or start_time > end_time
        ):
            return ""
        if start_track == end_track:
            return self._build_track_window(start_time, end_time, start_track)

        node = EsemanNode.create(start_time, end_time, start_track)
        node.end_track = end_track
        if depth % 2 == 0:
            max_start = sys.float_info.max
            max_end = 0.0
            for track in range(start_track, end_track + 1):
                data = self.event_data_values[track]
                si = bisect.bisect_left(data, start_time, key=get_event_time)
                ei = bisect.bisect_left(data, end_time, key=get_event_time)
                if si % 2 == 1:
                    max_start = start_time
                elif si < len(data):
                    max_start = min(max_start, get_event_time(data[si]))
                if ei % 2 == 1:
                    max_end = end_time
                elif 0 < ei and si + 1 < ei:
                    max_end = max(max_end, get_event_time(data[ei - 1]))
            if max_end > 0:
                middle = float(math.floor((max_start + max_end) / 2))
                node.left_child = self.build_two_d(
                    max_start, middle, start_track, end_track, depth + 1
                )
                node.right_child = self.build_two_d(
                    middle + 1, max_end, start_track, end_track, depth + 1
                )
        else:
            middle_track = (start_track + end_track) >> 1
            node.left_child = self.build_two_d(
                start_time, end_time, start_track, middle_track, depth + 1
            )
            node.right_child = self.build_two_d(
                start_time, end_time, middle_track + 1, end_track, depth + 1
            )
        return self._finish(node)