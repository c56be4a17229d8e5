"""Shared event helpers, binning arithmetic and the string index mapper."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Any

logger = logging.getLogger(__name__)

_UINT64 = 1 << 64

Event = dict[str, Any]
AttributeList = dict[str, set[int]]


def make_event(time: float, primitive: str, interval_id: str) -> Event:
    """Build an event dictionary holding a time, a primitive name and an interval ID."""
    return {"time": float(time), "primitive": primitive, "ID": interval_id}


def get_event_time(event: Mapping[str, Any]) -> float:
    """Return the event's time, parsing strings; 0.0 when missing or unreadable."""
    value = event.get("time")
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def get_event_primitive(event: Mapping[str, Any]) -> str:
    """Return the event's primitive name, or an empty string."""
    value = event.get("primitive")
    return value if isinstance(value, str) else ""


def get_event_id(event: Mapping[str, Any]) -> str:
    """Return the event's interval ID, or an empty string."""
    value = event.get("ID")
    return value if isinstance(value, str) else ""


def get_bin_size(time_begin: int, time_end: int, bins: int) -> int:
    """Width of one bin when the window is split into ``bins`` parts."""
    if bins <= 0:
        raise ValueError("bins must be positive")
    if time_end < time_begin:
        raise ValueError("time_end lies before time_begin")
    return math.floor((time_end - time_begin) / bins)


def get_bin_number(time_begin: int, time_end: int, bins: int, ctime: int) -> int:
    """Index of the bin holding ``ctime``, or -1 when it lies outside the window."""
    bin_size = get_bin_size(time_begin, time_end, bins)
    if ctime < time_begin or ctime > time_end:
        return -1
    if bin_size == 0:
        raise ValueError("bin size is zero: window narrower than the bin count")
    return math.floor((ctime - time_begin) / bin_size)


def double_to_string_zero_precision(value: float) -> str:
    """Format a number in fixed notation with no decimals."""
    return f"{value:.0f}"


def _unsigned_mod(value: int, modulus: int) -> int:
    return (value % _UINT64) % modulus


def fill_bins(
    intervals: Iterable[tuple[int, int]],
    time_begin: int,
    time_end: int,
    bins: int,
) -> list[float]:
    """Mark bins covered by intervals: 1.0 fully, 0.5 partially, 0.0 empty."""
    results = [0.0] * bins
    bin_size = get_bin_size(time_begin, time_end, bins)
    for start, end in intervals:
        if end < time_begin or start > time_end:
            continue
        start = max(start, time_begin)
        end = min(end, time_end)
        starting_bin = get_bin_number(time_begin, time_end, bins, start)
        ending_bin = get_bin_number(time_begin, time_end, bins, end)
        if starting_bin < 0 or ending_bin < 0:
            continue
        for bin_index in range(starting_bin + 1, min(ending_bin, bins)):
            if results[bin_index] >= 0.5:
                break
            results[bin_index] = 1.0
        if starting_bin < bins and results[starting_bin] < 0.5:
            results[starting_bin] = 0.5 if _unsigned_mod(start, bin_size) else 1.0
        if ending_bin < bins and results[ending_bin] < 0.5:
            results[ending_bin] = 0.5 if _unsigned_mod(end, bin_size) else 1.0
    return results


def filters_satisfied(
    attribute_lists: Mapping[str, set[int]],
    filters: Iterable[Mapping[str, Any]],
) -> bool:
    """Check that every filter's key/index pairs are present in the attributes.

    A filter whose value has not been resolved to an index is treated as met.
    """
    for flt in filters:
        for key, value in flt.items():
            if key not in attribute_lists:
                return False
            if isinstance(value, bool) or not isinstance(value, int):
                break
            if value not in attribute_lists[key]:
                return False
    return True


class StringIndexMapper:
    """Assigns stable indexes to strings in insertion order."""

    def __init__(self) -> None:
        self._items: list[str] = []
        self._index: dict[str, int] = {}

    def insert(self, value: str) -> None:
        """Add a string unless it is already present."""
        if value not in self._index:
            self._index[value] = len(self._items)
            self._items.append(value)

    def index_of(self, value: str) -> int:
        """Index of ``value``, or ``len(self)`` when it is unknown."""
        index = self._index.get(value)
        if index is None:
            logger.debug("Track not found: %s", value)
            return len(self._items)
        return index

    def __getitem__(self, index: int) -> str:
        if index < 0 or index >= len(self._items):
            raise IndexError("Index out of range")
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __contains__(self, value: object) -> bool:
        return value in self._index

    def order(self, key: Callable[[str], Any]) -> None:
        """Sort the strings by ``key`` and renumber them."""
        self._items.sort(key=key)
        self._index = {item: i for i, item in enumerate(self._items)}

    def clear(self) -> None:
        """Remove every string."""
        self._items.clear()
        self._index.clear()