"""Tree node of the event-sequence k-d tree and its text serialisation."""

from __future__ import annotations

import uuid as uuid_module
from dataclasses import dataclass, field
from typing import Optional

from .commons import double_to_string_zero_precision


@dataclass
class EsemanNode:
    """A time span over one or more tracks, with child links and attributes."""

    uuid: str = ""
    start_time: float = 0.0
    end_time: float = 0.0
    start_track: int = 0
    end_track: int = 0
    left_child: str = ""
    right_child: str = ""
    attribute_lists: dict[str, set[int]] = field(default_factory=dict)
    left_node: Optional["EsemanNode"] = field(default=None, compare=False, repr=False)
    right_node: Optional["EsemanNode"] = field(default=None, compare=False, repr=False)

    @classmethod
    def create(cls, start_time: float, end_time: float, track: int) -> "EsemanNode":
        """Make a fresh node with a random UUID covering a single track."""
        return cls(
            uuid=str(uuid_module.uuid4()),
            start_time=float(start_time),
            end_time=float(end_time),
            start_track=track,
            end_track=track,
        )

    def attribute_keys(self) -> list[str]:
        """Names of the attributes the node carries."""
        return list(self.attribute_lists)

    def has_attribute(self, key: str) -> bool:
        return key in self.attribute_lists

    def add_attribute(self, key: str, attr_index: int) -> None:
        """Record that attribute ``key`` takes the value with ``attr_index``."""
        self.attribute_lists.setdefault(key, set()).add(attr_index)

    def merge_attributes(self, other: "EsemanNode") -> None:
        """Add every attribute value of ``other`` to this node."""
        for key, indexes in other.attribute_lists.items():
            self.attribute_lists.setdefault(key, set()).update(indexes)

    def has_left_child(self) -> bool:
        return bool(self.left_child)

    def has_right_child(self) -> bool:
        return bool(self.right_child)

    def serialize(self) -> str:
        """Encode the node, without its UUID, as whitespace-separated text."""
        lines = [
            f"{double_to_string_zero_precision(self.start_time)} "
            f"{double_to_string_zero_precision(self.end_time)} "
            f"{self.start_track} {self.end_track}",
            str(len(self.attribute_lists)),
        ]
        for key, values in self.attribute_lists.items():
            lines.append(f"{key} {len(values)}")
            lines.append("".join(f"{value} " for value in sorted(values)))
        lines.append(self.left_child)
        lines.append(self.right_child)
        return "\n".join(lines) + "\n"

    @classmethod
    def deserialize(cls, uuid: str, data: str | bytes) -> "EsemanNode":
        """Decode text produced by :meth:`serialize` into a node named ``uuid``."""
        text = data.decode() if isinstance(data, (bytes, bytearray)) else data
        tokens = iter(text.split())
        try:
            node = cls(
                uuid=uuid,
                start_time=float(next(tokens)),
                end_time=float(next(tokens)),
                start_track=int(next(tokens)),
                end_track=int(next(tokens)),
            )
            for _ in range(int(next(tokens))):
                key = next(tokens)
                count = int(next(tokens))
                values = node.attribute_lists.setdefault(key, set())
                for _ in range(count):
                    values.add(int(next(tokens)))
        except (StopIteration, ValueError) as exc:
            raise ValueError(f"malformed node data for {uuid!r}") from exc
        node.left_child = next(tokens, "")
        node.right_child = next(tokens, "")
        return node