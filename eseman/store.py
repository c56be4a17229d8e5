"""Persistent node storage in LMDB and the plain-text side files of a dataset."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Optional

import lmdb

from .commons import StringIndexMapper
from .node import EsemanNode

logger = logging.getLogger(__name__)

DEFAULT_MAP_SIZE = 20 * 1024 * 1024 * 1024
MAP_SIZE_ENV = "LMDB_DATABASE_TOTAL_SIZE"
_EMPTY_UUIDS = ("", "NULL")


def _default_map_size() -> int:
    configured = os.environ.get(MAP_SIZE_ENV)
    return int(configured) if configured else DEFAULT_MAP_SIZE


class NodeStore:
    """Key-value store of serialised tree nodes, keyed by node UUID.

    The database lives in a single file (no sub-directory). A store is used
    inside one transaction at a time, opened either read-only or for writing.
    """

    def __init__(self, path: str | os.PathLike[str], map_size: Optional[int] = None) -> None:
        self.path = Path(path)
        self.map_size = map_size if map_size is not None else _default_map_size()
        self.reads = 0
        self._env: Optional[lmdb.Environment] = None
        self._txn: Optional[lmdb.Transaction] = None
        self._write = False

    @property
    def is_open(self) -> bool:
        return self._txn is not None

    @property
    def writable(self) -> bool:
        return self._txn is not None and self._write

    def open(self, write: bool = False) -> "NodeStore":
        """Open the environment and begin a transaction; returns the store."""
        if self._txn is not None:
            raise RuntimeError("store is already open")
        env = lmdb.open(
            str(self.path),
            map_size=self.map_size,
            subdir=False,
            readahead=False,
            mode=0o664,
        )
        try:
            self._txn = env.begin(write=write)
        except lmdb.Error:
            env.close()
            raise
        self._env = env
        self._write = write
        return self

    def _finish(self, commit: bool) -> None:
        if self._txn is None:
            return
        try:
            if commit and self._write:
                self._txn.commit()
            else:
                self._txn.abort()
        finally:
            self._txn = None
            self._write = False
            if self._env is not None:
                self._env.close()
                self._env = None

    def close(self) -> None:
        """End the transaction, committing it when it was opened for writing."""
        self._finish(commit=True)

    def __enter__(self) -> "NodeStore":
        if self._txn is None:
            self.open(write=False)
        return self

    def __exit__(self, *args: object) -> None:
        exc_type = args[0] if args else None
        self._finish(commit=exc_type is None)

    def _require_write(self) -> lmdb.Transaction:
        if self._txn is None:
            raise RuntimeError("store is not open")
        if not self._write:
            raise RuntimeError("store is open read-only")
        return self._txn

    def save(self, node: EsemanNode) -> None:
        """Store ``node`` under its UUID, replacing any earlier version."""
        if not node.uuid:
            raise ValueError("node has no UUID")
        txn = self._require_write()
        txn.put(node.uuid.encode(), node.serialize().encode())

    def load(self, uuid: str) -> Optional[EsemanNode]:
        """Fetch the node stored under ``uuid``, or None when there is none."""
        if uuid in _EMPTY_UUIDS:
            return None
        if self._txn is None:
            raise RuntimeError("store is not open")
        data = self._txn.get(uuid.encode())
        if data is None:
            logger.debug("node not found: %s", uuid)
            return None
        node = EsemanNode.deserialize(uuid, bytes(data))
        self.reads += 1
        return node

    def delete(self, uuid: str) -> bool:
        """Remove the node under ``uuid``; True when something was removed.

        When the store is closed a write transaction is opened for the call.
        """
        if not uuid:
            return False
        if self._txn is None:
            with self.open(write=True):
                return self._delete(uuid)
        return self._delete(uuid)

    def _delete(self, uuid: str) -> bool:
        removed = self._require_write().delete(uuid.encode())
        if not removed:
            logger.debug("Key not found: %s", uuid)
        return removed


def _read_lines(path: Path) -> Optional[list[str]]:
    try:
        return path.read_text().splitlines()
    except FileNotFoundError:
        return None


def _write_lines(path: Path, lines: Iterable[str]) -> None:
    path.write_text("".join(f"{line}\n" for line in lines))


def write_attributes(
    path: str | os.PathLike[str], attributes: Mapping[str, StringIndexMapper]
) -> None:
    """Write each attribute's values, in index order, to ``path``."""
    lines = [str(len(attributes))]
    for key, mapper in attributes.items():
        lines.append(f"{key} {len(mapper)}")
        lines.extend(mapper)
    _write_lines(Path(path), lines)


def read_attributes(path: str | os.PathLike[str]) -> dict[str, StringIndexMapper]:
    """Read attributes written by :func:`write_attributes`; empty when absent."""
    lines = _read_lines(Path(path))
    attributes: dict[str, StringIndexMapper] = {}
    if not lines:
        return attributes
    rows = iter(lines[1:])
    try:
        for _ in range(int(lines[0])):
            key, count = next(rows).rsplit(" ", 1)
            mapper = attributes.setdefault(key, StringIndexMapper())
            for _ in range(int(count)):
                mapper.insert(next(rows))
    except (StopIteration, ValueError) as exc:
        raise ValueError(f"malformed attribute file {path}") from exc
    return attributes


def write_tracks(path: str | os.PathLike[str], tracks: Iterable[str]) -> None:
    """Write the track names, one per line, after their count."""
    names = list(tracks)
    _write_lines(Path(path), [str(len(names)), *names])


def read_tracks(path: str | os.PathLike[str]) -> StringIndexMapper:
    """Read track names written by :func:`write_tracks`; empty when absent."""
    tracks = StringIndexMapper()
    lines = _read_lines(Path(path))
    if not lines:
        return tracks
    try:
        count = int(lines[0])
    except ValueError as exc:
        raise ValueError(f"malformed track file {path}") from exc
    for name in lines[1 : count + 1]:
        tracks.insert(name)
    return tracks


def write_uuids(path: str | os.PathLike[str], uuids: Iterable[str]) -> None:
    """Write the root UUID of each track, one per line, after their count."""
    values = list(uuids)
    _write_lines(Path(path), [str(len(values)), *values])


def read_uuids(path: str | os.PathLike[str]) -> list[str]:
    """Read root UUIDs written by :func:`write_uuids`; empty when absent.

    Positions are kept: a track without a tree reads back as an empty string.
    """
    lines = _read_lines(Path(path))
    if not lines:
        return []
    try:
        count = int(lines[0])
    except ValueError as exc:
        raise ValueError(f"malformed uuid file {path}") from exc
    values = [line.strip() for line in lines[1 : count + 1]]
    values.extend([""] * (count - len(values)))
    return values