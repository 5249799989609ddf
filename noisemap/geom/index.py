"""Spatial indexes answering "which items may intersect this envelope".

The propagation engine only depends on :class:`SpatialIndex`; the quad-tree is
the default implementation and the STRtree wrapper can replace it anywhere.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Iterable

from shapely.geometry import LineString, Point
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from noisemap.model.entities import Envelope


def envelope_of(geometry: BaseGeometry | Envelope) -> Envelope:
    if isinstance(geometry, Envelope):
        return geometry
    return Envelope.of(geometry)


def _envelope_geometry(env: Envelope) -> BaseGeometry:
    # Zero-area boxes are not valid polygons, so degenerate envelopes are
    # represented by points or segments.
    if env.width == 0 and env.height == 0:
        return Point(env.xmin, env.ymin)
    if env.width == 0 or env.height == 0:
        return LineString([(env.xmin, env.ymin), (env.xmax, env.ymax)])
    return env.as_polygon()


class SpatialIndex(ABC):
    @abstractmethod
    def append(self, geometry: BaseGeometry | Envelope, item_id: int) -> None:
        ...

    def extend(self, items: Iterable[tuple[BaseGeometry | Envelope, int]]) -> None:
        for geometry, item_id in items:
            self.append(geometry, item_id)

    @abstractmethod
    def query(self, envelope: Envelope) -> list[int]:
        """Ids whose bounding envelope intersects ``envelope``, sorted."""

    @abstractmethod
    def __len__(self) -> int:
        ...


class _QuadNode:
    __slots__ = ("envelope", "depth", "items", "children")

    def __init__(self, envelope: Envelope, depth: int):
        self.envelope = envelope
        self.depth = depth
        self.items: list[tuple[Envelope, int]] = []
        self.children: list[_QuadNode] | None = None

    def _child_containing(self, env: Envelope) -> _QuadNode | None:
        for child in self.children:
            if child.envelope.contains(env):
                return child
        return None

    def insert(self, env: Envelope, item_id: int, max_items: int, max_depth: int) -> None:
        if self.children is not None:
            child = self._child_containing(env)
            if child is not None:
                child.insert(env, item_id, max_items, max_depth)
                return
        self.items.append((env, item_id))
        if self.children is None and len(self.items) > max_items and self.depth < max_depth:
            self._split(max_items, max_depth)

    def _split(self, max_items: int, max_depth: int) -> None:
        e = self.envelope
        cx = (e.xmin + e.xmax) / 2.0
        cy = (e.ymin + e.ymax) / 2.0
        self.children = [
            _QuadNode(Envelope(e.xmin, e.ymin, cx, cy), self.depth + 1),
            _QuadNode(Envelope(cx, e.ymin, e.xmax, cy), self.depth + 1),
            _QuadNode(Envelope(e.xmin, cy, cx, e.ymax), self.depth + 1),
            _QuadNode(Envelope(cx, cy, e.xmax, e.ymax), self.depth + 1),
        ]
        items, self.items = self.items, []
        for env, item_id in items:
            child = self._child_containing(env)
            if child is None:
                self.items.append((env, item_id))
            else:
                child.insert(env, item_id, max_items, max_depth)

    def query(self, env: Envelope, out: list[int]) -> None:
        for item_env, item_id in self.items:
            if item_env.intersects(env):
                out.append(item_id)
        if self.children is not None:
            for child in self.children:
                if child.envelope.intersects(env):
                    child.query(env, out)


class QuadTree(SpatialIndex):
    """Region quad-tree over item envelopes.

    Items straddling a split line stay in the smallest node that fully
    contains them. Items outside the root envelope are kept in the root.
    Without an explicit envelope, appended items are buffered and the tree is
    bulk-loaded over their union at the first query.
    """

    def __init__(self, envelope: Envelope | None = None, max_items: int = 16, max_depth: int = 14):
        self.max_items = max_items
        self.max_depth = max_depth
        self._root = _QuadNode(envelope, 0) if envelope is not None else None
        self._pending: list[tuple[Envelope, int]] = []
        self._size = 0
        self._lock = threading.Lock()

    def append(self, geometry: BaseGeometry | Envelope, item_id: int) -> None:
        env = envelope_of(geometry)
        with self._lock:
            self._size += 1
            if self._root is None:
                self._pending.append((env, item_id))
            else:
                self._root.insert(env, item_id, self.max_items, self.max_depth)

    def _flush(self) -> None:
        with self._lock:
            if not self._pending:
                return
            pending, self._pending = self._pending, []
            if self._root is None:
                extent = pending[0][0]
                for env, _ in pending[1:]:
                    extent = extent.union(env)
                self._root = _QuadNode(extent, 0)
            for env, item_id in pending:
                self._root.insert(env, item_id, self.max_items, self.max_depth)

    def query(self, envelope: Envelope) -> list[int]:
        if self._pending:
            self._flush()
        if self._root is None:
            return []
        out: list[int] = []
        self._root.query(envelope, out)
        return sorted(set(out))

    def __len__(self) -> int:
        return self._size


class StrTreeIndex(SpatialIndex):
    """Sort-tile-recursive tree from shapely, rebuilt lazily after appends."""

    def __init__(self):
        self._envelopes: list[Envelope] = []
        self._ids: list[int] = []
        self._tree: STRtree | None = None
        self._lock = threading.Lock()

    def append(self, geometry: BaseGeometry | Envelope, item_id: int) -> None:
        with self._lock:
            self._envelopes.append(envelope_of(geometry))
            self._ids.append(item_id)
            self._tree = None

    def _build(self) -> STRtree:
        with self._lock:
            if self._tree is None:
                self._tree = STRtree([_envelope_geometry(env) for env in self._envelopes])
            return self._tree

    def query(self, envelope: Envelope) -> list[int]:
        if not self._ids:
            return []
        tree = self._tree or self._build()
        hits = tree.query(_envelope_geometry(envelope))
        return sorted({self._ids[int(i)] for i in hits})

    def __len__(self) -> int:
        return len(self._ids)
