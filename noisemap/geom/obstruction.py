"""Visibility queries over a scene triangulation.

Coordinates passed to the queries are absolute: ``z`` is an altitude, not a
height above ground. Anything outside the triangulated envelope is answered
with an out-of-domain value instead of an exception.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np
from shapely.geometry import LineString, MultiPoint, Polygon
from shapely.geometry.polygon import orient

from noisemap.geom.index import QuadTree
from noisemap.geom.mesh import NO_BUILDING, Triangulation
from noisemap.model.entities import Building, Envelope

logger = logging.getLogger(__name__)

_EPS = 1e-9
# Step used to leave a vertex the walk is passing through (m).
_NUDGE = 1e-6
_CONTOUR_ITERATIONS = 16

Point3 = tuple[float, float, float]


@dataclass(frozen=True)
class ObstacleWall:
    building_index: int
    building_id: int
    x: float
    y: float
    distance: float
    top: float


@dataclass
class LineOfSight:
    visible: bool
    in_domain: bool = True
    walls: list[ObstacleWall] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.visible


@dataclass(frozen=True)
class ProfilePoint:
    distance: float
    x: float
    y: float
    ground: float
    z: float
    building: int = NO_BUILDING


@dataclass(frozen=True)
class Wall:
    """Building wall with free space on its right-hand side."""

    building_index: int
    building: Building
    x0: float
    y0: float
    x1: float
    y1: float

    def side(self, x: float, y: float) -> float:
        """Negative on the free-space side."""
        return (self.x1 - self.x0) * (y - self.y0) - (self.y1 - self.y0) * (x - self.x0)


def _cross(ax: float, ay: float, bx: float, by: float) -> float:
    return ax * by - ay * bx


def _line_param(x1, y1, dx, dy, ax, ay, bx, by) -> float | None:
    """Parameter along p1 + s*d where the line meets segment ab, or None."""
    ex, ey = bx - ax, by - ay
    denom = _cross(dx, dy, ex, ey)
    if abs(denom) < _EPS * (abs(dx) + abs(dy)) * (abs(ex) + abs(ey)):
        return None
    wx, wy = ax - x1, ay - y1
    u = _cross(wx, wy, dx, dy) / denom
    if u < -_EPS or u > 1.0 + _EPS:
        return None
    return _cross(wx, wy, ex, ey) / denom


def upper_hull(points: list[tuple[float, float]]) -> list[tuple[float, float]]:
    """Upper convex hull of (distance, z) points, from the first to the last distance."""
    hull: list[tuple[float, float]] = []
    for p in sorted(points):
        while len(hull) >= 2:
            (ox, oz), (ax, az) = hull[-2], hull[-1]
            if (ax - ox) * (p[1] - oz) - (az - oz) * (p[0] - ox) >= 0.0:
                hull.pop()
            else:
                break
        hull.append(p)
    return hull


class FastObstructionTest:
    def __init__(self, triangulation: Triangulation):
        self.envelope = triangulation.envelope
        self.vertices = triangulation.vertices
        self.buildings = triangulation.buildings
        self.labels = triangulation.triangle_buildings
        elevation = triangulation.elevation
        # Ground is read from the terrain model itself when there is one, the
        # mesh only interpolates it between its own vertices.
        self.terrain = elevation if elevation is not None and not elevation.is_flat else None
        triangles = triangulation.triangles.copy()
        neighbors = triangulation.neighbors.copy()
        xy = self.vertices[:, :2]
        if len(triangles):
            a, b, c = xy[triangles[:, 0]], xy[triangles[:, 1]], xy[triangles[:, 2]]
            area = (b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])
            cw = area < 0
            # Walks expect counter-clockwise triangles.
            triangles[cw] = triangles[cw][:, [0, 2, 1]]
            neighbors[cw] = neighbors[cw][:, [0, 2, 1]]
        self.triangles = triangles
        self.neighbors = neighbors

        self._triangle_index = QuadTree(self.envelope)
        if len(triangles):
            corners = xy[triangles]
            lo = corners.min(axis=1)
            hi = corners.max(axis=1)
            self._triangle_index.extend(
                (Envelope(lo[i, 0], lo[i, 1], hi[i, 0], hi[i, 1]), i) for i in range(len(triangles))
            )

        self._building_index = QuadTree(self.envelope)
        self._building_index.extend((b.polygon, i) for i, b in enumerate(self.buildings))

        self.walls: list[Wall] = []
        for i, b in enumerate(self.buildings):
            shape = orient(b.polygon, sign=1.0)
            for ring in [shape.exterior, *shape.interiors]:
                coords = list(ring.coords)
                for (x0, y0), (x1, y1) in zip(coords[:-1], coords[1:]):
                    if (x0, y0) != (x1, y1):
                        self.walls.append(Wall(i, b, x0, y0, x1, y1))
        self._wall_index = QuadTree(self.envelope)
        self._wall_index.extend(
            (Envelope(min(w.x0, w.x1), min(w.y0, w.y1), max(w.x0, w.x1), max(w.y0, w.y1)), i)
            for i, w in enumerate(self.walls)
        )

    # Point queries

    def _corners(self, tri: int):
        i, j, k = self.triangles[tri]
        return self.vertices[i], self.vertices[j], self.vertices[k]

    def _contains(self, tri: int, x: float, y: float) -> bool:
        a, b, c = self._corners(tri)
        for p, q in ((b, c), (c, a), (a, b)):
            if _cross(q[0] - p[0], q[1] - p[1], x - p[0], y - p[1]) < -_EPS:
                return False
        return True

    def locate(self, x: float, y: float, hint: int = -1) -> int:
        if not self.envelope.contains_point(x, y) or not len(self.triangles):
            return -1
        if 0 <= hint < len(self.triangles):
            tri = hint
            for _ in range(len(self.triangles)):
                corners = self._corners(tri)
                step = -1
                for i in range(3):
                    p, q = corners[(i + 1) % 3], corners[(i + 2) % 3]
                    if _cross(q[0] - p[0], q[1] - p[1], x - p[0], y - p[1]) < -_EPS:
                        step = int(self.neighbors[tri, i])
                        break
                if step == -1:
                    if self._contains(tri, x, y):
                        return tri
                    break
                tri = step
        for tri in self._triangle_index.query(Envelope.around(x, y)):
            if self._contains(tri, x, y):
                return tri
        return -1

    def _ground_in(self, tri: int, x: float, y: float) -> float:
        a, b, c = self._corners(tri)
        det = (b[1] - c[1]) * (a[0] - c[0]) + (c[0] - b[0]) * (a[1] - c[1])
        if det == 0.0:
            return float(max(a[2], b[2], c[2]))
        la = ((b[1] - c[1]) * (x - c[0]) + (c[0] - b[0]) * (y - c[1])) / det
        lb = ((c[1] - a[1]) * (x - c[0]) + (a[0] - c[0]) * (y - c[1])) / det
        return float(la * a[2] + lb * b[2] + (1.0 - la - lb) * c[2])

    def elevation_at(self, x: float, y: float, hint: int = -1) -> float | None:
        tri = self.locate(x, y, hint)
        if tri < 0:
            return None
        if self.terrain is not None:
            return float(self.terrain([(x, y)])[0])
        return self._ground_in(tri, x, y)

    def building_at(self, x: float, y: float) -> Building | None:
        tri = self.locate(x, y)
        if tri < 0 or self.labels[tri] == NO_BUILDING:
            return None
        return self.buildings[self.labels[tri] - 1]

    # Path queries

    def _walk(self, x1: float, y1: float, x2: float, y2: float) -> list[tuple[int, float, float]]:
        """Triangles crossed by the segment with their parameter intervals."""
        tri = self.locate(x1, y1)
        if tri < 0:
            return []
        dx, dy = x2 - x1, y2 - y1
        length = math.hypot(dx, dy)
        if length == 0.0:
            return [(tri, 0.0, 1.0)]
        nudge = _NUDGE / length
        intervals = []
        s = 0.0
        for _ in range(4 * len(self.triangles) + 16):
            corners = self._corners(tri)
            exit_s, exit_edge = None, -1
            for i in range(3):
                p, q = corners[(i + 1) % 3], corners[(i + 2) % 3]
                t = _line_param(x1, y1, dx, dy, p[0], p[1], q[0], q[1])
                if t is not None and (exit_s is None or t > exit_s):
                    exit_s, exit_edge = t, i
            if exit_s is None or exit_s >= 1.0:
                intervals.append((tri, s, 1.0))
                return intervals
            if exit_s <= s + _EPS:
                # Passing through a vertex: resume in the triangle just ahead.
                ahead = min(1.0, s + nudge)
                nxt = self.locate(x1 + ahead * dx, y1 + ahead * dy, hint=tri)
                if nxt < 0:
                    intervals.append((tri, s, 1.0))
                    return intervals
                intervals.append((tri, s, ahead))
                tri, s = nxt, ahead
                continue
            intervals.append((tri, s, exit_s))
            nb = int(self.neighbors[tri, exit_edge])
            if nb < 0:
                return intervals
            tri, s = nb, exit_s
        raise RuntimeError(f"triangle walk from ({x1}, {y1}) to ({x2}, {y2}) did not terminate")

    def profile(self, p1: Point3, p2: Point3) -> list[ProfilePoint]:
        """Ground and roof surface along p1 -> p2, empty when out of domain."""
        x1, y1 = p1[0], p1[1]
        x2, y2 = p2[0], p2[1]
        if not (self.envelope.contains_point(x1, y1) and self.envelope.contains_point(x2, y2)):
            return []
        length = math.hypot(x2 - x1, y2 - y1)
        cuts = self.terrain.crossings(x1, y1, x2, y2) if self.terrain is not None else []
        steps: list[tuple[int, float]] = []
        for tri, s0, s1 in self._walk(x1, y1, x2, y2):
            steps.append((tri, s0))
            steps.extend((tri, c) for c in cuts if s0 < c < s1)
            steps.append((tri, s1))
        xs = [x1 + s * (x2 - x1) for _, s in steps]
        ys = [y1 + s * (y2 - y1) for _, s in steps]
        if self.terrain is not None:
            grounds = [float(z) for z in self.terrain(np.column_stack([xs, ys]))] if steps else []
        else:
            grounds = [self._ground_in(tri, x, y) for (tri, _), x, y in zip(steps, xs, ys)]
        out: list[ProfilePoint] = []
        for (tri, s), x, y, ground in zip(steps, xs, ys, grounds):
            label = int(self.labels[tri])
            z = max(ground, self.buildings[label - 1].top) if label else ground
            pt = ProfilePoint(s * length, x, y, ground, z, label)
            if not out or out[-1] != pt:
                out.append(pt)
        return out

    def is_free_field(
        self, p1: Point3, p2: Point3, collect: bool = False, profile: list[ProfilePoint] | None = None
    ) -> LineOfSight:
        points = self.profile(p1, p2) if profile is None else profile
        if not points:
            return LineOfSight(visible=False, in_domain=False)
        length = points[-1].distance
        visible = True
        walls: list[ObstacleWall] = []
        seen: set[int] = set()
        for pt in points:
            s = pt.distance / length if length > 0 else 0.0
            ray = p1[2] + s * (p2[2] - p1[2])
            if pt.z > ray + _EPS:
                visible = False
                if not collect:
                    break
                if pt.building and pt.building not in seen:
                    seen.add(pt.building)
                    b = self.buildings[pt.building - 1]
                    walls.append(ObstacleWall(pt.building - 1, b.building_id, pt.x, pt.y, pt.distance, b.top))
        return LineOfSight(visible=visible, walls=walls)

    def vertical_diffraction_path(
        self, p1: Point3, p2: Point3, profile: list[ProfilePoint] | None = None
    ) -> list[Point3] | None:
        """Taut path over the obstacles, None when out of domain."""
        points = self.profile(p1, p2) if profile is None else profile
        if not points:
            return None
        length = points[-1].distance
        inner = [(pt.distance, pt.z) for pt in points if 0.0 < pt.distance < length]
        hull = upper_hull([(0.0, p1[2]), *inner, (length, p2[2])])
        out: list[Point3] = []
        for d, z in hull:
            s = d / length if length > 0 else 0.0
            out.append((p1[0] + s * (p2[0] - p1[0]), p1[1] + s * (p2[1] - p1[1]), z))
        return out

    def _blocking_buildings(self, line: LineString) -> set[int]:
        found = set()
        for i in self._building_index.query(Envelope.of(line)):
            poly = self.buildings[i].polygon
            if line.intersects(poly) and not line.touches(poly):
                found.add(i)
        return found

    def diffraction_contour(self, p1: Point3, p2: Point3, left: bool) -> list[Point3] | None:
        """Horizontal detour around the blocking footprints on one side."""
        for p in (p1, p2):
            if not self.envelope.contains_point(p[0], p[1]):
                return None
        start, end = (p1[0], p1[1]), (p2[0], p2[1])
        if start == end:
            return None
        blocking = self._blocking_buildings(LineString([start, end]))
        if not blocking:
            return None
        for _ in range(_CONTOUR_ITERATIONS):
            chain = self._hull_chain(start, end, blocking, left)
            if chain is None:
                return None
            met: set[int] = set()
            for a, b in zip(chain[:-1], chain[1:]):
                met |= self._blocking_buildings(LineString([a, b]))
            met -= blocking
            if not met:
                break
            blocking |= met
        else:
            logger.debug(f"No lateral contour found after {_CONTOUR_ITERATIONS} iterations")
            return None
        if any(not self.envelope.contains_point(x, y) for x, y in chain):
            return None
        total = sum(math.dist(a, b) for a, b in zip(chain[:-1], chain[1:]))
        out: list[Point3] = []
        walked = 0.0
        for i, (x, y) in enumerate(chain):
            if i:
                walked += math.dist(chain[i - 1], (x, y))
            s = walked / total if total > 0 else 0.0
            out.append((x, y, p1[2] + s * (p2[2] - p1[2])))
        return out

    def _hull_chain(self, start, end, blocking: set[int], left: bool) -> list[tuple[float, float]] | None:
        coords = [start, end]
        for i in sorted(blocking):
            coords.extend(self.buildings[i].polygon.exterior.coords[:-1])
        hull = MultiPoint(coords).convex_hull
        if not isinstance(hull, Polygon):
            return None
        ring = list(orient(hull, sign=1.0).exterior.coords)[:-1]
        try:
            i_start = ring.index(start)
            i_end = ring.index(end)
        except ValueError:
            # An end point lies inside the hull of the obstacles.
            return None
        # Counter-clockwise from start to end passes on the right of start -> end.
        if left:
            ring = ring[::-1]
            i_start, i_end = len(ring) - 1 - i_start, len(ring) - 1 - i_end
        chain = [ring[i_start]]
        i = i_start
        while i != i_end:
            i = (i + 1) % len(ring)
            chain.append(ring[i])
        return chain

    def walls_near(self, envelope: Envelope) -> list[Wall]:
        return [self.walls[i] for i in self._wall_index.query(envelope)]
