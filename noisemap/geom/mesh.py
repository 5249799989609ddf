"""Constrained Delaunay triangulation of a propagation scene.

Building footprints and ground-absorption areas are fed as polygons, terrain
as elevation samples. ``finish_polygon_feeding`` nodes every polygon edge
together with the scene envelope, triangulates the resulting planar straight
line graph and labels each triangle with the building standing on it.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np
import shapely
import triangle as tr
from scipy.interpolate import LinearNDInterpolator, NearestNDInterpolator
from scipy.spatial import QhullError
from shapely.geometry import LineString, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.validation import explain_validity

from noisemap.errors import GeometryError
from noisemap.model.entities import Building, Envelope, GroundArea

logger = logging.getLogger(__name__)

NO_NEIGHBOR = -1
NO_BUILDING = 0

# Vertex keys are rounded so that noding round-off does not create duplicates.
_KEY_DIGITS = 9


@dataclass
class Triangulation:
    envelope: Envelope
    vertices: np.ndarray
    triangles: np.ndarray
    neighbors: np.ndarray
    # 0 for open ground, otherwise index in ``buildings`` + 1.
    triangle_buildings: np.ndarray
    buildings: list[Building] = field(default_factory=list)
    ground_areas: list[GroundArea] = field(default_factory=list)
    # Terrain the vertex elevations come from.
    elevation: ElevationModel | None = None

    @property
    def triangle_count(self) -> int:
        return len(self.triangles)


class ElevationModel:
    """Linear interpolation of topographic samples, nearest sample outside their hull."""

    def __init__(self, points: np.ndarray):
        self._linear = None
        self._nearest = None
        self._edges = None
        self._edge_tree = None
        if len(points) == 0:
            return
        self._nearest = NearestNDInterpolator(points[:, :2], points[:, 2])
        if len(points) >= 3:
            try:
                self._linear = LinearNDInterpolator(points[:, :2], points[:, 2])
            except QhullError:
                logger.warning("Topographic points are degenerate, using nearest elevation")
        if self._linear is not None:
            simplices = self._linear.tri.simplices
            pairs = np.sort(np.concatenate([simplices[:, [0, 1]], simplices[:, [1, 2]], simplices[:, [2, 0]]]), axis=1)
            pairs = np.unique(pairs, axis=0)
            xy = self._linear.tri.points
            self._edges = shapely.linestrings(np.stack([xy[pairs[:, 0]], xy[pairs[:, 1]]], axis=1))
            self._edge_tree = shapely.STRtree(self._edges)

    @classmethod
    def of(cls, topography) -> ElevationModel:
        points = np.array(list(topography), dtype=np.float64).reshape(-1, 3)
        bad = np.flatnonzero(~np.isfinite(points).all(axis=1))
        if len(bad):
            i = int(bad[0])
            raise GeometryError(f"non finite coordinate {tuple(points[i])}", i + 1, "topographic point")
        return cls(points)

    @property
    def is_flat(self) -> bool:
        return self._nearest is None

    def __call__(self, xy: np.ndarray) -> np.ndarray:
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        if self._nearest is None:
            return np.zeros(len(xy))
        z = np.full(len(xy), np.nan)
        if self._linear is not None:
            z = np.asarray(self._linear(xy), dtype=np.float64).reshape(-1)
        missing = np.isnan(z)
        if np.any(missing):
            z[missing] = self._nearest(xy[missing])
        return z

    def crossings(self, x1: float, y1: float, x2: float, y2: float) -> list[float]:
        """Parameters in [0, 1] where the segment crosses an edge of the sample triangulation.

        The interpolated surface is linear between two consecutive crossings.
        """
        length2 = (x2 - x1) ** 2 + (y2 - y1) ** 2
        if self._edge_tree is None or length2 == 0.0:
            return []
        segment = LineString([(x1, y1), (x2, y2)])
        hits = self._edge_tree.query(segment, predicate="intersects")
        out = []
        for geom in shapely.intersection(self._edges[hits], segment):
            for x, y in shapely.get_coordinates(geom):
                out.append(((x - x1) * (x2 - x1) + (y - y1) * (y2 - y1)) / length2)
        return sorted(out)


def _check_polygon(polygon: BaseGeometry, feature_id: int | None, kind: str = "feature") -> Polygon:
    if not isinstance(polygon, Polygon):
        raise GeometryError(f"expected a Polygon, got {getattr(polygon, 'geom_type', type(polygon).__name__)}", feature_id, kind)
    if polygon.is_empty:
        raise GeometryError("empty polygon", feature_id, kind)
    if not polygon.is_valid:
        raise GeometryError(f"invalid polygon ({explain_validity(polygon)})", feature_id, kind)
    if polygon.area <= 0.0:
        raise GeometryError("degenerate polygon with zero area", feature_id, kind)
    return polygon


def _polygon_parts(geom: BaseGeometry) -> list[Polygon]:
    if geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom]
    if isinstance(geom, MultiPolygon):
        return list(geom.geoms)
    return [g for g in getattr(geom, "geoms", []) if isinstance(g, Polygon) and not g.is_empty]


def _shares_more_than_points(a: Polygon, b: Polygon) -> bool:
    if not a.intersects(b):
        return False
    if not a.touches(b):
        return True
    return a.boundary.intersection(b.boundary).length > 0.0


class MeshBuilder:
    def __init__(self):
        self._buildings: list[Building] = []
        self._ground: list[GroundArea] = []
        self._topo: list[tuple[float, float, float]] = []
        self._next_id = 1

    def add_geometry(
        self,
        polygon: BaseGeometry,
        height: float | None = 0.0,
        building_id: int | None = None,
        alpha: float | None = None,
    ) -> int:
        if building_id is None:
            building_id = self._next_id
        self._next_id = max(self._next_id, building_id + 1)
        polygon = _check_polygon(polygon, building_id)
        height = 0.0 if height is None else float(height)
        if not math.isfinite(height) or height < 0.0:
            raise GeometryError(f"building height must be >= 0, got {height}", building_id)
        if alpha is not None and not 0.0 <= alpha <= 1.0:
            raise GeometryError(f"wall absorption must be in [0, 1], got {alpha}", building_id)
        self._buildings.append(Building(building_id=building_id, polygon=polygon, height=height, alpha=alpha))
        return building_id

    def add_ground_area(self, polygon: BaseGeometry, g: float, area_id: int | None = None) -> int:
        """Register a ground area, ids default to the 1-based registration order."""
        area_id = len(self._ground) + 1 if area_id is None else area_id
        polygon = _check_polygon(polygon, area_id, "ground area")
        if not 0.0 <= g <= 1.0:
            raise GeometryError(f"ground coefficient G must be in [0, 1], got {g}", area_id, "ground area")
        self._ground.append(GroundArea(polygon=polygon, g=float(g)))
        return area_id

    def add_topographic_point(self, coordinate: tuple[float, float, float], point_id: int | None = None) -> int:
        point_id = len(self._topo) + 1 if point_id is None else point_id
        x, y, z = (float(c) for c in coordinate)
        if not (math.isfinite(x) and math.isfinite(y) and math.isfinite(z)):
            raise GeometryError(f"non finite coordinate {coordinate}", point_id, "topographic point")
        self._topo.append((x, y, z))
        return point_id

    def _merge_buildings(self, clip: Polygon, elevation: ElevationModel) -> list[Building]:
        obstacles = []
        for b in self._buildings:
            if not b.is_obstacle:
                logger.debug(f"Building {b.building_id} has no height, kept as terrain only")
                continue
            # The base is taken on the whole footprint, clipping must not move the roof.
            base = float(np.min(elevation(np.asarray(b.polygon.exterior.coords)[:, :2])))
            for part in _polygon_parts(b.polygon.intersection(clip)):
                obstacles.append(Building(b.building_id, part, b.height, b.alpha, base=base))
        # Overlapping or edge-sharing footprints are merged into one building
        # that keeps the lowest id and the highest roof.
        parent = list(range(len(obstacles)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        if obstacles:
            tree = shapely.STRtree([b.polygon for b in obstacles])
            for i, b in enumerate(obstacles):
                for j in sorted(int(k) for k in tree.query(b.polygon)):
                    if j > i and _shares_more_than_points(b.polygon, obstacles[j].polygon):
                        parent[find(j)] = find(i)

        groups: dict[int, list[Building]] = {}
        for i, b in enumerate(obstacles):
            groups.setdefault(find(i), []).append(b)

        merged: list[Building] = []
        for members in groups.values():
            if len(members) == 1:
                b = members[0]
                merged.append(
                    Building(b.building_id, b.polygon, b.height, b.alpha, base=b.base, merged_ids=[b.building_id])
                )
                continue
            ids = sorted({m.building_id for m in members})
            alpha = next((m.alpha for m in members if m.alpha is not None), None)
            height = max(m.height for m in members)
            base = min(m.base for m in members)
            union = unary_union([m.polygon for m in members])
            for part in _polygon_parts(union):
                merged.append(Building(ids[0], part, height, alpha, base=base, merged_ids=ids))
            logger.info(f"Merged overlapping buildings {ids} into building {ids[0]}")
        merged.sort(key=lambda b: (b.building_id, b.polygon.bounds))
        return merged

    def _resolve_ground(self, clip: Polygon) -> list[GroundArea]:
        areas: list[GroundArea] = []
        covered: BaseGeometry | None = None
        for area in self._ground:
            geom = area.polygon.intersection(clip)
            if covered is not None:
                geom = geom.difference(covered)
            parts = _polygon_parts(geom)
            if not parts:
                continue
            geom = parts[0] if len(parts) == 1 else MultiPolygon(parts)
            areas.append(GroundArea(polygon=geom, g=area.g))
            covered = geom if covered is None else covered.union(geom)
        return areas

    def finish_polygon_feeding(self, envelope: Envelope, elevation: ElevationModel | None = None) -> Triangulation:
        """Triangulate the fed geometry inside ``envelope``.

        Elevations are read from ``elevation``, by default a model of every fed
        topographic point. Cells of a larger scene pass the model of the whole
        scene so that neighbouring cells see the same terrain.
        """
        if envelope.width <= 0 or envelope.height <= 0:
            raise GeometryError(f"degenerate scene envelope {envelope}")
        if elevation is None:
            elevation = ElevationModel.of(self._topo)
        clip = envelope.as_polygon()
        buildings = self._merge_buildings(clip, elevation)
        ground = self._resolve_ground(clip)

        lines: list[LineString] = [clip.exterior]
        for b in buildings:
            lines.append(b.polygon.exterior)
            lines.extend(b.polygon.interiors)
        for area in ground:
            for part in _polygon_parts(area.polygon):
                lines.append(part.exterior)
                lines.extend(part.interiors)
        noded = unary_union([LineString(line.coords) for line in lines])

        keys: dict[tuple[float, float], int] = {}
        vertices: list[tuple[float, float]] = []

        def vertex_index(x: float, y: float) -> int:
            key = (round(x, _KEY_DIGITS), round(y, _KEY_DIGITS))
            idx = keys.get(key)
            if idx is None:
                idx = len(vertices)
                keys[key] = idx
                vertices.append((x, y))
            return idx

        segments: set[tuple[int, int]] = set()
        for part in shapely.get_parts(noded):
            coords = list(part.coords)
            for (x0, y0), (x1, y1) in zip(coords[:-1], coords[1:]):
                a = vertex_index(x0, y0)
                b = vertex_index(x1, y1)
                if a != b:
                    segments.add((min(a, b), max(a, b)))

        for x, y, _ in self._topo:
            if envelope.contains_point(x, y):
                vertex_index(x, y)

        cdt = tr.triangulate(
            {
                "vertices": np.array(vertices, dtype=np.float64),
                "segments": np.array(sorted(segments), dtype=np.int32),
            },
            "pn",
        )
        verts_2d = cdt["vertices"]
        triangles = np.asarray(cdt["triangles"], dtype=np.int64)
        neighbors = np.asarray(cdt["neighbors"], dtype=np.int64)

        verts_3d = np.column_stack([verts_2d, elevation(verts_2d)])

        triangle_buildings = np.full(len(triangles), NO_BUILDING, dtype=np.int64)
        if buildings and len(triangles):
            centroids = verts_2d[triangles].mean(axis=1)
            tree = shapely.STRtree([b.polygon for b in buildings])
            hits = tree.query(shapely.points(centroids[:, 0], centroids[:, 1]), predicate="within")
            triangle_buildings[hits[0]] = hits[1] + 1

        logger.info(
            f"Scene CDT: {len(verts_3d)} vertices, {len(triangles)} triangles, "
            f"{len(buildings)} buildings, {len(ground)} ground areas"
        )
        return Triangulation(
            envelope=envelope,
            vertices=verts_3d,
            triangles=triangles,
            neighbors=neighbors,
            triangle_buildings=triangle_buildings,
            buildings=buildings,
            ground_areas=ground,
            elevation=elevation,
        )
