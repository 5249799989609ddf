"""Sound level at a receiver from every emission point of a scene.

Each source to receiver pair contributes a direct path when the line of
sight is clear, otherwise diffracted paths over and around the obstacles.
Image sources add the wall reflections. Homogeneous and favourable
propagation conditions are blended with the favourable-condition rose.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import numpy as np
from shapely.geometry import LineString, Point

from noisemap.calc import nmpb
from noisemap.errors import ConfigurationError
from noisemap.geom.index import QuadTree, SpatialIndex
from noisemap.geom.mesh import ElevationModel, MeshBuilder, Triangulation
from noisemap.geom.obstruction import FastObstructionTest, ProfilePoint, Wall
from noisemap.model.entities import (
    Building,
    Envelope,
    GroundArea,
    PathType,
    PropagationPath,
    Receiver,
    Source,
    SourcePoint,
    db_from_energy,
    source_points,
)
from noisemap.model.settings import PropagationSettings

logger = logging.getLogger(__name__)

Point3 = tuple[float, float, float]

# Reflection points are moved this far off the wall before visibility checks (m).
_WALL_OFFSET = 1e-3


@dataclass(frozen=True)
class PropagationScene:
    triangulation: Triangulation
    obstruction: FastObstructionTest
    source_index: SpatialIndex
    source_points: list[SourcePoint]
    ground_areas: list[GroundArea]
    ground_index: SpatialIndex
    settings: PropagationSettings
    alpha: np.ndarray


def build_scene(
    envelope: Envelope,
    sources: Sequence[Source],
    settings: PropagationSettings,
    buildings: Iterable[Building] = (),
    ground_areas: Iterable[GroundArea] = (),
    topography: Iterable[tuple[float, float, float]] = (),
    index_factory: Callable[[], SpatialIndex] = QuadTree,
    elevation: ElevationModel | None = None,
) -> PropagationScene:
    mesh = MeshBuilder()
    for b in buildings:
        mesh.add_geometry(b.polygon, b.height, building_id=b.building_id, alpha=b.alpha)
    for i, area in enumerate(ground_areas, 1):
        mesh.add_ground_area(area.polygon, area.g, area_id=i if area.area_id is None else area.area_id)
    for point_id, point in enumerate(topography, 1):
        mesh.add_topographic_point(point, point_id=point_id)
    triangulation = mesh.finish_polygon_feeding(envelope, elevation)

    points: list[SourcePoint] = []
    for src in sources:
        if len(src.power) != settings.band_count:
            raise ConfigurationError(
                f"source {src.source_id} has {len(src.power)} bands, settings define {settings.band_count}"
            )
        points.extend(source_points(src, settings.line_source_step))
    source_index = index_factory()
    source_index.extend((Envelope.around(p.x, p.y), i) for i, p in enumerate(points))

    ground_index = index_factory()
    ground_index.extend((area.polygon, i) for i, area in enumerate(triangulation.ground_areas))

    alpha = nmpb.alpha_iso9613_1(settings.freqs, settings.temperature_c, settings.humidity, settings.pressure_kpa)
    return PropagationScene(
        triangulation=triangulation,
        obstruction=FastObstructionTest(triangulation),
        source_index=source_index,
        source_points=points,
        ground_areas=triangulation.ground_areas,
        ground_index=ground_index,
        settings=settings,
        alpha=alpha,
    )


def _clip_profile(ground: list[tuple[float, float]], d0: float, d1: float) -> list[tuple[float, float]]:
    ds = [d for d, _ in ground]
    zs = [z for _, z in ground]
    inner = [(d, z) for d, z in ground if d0 < d < d1]
    return [(d0, float(np.interp(d0, ds, zs))), *inner, (d1, float(np.interp(d1, ds, zs)))]


def _projected_distance(plane: tuple[float, float], a: tuple[float, float], b: tuple[float, float]) -> float:
    pa = nmpb.project_on(plane, *a)
    pb = nmpb.project_on(plane, *b)
    return math.dist(pa, pb)


def _leg_lengths(points: Sequence[Point3]) -> float:
    return sum(math.dist(a, b) for a, b in zip(points[:-1], points[1:]))


def _mirror_across(wall: Wall, x: float, y: float) -> tuple[float, float]:
    dx, dy = wall.x1 - wall.x0, wall.y1 - wall.y0
    t = ((x - wall.x0) * dx + (y - wall.y0) * dy) / (dx * dx + dy * dy)
    px, py = wall.x0 + t * dx, wall.y0 + t * dy
    return 2.0 * px - x, 2.0 * py - y


def _cross_wall(wall: Wall, a: tuple[float, float], b: tuple[float, float]) -> tuple[float, float] | None:
    """Point where segment a-b crosses the wall, strictly inside both."""
    ex, ey = wall.x1 - wall.x0, wall.y1 - wall.y0
    dx, dy = b[0] - a[0], b[1] - a[1]
    denom = dx * ey - dy * ex
    if denom == 0.0:
        return None
    wx, wy = wall.x0 - a[0], wall.y0 - a[1]
    s = (wx * ey - wy * ex) / denom
    u = (wx * dy - wy * dx) / denom
    if not (0.0 < s < 1.0 and 0.0 < u < 1.0):
        return None
    return a[0] + s * dx, a[1] + s * dy


def _off_wall(wall: Wall, x: float, y: float) -> tuple[float, float]:
    nx, ny = wall.y1 - wall.y0, -(wall.x1 - wall.x0)
    norm = math.hypot(nx, ny)
    return x + _WALL_OFFSET * nx / norm, y + _WALL_OFFSET * ny / norm


def _segment_distance(wall: Wall, x: float, y: float) -> float:
    return LineString([(wall.x0, wall.y0), (wall.x1, wall.y1)]).distance(Point(x, y))


def _capped(
    found: list[tuple[PathType, list[Point3], np.ndarray]], free: np.ndarray
) -> list[tuple[PathType, list[Point3], np.ndarray]]:
    """Scale diffracted contributions so their sum stays below the free field one."""
    total = sum(contribution for _, _, contribution in found)
    scale = np.ones_like(free)
    over = total > free
    scale[over] = free[over] / total[over]
    return [(path_type, points, contribution * scale) for path_type, points, contribution in found]


class PropagationProcess:
    def __init__(self, scene: PropagationScene):
        self.scene = scene
        self.settings = scene.settings
        self.obstruction = scene.obstruction
        self.freqs = scene.settings.freqs
        self.rose = np.asarray(scene.settings.favorable_rose, dtype=np.float64)

    def compute_sound_level_at(self, receiver: Receiver, paths: list[PropagationPath] | None = None) -> np.ndarray:
        """Energy per band at ``receiver``, zero when it lies outside the scene."""
        energy = np.zeros(self.settings.band_count)
        ground = self.obstruction.elevation_at(receiver.x, receiver.y)
        if ground is None:
            logger.debug(f"Receiver {receiver.receiver_id} at ({receiver.x}, {receiver.y}) is out of the scene")
            return energy
        rcv = (receiver.x, receiver.y, ground + receiver.z)

        candidates = self._candidates(receiver)
        bounds = [self._upper_bound(pt, receiver, d) for d, pt in candidates]
        remaining = float(sum(bounds))
        total = 0.0
        for (_, pt), bound in zip(candidates, bounds):
            if self.settings.maximum_error > 0 and total > 0:
                if 10.0 * math.log10((total + remaining) / total) < self.settings.maximum_error:
                    logger.debug(f"Receiver {receiver.receiver_id}: remaining sources below the error budget")
                    break
            remaining -= bound
            if self.settings.noise_floor is not None and float(db_from_energy(bound)) < self.settings.noise_floor:
                continue
            contribution = self._point_contribution(pt, rcv, receiver, paths)
            energy += contribution
            total += float(contribution.sum())
        return energy

    def _candidates(self, receiver: Receiver) -> list[tuple[float, SourcePoint]]:
        radius = self.settings.max_src_dist
        out = []
        for i in self.scene.source_index.query(Envelope.around(receiver.x, receiver.y, radius)):
            pt = self.scene.source_points[i]
            d = math.hypot(pt.x - receiver.x, pt.y - receiver.y)
            if d <= radius:
                out.append((d, i, pt))
        out.sort(key=lambda item: (item[0], item[1]))
        return [(d, pt) for d, _, pt in out]

    def _upper_bound(self, pt: SourcePoint, receiver: Receiver, distance: float) -> float:
        """Energy the point cannot exceed at the receiver.

        Every path is at least ``distance`` long and gains at most the
        largest ground gain. Obstructed pairs never exceed their direct
        path, each reflected path adds at most one more such term.
        """
        d = max(distance, self.settings.min_rec_dist)
        paths = 1
        if self.settings.reflection_order > 0:
            n = len(self._reflecting_walls((pt.x, pt.y), (receiver.x, receiver.y)))
            paths += sum(n * (n - 1) ** (order - 1) for order in range(1, self.settings.reflection_order + 1))
        return paths * float(np.sum(pt.power)) * 10.0 ** (-(nmpb.compute_adiv(d) - nmpb.MAX_GROUND_GAIN) / 10.0)

    def _ground_g(self, points: Sequence[tuple[float, float]]) -> float:
        """Length weighted ground factor along a polyline."""
        default = self.settings.default_ground_g
        if len(points) < 2 or _leg_lengths([(x, y, 0.0) for x, y in points]) == 0.0:
            x, y = points[0]
            here = Point(x, y)
            for i in self.scene.ground_index.query(Envelope.around(x, y)):
                if self.scene.ground_areas[i].polygon.covers(here):
                    return self.scene.ground_areas[i].g
            return default
        line = LineString(points)
        weighted = 0.0
        covered = 0.0
        for i in self.scene.ground_index.query(Envelope.of(line)):
            area = self.scene.ground_areas[i]
            inside = line.intersection(area.polygon).length
            weighted += inside * area.g
            covered += inside
        return (weighted + max(line.length - covered, 0.0) * default) / line.length

    def _energy(self, power: np.ndarray, attenuation: np.ndarray) -> np.ndarray:
        return power * 10.0 ** (-attenuation / 10.0)

    def _rose_p(self, a: Sequence[float], b: Sequence[float]) -> float:
        return float(self.rose[nmpb.rose_index(b[0] - a[0], b[1] - a[1])])

    def _point_contribution(
        self, pt: SourcePoint, rcv: Point3, receiver: Receiver, paths: list[PropagationPath] | None
    ) -> np.ndarray:
        energy = np.zeros(self.settings.band_count)
        src_ground = self.obstruction.elevation_at(pt.x, pt.y)
        if src_ground is None:
            return energy
        src = (pt.x, pt.y, src_ground + pt.z)
        p = self._rose_p(src, rcv)
        profile = self.obstruction.profile(src, rcv)
        found: list[tuple[PathType, list[Point3], np.ndarray]] = []

        if self.obstruction.is_free_field(src, rcv, profile=profile):
            found.append((PathType.DIRECT, [src, rcv], self._direct(src, rcv, pt.power, p, profile)))
        else:
            if self.settings.vertical_diffraction:
                hull = self.obstruction.vertical_diffraction_path(src, rcv, profile=profile)
                if hull is not None and len(hull) > 2:
                    found.append(
                        (PathType.DIFFRACTION_VERTICAL, hull, self._vertical(src, rcv, pt.power, p, hull, profile))
                    )
            if self.settings.horizontal_diffraction:
                for left in (True, False):
                    contour = self.obstruction.diffraction_contour(src, rcv, left)
                    if contour is not None:
                        found.append(
                            (
                                PathType.DIFFRACTION_HORIZONTAL,
                                contour,
                                self._lateral(src, rcv, pt.z, receiver.z, pt.power, p, contour),
                            )
                        )
            if found:
                found = _capped(found, self._direct(src, rcv, pt.power, p, profile))
        if self.settings.reflection_order > 0:
            found.extend(self._reflections(src, rcv, pt.z, receiver.z, pt.power))

        for path_type, points, contribution in found:
            energy += contribution
            if paths is not None:
                paths.append(PropagationPath(path_type, pt.source_id, receiver.receiver_id, list(points), contribution))
        return energy

    def _ground_pair(self, g_path: float, zs: float, zr: float, dp: float) -> tuple[np.ndarray, np.ndarray]:
        dp = max(dp, self.settings.min_rec_dist)
        return (
            nmpb.ground_attenuation_homogeneous(g_path, zs, zr, dp, self.freqs),
            nmpb.ground_attenuation_favorable(g_path, zs, zr, dp, self.freqs),
        )

    def _spreading(self, d: float) -> np.ndarray:
        d = max(d, self.settings.min_rec_dist)
        return nmpb.compute_adiv(d) + nmpb.compute_aatm(self.scene.alpha, d)

    def _direct(self, src: Point3, rcv: Point3, power: np.ndarray, p: float, profile: list[ProfilePoint]) -> np.ndarray:
        length = profile[-1].distance
        plane = nmpb.mean_plane([(q.distance, q.ground) for q in profile])
        zs = nmpb.height_above(plane, 0.0, src[2])
        zr = nmpb.height_above(plane, length, rcv[2])
        dp = _projected_distance(plane, (0.0, src[2]), (length, rcv[2]))
        g_path = self._ground_g([src[:2], rcv[:2]])
        agr_h, agr_f = self._ground_pair(g_path, zs, zr, dp)
        base = self._spreading(math.dist(src, rcv))
        return nmpb.blend(p, self._energy(power, base + agr_f), self._energy(power, base + agr_h))

    def _side_ground(
        self,
        ground: list[tuple[float, float]],
        end: tuple[float, float],
        edge: tuple[float, float],
        xy: tuple[tuple[float, float], tuple[float, float]],
        source_side: bool,
    ) -> tuple[tuple[float, float], tuple[np.ndarray, np.ndarray]]:
        """Mean plane of one side of a diffraction and its ground attenuation."""
        lo, hi = sorted((end[0], edge[0]))
        plane = nmpb.mean_plane(_clip_profile(ground, lo, hi))
        z_end = nmpb.height_above(plane, *end)
        z_edge = nmpb.height_above(plane, *edge)
        dp = max(_projected_distance(plane, end, edge), self.settings.min_rec_dist)
        g_path = self._ground_g(list(xy))
        zs, zr = (z_end, z_edge) if source_side else (z_edge, z_end)
        return plane, (
            nmpb.ground_attenuation_homogeneous(g_path, zs, zr, dp, self.freqs, source_side),
            nmpb.ground_attenuation_favorable(g_path, zs, zr, dp, self.freqs, source_side),
        )

    def _vertical(
        self,
        src: Point3,
        rcv: Point3,
        power: np.ndarray,
        p: float,
        hull: list[Point3],
        profile: list[ProfilePoint],
    ) -> np.ndarray:
        length = profile[-1].distance
        pts = [(math.hypot(x - src[0], y - src[1]), z) for x, y, z in hull]
        pts[-1] = (length, pts[-1][1])
        ground = [(q.distance, q.ground) for q in profile]

        delta_h, e = nmpb.path_difference(pts)
        delta_f = nmpb.curved_path_difference(pts)
        dif_h = nmpb.diffraction_delta(delta_h, self.freqs, e)
        dif_f = nmpb.diffraction_delta(delta_f, self.freqs, e)

        plane_s, (agr_sh, agr_sf) = self._side_ground(ground, pts[0], pts[1], (src[:2], hull[1][:2]), True)
        plane_r, (agr_rh, agr_rf) = self._side_ground(ground, pts[-1], pts[-2], (hull[-2][:2], rcv[:2]), False)

        s_image = nmpb.mirror(plane_s, *pts[0])
        r_image = nmpb.mirror(plane_r, *pts[-1])
        with_s = [s_image, *pts[1:]]
        with_r = [*pts[:-1], r_image]
        dif_sh = nmpb.diffraction_delta(nmpb.path_difference(with_s)[0], self.freqs, e)
        dif_rh = nmpb.diffraction_delta(nmpb.path_difference(with_r)[0], self.freqs, e)
        dif_sf = nmpb.diffraction_delta(nmpb.curved_path_difference(with_s), self.freqs, e)
        dif_rf = nmpb.diffraction_delta(nmpb.curved_path_difference(with_r), self.freqs, e)

        a_h = dif_h + nmpb.delta_ground(agr_sh, dif_sh, dif_h) + nmpb.delta_ground(agr_rh, dif_rh, dif_h)
        a_f = dif_f + nmpb.delta_ground(agr_sf, dif_sf, dif_f) + nmpb.delta_ground(agr_rf, dif_rf, dif_f)
        base = self._spreading(math.dist(src, rcv))
        return nmpb.blend(p, self._energy(power, base + a_f), self._energy(power, base + a_h))

    def _lateral(
        self,
        src: Point3,
        rcv: Point3,
        src_height: float,
        rcv_height: float,
        power: np.ndarray,
        p: float,
        contour: list[Point3],
    ) -> np.ndarray:
        direct = math.dist(src, rcv)
        legs = [math.dist(a, b) for a, b in zip(contour[:-1], contour[1:])]
        delta = sum(legs) - direct
        e = sum(legs[1:-1])
        dif = nmpb.diffraction_delta(delta, self.freqs, e)
        unfolded = sum(math.hypot(b[0] - a[0], b[1] - a[1]) for a, b in zip(contour[:-1], contour[1:]))
        g_path = self._ground_g([c[:2] for c in contour])
        agr_h, agr_f = self._ground_pair(g_path, src_height, rcv_height, unfolded)
        base = self._spreading(direct) + dif
        return nmpb.blend(p, self._energy(power, base + agr_f), self._energy(power, base + agr_h))

    def _reflecting_walls(self, src: Point3, rcv: Point3) -> list[Wall]:
        radius = self.settings.max_ref_dist
        found: dict[int, Wall] = {}
        for x, y in (src[:2], rcv[:2]):
            for wall in self.obstruction.walls_near(Envelope.around(x, y, radius)):
                if _segment_distance(wall, x, y) <= radius:
                    found[id(wall)] = wall
        walls = list(found.values())
        walls.sort(key=lambda w: (w.building_index, w.x0, w.y0, w.x1, w.y1))
        return walls

    def _reflections(
        self, src: Point3, rcv: Point3, src_height: float, rcv_height: float, power: np.ndarray
    ) -> list[tuple[PathType, list[Point3], np.ndarray]]:
        walls = self._reflecting_walls(src, rcv)
        out = []
        for order in range(1, self.settings.reflection_order + 1):
            for sequence in itertools.product(walls, repeat=order):
                if any(a is b for a, b in zip(sequence[:-1], sequence[1:])):
                    continue
                points = self._reflection_points(src, rcv, sequence)
                if points is None:
                    continue
                out.append((PathType.REFLECTION, points, self._reflected(points, sequence, src_height, rcv_height, power)))
        return out

    def _reflection_points(self, src: Point3, rcv: Point3, sequence: Sequence[Wall]) -> list[Point3] | None:
        images = [src[:2]]
        for wall in sequence:
            if wall.side(*images[-1]) >= 0.0:
                return None
            images.append(_mirror_across(wall, *images[-1]))
        if sequence[-1].side(*rcv[:2]) >= 0.0:
            return None

        hits: list[tuple[float, float]] = []
        target = rcv[:2]
        for wall, image in zip(reversed(sequence), reversed(images[1:])):
            hit = _cross_wall(wall, image, target)
            if hit is None:
                return None
            hits.insert(0, hit)
            target = hit

        flat = [src[:2], *hits, rcv[:2]]
        legs = [math.dist(a, b) for a, b in zip(flat[:-1], flat[1:])]
        unfolded = sum(legs)
        if unfolded == 0.0:
            return None
        points: list[Point3] = [src]
        walked = 0.0
        for (x, y), leg in zip(hits, legs):
            walked += leg
            points.append((x, y, src[2] + (rcv[2] - src[2]) * walked / unfolded))
        points.append(rcv)

        for (x, y, z), wall in zip(points[1:-1], sequence):
            ground = self.obstruction.elevation_at(x, y)
            if ground is None or z >= wall.building.top or z <= ground:
                return None
        # Legs are tested from points just off the reflecting walls.
        moved: list[Point3] = [src]
        for (x, y, z), wall in zip(points[1:-1], sequence):
            ox, oy = _off_wall(wall, x, y)
            moved.append((ox, oy, z))
        moved.append(rcv)
        for a, b in zip(moved[:-1], moved[1:]):
            if not self.obstruction.is_free_field(a, b):
                return None
        return points

    def _reflected(
        self, points: list[Point3], sequence: Sequence[Wall], src_height: float, rcv_height: float, power: np.ndarray
    ) -> np.ndarray:
        unfolded = _leg_lengths(points)
        flat = [(x, y) for x, y, _ in points]
        unfolded_2d = _leg_lengths([(x, y, 0.0) for x, y in flat])
        g_path = self._ground_g(flat)
        agr_h, agr_f = self._ground_pair(g_path, src_height, rcv_height, unfolded_2d)
        base = self._spreading(unfolded)
        absorption = 1.0
        for wall in sequence:
            alpha = wall.building.alpha if wall.building.alpha is not None else self.settings.wall_alpha
            absorption *= 1.0 - alpha
        p = self._rose_p(flat[-2], flat[-1])
        return absorption * nmpb.blend(p, self._energy(power, base + agr_f), self._energy(power, base + agr_h))
