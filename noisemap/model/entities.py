from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from shapely.geometry import LineString, Point, Polygon, box
from shapely.geometry.base import BaseGeometry


FREQ_BANDS = [100, 125, 160, 200, 250, 315, 400, 500, 630, 800, 1000, 1250, 1600, 2000, 2500, 3150, 4000, 5000]

# Levels are expressed relative to this energy everywhere in a scene.
DB_REFERENCE = 1.0


@dataclass(frozen=True)
class Envelope:
    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @classmethod
    def of(cls, geom: BaseGeometry) -> Envelope:
        xmin, ymin, xmax, ymax = geom.bounds
        return cls(xmin, ymin, xmax, ymax)

    @classmethod
    def around(cls, x: float, y: float, radius: float = 0.0) -> Envelope:
        return cls(x - radius, y - radius, x + radius, y + radius)

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    def expanded_by(self, distance: float) -> Envelope:
        return Envelope(self.xmin - distance, self.ymin - distance, self.xmax + distance, self.ymax + distance)

    def union(self, other: Envelope) -> Envelope:
        return Envelope(
            min(self.xmin, other.xmin),
            min(self.ymin, other.ymin),
            max(self.xmax, other.xmax),
            max(self.ymax, other.ymax),
        )

    def intersects(self, other: Envelope) -> bool:
        return not (
            other.xmin > self.xmax or other.xmax < self.xmin or other.ymin > self.ymax or other.ymax < self.ymin
        )

    def contains(self, other: Envelope) -> bool:
        return (
            self.xmin <= other.xmin and other.xmax <= self.xmax and self.ymin <= other.ymin and other.ymax <= self.ymax
        )

    def contains_point(self, x: float, y: float) -> bool:
        return self.xmin <= x <= self.xmax and self.ymin <= y <= self.ymax

    def as_polygon(self) -> Polygon:
        return box(self.xmin, self.ymin, self.xmax, self.ymax)


@dataclass
class Building:
    building_id: int
    polygon: Polygon
    height: float = 0.0
    alpha: float | None = None
    base: float = 0.0
    merged_ids: list[int] = field(default_factory=list)

    @property
    def is_obstacle(self) -> bool:
        return self.height > 0.0

    @property
    def top(self) -> float:
        return self.base + self.height


@dataclass
class GroundArea:
    polygon: Polygon
    g: float
    area_id: int | None = None


@dataclass
class Source:
    source_id: int
    geometry: BaseGeometry
    power: np.ndarray


@dataclass(frozen=True)
class SourcePoint:
    source_id: int
    x: float
    y: float
    z: float
    power: np.ndarray = field(compare=False)


@dataclass(frozen=True)
class Receiver:
    receiver_id: int
    x: float
    y: float
    z: float


class PathType(str, Enum):
    DIRECT = "direct"
    DIFFRACTION_VERTICAL = "diffraction_vertical"
    DIFFRACTION_HORIZONTAL = "diffraction_horizontal"
    REFLECTION = "reflection"


@dataclass
class PropagationPath:
    path_type: PathType
    source_id: int
    receiver_id: int
    points: list[tuple[float, float, float]]
    energy: np.ndarray


def source_points(source: Source, step: float) -> list[SourcePoint]:
    """Discretize a source geometry into emission points sharing its power."""
    geom = source.geometry
    if isinstance(geom, Point):
        z = geom.z if geom.has_z else 0.0
        return [SourcePoint(source.source_id, geom.x, geom.y, z, source.power)]
    if not isinstance(geom, LineString):
        raise TypeError(f"Unsupported source geometry {geom.geom_type}")
    samples = line_discretize(geom, step)
    share = source.power / len(samples)
    out = []
    for pt in samples:
        z = pt.z if pt.has_z else 0.0
        out.append(SourcePoint(source.source_id, pt.x, pt.y, z, share))
    return out


def line_discretize(line: LineString, step: float) -> list[Point]:
    if line.length == 0:
        return [Point(line.coords[0])]
    n = max(1, int(np.ceil(line.length / step)))
    # Midpoints of n equal pieces, each standing for length / n of the line.
    return [line.interpolate((i + 0.5) * line.length / n) for i in range(n)]


def db_from_energy(energy: np.ndarray | float) -> np.ndarray:
    energy = np.asarray(energy, dtype=np.float64)
    out = np.full_like(energy, -np.inf, dtype=np.float64)
    mask = energy > 0
    out[mask] = 10.0 * np.log10(energy[mask] / DB_REFERENCE)
    return out


def energy_from_db(db: np.ndarray | float) -> np.ndarray:
    return DB_REFERENCE * np.power(10.0, np.asarray(db, dtype=np.float64) / 10.0)


def energy_sum(levels_db: list[float]) -> float:
    if not levels_db:
        return float("-inf")
    lmax = max(levels_db)
    if lmax == float("-inf"):
        return lmax
    return lmax + 10.0 * math.log10(sum(10 ** ((l - lmax) / 10.0) for l in levels_db))
