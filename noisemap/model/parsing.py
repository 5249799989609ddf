from __future__ import annotations

import math
import re
from typing import Iterable, Sequence

import numpy as np
from shapely.geometry import LineString, Point, Polygon
from shapely.geometry.base import BaseGeometry

from .entities import FREQ_BANDS, Building, GroundArea, Receiver, Source, energy_from_db


COORD_SPLIT_RE = re.compile(r"\s*[;,]\s*|\s+")


def parse_coord_string(coord_text: str) -> tuple[float, float, float]:
    if not coord_text or not coord_text.strip():
        raise ValueError("Empty coordinate. Expected 'X, Y, Z'.")
    parts = [p for p in COORD_SPLIT_RE.split(coord_text.strip()) if p != ""]
    if len(parts) != 3:
        raise ValueError(f"Invalid coordinate '{coord_text}'. Expected: X, Y, Z.")
    try:
        x, y, z = (float(p) for p in parts)
    except ValueError as exc:
        raise ValueError(f"Non numeric coordinate '{coord_text}'.") from exc
    return x, y, z


def source_from_row(
    row_index: int,
    geometry: BaseGeometry,
    levels_db: Sequence[float | str | None],
    band_count: int = len(FREQ_BANDS),
) -> tuple[Source | None, list[str]]:
    errors: list[str] = []
    rid = row_index + 1
    if not isinstance(geometry, (Point, LineString)) or geometry.is_empty:
        errors.append(f"Row {rid}: source geometry must be a non empty Point or LineString.")
        return None, errors
    if len(levels_db) != band_count:
        errors.append(f"Row {rid}: expected {band_count} band levels, got {len(levels_db)}.")
        return None, errors

    power = np.zeros(band_count, dtype=np.float64)
    for i, val in enumerate(levels_db):
        if val is None or (isinstance(val, str) and not val.strip()):
            # Missing band: no emission.
            continue
        try:
            level = float(val)
        except ValueError:
            errors.append(f"Row {rid}: band {i} level is not numeric.")
            continue
        if not math.isfinite(level):
            errors.append(f"Row {rid}: band {i} level is not finite.")
            continue
        power[i] = float(energy_from_db(level))

    if not errors and not np.any(power > 0):
        errors.append(f"Row {rid}: at least one band level is required.")

    src = Source(source_id=rid, geometry=geometry, power=power)
    return (None if errors else src), errors


def rows_to_sources(
    rows: Iterable[tuple[BaseGeometry, Sequence[float | str | None]]],
    band_count: int = len(FREQ_BANDS),
) -> tuple[list[Source], list[str]]:
    sources: list[Source] = []
    errors: list[str] = []
    for idx, (geometry, levels) in enumerate(rows):
        src, err = source_from_row(idx, geometry, levels, band_count)
        if err:
            errors.extend(err)
        if src:
            sources.append(src)
    return sources, errors


def building_from_row(row_index: int, polygon: BaseGeometry, height: float | None, alpha: float | None = None) -> Building:
    rid = row_index + 1
    if not isinstance(polygon, Polygon):
        raise ValueError(f"Row {rid}: building geometry must be a Polygon.")
    height = 0.0 if height is None else float(height)
    if height < 0 or not math.isfinite(height):
        raise ValueError(f"Row {rid}: building height must be a finite value >= 0.")
    if alpha is not None and not 0.0 <= alpha <= 1.0:
        raise ValueError(f"Row {rid}: wall absorption must be in [0, 1].")
    return Building(building_id=rid, polygon=polygon, height=height, alpha=alpha)


def ground_from_row(row_index: int, polygon: BaseGeometry, g: float) -> GroundArea:
    rid = row_index + 1
    if not isinstance(polygon, Polygon):
        raise ValueError(f"Row {rid}: ground geometry must be a Polygon.")
    if not 0.0 <= float(g) <= 1.0:
        raise ValueError(f"Row {rid}: ground coefficient G must be in [0, 1], got {g}.")
    return GroundArea(polygon=polygon, g=float(g), area_id=rid)


def receivers_from_points(points: Iterable[tuple[int, tuple[float, float, float]]]) -> list[Receiver]:
    receivers = []
    seen: set[int] = set()
    for receiver_id, (x, y, z) in points:
        if receiver_id in seen:
            raise ValueError(f"Duplicated receiver identifier {receiver_id}.")
        seen.add(receiver_id)
        receivers.append(Receiver(int(receiver_id), float(x), float(y), float(z)))
    return receivers
