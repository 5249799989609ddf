"""Grid partition of a large scene into independently computed cells.

Every cell is triangulated over its envelope expanded by the maximum source
distance, so a receiver sees the same surroundings whatever the grid size.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

import numpy as np

from noisemap.calc.profiler import ProfilerTask
from noisemap.calc.propagation import PropagationProcess, build_scene
from noisemap.errors import ConfigurationError
from noisemap.geom.index import QuadTree, SpatialIndex
from noisemap.geom.mesh import ElevationModel
from noisemap.model.entities import (
    Building,
    Envelope,
    GroundArea,
    PropagationPath,
    Receiver,
    Source,
    db_from_energy,
)
from noisemap.model.settings import PropagationSettings

logger = logging.getLogger(__name__)


@dataclass
class SceneData:
    sources: list[Source]
    receivers: list[Receiver]
    buildings: list[Building] = field(default_factory=list)
    ground_areas: list[GroundArea] = field(default_factory=list)
    topography: list[tuple[float, float, float]] = field(default_factory=list)

    def envelope(self) -> Envelope:
        envelopes = [Envelope.of(s.geometry) for s in self.sources]
        envelopes += [Envelope.around(r.x, r.y) for r in self.receivers]
        envelopes += [Envelope.of(b.polygon) for b in self.buildings]
        envelopes += [Envelope.of(g.polygon) for g in self.ground_areas]
        envelopes += [Envelope.around(x, y) for x, y, _ in self.topography]
        if not envelopes:
            raise ConfigurationError("Empty scene: no source, receiver or geometry.")
        extent = envelopes[0]
        for env in envelopes[1:]:
            extent = extent.union(env)
        return extent


@dataclass(frozen=True, order=True)
class CellIndex:
    i: int
    j: int


@dataclass
class CellResult:
    cell: CellIndex
    levels: dict[int, np.ndarray] = field(default_factory=dict)
    paths: list[PropagationPath] = field(default_factory=list)


@dataclass
class RunResult:
    levels: dict[int, np.ndarray] = field(default_factory=dict)
    paths: list[PropagationPath] = field(default_factory=list)
    failed_cells: dict[CellIndex, str] = field(default_factory=dict)
    cancelled: bool = False
    elapsed: float = 0.0

    def levels_db(self) -> dict[int, np.ndarray]:
        return {rid: db_from_energy(energy) for rid, energy in self.levels.items()}


class ProgressCounter:
    def __init__(self, total_receivers: int, total_cells: int, callback: Optional[Callable[[int], None]] = None):
        self.total_receivers = total_receivers
        self.total_cells = total_cells
        self.receivers_done = 0
        self.cells_done = 0
        self._callback = callback
        self._last = -1
        self._lock = threading.Lock()

    @property
    def percent(self) -> int:
        if self.total_receivers == 0:
            return 100
        return int((self.receivers_done / self.total_receivers) * 100)

    def receiver_done(self) -> None:
        with self._lock:
            self.receivers_done += 1
            pct = self.percent
            notify = pct != self._last
            self._last = pct
        if notify and self._callback:
            self._callback(pct)

    def cell_done(self) -> None:
        with self._lock:
            self.cells_done += 1


class GridScheduler:
    def __init__(
        self,
        data: SceneData,
        settings: PropagationSettings,
        index_factory: Callable[[], SpatialIndex] = QuadTree,
    ):
        self.data = data
        self.settings = settings
        self.index_factory = index_factory
        self.envelope = data.envelope()
        self.grid_dim = settings.grid_dim
        # One terrain for the whole scene, cells only differ by their triangulation.
        self.elevation = ElevationModel.of(data.topography)
        self._claimed: set[int] = set()
        self._claim_lock = threading.Lock()

    def cells(self) -> list[CellIndex]:
        return [CellIndex(i, j) for i in range(self.grid_dim) for j in range(self.grid_dim)]

    def cell_envelope(self, cell: CellIndex) -> Envelope:
        env = self.envelope
        n = self.grid_dim
        w = env.width / n
        h = env.height / n
        xmax = env.xmax if cell.i == n - 1 else env.xmin + (cell.i + 1) * w
        ymax = env.ymax if cell.j == n - 1 else env.ymin + (cell.j + 1) * h
        return Envelope(env.xmin + cell.i * w, env.ymin + cell.j * h, xmax, ymax)

    def _candidates(self, value: float, start: float, size: float) -> range:
        if size <= 0:
            return range(0, 1)
        k = int(math.floor((value - start) / size))
        return range(max(0, k - 1), min(self.grid_dim, k + 1))

    def owner_of(self, receiver: Receiver) -> CellIndex | None:
        """First cell, in grid order, whose closed envelope contains the receiver."""
        env = self.envelope
        for i in self._candidates(receiver.x, env.xmin, env.width / self.grid_dim):
            for j in self._candidates(receiver.y, env.ymin, env.height / self.grid_dim):
                cell = CellIndex(i, j)
                if self.cell_envelope(cell).contains_point(receiver.x, receiver.y):
                    return cell
        return None

    def search_populated_cells(self) -> list[CellIndex]:
        populated = {self.owner_of(r) for r in self.data.receivers}
        populated.discard(None)
        return sorted(populated)

    def _claim(self, receiver: Receiver) -> bool:
        with self._claim_lock:
            if receiver.receiver_id in self._claimed:
                return False
            self._claimed.add(receiver.receiver_id)
            return True

    def evaluate_cell(
        self,
        cell: CellIndex,
        progress: ProgressCounter | None = None,
        cancel: threading.Event | None = None,
        keep_paths: bool = False,
    ) -> CellResult:
        result = CellResult(cell)
        receivers = [r for r in self.data.receivers if self.owner_of(r) == cell and self._claim(r)]
        if not receivers:
            return result
        expanded = self.cell_envelope(cell).expanded_by(self.settings.max_src_dist)
        area = expanded.as_polygon()
        started = time.perf_counter()
        logger.info(f"Cell {cell.i},{cell.j}: {len(receivers)} receivers")

        scene = build_scene(
            expanded,
            [s for s in self.data.sources if s.geometry.intersects(area)],
            self.settings,
            buildings=[b for b in self.data.buildings if b.polygon.intersects(area)],
            ground_areas=[
                g if g.area_id is not None else replace(g, area_id=i)
                for i, g in enumerate(self.data.ground_areas, 1)
                if g.polygon.intersects(area)
            ],
            topography=[p for p in self.data.topography if expanded.contains_point(p[0], p[1])],
            index_factory=self.index_factory,
            elevation=self.elevation,
        )
        process = PropagationProcess(scene)
        for receiver in receivers:
            if cancel is not None and cancel.is_set():
                logger.warning(f"Cell {cell.i},{cell.j} cancelled")
                break
            paths = result.paths if keep_paths else None
            result.levels[receiver.receiver_id] = process.compute_sound_level_at(receiver, paths)
            if progress is not None:
                progress.receiver_done()
        logger.info(f"Cell {cell.i},{cell.j} done in {time.perf_counter() - started:.2f}s")
        return result

    def run(
        self,
        workers: int | None = None,
        progress_cb: Optional[Callable[[int], None]] = None,
        cancel: threading.Event | None = None,
        keep_paths: bool = False,
        profiler: ProfilerTask | None = None,
    ) -> RunResult:
        workers = workers or self.settings.workers
        with self._claim_lock:
            self._claimed.clear()
        cells = self.search_populated_cells()
        progress = ProgressCounter(
            sum(1 for r in self.data.receivers if self.owner_of(r) is not None), len(cells), progress_cb
        )
        if profiler is not None:
            profiler.add_metric("receivers", lambda: progress.receivers_done)
            profiler.add_metric("cells", lambda: progress.cells_done)
            profiler.start()
        started = time.perf_counter()
        logger.info(f"Computing {len(self.data.receivers)} receivers on {len(cells)} cells with {workers} workers")

        out = RunResult()
        buffers: dict[CellIndex, CellResult] = {}

        def collect(cell: CellIndex, work: Callable[[], CellResult]) -> None:
            try:
                buffers[cell] = work()
            except Exception as exc:
                logger.warning(f"Cell {cell.i},{cell.j} failed: {exc}")
                out.failed_cells[cell] = f"{type(exc).__name__}: {exc}"
            progress.cell_done()

        if workers <= 1:
            for cell in cells:
                if cancel is not None and cancel.is_set():
                    break
                collect(cell, lambda c=cell: self.evaluate_cell(c, progress, cancel, keep_paths))
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_cell = {
                    executor.submit(self.evaluate_cell, cell, progress, cancel, keep_paths): cell for cell in cells
                }
                for future in as_completed(future_to_cell):
                    collect(future_to_cell[future], future.result)

        for cell in sorted(buffers):
            out.levels.update(buffers[cell].levels)
            out.paths.extend(buffers[cell].paths)
        if profiler is not None:
            profiler.stop()
        out.cancelled = cancel is not None and cancel.is_set()
        out.elapsed = time.perf_counter() - started
        if out.cancelled:
            logger.warning(f"Run cancelled after {progress.receivers_done} receivers")
        logger.info(
            f"Computed {len(out.levels)} receivers in {out.elapsed:.2f}s, {len(out.failed_cells)} failed cells"
        )
        return out
