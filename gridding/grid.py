"""
Incremental bathymetry grid.

Each cell holds three accumulators: footprint weight, weighted depth and
weighted squared depth. A beam contributes the same quantities when it is
added and when it is removed, so toggling a sounding's flag updates only
the cells under its footprint.

Accumulators are stored as int64 fixed-point values. Every contribution is
rounded to the fixed-point grid once, in ``beam_contribution``; after that,
addition and subtraction are exact and commutative. Adding then removing a
set of beams in any order restores every cell bit for bit, and sharded
rebuilds reduce to the same arrays as a sequential one.

Depths are positive down. ``value`` is the weighted mean depth of a cell;
``sigma`` the weighted standard deviation.
"""

import logging
import math
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from config import GridConfig
from data.projection import Projection
from .footprint import Footprint, footprint_window
from .weights import BinUsage, bin_weights, cell_corners

logger = logging.getLogger(__name__)


WEIGHT_SCALE = float(2 ** 40)
SUM_SCALE = float(2 ** 32)
SIGMA_SCALE = float(2 ** 20)
ACCUMULATOR_LIMIT = np.iinfo(np.int64).max


class GridAlgorithm(str, Enum):
    FOOTPRINT = "footprint"
    SIMPLE_MEAN = "simple_mean"
    SHOAL_BIAS = "shoal_bias"


@dataclass(frozen=True)
class GridSpec:
    """
    Grid geometry in the working projection.

    Cell ``(i, j)`` is centred at ``(x_min + i*dx, y_min + j*dy)``; its
    flat index is ``i * n_rows + j``.
    """
    x_min: float
    y_min: float
    dx: float
    dy: float
    n_columns: int
    n_rows: int
    projection_id: str = ""

    @property
    def x_max(self) -> float:
        return self.x_min + (self.n_columns - 1) * self.dx

    @property
    def y_max(self) -> float:
        return self.y_min + (self.n_rows - 1) * self.dy

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.n_columns, self.n_rows)

    @property
    def n_cells(self) -> int:
        return self.n_columns * self.n_rows

    @classmethod
    def from_bounds(
        cls,
        x_min: float,
        x_max: float,
        y_min: float,
        y_max: float,
        cell_size: float,
        projection_id: str = "",
    ) -> "GridSpec":
        if cell_size <= 0:
            raise ValueError(f"Cell size must be positive: {cell_size}")
        if x_max < x_min or y_max < y_min:
            raise ValueError(f"Empty grid bounds: x {x_min}..{x_max}, y {y_min}..{y_max}")
        n_columns = int((x_max - x_min) / cell_size + 1)
        n_rows = int((y_max - y_min) / cell_size + 1)
        return cls(x_min, y_min, cell_size, cell_size, n_columns, n_rows, projection_id)

    @classmethod
    def from_lonlat_bounds(
        cls,
        bounds: Tuple[float, float, float, float],
        projection: Projection,
        cell_size: Optional[float] = None,
        depth_max: float = 0.0,
        altitude_max: float = 0.0,
    ) -> "GridSpec":
        """
        Grid covering a lon/lat box in the working projection.

        Without an explicit cell size the cell is 2% of the maximum
        altitude, else 2% of the maximum depth, else 1/250 of the x extent.
        """
        lon_min, lon_max, lat_min, lat_max = bounds
        x, y = projection.forward(
            np.array([lon_min, lon_max, lon_max, lon_min]),
            np.array([lat_min, lat_min, lat_max, lat_max]),
        )
        x_min, x_max = float(np.min(x)), float(np.max(x))
        y_min, y_max = float(np.min(y)), float(np.max(y))

        if cell_size is None:
            if altitude_max > 0.0:
                cell_size = 0.02 * altitude_max
            elif depth_max > 0.0:
                cell_size = 0.02 * depth_max
            else:
                cell_size = (x_max - x_min) / 250.0
            if not cell_size > 0.0:
                cell_size = 1.0
        return cls.from_bounds(x_min, x_max, y_min, y_max, cell_size, projection.projection_id)

    def cell_index(self, x, y):
        """Nearest cell (i, j) of projected positions; may lie outside the grid."""
        i = np.floor((np.asarray(x) - self.x_min) / self.dx + 0.5).astype(np.int64)
        j = np.floor((np.asarray(y) - self.y_min) / self.dy + 0.5).astype(np.int64)
        return i, j

    def cell_center(self, i, j):
        return self.x_min + np.asarray(i) * self.dx, self.y_min + np.asarray(j) * self.dy

    def contains(self, i, j):
        i = np.asarray(i)
        j = np.asarray(j)
        return (i >= 0) & (i < self.n_columns) & (j >= 0) & (j < self.n_rows)


@dataclass(frozen=True)
class GriddedBeam:
    """Grid input of one sounding. ``footprint=None`` grids as a point."""
    x: float
    y: float
    depth: float
    footprint: Optional[Footprint] = None


@dataclass
class Contribution:
    """Fixed-point quantities one beam adds to (or removes from) cells."""
    cells: np.ndarray                        # Flat cell indices, unique
    weight: np.ndarray                       # int64
    sum: np.ndarray                          # int64
    sigma: np.ndarray                        # int64
    depth_key: Optional[int] = None          # Quantized depth (shoal bias)

    @classmethod
    def empty(cls) -> "Contribution":
        z = np.zeros(0, dtype=np.int64)
        return cls(z, z, z, z)

    def __len__(self) -> int:
        return len(self.cells)

    @property
    def total_weight(self) -> float:
        return float(self.weight.sum()) / WEIGHT_SCALE


@dataclass
class GridCell:
    """Accumulators and derived values of one cell."""
    i: int
    j: int
    weight: float
    sum: float
    sigma_acc: float
    value: float
    sigma: float
    has_data: bool


@dataclass
class GridStats:
    """Per-beam outcomes counted during grid updates."""
    beams_added: int = 0
    beams_removed: int = 0
    beams_outside: int = 0                   # Beam centre outside the grid
    beams_invalid: int = 0                   # Non-finite position or depth
    cells_updated: int = 0

    def reset(self):
        self.beams_added = 0
        self.beams_removed = 0
        self.beams_outside = 0
        self.beams_invalid = 0
        self.cells_updated = 0


def quantize(weight: np.ndarray, depth: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Fixed-point (weight, weight*depth, weight*depth^2)."""
    weight = np.asarray(weight, dtype=np.float64)
    return (
        np.rint(weight * WEIGHT_SCALE).astype(np.int64),
        np.rint(weight * depth * SUM_SCALE).astype(np.int64),
        np.rint(weight * depth * depth * SIGMA_SCALE).astype(np.int64),
    )


def beam_contribution(
    beam: GriddedBeam,
    spec: GridSpec,
    accept_conditional: bool = False,
) -> Contribution:
    """
    Cells and fixed-point quantities a beam contributes to a grid.

    Point beams (no footprint) contribute weight 1 to the cell containing
    them. Footprint beams contribute the footprint weight of every cell in
    the search window classified as used (and, with ``accept_conditional``,
    conditional). Beams outside the grid or with non-finite inputs
    contribute nothing.
    """
    if not (math.isfinite(beam.x) and math.isfinite(beam.y) and math.isfinite(beam.depth)):
        return Contribution.empty()
    i0, j0 = spec.cell_index(beam.x, beam.y)
    i0, j0 = int(i0), int(j0)
    if not (0 <= i0 < spec.n_columns and 0 <= j0 < spec.n_rows):
        return Contribution.empty()

    if beam.footprint is None:
        weight, total, sigma = quantize(np.ones(1), beam.depth)
        return Contribution(np.array([i0 * spec.n_rows + j0], dtype=np.int64), weight, total, sigma)

    dix, diy = footprint_window(beam.footprint, spec.dx, spec.dy)
    ii = np.arange(max(0, i0 - dix), min(spec.n_columns - 1, i0 + dix) + 1)
    jj = np.arange(max(0, j0 - diy), min(spec.n_rows - 1, j0 + diy) + 1)
    gi, gj = np.meshgrid(ii, jj, indexing="ij")
    gi = gi.ravel()
    gj = gj.ravel()

    cx, cy = spec.cell_center(gi, gj)
    ox = cx - beam.x
    oy = cy - beam.y
    pcx, pcy = beam.footprint.to_local(ox, oy)
    hx = 0.5 * spec.dx
    hy = 0.5 * spec.dy
    corner_x, corner_y = cell_corners(ox, oy, hx, hy, beam.footprint)
    weight, usage = bin_weights(
        beam.footprint.half_width, beam.footprint.half_length,
        pcx, pcy, hx, hy, corner_x, corner_y,
    )

    keep = usage == BinUsage.USE
    if accept_conditional:
        keep |= usage == BinUsage.CONDITIONAL
    qw, qs, qg = quantize(weight[keep], beam.depth)
    nonzero = qw > 0
    cells = (gi[keep] * spec.n_rows + gj[keep])[nonzero]
    return Contribution(cells.astype(np.int64), qw[nonzero], qs[nonzero], qg[nonzero])


def check_headroom(accumulated: np.ndarray, delta: np.ndarray, name: str):
    """
    Raise ``OverflowError`` if adding ``delta`` would overflow int64.

    int64 arithmetic in numpy wraps silently, so the check runs before the
    accumulators change.
    """
    accumulated = np.asarray(accumulated, dtype=np.int64)
    delta = np.asarray(delta, dtype=np.int64)
    room = ACCUMULATOR_LIMIT - np.abs(delta)
    overflow = np.abs(accumulated) > room
    if overflow.any():
        raise OverflowError(
            f"Grid {name} accumulator would overflow in {int(overflow.sum())} cells"
        )


def apply_contribution(
    weight_acc: np.ndarray,
    sum_acc: np.ndarray,
    sigma_acc: np.ndarray,
    contribution: Contribution,
    sign: int,
):
    """
    Add (``sign=+1``) or remove (``sign=-1``) a contribution in place.

    This is the only place grid accumulators change. Removing a
    contribution subtracts exactly what adding it added.

    Raises:
        OverflowError: If an addition would exceed the int64 range; the
            accumulators are left unchanged
    """
    if sign not in (1, -1):
        raise ValueError(f"sign must be +1 or -1, got {sign}")
    cells = contribution.cells
    if sign > 0:
        check_headroom(weight_acc[cells], contribution.weight, "weight")
        check_headroom(sum_acc[cells], contribution.sum, "depth sum")
        check_headroom(sigma_acc[cells], contribution.sigma, "squared depth sum")
    weight_acc[cells] += sign * contribution.weight
    sum_acc[cells] += sign * contribution.sum
    sigma_acc[cells] += sign * contribution.sigma


def _shard_accumulate(beams: Sequence[GriddedBeam], spec: GridSpec, accept_conditional: bool):
    weight_acc = np.zeros(spec.n_cells, dtype=np.int64)
    sum_acc = np.zeros(spec.n_cells, dtype=np.int64)
    sigma_acc = np.zeros(spec.n_cells, dtype=np.int64)
    points: List[Tuple[int, int]] = []
    n_empty = 0
    for beam in beams:
        contribution = beam_contribution(beam, spec, accept_conditional)
        if not len(contribution):
            n_empty += 1
            continue
        # Cells are unique within one contribution
        apply_contribution(weight_acc, sum_acc, sigma_acc, contribution, 1)
        if beam.footprint is None:
            points.append((int(contribution.cells[0]), int(np.rint(beam.depth * SUM_SCALE))))
    return weight_acc, sum_acc, sigma_acc, points, n_empty


class IncrementalGrid:
    """
    Bathymetry grid with O(footprint) add/remove of single beams.

    The grid is a single-writer resource; every mutation and ``snapshot``
    hold the grid lock.
    """

    def __init__(self, spec: GridSpec, config: Optional[GridConfig] = None):
        self.spec = spec
        self.config = config or GridConfig()
        self.algorithm = GridAlgorithm(self.config.algorithm)
        self.nodata_value = self.config.nodata_value

        self._weight = np.zeros(spec.n_cells, dtype=np.int64)
        self._sum = np.zeros(spec.n_cells, dtype=np.int64)
        self._sigma = np.zeros(spec.n_cells, dtype=np.int64)
        self._value = np.full(spec.n_cells, self.nodata_value, dtype=np.float64)
        self._sigma_value = np.full(spec.n_cells, self.nodata_value, dtype=np.float64)
        self._shoal: Dict[int, Counter] = {}
        self._dirty: set = set()
        self._lock = threading.RLock()
        self.stats = GridStats()

        logger.info(
            f"Grid {spec.n_columns} x {spec.n_rows} cells of {spec.dx:.3f} m "
            f"({self.algorithm.value})"
        )

    # ------------------------------------------------------------------
    # Contributions
    # ------------------------------------------------------------------

    def _beam_for_algorithm(self, beam: GriddedBeam) -> GriddedBeam:
        if self.algorithm is GridAlgorithm.FOOTPRINT or beam.footprint is None:
            return beam
        return GriddedBeam(beam.x, beam.y, beam.depth, None)

    def contribution(self, beam: GriddedBeam) -> Contribution:
        """What ``add_beam`` would add for ``beam``."""
        beam = self._beam_for_algorithm(beam)
        contribution = beam_contribution(beam, self.spec, self.config.accept_conditional)
        if beam.footprint is None and len(contribution):
            contribution.depth_key = int(np.rint(beam.depth * SUM_SCALE))
        return contribution

    def add_beam(self, beam: GriddedBeam, recompute: Optional[bool] = None) -> np.ndarray:
        """
        Add a beam's contribution.

        Returns:
            Flat indices of the cells touched
        """
        return self._update(beam, 1, recompute)

    def remove_beam(self, beam: GriddedBeam, recompute: Optional[bool] = None) -> np.ndarray:
        """Remove a beam's contribution (inverse of ``add_beam``)."""
        return self._update(beam, -1, recompute)

    def _update(self, beam: GriddedBeam, sign: int, recompute: Optional[bool]) -> np.ndarray:
        if recompute is None:
            recompute = self.config.recompute_immediately

        contribution = self.contribution(beam)
        if not len(contribution):
            if not (math.isfinite(beam.x) and math.isfinite(beam.y) and math.isfinite(beam.depth)):
                self.stats.beams_invalid += 1
            else:
                self.stats.beams_outside += 1
            return contribution.cells

        with self._lock:
            apply_contribution(self._weight, self._sum, self._sigma, contribution, sign)
            if self.algorithm is GridAlgorithm.SHOAL_BIAS and contribution.depth_key is not None:
                self._update_shoal(int(contribution.cells[0]), contribution.depth_key, sign)
            if sign > 0:
                self.stats.beams_added += 1
            else:
                self.stats.beams_removed += 1
            if recompute:
                self._recompute_cells(contribution.cells)
            else:
                self._dirty.update(contribution.cells.tolist())

        return contribution.cells

    def _update_shoal(self, cell: int, depth_key: int, sign: int):
        counter = self._shoal.setdefault(cell, Counter())
        counter[depth_key] += sign
        if counter[depth_key] <= 0:
            del counter[depth_key]
        if not counter:
            del self._shoal[cell]

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def _recompute_cells(self, cells: np.ndarray):
        cells = np.asarray(cells, dtype=np.int64)
        if not len(cells):
            return
        negative = self._weight[cells] < 0
        if negative.any():
            logger.warning(f"Clamping {int(negative.sum())} cells with negative weight")
            bad = cells[negative]
            self._weight[bad] = 0
            self._sum[bad] = 0
            self._sigma[bad] = 0

        weight = self._weight[cells] / WEIGHT_SCALE
        has_data = weight > self.config.weight_epsilon
        safe = np.where(has_data, weight, 1.0)
        value = (self._sum[cells] / SUM_SCALE) / safe
        sigma = np.sqrt(np.abs((self._sigma[cells] / SIGMA_SCALE) / safe - value * value))

        if self.algorithm is GridAlgorithm.SHOAL_BIAS:
            for k, cell in enumerate(cells.tolist()):
                counter = self._shoal.get(cell)
                if counter:
                    value[k] = min(counter) / SUM_SCALE

        self._value[cells] = np.where(has_data, value, self.nodata_value)
        self._sigma_value[cells] = np.where(has_data, sigma, self.nodata_value)
        self.stats.cells_updated += len(cells)

    def recompute(self, cells: Optional[Iterable[int]] = None) -> np.ndarray:
        """
        Recompute value and sigma of deferred cells (or of ``cells``).

        Returns:
            Flat indices of the recomputed cells
        """
        with self._lock:
            if cells is None:
                cells = np.array(sorted(self._dirty), dtype=np.int64)
                self._dirty.clear()
            else:
                cells = np.asarray(list(cells), dtype=np.int64)
                self._dirty.difference_update(cells.tolist())
            self._recompute_cells(cells)
        return cells

    @property
    def pending_cells(self) -> int:
        return len(self._dirty)

    # ------------------------------------------------------------------
    # Full rebuild
    # ------------------------------------------------------------------

    def reset(self):
        """Zero all accumulators; every cell reverts to no data."""
        with self._lock:
            self._weight[:] = 0
            self._sum[:] = 0
            self._sigma[:] = 0
            self._value[:] = self.nodata_value
            self._sigma_value[:] = self.nodata_value
            self._shoal.clear()
            self._dirty.clear()
            self.stats.reset()

    def rebuild_from(
        self,
        beams: Iterable[GriddedBeam],
        workers: Optional[int] = None,
        show_progress: Optional[bool] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ):
        """
        Rebuild the grid from scratch from the given (unflagged) beams.

        With more than one worker, beams are split into shards that each
        accumulate into private arrays; the shards are then summed.
        """
        if workers is None:
            workers = self.config.rebuild_workers
        if show_progress is None:
            show_progress = self.config.show_progress

        beams = [self._beam_for_algorithm(beam) for beam in beams]
        self.reset()

        n_shards = max(1, min(workers, len(beams))) if beams else 1
        shard_size = max(1, int(math.ceil(len(beams) / n_shards))) if beams else 1
        if workers > 1:
            shard_size = max(1, min(shard_size, 4096))
        shards = [beams[k:k + shard_size] for k in range(0, len(beams), shard_size)]
        accept = self.config.accept_conditional

        results = []
        progress = tqdm(total=len(beams), desc="Gridding", unit="beam", disable=not show_progress)
        done = 0
        try:
            if workers > 1 and len(shards) > 1:
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    futures = [executor.submit(_shard_accumulate, shard, self.spec, accept) for shard in shards]
                    for shard, future in zip(shards, futures):
                        results.append(future.result())
                        done += len(shard)
                        progress.update(len(shard))
                        if progress_callback is not None:
                            progress_callback(done, len(beams))
            else:
                for shard in shards:
                    results.append(_shard_accumulate(shard, self.spec, accept))
                    done += len(shard)
                    progress.update(len(shard))
                    if progress_callback is not None:
                        progress_callback(done, len(beams))
        finally:
            progress.close()

        with self._lock:
            n_empty = 0
            for weight_acc, sum_acc, sigma_acc, points, shard_empty in results:
                check_headroom(self._weight, weight_acc, "weight")
                check_headroom(self._sum, sum_acc, "depth sum")
                check_headroom(self._sigma, sigma_acc, "squared depth sum")
                self._weight += weight_acc
                self._sum += sum_acc
                self._sigma += sigma_acc
                n_empty += shard_empty
                if self.algorithm is GridAlgorithm.SHOAL_BIAS:
                    for cell, depth_key in points:
                        self._update_shoal(cell, depth_key, 1)
            self.stats.beams_added = len(beams) - n_empty
            self.stats.beams_outside = n_empty
            self._recompute_cells(np.flatnonzero(self._weight))
            self.stats.cells_updated = int(np.count_nonzero(self._weight))

        logger.info(
            f"Grid rebuilt from {self.stats.beams_added} beams "
            f"({n_empty} outside grid), {self.n_cells_with_data} cells with data"
        )

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def value(self) -> np.ndarray:
        """Mean depth per cell, shape (n_columns, n_rows)."""
        return self._value.reshape(self.spec.shape)

    @property
    def sigma(self) -> np.ndarray:
        return self._sigma_value.reshape(self.spec.shape)

    @property
    def weight(self) -> np.ndarray:
        return (self._weight / WEIGHT_SCALE).reshape(self.spec.shape)

    @property
    def topography(self) -> np.ndarray:
        """Elevation (negative depth) per cell, no-data cells unchanged."""
        return np.where(self.valid_mask, -self.value, self.nodata_value)

    @property
    def valid_mask(self) -> np.ndarray:
        """Return boolean mask of cells with data."""
        return self.value != self.nodata_value

    @property
    def n_cells_with_data(self) -> int:
        return int(np.count_nonzero(self._value != self.nodata_value))

    @property
    def total_weight(self) -> float:
        """Sum of accumulated footprint weight over all cells."""
        return float(self._weight.sum()) / WEIGHT_SCALE

    def accumulators(self, i: int, j: int) -> Tuple[int, int, int]:
        """Raw fixed-point (weight, sum, sigma) of a cell."""
        k = i * self.spec.n_rows + j
        return int(self._weight[k]), int(self._sum[k]), int(self._sigma[k])

    def accumulator_state(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Copies of the raw fixed-point (weight, sum, sigma) arrays."""
        with self._lock:
            return self._weight.copy(), self._sum.copy(), self._sigma.copy()

    def cell(self, i: int, j: int) -> GridCell:
        if not self.spec.contains(i, j):
            raise IndexError(f"Cell ({i}, {j}) outside {self.spec.n_columns} x {self.spec.n_rows} grid")
        k = i * self.spec.n_rows + j
        value = float(self._value[k])
        return GridCell(
            i=i,
            j=j,
            weight=self._weight[k] / WEIGHT_SCALE,
            sum=self._sum[k] / SUM_SCALE,
            sigma_acc=self._sigma[k] / SIGMA_SCALE,
            value=value,
            sigma=float(self._sigma_value[k]),
            has_data=value != self.nodata_value,
        )

    def cell_ij(self, cells: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        cells = np.asarray(cells, dtype=np.int64)
        return cells // self.spec.n_rows, cells % self.spec.n_rows

    def snapshot(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of (value, sigma) for concurrent readers."""
        with self._lock:
            return self.value.copy(), self.sigma.copy()

    def get_statistics(self) -> Dict[str, float]:
        """Calculate statistics on cells with data."""
        valid = self.value[self.valid_mask]
        if len(valid) == 0:
            return {}

        return {
            "min": float(np.min(valid)),
            "max": float(np.max(valid)),
            "mean": float(np.mean(valid)),
            "std": float(np.std(valid)),
            "count": int(len(valid)),
            "valid_ratio": float(len(valid) / self.value.size),
            "total_weight": self.total_weight,
        }
