"""
Bias parameter optimization.

Searches roll, pitch, heading, time lag and Snell factor for the values that
make the selected unflagged soundings most self-consistent: the mean depth
variance per bin of a local grid is minimized with a coarse then a fine
uniform search per parameter.
"""

import logging
import math
from dataclasses import dataclass
from enum import IntFlag
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from data.flags import BeamFlag
from gridding.geometry import BiasParameters
from .selection import SelectionBuffer, SoundingSelector

logger = logging.getLogger(__name__)


class BiasMode(IntFlag):
    ROLL = 1
    PITCH = 2
    HEADING = 4
    TIMELAG = 8
    SNELL = 16
    ROLL_PITCH = ROLL | PITCH
    ROLL_PITCH_HEADING = ROLL | PITCH | HEADING
    ALL = ROLL | PITCH | HEADING | TIMELAG | SNELL


@dataclass(frozen=True)
class SearchPass:
    """Uniform search of ``n_steps`` values of ``step`` around the current best."""
    n_steps: int
    step: float

    def values(self, center: float) -> np.ndarray:
        half = 0.5 * (self.n_steps - 1) * self.step
        return center - half + self.step * np.arange(self.n_steps)


ANGLE_PASSES = (SearchPass(11, 1.0), SearchPass(19, 0.1))
TIMELAG_PASSES = (SearchPass(21, 0.1), SearchPass(19, 0.01))
SNELL_PASSES = (SearchPass(21, 0.01), SearchPass(19, 0.001))

PARAMETER_PASSES: Dict[str, Tuple[SearchPass, ...]] = {
    "roll": ANGLE_PASSES,
    "pitch": ANGLE_PASSES,
    "heading": ANGLE_PASSES,
    "timelag": TIMELAG_PASSES,
    "snell": SNELL_PASSES,
}


def binned_variance(
    x: np.ndarray,
    y: np.ndarray,
    depth: np.ndarray,
    cell_size: float,
    bounds: Tuple[float, float, float, float],
) -> float:
    """
    Mean per-bin depth variance of points on a regular grid.

    Variance is computed relative to the first depth in each bin for
    numerical stability. Bins holding a single point count as zero.

    Args:
        x, y, depth: Point positions and depths
        cell_size: Bin size (m)
        bounds: (x_min, x_max, y_min, y_max) of the binning grid
    """
    x_min, x_max, y_min, y_max = bounds
    n_columns = int((x_max - x_min) / cell_size) + 1
    n_rows = int((y_max - y_min) / cell_size) + 1

    valid = np.isfinite(x) & np.isfinite(y) & np.isfinite(depth)
    i = np.floor((np.where(valid, x, x_min) - x_min) / cell_size).astype(np.int64)
    j = np.floor((np.where(valid, y, y_min) - y_min) / cell_size).astype(np.int64)
    valid &= (i >= 0) & (i < n_columns) & (j >= 0) & (j < n_rows)
    if not valid.any():
        return 0.0

    k = i[valid] * n_rows + j[valid]
    z = depth[valid]
    order = np.argsort(k, kind="stable")
    k = k[order]
    z = z[order]
    starts = np.concatenate([[0], np.flatnonzero(np.diff(k)) + 1])
    first = np.repeat(z[starts], np.diff(np.concatenate([starts, [len(z)]])))
    dz = z - first

    counts = np.add.reduceat(np.ones_like(dz), starts)
    sums = np.add.reduceat(dz, starts)
    sums2 = np.add.reduceat(dz * dz, starts)
    variance = (sums2 - sums * sums / counts) / counts
    return float(np.mean(variance))


class BiasOptimizer:
    """Coarse-to-fine bias search over a selection."""

    def __init__(
        self,
        selector: SoundingSelector,
        cell_size: float,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ):
        if cell_size <= 0:
            raise ValueError(f"Cell size must be positive: {cell_size}")
        self.selector = selector
        self.cell_size = cell_size
        self.progress_callback = progress_callback
        self.n_evaluations = 0

    def variance(self, buffer: SelectionBuffer, bias: BiasParameters, bounds) -> float:
        """Mean per-bin variance of the unflagged soundings under ``bias``."""
        self.n_evaluations += 1
        xg, yg, depth = self.selector.corrected_positions(buffer, bias)
        ok = buffer.records["flag"] == BeamFlag.OK
        return binned_variance(xg[ok], yg[ok], depth[ok], 2.0 * self.cell_size, bounds)

    @staticmethod
    def search_bounds(buffer: SelectionBuffer) -> Tuple[float, float, float, float]:
        """Selection extent padded by 25% on every side."""
        records = buffer.records
        xg = records["xg"][np.isfinite(records["xg"])]
        yg = records["yg"][np.isfinite(records["yg"])]
        x_min, x_max = float(xg.min()), float(xg.max())
        y_min, y_max = float(yg.min()), float(yg.max())
        pad_x = 0.25 * (x_max - x_min)
        pad_y = 0.25 * (y_max - y_min)
        return x_min - pad_x, x_max + pad_x, y_min - pad_y, y_max + pad_y

    def _search(
        self,
        buffer: SelectionBuffer,
        best: BiasParameters,
        best_variance: float,
        name: str,
        passes,
        bounds,
    ) -> Tuple[BiasParameters, float]:
        for search_pass in passes:
            for value in search_pass.values(getattr(best, name)):
                candidate = best.replace(**{name: float(value)})
                variance = self.variance(buffer, candidate, bounds)
                if variance < best_variance:
                    best, best_variance = candidate, variance
            logger.debug(f"{name} pass (step {search_pass.step}): best {getattr(best, name):.4f}, "
                         f"variance {best_variance:.6f}")
            if self.progress_callback is not None:
                self.progress_callback(self.n_evaluations, 0, f"Optimizing {name}")
        return best, best_variance

    def optimize(self, buffer: SelectionBuffer, mode: BiasMode, start: Optional[BiasParameters] = None) -> BiasParameters:
        """
        Search the parameters named by ``mode``, starting from ``start``.

        Returns:
            Best bias parameters found
        """
        best = start or buffer.bias
        n_unflagged = buffer.n_unflagged
        if n_unflagged == 0:
            logger.warning("No unflagged soundings selected, bias unchanged")
            return best

        self.n_evaluations = 0
        bounds = self.search_bounds(buffer)
        best_variance = self.variance(buffer, best, bounds)
        initial = best_variance

        angles: List[str] = [name for name, flag in (
            ("roll", BiasMode.ROLL), ("pitch", BiasMode.PITCH), ("heading", BiasMode.HEADING)
        ) if mode & flag]
        for name in angles:
            best, best_variance = self._search(buffer, best, best_variance, name, PARAMETER_PASSES[name], bounds)
        if mode & BiasMode.TIMELAG:
            best, best_variance = self._search(buffer, best, best_variance, "timelag", TIMELAG_PASSES, bounds)
        if mode & BiasMode.SNELL:
            best, best_variance = self._search(buffer, best, best_variance, "snell", SNELL_PASSES, bounds)

        # Parameters interact; refine the angles once more
        if len(angles) + bool(mode & BiasMode.TIMELAG) + bool(mode & BiasMode.SNELL) > 1:
            for name in angles:
                best, best_variance = self._search(buffer, best, best_variance, name, ANGLE_PASSES[1:], bounds)

        logger.info(
            f"Bias optimization ({self.n_evaluations} evaluations): variance {initial:.6f} -> "
            f"{best_variance:.6f}; roll {best.roll:.2f} pitch {best.pitch:.2f} heading {best.heading:.2f} "
            f"timelag {best.timelag:.3f} snell {best.snell:.4f}"
        )
        return best
