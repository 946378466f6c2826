"""
Sounding selection.

Gathers the soundings inside a region (a rotated rectangle in projected
coordinates, or a set of navigation-selected pings) from every loaded file
into one flat ``SelectionBuffer`` for interactive review and bias
calibration.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional, Tuple, Union

import numpy as np

from config import SelectionConfig
from data.errors import SwathAllocationError
from data.flags import BeamFlag, FLAG_DTYPE
from data.projection import Projection
from data.swath import FileSwathStore, Ping, SwathFile
from gridding.geometry import BeamGeometryCorrector, BiasParameters

logger = logging.getLogger(__name__)


SOUNDING_DTYPE = np.dtype([
    ("file_id", np.int32),
    ("ping", np.int32),
    ("beam", np.int32),
    ("xg", np.float64),                      # Projected position
    ("yg", np.float64),
    ("x", np.float64),                       # Region-local position
    ("y", np.float64),
    ("z", np.float64),                       # Topography (-depth), re-centred on finalize
    ("flag", FLAG_DTYPE),
])


def _bearing_sincos(bearing: float) -> Tuple[float, float]:
    b = math.radians(bearing)
    sin_b = math.sin(b)
    cos_b = math.cos(b)
    # Exact axes for bearings that are multiples of 90 degrees
    if abs(sin_b) < 1e-15:
        sin_b = 0.0
    if abs(cos_b) < 1e-15:
        cos_b = 0.0
    return sin_b, cos_b


@dataclass(frozen=True)
class RectRegion:
    """
    Rectangle in projected coordinates.

    ``length`` runs along ``bearing`` (degrees clockwise from north),
    ``width`` across it. Containment is inclusive of the edges.
    """
    x_origin: float
    y_origin: float
    length: float
    width: float
    bearing: float = 90.0

    @classmethod
    def from_corners(cls, x0: float, y0: float, x1: float, y1: float) -> "RectRegion":
        """Axis-aligned box between two corners."""
        x_min, x_max = min(x0, x1), max(x0, x1)
        y_min, y_max = min(y0, y1), max(y0, y1)
        return cls(0.5 * (x_min + x_max), 0.5 * (y_min + y_max), x_max - x_min, y_max - y_min, 90.0)

    @classmethod
    def from_endpoints(cls, x0: float, y0: float, x1: float, y1: float, width: float) -> "RectRegion":
        """Rotated box of ``width`` along the segment between two points."""
        length = math.hypot(x1 - x0, y1 - y0)
        bearing = math.degrees(math.atan2(x1 - x0, y1 - y0)) if length > 0.0 else 90.0
        return cls(0.5 * (x0 + x1), 0.5 * (y0 + y1), length, width, bearing)

    @property
    def scale(self) -> float:
        diagonal = math.hypot(self.length, self.width)
        return 2.0 / diagonal if diagonal > 0.0 else 1.0

    def to_local(self, x, y):
        """Offsets from the origin rotated into (along bearing, across bearing)."""
        sin_b, cos_b = _bearing_sincos(self.bearing)
        dx = np.asarray(x, dtype=np.float64) - self.x_origin
        dy = np.asarray(y, dtype=np.float64) - self.y_origin
        return dx * sin_b + dy * cos_b, -dx * cos_b + dy * sin_b

    def contains(self, x, y):
        xx, yy = self.to_local(x, y)
        return (np.abs(xx) <= 0.5 * self.length) & (np.abs(yy) <= 0.5 * self.width)


@dataclass(frozen=True)
class NavSelection:
    """Pings picked through navigation, as (file id, ping index) pairs."""
    pings: FrozenSet[Tuple[int, int]]

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[int, int]]) -> "NavSelection":
        return cls(frozenset((int(f), int(p)) for f, p in pairs))

    @classmethod
    def from_mask(cls, file_id: int, mask) -> "NavSelection":
        return cls(frozenset((file_id, int(k)) for k in np.flatnonzero(mask)))

    def __contains__(self, key) -> bool:
        return key in self.pings

    def __len__(self) -> int:
        return len(self.pings)


Region = Union[RectRegion, NavSelection]


class SelectionBuffer:
    """
    Flat, growable array of selected soundings.

    Records are addressed by integer index; growth allocates the larger
    array first and swaps it in only on success.
    """

    def __init__(self, region: Optional[Region] = None, alloc_chunk: int = 1024):
        self.region = region
        self.alloc_chunk = alloc_chunk
        self._records = np.zeros(0, dtype=SOUNDING_DTYPE)
        self._n = 0
        self._index: Dict[Tuple[int, int, int], int] = {}

        self.x_origin = 0.0
        self.y_origin = 0.0
        self.bearing = 90.0
        self.scale = 1.0
        self.zscale = 1.0
        self.zorigin = 0.0
        self.zmin = np.inf
        self.zmax = -np.inf
        self.finalized = False
        self.n_projection_failures = 0
        self.bias = BiasParameters()

    @property
    def records(self) -> np.ndarray:
        return self._records[:self._n]

    @property
    def capacity(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return self._n

    def _reserve(self, n: int):
        if n <= len(self._records):
            return
        n_chunks = int(math.ceil(n / self.alloc_chunk))
        try:
            grown = np.zeros(n_chunks * self.alloc_chunk, dtype=SOUNDING_DTYPE)
        except MemoryError as e:
            raise SwathAllocationError(
                f"Cannot grow selection from {len(self._records)} to {n} soundings"
            ) from e
        grown[:self._n] = self._records[:self._n]
        self._records = grown

    def append(self, file_id: int, ping: int, beams: np.ndarray, xg, yg, x, y, z, flags):
        """Append the selected beams of one ping."""
        n = len(beams)
        if n == 0:
            return
        self._reserve(self._n + n)
        block = self._records[self._n:self._n + n]
        block["file_id"] = file_id
        block["ping"] = ping
        block["beam"] = beams
        block["xg"] = xg
        block["yg"] = yg
        block["x"] = x
        block["y"] = y
        block["z"] = z
        block["flag"] = flags
        for k, beam in enumerate(np.asarray(beams).tolist()):
            self._index[(file_id, ping, beam)] = self._n + k
        self._n += n
        if n:
            self.zmin = min(self.zmin, float(np.min(z)))
            self.zmax = max(self.zmax, float(np.max(z)))

    def finalize(self):
        """Re-centre z about the midpoint of its range."""
        if self._n:
            self.zorigin = 0.5 * (self.zmin + self.zmax)
            self._records["z"][:self._n] -= self.zorigin
        self.zscale = self.scale
        self.finalized = True

    def find(self, file_id: int, ping: int, beam: int) -> Optional[int]:
        return self._index.get((file_id, ping, beam))

    def update_flag(self, index: int, flag: BeamFlag):
        self._records["flag"][index] = flag

    def depth(self, index: Optional[int] = None):
        """Corrected depth (positive down) of one or all records."""
        z = self.records["z"] + self.zorigin
        return -z if index is None else -float(z[index])

    def scaled_xyz(self, exaggeration: float = 1.0) -> np.ndarray:
        """Render-independent (n, 3) coordinates spanning about [-1, 1]."""
        records = self.records
        return np.column_stack([
            records["x"] * self.scale,
            records["y"] * self.scale,
            records["z"] * self.zscale * exaggeration,
        ])

    @property
    def n_flagged(self) -> int:
        flags = self.records["flag"]
        return int(np.count_nonzero((flags != BeamFlag.OK) & (flags != BeamFlag.NULL)))

    @property
    def n_unflagged(self) -> int:
        return int(np.count_nonzero(self.records["flag"] == BeamFlag.OK))

    def counts(self) -> Dict[str, int]:
        return {
            "soundings": len(self),
            "flagged": self.n_flagged,
            "unflagged": self.n_unflagged,
            "projection_failures": self.n_projection_failures,
        }

    def ping_runs(self):
        """(file_id, ping, record slice) for each run of records from one ping."""
        records = self.records
        if not len(records):
            return
        key = (records["file_id"].astype(np.int64) << 32) | records["ping"].astype(np.int64)
        starts = np.concatenate([[0], np.flatnonzero(np.diff(key)) + 1])
        ends = np.concatenate([starts[1:], [len(records)]])
        for start, end in zip(starts, ends):
            yield int(records["file_id"][start]), int(records["ping"][start]), slice(int(start), int(end))


class SoundingSelector:
    """Builds selection buffers from the loaded files."""

    def __init__(
        self,
        store: FileSwathStore,
        projection: Projection,
        config: Optional[SelectionConfig] = None,
    ):
        self.store = store
        self.projection = projection
        self.config = config or SelectionConfig()

    def _candidates(self, ping: Ping) -> np.ndarray:
        flags = ping.flags
        mask = flags != BeamFlag.NULL
        if not self.config.include_secondary_picks:
            mask &= flags != BeamFlag.SECONDARY
        return np.flatnonzero(mask)

    def _positions(self, swath: SwathFile, ping: Ping, beams: np.ndarray, corrector: BeamGeometryCorrector):
        position = corrector.correct_ping(ping, swath, beams)
        xg, yg, n_failed = self.projection.forward_many(position.lon, position.lat)
        return xg, yg, position.bathcorr, n_failed

    def select(self, region: Region, bias: Optional[BiasParameters] = None) -> SelectionBuffer:
        """
        Gather the soundings inside ``region``.

        Positions are corrected with ``bias`` and projected before the
        containment test. Soundings that cannot be projected are counted
        in ``n_projection_failures`` and left out.
        """
        bias = bias or BiasParameters()
        corrector = BeamGeometryCorrector(bias)
        buffer = SelectionBuffer(region, self.config.alloc_chunk)
        buffer.bias = bias

        if isinstance(region, RectRegion):
            buffer.x_origin = region.x_origin
            buffer.y_origin = region.y_origin
            buffer.bearing = region.bearing
            buffer.scale = region.scale

        pending = []
        for swath in self.store.loaded():
            for ping_index, ping in enumerate(swath.pings):
                if isinstance(region, NavSelection) and (swath.file_id, ping_index) not in region:
                    continue
                beams = self._candidates(ping)
                if not len(beams):
                    continue
                xg, yg, depth, n_failed = self._positions(swath, ping, beams, corrector)
                buffer.n_projection_failures += n_failed
                keep = np.isfinite(xg) & np.isfinite(yg)
                if isinstance(region, RectRegion):
                    keep &= region.contains(xg, yg)
                if keep.any():
                    pending.append((swath.file_id, ping_index, beams[keep], xg[keep], yg[keep],
                                    -depth[keep], ping.flags[beams[keep]]))

        if isinstance(region, NavSelection) and pending:
            xs = np.concatenate([p[3] for p in pending])
            ys = np.concatenate([p[4] for p in pending])
            x_min, x_max = float(xs.min()), float(xs.max())
            y_min, y_max = float(ys.min()), float(ys.max())
            buffer.region = RectRegion(0.5 * (x_min + x_max), 0.5 * (y_min + y_max),
                                       x_max - x_min, y_max - y_min, 90.0)
            buffer.x_origin = buffer.region.x_origin
            buffer.y_origin = buffer.region.y_origin
            buffer.bearing = 90.0
            buffer.scale = buffer.region.scale

        local = buffer.region if isinstance(buffer.region, RectRegion) else None
        for file_id, ping_index, beams, xg, yg, z, flags in pending:
            x, y = local.to_local(xg, yg) if local is not None else (xg, yg)
            buffer.append(file_id, ping_index, beams, xg, yg, x, y, z, flags)
        buffer.finalize()

        if buffer.n_projection_failures:
            logger.warning(f"{buffer.n_projection_failures} soundings could not be projected")
        logger.info(
            f"Selected {len(buffer)} soundings "
            f"({buffer.n_unflagged} unflagged, {buffer.n_flagged} flagged)"
        )
        return buffer

    def corrected_positions(self, buffer: SelectionBuffer, bias: BiasParameters):
        """
        Projected position and depth of every buffer record under ``bias``.

        Returns:
            (xg, yg, depth) arrays aligned with ``buffer.records``
        """
        corrector = BeamGeometryCorrector(bias)
        n = len(buffer)
        xg = np.full(n, np.nan)
        yg = np.full(n, np.nan)
        depth = np.full(n, np.nan)
        beams = buffer.records["beam"]
        for file_id, ping_index, run in buffer.ping_runs():
            swath = self.store.get(file_id)
            ping = swath.pings[ping_index]
            px, py, pd, _ = self._positions(swath, ping, beams[run], corrector)
            xg[run] = px
            yg[run] = py
            depth[run] = pd
        return xg, yg, depth

    def apply_bias(self, buffer: SelectionBuffer, bias: BiasParameters):
        """Recompute buffer positions under ``bias``, keeping origin and z origin."""
        xg, yg, depth = self.corrected_positions(buffer, bias)
        records = buffer.records
        region = buffer.region if isinstance(buffer.region, RectRegion) else None
        x, y = region.to_local(xg, yg) if region is not None else (xg, yg)
        records["xg"] = xg
        records["yg"] = yg
        records["x"] = x
        records["y"] = y
        records["z"] = -depth - buffer.zorigin
        buffer.bias = bias
