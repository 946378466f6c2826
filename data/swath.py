"""
In-memory swath storage.

A ``SwathFile`` owns an ordered list of ``Ping`` objects; each ping owns
fixed-length per-beam numpy arrays (raw geometry, current and load-time
flags, corrected and projected positions). ``FileSwathStore`` owns the
loaded files and addresses them by a stable integer id, so unloading one
file never renumbers the others.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .errors import SwathAllocationError, UnknownFileError
from .flags import BeamFlag, FLAG_DTYPE

logger = logging.getLogger(__name__)


TOPO_MULTIBEAM = "multibeam"
TOPO_OTHER = "other"


@dataclass
class ScalarSeries:
    """Asynchronous time series of one navigation quantity (heading, sonar depth)."""
    time: np.ndarray
    value: np.ndarray
    circular: bool = False                   # Values are angles in degrees

    def __post_init__(self):
        self.time = np.asarray(self.time, dtype=np.float64)
        self.value = np.asarray(self.value, dtype=np.float64)
        if self.time.shape != self.value.shape:
            raise ValueError("Series time and value must have the same length")

    def __len__(self) -> int:
        return len(self.time)

    def interpolate(self, t: float) -> float:
        """Linear interpolation at ``t``, clamped to the series ends."""
        if self.circular:
            unwrapped = np.degrees(np.unwrap(np.radians(self.value)))
            return float(np.interp(t, self.time, unwrapped) % 360.0)
        return float(np.interp(t, self.time, self.value))


@dataclass
class AttitudeSeries:
    """Asynchronous roll/pitch time series (degrees)."""
    time: np.ndarray
    roll: np.ndarray
    pitch: np.ndarray

    def __post_init__(self):
        self.time = np.asarray(self.time, dtype=np.float64)
        self.roll = np.asarray(self.roll, dtype=np.float64)
        self.pitch = np.asarray(self.pitch, dtype=np.float64)
        if not (self.time.shape == self.roll.shape == self.pitch.shape):
            raise ValueError("Attitude series arrays must have the same length")

    def __len__(self) -> int:
        return len(self.time)

    def interpolate(self, t: float) -> Tuple[float, float]:
        return float(np.interp(t, self.time, self.roll)), float(np.interp(t, self.time, self.pitch))


@dataclass
class Ping:
    """One sonar ping: navigation plus fixed-length per-beam arrays."""
    # Navigation
    time_d: float
    navlon: float
    navlat: float
    heading: float
    speed: float = 0.0
    roll: float = 0.0
    pitch: float = 0.0
    heave: float = 0.0
    sonardepth: float = 0.0
    altitude: float = 0.0

    # Raw beams (bath positive down, offsets in metres from nav)
    bath: np.ndarray = field(default_factory=lambda: np.zeros(0))
    acrosstrack: np.ndarray = field(default_factory=lambda: np.zeros(0))
    alongtrack: np.ndarray = field(default_factory=lambda: np.zeros(0))
    flags: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=FLAG_DTYPE))
    flags_original: Optional[np.ndarray] = None
    multiplicity: int = 0
    amp: Optional[np.ndarray] = None

    # Derived (filled by beam correction and projection)
    bathcorr: Optional[np.ndarray] = None
    bathlon: Optional[np.ndarray] = None
    bathlat: Optional[np.ndarray] = None
    bathx: Optional[np.ndarray] = None
    bathy: Optional[np.ndarray] = None
    navx: float = np.nan
    navy: float = np.nan

    def __post_init__(self):
        self.bath = np.asarray(self.bath, dtype=np.float64)
        self.acrosstrack = np.asarray(self.acrosstrack, dtype=np.float64)
        self.alongtrack = np.asarray(self.alongtrack, dtype=np.float64)
        self.flags = np.asarray(self.flags, dtype=FLAG_DTYPE)
        n = len(self.bath)
        for name in ("acrosstrack", "alongtrack", "flags"):
            if len(getattr(self, name)) != n:
                raise ValueError(f"Ping beam array '{name}' has {len(getattr(self, name))} beams, expected {n}")

        if self.flags_original is None:
            self.flags_original = self.flags.copy()
        else:
            self.flags_original = np.asarray(self.flags_original, dtype=FLAG_DTYPE)

        if self.bathcorr is None:
            self.bathcorr = self.bath.copy()
        if self.bathlon is None:
            self.bathlon = np.full(n, np.nan)
        if self.bathlat is None:
            self.bathlat = np.full(n, np.nan)
        if self.bathx is None:
            self.bathx = np.full(n, np.nan)
        if self.bathy is None:
            self.bathy = np.full(n, np.nan)

    @property
    def n_beams(self) -> int:
        return len(self.bath)

    def flag(self, beam: int) -> BeamFlag:
        return BeamFlag(int(self.flags[beam]))

    def reset_flags(self):
        """Restore load-time flags."""
        self.flags[:] = self.flags_original


@dataclass
class SwathFile:
    """One loaded swath file and the pings it owns."""
    path: Optional[Path]
    pings: List[Ping] = field(default_factory=list)
    beamwidth_xtrack: float = 0.0            # Across-track beam width (deg), <= 0 = unknown
    beamwidth_ltrack: float = 0.0            # Along-track beam width (deg), <= 0 = unknown
    topo_type: str = TOPO_MULTIBEAM
    heading_series: Optional[ScalarSeries] = None
    sonardepth_series: Optional[ScalarSeries] = None
    attitude_series: Optional[AttitudeSeries] = None

    # Session state
    file_id: int = -1
    esf_changed: bool = False
    projection_id: str = ""

    def __post_init__(self):
        if self.path is not None:
            self.path = Path(self.path)

    @property
    def name(self) -> str:
        return self.path.name if self.path is not None else f"<memory:{self.file_id}>"

    @property
    def n_pings(self) -> int:
        return len(self.pings)

    @property
    def n_beams_total(self) -> int:
        return sum(ping.n_beams for ping in self.pings)

    @property
    def ping_times(self) -> np.ndarray:
        return np.array([ping.time_d for ping in self.pings], dtype=np.float64)

    @property
    def multiplicities(self) -> np.ndarray:
        return np.array([ping.multiplicity for ping in self.pings], dtype=np.int64)

    @property
    def is_multibeam(self) -> bool:
        return self.topo_type == TOPO_MULTIBEAM

    def esf_path(self, suffix: str = ".esf") -> Optional[Path]:
        """Edit save file associated with this swath (``<path><suffix>``)."""
        if self.path is None:
            return None
        return self.path.with_name(self.path.name + suffix)

    def append_pings(self, pings: Sequence[Ping]):
        """
        Append pings, leaving the file untouched if growth fails.

        Raises:
            SwathAllocationError: If the larger ping list cannot be allocated
        """
        try:
            grown = self.pings + list(pings)
        except MemoryError as e:
            raise SwathAllocationError(
                f"Cannot grow {self.name} from {self.n_pings} to {self.n_pings + len(pings)} pings"
            ) from e
        self.pings = grown

    def bounds(self) -> Optional[Tuple[float, float, float, float]]:
        """(lon_min, lon_max, lat_min, lat_max) over navigation and usable beams."""
        lons = []
        lats = []
        for ping in self.pings:
            lons.append(np.array([ping.navlon]))
            lats.append(np.array([ping.navlat]))
            usable = ping.flags != BeamFlag.NULL
            lons.append(ping.bathlon[usable])
            lats.append(ping.bathlat[usable])
        if not lons:
            return None

        lon = np.concatenate(lons)
        lat = np.concatenate(lats)
        valid = np.isfinite(lon) & np.isfinite(lat)
        if not valid.any():
            return None
        return (
            float(lon[valid].min()),
            float(lon[valid].max()),
            float(lat[valid].min()),
            float(lat[valid].max()),
        )

    def depth_max(self) -> float:
        best = 0.0
        for ping in self.pings:
            usable = ping.flags != BeamFlag.NULL
            if usable.any():
                best = max(best, float(np.nanmax(ping.bathcorr[usable])))
        return best

    def altitude_max(self) -> float:
        if not self.pings:
            return 0.0
        return max(ping.altitude for ping in self.pings)

    def flag_counts(self) -> Dict[str, int]:
        """Number of soundings in each flag state."""
        counts = {flag.name.lower(): 0 for flag in BeamFlag}
        for ping in self.pings:
            values, n = np.unique(ping.flags, return_counts=True)
            for value, count in zip(values, n):
                counts[BeamFlag(int(value)).name.lower()] += int(count)
        return counts


class FileSwathStore:
    """
    Owner of all loaded swath files.

    Files are addressed by the integer id assigned at load time. Slots of
    unloaded files are kept empty so ids stay stable for the whole session.
    """

    def __init__(self):
        self._files: List[Optional[SwathFile]] = []

    def load(self, swath: SwathFile) -> SwathFile:
        """
        Take ownership of a decoded swath file and assign its id.

        Raises:
            SwathAllocationError: If the file table cannot grow
        """
        file_id = len(self._files)
        try:
            self._files.append(swath)
        except MemoryError as e:
            raise SwathAllocationError(f"Cannot register {swath.name}") from e
        swath.file_id = file_id
        logger.info(
            f"Loaded {swath.name} as file {file_id}: "
            f"{swath.n_pings} pings, {swath.n_beams_total} beams"
        )
        return swath

    def unload(self, file_id: int) -> SwathFile:
        """Release a file's pings and free its slot."""
        swath = self.get(file_id)
        self._files[file_id] = None
        n_pings = swath.n_pings
        swath.pings = []
        logger.info(f"Unloaded file {file_id} ({swath.name}), released {n_pings} pings")
        return swath

    def get(self, file_id: int) -> SwathFile:
        if file_id < 0 or file_id >= len(self._files) or self._files[file_id] is None:
            raise UnknownFileError(f"File {file_id} is not loaded")
        return self._files[file_id]

    def pings_of(self, file_id: int) -> List[Ping]:
        return self.get(file_id).pings

    def ping(self, file_id: int, ping_index: int) -> Ping:
        return self.get(file_id).pings[ping_index]

    def loaded(self) -> Iterator[SwathFile]:
        """Loaded files in id order."""
        return (swath for swath in self._files if swath is not None)

    def bounds(self) -> Optional[Tuple[float, float, float, float]]:
        """Combined lon/lat bounds of every loaded file."""
        boxes = [b for b in (swath.bounds() for swath in self.loaded()) if b is not None]
        if not boxes:
            return None
        boxes = np.array(boxes)
        return (
            float(boxes[:, 0].min()),
            float(boxes[:, 1].max()),
            float(boxes[:, 2].min()),
            float(boxes[:, 3].max()),
        )

    def __len__(self) -> int:
        return sum(1 for _ in self.loaded())

    def __iter__(self) -> Iterator[SwathFile]:
        return self.loaded()

    def __contains__(self, file_id: int) -> bool:
        return 0 <= file_id < len(self._files) and self._files[file_id] is not None
