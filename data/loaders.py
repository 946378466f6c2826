"""
Loaders for decoded swath data.

Sonar formats are decoded upstream; this module reads and writes the
decoded pings as a numpy ``.npz`` archive:

- per-ping navigation arrays (``time_d``, ``navlon``, ``navlat``, ``heading``,
  ``speed``, ``roll``, ``pitch``, ``heave``, ``sonardepth``, ``altitude``,
  ``multiplicity``) and the beam count of each ping (``n_beams``)
- per-beam arrays of every ping concatenated in ping order (``bath``,
  ``acrosstrack``, ``alongtrack``, ``flags`` and optionally ``amp``)
- file attributes (``beamwidth_xtrack``, ``beamwidth_ltrack``, ``topo_type``)
- optional asynchronous series (``heading_series_*``, ``sonardepth_series_*``,
  ``attitude_series_*``)

Flags stored in the archive are the load-time flags. Interactive edits
never modify the archive; they live in the edit save file beside it.
"""

import logging
from pathlib import Path
from typing import Dict, List, Union

import numpy as np

from .flags import FLAG_DTYPE
from .swath import AttitudeSeries, Ping, ScalarSeries, SwathFile, TOPO_MULTIBEAM

logger = logging.getLogger(__name__)


NAV_FIELDS = (
    "time_d", "navlon", "navlat", "heading", "speed",
    "roll", "pitch", "heave", "sonardepth", "altitude",
)
BEAM_FIELDS = ("bath", "acrosstrack", "alongtrack")


class SwathLoader:
    """Load decoded swath files."""

    SUPPORTED_FORMATS = {'.npz'}

    def load(self, path: Union[str, Path]) -> SwathFile:
        """
        Load a decoded swath file.

        Args:
            path: Path to the swath archive

        Returns:
            SwathFile with all pings and load-time flags
        """
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        suffix = path.suffix.lower()

        if suffix == '.npz':
            return self._load_npz(path)
        else:
            raise ValueError(f"Unsupported format: {suffix}")

    def _load_npz(self, path: Path) -> SwathFile:
        """Load a numpy swath archive."""
        logger.info(f"Loading swath archive: {path}")

        with np.load(path, allow_pickle=False) as archive:
            missing = [name for name in NAV_FIELDS + BEAM_FIELDS + ("n_beams", "flags") if name not in archive]
            if missing:
                raise ValueError(f"Swath archive {path} is missing arrays: {missing}")

            n_beams = archive["n_beams"].astype(np.int64)
            offsets = np.concatenate([[0], np.cumsum(n_beams)])
            n_total = int(offsets[-1])
            for name in BEAM_FIELDS + ("flags",):
                if len(archive[name]) != n_total:
                    raise ValueError(
                        f"Swath archive {path}: '{name}' has {len(archive[name])} beams, expected {n_total}"
                    )

            nav = {name: archive[name].astype(np.float64) for name in NAV_FIELDS}
            beams = {name: archive[name].astype(np.float64) for name in BEAM_FIELDS}
            flags = archive["flags"].astype(FLAG_DTYPE)
            amp = archive["amp"].astype(np.float64) if "amp" in archive else None
            multiplicity = (
                archive["multiplicity"].astype(np.int64)
                if "multiplicity" in archive
                else np.zeros(len(n_beams), dtype=np.int64)
            )

            pings = []
            for k in range(len(n_beams)):
                lo, hi = offsets[k], offsets[k + 1]
                pings.append(Ping(
                    **{name: float(nav[name][k]) for name in NAV_FIELDS},
                    bath=beams["bath"][lo:hi].copy(),
                    acrosstrack=beams["acrosstrack"][lo:hi].copy(),
                    alongtrack=beams["alongtrack"][lo:hi].copy(),
                    flags=flags[lo:hi].copy(),
                    multiplicity=int(multiplicity[k]),
                    amp=amp[lo:hi].copy() if amp is not None else None,
                ))

            swath = SwathFile(
                path=path,
                pings=pings,
                beamwidth_xtrack=float(archive["beamwidth_xtrack"]) if "beamwidth_xtrack" in archive else 0.0,
                beamwidth_ltrack=float(archive["beamwidth_ltrack"]) if "beamwidth_ltrack" in archive else 0.0,
                topo_type=str(archive["topo_type"]) if "topo_type" in archive else TOPO_MULTIBEAM,
                heading_series=self._series(archive, "heading_series", circular=True),
                sonardepth_series=self._series(archive, "sonardepth_series"),
                attitude_series=self._attitude(archive),
            )

        logger.info(f"Swath archive loaded: {swath.n_pings} pings, {swath.n_beams_total} beams")
        return swath

    @staticmethod
    def _series(archive, prefix: str, circular: bool = False):
        if f"{prefix}_time" not in archive:
            return None
        return ScalarSeries(archive[f"{prefix}_time"], archive[f"{prefix}_value"], circular=circular)

    @staticmethod
    def _attitude(archive):
        if "attitude_series_time" not in archive:
            return None
        return AttitudeSeries(
            archive["attitude_series_time"],
            archive["attitude_series_roll"],
            archive["attitude_series_pitch"],
        )


class SwathWriter:
    """Write decoded swath files."""

    def save(self, swath: SwathFile, path: Union[str, Path], format: str = None):
        """
        Save a swath file.

        Args:
            swath: SwathFile to save
            path: Output file path
            format: Output format (inferred from extension if not specified)
        """
        path = Path(path)

        if format is None:
            format = path.suffix.lower()

        if format == '.npz':
            self._save_npz(swath, path)
        else:
            raise ValueError(f"Unsupported output format: {format}")

    def _save_npz(self, swath: SwathFile, path: Path):
        logger.info(f"Saving swath archive: {path}")

        arrays: Dict[str, np.ndarray] = {
            name: np.array([getattr(ping, name) for ping in swath.pings], dtype=np.float64)
            for name in NAV_FIELDS
        }
        arrays["multiplicity"] = np.array([ping.multiplicity for ping in swath.pings], dtype=np.int64)
        arrays["n_beams"] = np.array([ping.n_beams for ping in swath.pings], dtype=np.int64)
        for name in BEAM_FIELDS:
            arrays[name] = self._concat([getattr(ping, name) for ping in swath.pings], np.float64)
        arrays["flags"] = self._concat([ping.flags_original for ping in swath.pings], FLAG_DTYPE)
        if swath.pings and all(ping.amp is not None for ping in swath.pings):
            arrays["amp"] = self._concat([ping.amp for ping in swath.pings], np.float64)

        arrays["beamwidth_xtrack"] = np.float64(swath.beamwidth_xtrack)
        arrays["beamwidth_ltrack"] = np.float64(swath.beamwidth_ltrack)
        arrays["topo_type"] = np.array(swath.topo_type)

        if swath.heading_series is not None:
            arrays["heading_series_time"] = swath.heading_series.time
            arrays["heading_series_value"] = swath.heading_series.value
        if swath.sonardepth_series is not None:
            arrays["sonardepth_series_time"] = swath.sonardepth_series.time
            arrays["sonardepth_series_value"] = swath.sonardepth_series.value
        if swath.attitude_series is not None:
            arrays["attitude_series_time"] = swath.attitude_series.time
            arrays["attitude_series_roll"] = swath.attitude_series.roll
            arrays["attitude_series_pitch"] = swath.attitude_series.pitch

        with open(path, 'wb') as f:
            np.savez_compressed(f, **arrays)

        logger.info(f"Saved {swath.n_pings} pings to {path}")

    @staticmethod
    def _concat(parts: List[np.ndarray], dtype) -> np.ndarray:
        if not parts:
            return np.zeros(0, dtype=dtype)
        return np.concatenate(parts).astype(dtype)
