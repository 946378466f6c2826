"""
Beam geometry correction.

Converts raw beam measurements (bathymetry, across-track and along-track
offsets from the navigation position) plus calibration bias into corrected
depth and geographic position.

Angles follow the vehicle frame: ``x`` across-track (starboard positive),
``l`` along-track (forward positive), ``z`` down. For a beam vector of
length ``r``, ``alpha`` is the along-track angle ``asin(l / r)`` and
``beta`` the across-track angle in the roll plane, ``pi / 2`` at nadir.
"""

import logging
import math
from dataclasses import dataclass, asdict
from typing import Optional

import numpy as np

from data.projection import Projection, coor_scale
from data.swath import Ping, SwathFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BiasParameters:
    """Calibration bias applied uniformly to every beam."""
    roll: float = 0.0                        # Roll bias (deg)
    pitch: float = 0.0                       # Pitch bias (deg)
    heading: float = 0.0                     # Heading bias (deg)
    timelag: float = 0.0                     # Navigation/attitude time lag (s)
    snell: float = 1.0                       # Beamforming sound speed ratio

    def replace(self, **changes) -> "BiasParameters":
        values = asdict(self)
        values.update(changes)
        return BiasParameters(**values)

    @property
    def is_zero(self) -> bool:
        return self == BiasParameters()


@dataclass
class AttitudeCorrection:
    """Per-ping quantities derived from bias and time lag."""
    time_d: float
    sonardepth: float
    heading: float                           # Absolute heading incl. bias (deg)
    rolldelta: float                         # Change in roll vs. decoded attitude (deg)
    pitchdelta: float                        # Change in pitch vs. decoded attitude (deg)
    roll: float                              # Vehicle roll used for Snell correction (deg)


@dataclass
class BeamPosition:
    """Corrected beam positions for one ping (arrays)."""
    bathcorr: np.ndarray                     # Corrected depth, positive down (m)
    acrosstrack: np.ndarray                  # Corrected across-track offset (m)
    alongtrack: np.ndarray                   # Corrected along-track offset (m)
    easting: np.ndarray                      # Offset east of navigation (m)
    northing: np.ndarray                     # Offset north of navigation (m)
    lon: np.ndarray
    lat: np.ndarray


def apply_biases_and_timelag(
    ping: Ping,
    bias: BiasParameters,
    swath: Optional[SwathFile] = None,
) -> AttitudeCorrection:
    """
    Derive the attitude correction of one ping.

    With a non-zero time lag, heading, sonar depth and attitude are
    interpolated from the file's asynchronous series (when present) at
    ``ping.time_d + timelag``. Biases are then added to the result.
    """
    time_d = ping.time_d + bias.timelag
    sonardepth = ping.sonardepth
    heading = ping.heading
    roll = ping.roll
    pitch = ping.pitch

    if bias.timelag != 0.0 and swath is not None:
        if swath.sonardepth_series is not None and len(swath.sonardepth_series):
            sonardepth = swath.sonardepth_series.interpolate(time_d)
        if swath.heading_series is not None and len(swath.heading_series):
            heading = swath.heading_series.interpolate(time_d)
        if swath.attitude_series is not None and len(swath.attitude_series):
            roll, pitch = swath.attitude_series.interpolate(time_d)

    heading = (heading + bias.heading) % 360.0
    return AttitudeCorrection(
        time_d=time_d,
        sonardepth=sonardepth,
        heading=heading,
        rolldelta=roll + bias.roll - ping.roll,
        pitchdelta=pitch + bias.pitch - ping.pitch,
        roll=ping.roll,
    )


def snell_correction(
    acrosstrack: np.ndarray,
    alongtrack: np.ndarray,
    depth: np.ndarray,
    snell: float,
    roll: float,
):
    """
    Rescale the across-track angle of beam vectors with Snell's law.

    The angle from vertical in the roll-removed frame is replaced by
    ``asin(snell * sin(angle))``. Beam vectors shorter than 1 mm are
    treated as vertical.

    Args:
        acrosstrack, alongtrack, depth: Beam vector relative to the sonar (m)
        snell: Ratio of true to beamforming sound speed
        roll: Vehicle roll (deg)

    Returns:
        (acrosstrack, alongtrack, depth) of the corrected vectors
    """
    x = np.asarray(acrosstrack, dtype=np.float64)
    l = np.asarray(alongtrack, dtype=np.float64)
    z = np.asarray(depth, dtype=np.float64)
    r = np.sqrt(x * x + l * l + z * z)

    short = r < 0.001
    safe_r = np.where(short, 1.0, r)
    alpha = np.where(short, 0.0, np.arcsin(np.clip(l / safe_r, -1.0, 1.0)))
    beta = np.where(short, 0.5 * np.pi, np.arctan2(z, x))

    roll_rad = math.radians(roll)
    beta = beta - roll_rad
    beta = np.arcsin(np.clip(snell * np.sin(beta - 0.5 * np.pi), -1.0, 1.0)) + 0.5 * np.pi
    beta = beta + roll_rad

    return (
        r * np.cos(alpha) * np.cos(beta),
        r * np.sin(alpha),
        r * np.cos(alpha) * np.sin(beta),
    )


def rotate_beams(
    bath: np.ndarray,
    acrosstrack: np.ndarray,
    alongtrack: np.ndarray,
    sonardepth: float,
    rolldelta: float = 0.0,
    pitchdelta: float = 0.0,
    heading: float = 0.0,
    navlon: float = 0.0,
    navlat: float = 0.0,
    snell: float = 1.0,
    roll: float = 0.0,
    sonardepth_corrected: Optional[float] = None,
) -> BeamPosition:
    """
    Core beam correction on arrays.

    The beam vector relative to the sonar is decomposed into slant range
    and along/across angles, the angle deltas are added, and the vector is
    recomposed. Heading rotates the corrected horizontal offsets to
    east/north, which are converted to lon/lat with the local scale factors
    at the navigation latitude.
    """
    if sonardepth_corrected is None:
        sonardepth_corrected = sonardepth

    x = np.asarray(acrosstrack, dtype=np.float64)
    l = np.asarray(alongtrack, dtype=np.float64)
    z = np.asarray(bath, dtype=np.float64) - sonardepth

    if snell != 1.0:
        x, l, z = snell_correction(x, l, z, snell, roll)

    if rolldelta != 0.0 or pitchdelta != 0.0:
        r = np.sqrt(x * x + l * l + z * z)
        degenerate = r <= 0.0
        safe_r = np.where(degenerate, 1.0, r)
        alpha = np.arcsin(np.clip(l / safe_r, -1.0, 1.0)) + math.radians(pitchdelta)
        beta = np.arctan2(z, x) + math.radians(rolldelta)
        x = np.where(degenerate, x, r * np.cos(alpha) * np.cos(beta))
        l = np.where(degenerate, l, r * np.sin(alpha))
        z = np.where(degenerate, z, r * np.cos(alpha) * np.sin(beta))

    h = math.radians(heading)
    sin_h = math.sin(h)
    cos_h = math.cos(h)
    easting = x * cos_h + l * sin_h
    northing = -x * sin_h + l * cos_h

    mtodeglon, mtodeglat = coor_scale(navlat)
    return BeamPosition(
        bathcorr=z + sonardepth_corrected,
        acrosstrack=x,
        alongtrack=l,
        easting=easting,
        northing=northing,
        lon=navlon + mtodeglon * easting,
        lat=navlat + mtodeglat * northing,
    )


def correct_beam(
    bath: float,
    acrosstrack: float,
    alongtrack: float,
    sonardepth: float,
    bias: BiasParameters,
    heading: float = 0.0,
    navlon: float = 0.0,
    navlat: float = 0.0,
):
    """
    Correct a single beam.

    Time lag is not applied here; it selects which navigation and attitude
    samples are passed in.

    Returns:
        (bathcorr, lon, lat)
    """
    position = rotate_beams(
        np.array([bath]), np.array([acrosstrack]), np.array([alongtrack]),
        sonardepth,
        rolldelta=bias.roll,
        pitchdelta=bias.pitch,
        heading=heading + bias.heading,
        navlon=navlon,
        navlat=navlat,
        snell=bias.snell,
    )
    return float(position.bathcorr[0]), float(position.lon[0]), float(position.lat[0])


class BeamGeometryCorrector:
    """Applies one set of bias parameters to whole pings."""

    def __init__(self, bias: Optional[BiasParameters] = None):
        self.bias = bias or BiasParameters()

    def correct(self, bath, acrosstrack, alongtrack, sonardepth, heading=0.0, navlon=0.0, navlat=0.0) -> BeamPosition:
        return rotate_beams(
            bath, acrosstrack, alongtrack, sonardepth,
            rolldelta=self.bias.roll,
            pitchdelta=self.bias.pitch,
            heading=heading + self.bias.heading,
            navlon=navlon,
            navlat=navlat,
            snell=self.bias.snell,
        )

    def correct_ping(
        self,
        ping: Ping,
        swath: Optional[SwathFile] = None,
        beams: Optional[np.ndarray] = None,
    ) -> BeamPosition:
        """Corrected positions of a ping's beams (all, or the ``beams`` subset)."""
        attitude = apply_biases_and_timelag(ping, self.bias, swath)
        index = slice(None) if beams is None else beams
        return rotate_beams(
            ping.bath[index],
            ping.acrosstrack[index],
            ping.alongtrack[index],
            ping.sonardepth,
            rolldelta=attitude.rolldelta,
            pitchdelta=attitude.pitchdelta,
            heading=attitude.heading,
            navlon=ping.navlon,
            navlat=ping.navlat,
            snell=self.bias.snell,
            roll=attitude.roll,
            sonardepth_corrected=attitude.sonardepth,
        )

    def update_ping(
        self,
        ping: Ping,
        swath: Optional[SwathFile] = None,
        projection: Optional[Projection] = None,
    ) -> int:
        """
        Store corrected and projected positions in the ping's arrays.

        Returns:
            Number of beams that could not be projected
        """
        position = self.correct_ping(ping, swath)
        ping.bathcorr = position.bathcorr
        ping.bathlon = position.lon
        ping.bathlat = position.lat
        if projection is None:
            return 0

        ping.bathx, ping.bathy, n_failed = projection.forward_many(position.lon, position.lat)
        navx, navy, nav_failed = projection.forward_many(np.array([ping.navlon]), np.array([ping.navlat]))
        ping.navx = float(navx[0])
        ping.navy = float(navy[0])
        if nav_failed:
            ping.bathx[:] = np.nan
            ping.bathy[:] = np.nan
            n_failed = ping.n_beams
        return n_failed
