"""
Projection services between geographic and planar working coordinates.

The engine treats a projection as an opaque forward/inverse function pair.
Two implementations are provided:
- UTMProjection: Universal Transverse Mercator via the ``utm`` package
- LocalProjection: flat-earth metres about an origin, for small areas and tests
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Tuple, Union

import numpy as np
import utm

from .errors import ProjectionError

logger = logging.getLogger(__name__)

ArrayLike = Union[float, np.ndarray]

# Coefficients of the meridional and parallel arc length series (m/deg)
_C1 = 111412.84
_C2 = -93.5
_C3 = 0.118
_C4 = 111132.92
_C5 = -559.82
_C6 = 1.175
_C7 = 0.0023


def coor_scale(lat: float) -> Tuple[float, float]:
    """
    Degrees per metre of longitude and latitude at a latitude.

    Returns:
        (mtodeglon, mtodeglat)
    """
    radlat = math.radians(lat)
    mtodeglon = 1.0 / abs(
        _C1 * math.cos(radlat) + _C2 * math.cos(3 * radlat) + _C3 * math.cos(5 * radlat)
    )
    mtodeglat = 1.0 / abs(
        _C4 + _C5 * math.cos(2 * radlat) + _C6 * math.cos(4 * radlat) + _C7 * math.cos(6 * radlat)
    )
    return mtodeglon, mtodeglat


def utm_zone_for(lon: float, lat: float) -> Tuple[int, bool]:
    """UTM zone number and hemisphere for a reference position."""
    reference_lon = lon
    if reference_lon < 180.0:
        reference_lon += 360.0
    if reference_lon >= 180.0:
        reference_lon -= 360.0
    zone = int(((reference_lon + 183.0) / 6.0) + 0.5)
    zone = min(max(zone, 1), 60)
    return zone, lat >= 0.0


class Projection(ABC):
    """Forward/inverse transform pair between lon/lat and planar x/y."""

    projection_id: str = ""

    @abstractmethod
    def forward(self, lon: ArrayLike, lat: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """Geographic to planar. Raises ProjectionError outside the domain."""

    @abstractmethod
    def inverse(self, x: ArrayLike, y: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """Planar to geographic."""

    def forward_many(self, lon: np.ndarray, lat: np.ndarray) -> Tuple[np.ndarray, np.ndarray, int]:
        """
        Project arrays, isolating points outside the projection domain.

        Failed points come back as NaN and are counted rather than raised.

        Returns:
            (x, y, n_failed)
        """
        lon = np.asarray(lon, dtype=np.float64)
        lat = np.asarray(lat, dtype=np.float64)
        x = np.full(lon.shape, np.nan)
        y = np.full(lon.shape, np.nan)
        valid = np.isfinite(lon) & np.isfinite(lat)
        n_failed = int(np.count_nonzero(~valid))
        if not valid.any():
            return x, y, n_failed

        try:
            px, py = self.forward(lon[valid], lat[valid])
            x[valid] = px
            y[valid] = py
        except ProjectionError:
            for k in np.flatnonzero(valid):
                try:
                    x[k], y[k] = self.forward(float(lon[k]), float(lat[k]))
                except ProjectionError:
                    n_failed += 1

        return x, y, n_failed


class UTMProjection(Projection):
    """Universal Transverse Mercator in a fixed zone."""

    def __init__(self, zone: int, northern: bool = True):
        if not 1 <= zone <= 60:
            raise ValueError(f"Invalid UTM zone: {zone}")
        self.zone = zone
        self.northern = northern
        self.projection_id = f"UTM{zone:02d}{'N' if northern else 'S'}"

    @classmethod
    def for_bounds(
        cls,
        lon_min: float,
        lon_max: float,
        lat_min: float,
        lat_max: float,
    ) -> "UTMProjection":
        """Choose the zone containing the centre of a lon/lat box."""
        zone, northern = utm_zone_for(0.5 * (lon_min + lon_max), 0.5 * (lat_min + lat_max))
        projection = cls(zone, northern)
        logger.info(f"Working projection: {projection.projection_id}")
        return projection

    def forward(self, lon, lat):
        try:
            easting, northing, _, _ = utm.from_latlon(
                lat, lon, force_zone_number=self.zone, force_northern=self.northern
            )
        except utm.OutOfRangeError as e:
            raise ProjectionError(str(e)) from e
        return easting, northing

    def inverse(self, x, y):
        lat, lon = utm.to_latlon(x, y, self.zone, northern=self.northern, strict=False)
        return lon, lat

    def __repr__(self) -> str:
        return f"UTMProjection({self.projection_id})"


class LocalProjection(Projection):
    """Flat-earth projection in metres about an origin."""

    def __init__(self, lon0: float, lat0: float):
        self.lon0 = lon0
        self.lat0 = lat0
        self.mtodeglon, self.mtodeglat = coor_scale(lat0)
        self.projection_id = f"LOCAL({lon0:.6f},{lat0:.6f})"

    def forward(self, lon, lat):
        if np.any(np.abs(np.asarray(lat)) > 90.0):
            raise ProjectionError(f"Latitude out of range for {self.projection_id}")
        x = (np.asarray(lon) - self.lon0) / self.mtodeglon
        y = (np.asarray(lat) - self.lat0) / self.mtodeglat
        if np.ndim(x) == 0:
            return float(x), float(y)
        return x, y

    def inverse(self, x, y):
        lon = self.lon0 + np.asarray(x) * self.mtodeglon
        lat = self.lat0 + np.asarray(y) * self.mtodeglat
        if np.ndim(lon) == 0:
            return float(lon), float(lat)
        return lon, lat

    def __repr__(self) -> str:
        return f"LocalProjection({self.projection_id})"
