"""
Beam footprint estimation.

The footprint of a beam is the ellipse it insonifies on the seafloor:
``half_width`` along the horizontal direction from the sonar to the beam
(across-track for a multibeam), ``half_length`` perpendicular to it.
"""

import logging
import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

logger = logging.getLogger(__name__)


MIN_BEAMWIDTH = 1.0                          # Substituted for beam widths <= 0 (deg)
MAX_FOOTPRINT_ANGLE = 89.0                   # Beam angle + half width is capped here (deg)
MIN_WINDOW_CELLS = 2


@dataclass(frozen=True)
class Footprint:
    """Elliptical beam footprint in projected coordinates."""
    half_width: float                        # Semi-axis along (dxn, dyn) (m)
    half_length: float                       # Semi-axis perpendicular to (dxn, dyn) (m)
    theta: float = 0.0                       # Beam angle from vertical (deg)
    dxn: float = 1.0                         # Unit vector from sonar to beam
    dyn: float = 0.0

    def to_local(self, dx, dy):
        """Rotate offsets into footprint-aligned coordinates."""
        return dx * self.dxn + dy * self.dyn, -dx * self.dyn + dy * self.dxn


def estimate_footprints(
    lateral: np.ndarray,
    altitude: np.ndarray,
    beamwidth_xtrack: float,
    beamwidth_ltrack: float,
    min_half_extent: float = 0.01,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Footprint half extents for arrays of beams.

    Args:
        lateral: Horizontal distance from sonar to beam (m)
        altitude: Vertical distance from sonar to beam (m)
        beamwidth_xtrack: Across-track beam width (deg)
        beamwidth_ltrack: Along-track beam width (deg)
        min_half_extent: Substituted for degenerate or non-finite results (m)

    Returns:
        (half_width, half_length, theta) arrays
    """
    lateral = np.abs(np.asarray(lateral, dtype=np.float64))
    altitude = np.asarray(altitude, dtype=np.float64)

    if beamwidth_xtrack <= 0.0:
        beamwidth_xtrack = MIN_BEAMWIDTH
    if beamwidth_ltrack <= 0.0:
        beamwidth_ltrack = MIN_BEAMWIDTH
    dtheta = 0.5 * beamwidth_xtrack
    dphi = 0.5 * beamwidth_ltrack

    slant_range = np.sqrt(lateral * lateral + altitude * altitude)
    theta = np.degrees(np.arctan2(lateral, altitude))
    edge = np.minimum(theta + dtheta, MAX_FOOTPRINT_ANGLE)

    with np.errstate(invalid="ignore"):
        half_width = altitude * np.tan(np.radians(edge)) - lateral
        half_length = slant_range * math.tan(math.radians(dphi))

    degenerate = ~(altitude > 0.0) | ~(slant_range > 0.0)
    half_width = np.where(degenerate | ~(np.isfinite(half_width) & (half_width > min_half_extent)),
                          min_half_extent, half_width)
    half_length = np.where(degenerate | ~(np.isfinite(half_length) & (half_length > min_half_extent)),
                           min_half_extent, half_length)
    return half_width, half_length, theta


def estimate_footprint(
    lateral: float,
    altitude: float,
    beamwidth_xtrack: float,
    beamwidth_ltrack: float,
    min_half_extent: float = 0.01,
) -> Footprint:
    """Footprint of one beam (orientation left at the default)."""
    hw, hl, theta = estimate_footprints(
        np.array([lateral]), np.array([altitude]), beamwidth_xtrack, beamwidth_ltrack, min_half_extent
    )
    return Footprint(float(hw[0]), float(hl[0]), float(theta[0]))


def beam_footprint(
    beam_x: float,
    beam_y: float,
    nav_x: float,
    nav_y: float,
    depth: float,
    sonardepth: float,
    beamwidth_xtrack: float,
    beamwidth_ltrack: float,
    min_half_extent: float = 0.01,
) -> Footprint:
    """Oriented footprint of a beam from projected beam and sonar positions."""
    foot_dx = beam_x - nav_x
    foot_dy = beam_y - nav_y
    lateral = math.hypot(foot_dx, foot_dy) if math.isfinite(foot_dx) and math.isfinite(foot_dy) else 0.0
    if lateral > 0.0:
        dxn = foot_dx / lateral
        dyn = foot_dy / lateral
    else:
        dxn, dyn = 1.0, 0.0

    hw, hl, theta = estimate_footprints(
        np.array([lateral]), np.array([depth - sonardepth]),
        beamwidth_xtrack, beamwidth_ltrack, min_half_extent,
    )
    return Footprint(float(hw[0]), float(hl[0]), float(theta[0]), dxn, dyn)


def footprint_window(footprint: Footprint, dx: float, dy: float) -> Tuple[int, int]:
    """
    Half size, in cells, of the grid window a footprint can influence.

    The window spans twice the footprint's projected extent in each axis
    and never less than ``MIN_WINDOW_CELLS`` cells.
    """
    wix = abs(footprint.half_width * footprint.dxn / dx)
    wiy = abs(footprint.half_width * footprint.dyn / dy)
    lix = abs(footprint.half_length * footprint.dyn / dx)
    liy = abs(footprint.half_length * footprint.dxn / dy)
    dix = max(MIN_WINDOW_CELLS, int(math.ceil(2.0 * max(wix, lix))))
    diy = max(MIN_WINDOW_CELLS, int(math.ceil(2.0 * max(wiy, liy))))
    return dix, diy
