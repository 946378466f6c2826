from .geometry import (
    BiasParameters,
    AttitudeCorrection,
    BeamPosition,
    BeamGeometryCorrector,
    apply_biases_and_timelag,
    snell_correction,
    rotate_beams,
    correct_beam,
)
from .footprint import Footprint, estimate_footprint, estimate_footprints, beam_footprint, footprint_window
from .weights import BinUsage, erf, erf_array, bin_weight, bin_weights
from .grid import (
    GridAlgorithm,
    GridSpec,
    GriddedBeam,
    Contribution,
    GridCell,
    GridStats,
    IncrementalGrid,
    beam_contribution,
    apply_contribution,
)
from .writers import GridWriter

__all__ = [
    # Geometry
    "BiasParameters",
    "AttitudeCorrection",
    "BeamPosition",
    "BeamGeometryCorrector",
    "apply_biases_and_timelag",
    "snell_correction",
    "rotate_beams",
    "correct_beam",
    # Footprint
    "Footprint",
    "estimate_footprint",
    "estimate_footprints",
    "beam_footprint",
    "footprint_window",
    # Weights
    "BinUsage",
    "erf",
    "erf_array",
    "bin_weight",
    "bin_weights",
    # Grid
    "GridAlgorithm",
    "GridSpec",
    "GriddedBeam",
    "Contribution",
    "GridCell",
    "GridStats",
    "IncrementalGrid",
    "beam_contribution",
    "apply_contribution",
    # Writers
    "GridWriter",
]
