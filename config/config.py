"""
Configuration module for the swath editing and gridding engine.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional
from pathlib import Path
import yaml


GRID_ALGORITHMS = ("footprint", "simple_mean", "shoal_bias")


@dataclass
class GridConfig:
    """Configuration for the incremental bathymetry grid."""
    algorithm: str = "footprint"             # "footprint", "simple_mean", "shoal_bias"
    cell_size: Optional[float] = None        # Cell size (m), None = derive from altitude/depth
    weight_epsilon: float = 1e-6             # Cells below this accumulated weight have no data
    nodata_value: float = -1000000.0         # Sentinel written to value/sigma of empty cells
    recompute_immediately: bool = True       # Recompute touched cells on every beam edit
    accept_conditional: bool = False         # Also grid cells classified as conditional
    rebuild_workers: int = 1                 # Threads used by full rebuilds
    show_progress: bool = False              # tqdm progress bar during rebuilds


@dataclass
class FootprintConfig:
    """Configuration for beam footprint estimation."""
    beamwidth_xtrack: float = 2.0            # Default across-track beam width (deg)
    beamwidth_ltrack: float = 2.0            # Default along-track beam width (deg)
    min_half_extent: float = 0.01            # Substituted for degenerate footprints (m)


@dataclass
class SelectionConfig:
    """Configuration for sounding selection."""
    include_secondary_picks: bool = False    # Include secondary-pick soundings
    alloc_chunk: int = 1024                  # Growth step of the selection buffer


@dataclass
class EditLogConfig:
    """Configuration for edit save files."""
    suffix: str = ".esf"
    time_tolerance: float = 0.00011          # Max ping time difference for a record match (s)
    flush_each_edit: bool = False            # Write every edit to disk immediately


@dataclass
class EditorConfig:
    """Master configuration class."""
    # Sub-configs
    grid: GridConfig = field(default_factory=GridConfig)
    footprint: FootprintConfig = field(default_factory=FootprintConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    edit_log: EditLogConfig = field(default_factory=EditLogConfig)

    # Paths
    data_dir: Optional[str] = None
    output_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    def save(self, path: Path):
        """Save configuration to YAML file."""
        path = Path(path)
        with open(path, 'w') as f:
            yaml.dump(asdict(self), f, default_flow_style=False)

    @classmethod
    def load(cls, path: Path) -> "EditorConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        # Reconstruct nested dataclasses
        return cls(
            grid=GridConfig(**data.get('grid', {})),
            footprint=FootprintConfig(**data.get('footprint', {})),
            selection=SelectionConfig(**data.get('selection', {})),
            edit_log=EditLogConfig(**data.get('edit_log', {})),
            data_dir=data.get('data_dir'),
            output_dir=data.get('output_dir'),
            log_level=data.get('log_level', 'INFO'),
        )

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.grid.algorithm not in GRID_ALGORITHMS:
            raise ValueError(f"Unknown grid algorithm: {self.grid.algorithm}")
        if self.grid.cell_size is not None and self.grid.cell_size <= 0:
            raise ValueError("Grid cell size must be positive")
        if self.grid.weight_epsilon < 0:
            raise ValueError("Weight epsilon must be non-negative")
        if self.grid.rebuild_workers < 1:
            raise ValueError("Rebuild workers must be at least 1")
        if self.footprint.min_half_extent <= 0:
            raise ValueError("Minimum footprint half extent must be positive")
        if self.selection.alloc_chunk < 1:
            raise ValueError("Selection allocation chunk must be at least 1")
        if self.edit_log.time_tolerance <= 0:
            raise ValueError("Edit time tolerance must be positive")
        if not self.edit_log.suffix.startswith("."):
            raise ValueError(f"Edit log suffix must start with '.': {self.edit_log.suffix}")
