"""
Editor session.

``EditorSession`` owns everything an interactive swath editor needs: the
loaded files, their edit logs, the current calibration bias, the grid and
the active sounding selection. The front end drives it through
``on_edit`` and ``on_bias_changed`` and receives redraw requests through an
injected ``EditorListener``.
"""

import logging
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

import numpy as np
from tqdm import tqdm

from config import EditorConfig
from data.errors import EditLogError, GridNotReadyError
from data.flags import BeamFlag, action_for_flag, canonical_flag
from data.loaders import SwathLoader
from data.edit_log import EditStateStore, ReplayReport
from data.projection import Projection, UTMProjection
from data.swath import FileSwathStore, Ping, SwathFile
from gridding.footprint import beam_footprint
from gridding.geometry import BeamGeometryCorrector, BiasParameters
from gridding.grid import GridAlgorithm, GriddedBeam, GridSpec, IncrementalGrid
from .bias import BiasMode, BiasOptimizer
from .selection import Region, SelectionBuffer, SoundingSelector

logger = logging.getLogger(__name__)


class FlushPolicy(Enum):
    """When grid changes from an edit reach the display."""
    NO_FLUSH = "no_flush"                    # Part of a batch, defer
    FLUSH = "flush"                          # Single pick, apply and redraw now
    FLUSH_PREVIOUS = "flush_previous"        # No edit; flush the preceding batch


class EditorListener:
    """
    Notifications from an ``EditorSession``.

    The default implementation ignores everything; front ends override the
    methods they need.
    """

    def on_grid_cell_updated(self, ix: int, jy: int, value: float):
        pass

    def on_grid_replaced(self, n_columns: int, n_rows: int, values: np.ndarray):
        pass

    def on_sounding_changed(self, file_id: int, ping: int, beam: int, flag: BeamFlag):
        pass

    def on_bias_applied(self, bias: BiasParameters):
        pass

    def on_flush(self):
        pass

    def on_selection_dismissed(self):
        pass

    def on_progress(self, done: int, total: int, message: str):
        pass


class EditorSession:
    """Context object of one editing session."""

    def __init__(
        self,
        config: Optional[EditorConfig] = None,
        listener: Optional[EditorListener] = None,
        projection: Optional[Projection] = None,
    ):
        self.config = config or EditorConfig()
        self.listener = listener or EditorListener()
        self.projection = projection

        self.store = FileSwathStore()
        self.edits = EditStateStore(self.config.edit_log)
        self.loader = SwathLoader()
        self.bias = BiasParameters()
        self.grid: Optional[IncrementalGrid] = None
        self.selection: Optional[SelectionBuffer] = None
        self.n_projection_failures = 0
        self.n_rejected_edits = 0
        self.last_replay: Optional[ReplayReport] = None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def load_file(self, source: Union[str, Path, SwathFile]) -> SwathFile:
        """
        Load a swath file and replay its edit log.

        If a grid exists, the file's unflagged soundings are added to it.
        """
        swath = source if isinstance(source, SwathFile) else self.loader.load(source)
        self.store.load(swath)
        try:
            report = self.edits.load(swath, show_progress=self.config.grid.show_progress)
        except EditLogError:
            self.store.unload(swath.file_id)
            raise
        swath.esf_changed = False
        self.last_replay = report

        self._update_file(swath)

        if self.grid is not None:
            cells = [self.grid.add_beam(beam, recompute=False) for beam in self.gridded_beams([swath.file_id])]
            self.grid.recompute()
            if cells:
                self._notify_grid_replaced()
        return swath

    def unload_file(self, file_id: int) -> SwathFile:
        """Save a file's edits, remove it from the grid and release it."""
        swath = self.store.get(file_id)
        self.edits.close(file_id)
        swath.esf_changed = False

        if self.grid is not None:
            removed = [self.grid.remove_beam(beam, recompute=False) for beam in self.gridded_beams([file_id])]
            self.grid.recompute()
            if removed:
                self._notify_grid_replaced()

        if self.selection is not None and np.any(self.selection.records["file_id"] == file_id):
            self.dismiss_selection()

        return self.store.unload(file_id)

    def close(self):
        """Save all edits and release every file."""
        for swath in list(self.store.loaded()):
            self.unload_file(swath.file_id)
        self.grid = None

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def _update_file(self, swath: SwathFile) -> int:
        corrector = BeamGeometryCorrector(self.bias)
        n_failed = 0
        for ping in swath.pings:
            n_failed += corrector.update_ping(ping, swath, self.projection)
        if self.projection is not None:
            swath.projection_id = self.projection.projection_id
        return n_failed

    def _ensure_projection(self):
        if self.projection is not None:
            return
        bounds = self.store.bounds()
        if bounds is None:
            raise GridNotReadyError("No soundings loaded")
        self.projection = UTMProjection.for_bounds(*bounds)
        self.project_soundings()

    def project_soundings(self) -> int:
        """
        Recompute corrected and projected positions of every loaded beam
        with the current bias.

        Returns:
            Number of beams that could not be projected
        """
        files = list(self.store.loaded())
        n_failed = 0
        for swath in tqdm(files, desc="Projecting", disable=not self.config.grid.show_progress):
            n_failed += self._update_file(swath)
        self.n_projection_failures = n_failed
        if n_failed:
            logger.warning(f"{n_failed} soundings could not be projected and are excluded")
        return n_failed

    # ------------------------------------------------------------------
    # Grid
    # ------------------------------------------------------------------

    def _beam_widths(self, swath: SwathFile):
        bw_x = swath.beamwidth_xtrack if swath.beamwidth_xtrack > 0 else self.config.footprint.beamwidth_xtrack
        bw_l = swath.beamwidth_ltrack if swath.beamwidth_ltrack > 0 else self.config.footprint.beamwidth_ltrack
        return bw_x, bw_l

    def _gridded_beam(self, swath: SwathFile, ping: Ping, beam: int) -> GriddedBeam:
        x = float(ping.bathx[beam])
        y = float(ping.bathy[beam])
        depth = float(ping.bathcorr[beam])
        if not swath.is_multibeam:
            return GriddedBeam(x, y, depth, None)
        bw_x, bw_l = self._beam_widths(swath)
        footprint = beam_footprint(
            x, y, ping.navx, ping.navy, depth, ping.sonardepth,
            bw_x, bw_l, self.config.footprint.min_half_extent,
        )
        return GriddedBeam(x, y, depth, footprint)

    def gridded_beams(self, file_ids=None) -> Iterator[GriddedBeam]:
        """Grid inputs of every unflagged, projected sounding."""
        files = self.store.loaded() if file_ids is None else (self.store.get(k) for k in file_ids)
        for swath in files:
            for ping in swath.pings:
                usable = (ping.flags == BeamFlag.OK) & np.isfinite(ping.bathx) & np.isfinite(ping.bathy)
                for beam in np.flatnonzero(usable):
                    yield self._gridded_beam(swath, ping, int(beam))

    def make_grid(self, cell_size: Optional[float] = None, algorithm: Optional[str] = None) -> IncrementalGrid:
        """
        Build the grid covering every loaded file.

        Args:
            cell_size: Cell size (m); default from config, else derived
            algorithm: Grid algorithm; default from config
        """
        if not len(self.store):
            raise GridNotReadyError("No files loaded")
        self._ensure_projection()

        grid_config = replace(
            self.config.grid,
            cell_size=cell_size if cell_size is not None else self.config.grid.cell_size,
            algorithm=GridAlgorithm(algorithm).value if algorithm is not None else self.config.grid.algorithm,
        )
        files = list(self.store.loaded())
        spec = GridSpec.from_lonlat_bounds(
            self.store.bounds(),
            self.projection,
            grid_config.cell_size,
            depth_max=max(swath.depth_max() for swath in files),
            altitude_max=max(swath.altitude_max() for swath in files),
        )
        self.grid = IncrementalGrid(spec, grid_config)
        self._rebuild_grid()
        return self.grid

    def _rebuild_grid(self):
        beams = list(self.gridded_beams())
        self.grid.rebuild_from(
            beams,
            progress_callback=lambda done, total: self.listener.on_progress(done, total, "Gridding"),
        )
        self._notify_grid_replaced()

    def _notify_grid_replaced(self):
        spec = self.grid.spec
        self.listener.on_grid_replaced(spec.n_columns, spec.n_rows, self.grid.value)

    def _notify_cells(self, cells: np.ndarray):
        if not len(cells):
            return
        ii, jj = self.grid.cell_ij(cells)
        values = self.grid.value
        for i, j in zip(ii.tolist(), jj.tolist()):
            self.listener.on_grid_cell_updated(i, j, float(values[i, j]))

    def flush(self):
        """Recompute deferred grid cells and notify the listener."""
        if self.grid is not None:
            self._notify_cells(self.grid.recompute())
        self.listener.on_flush()

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def on_edit(
        self,
        file_id: int,
        ping_index: int,
        beam: int,
        flag: BeamFlag,
        flush_policy: FlushPolicy = FlushPolicy.FLUSH,
    ) -> bool:
        """
        Change a sounding's flag.

        The edit is recorded in the file's edit log; if the sounding enters
        or leaves the unflagged state its contribution is added to or
        removed from the grid.

        Returns:
            True if the flag changed
        """
        if flush_policy is FlushPolicy.FLUSH_PREVIOUS:
            self.flush()
            return False

        swath = self.store.get(file_id)
        if not 0 <= ping_index < swath.n_pings:
            raise IndexError(f"Ping {ping_index} outside file {file_id} ({swath.n_pings} pings)")
        ping = swath.pings[ping_index]
        if not 0 <= beam < ping.n_beams:
            raise IndexError(f"Beam {beam} outside ping {ping_index} of file {file_id} ({ping.n_beams} beams)")
        if ping.flags_original[beam] == BeamFlag.NULL:
            self.n_rejected_edits += 1
            logger.debug(f"Ignoring edit of null beam {file_id}/{ping_index}/{beam}")
            return False

        old = BeamFlag(int(ping.flags[beam]))
        new = canonical_flag(BeamFlag(flag))
        if new == old:
            return False

        if self.grid is not None and old.is_ok != new.is_ok:
            recompute = flush_policy is FlushPolicy.FLUSH or self.config.grid.recompute_immediately
            gridded = self._gridded_beam(swath, ping, beam)
            if new.is_ok:
                cells = self.grid.add_beam(gridded, recompute)
            else:
                cells = self.grid.remove_beam(gridded, recompute)
            if recompute:
                self._notify_cells(cells)

        ping.flags[beam] = new
        swath.esf_changed = True

        if self.selection is not None:
            index = self.selection.find(file_id, ping_index, beam)
            if index is not None:
                self.selection.update_flag(index, new)

        # A failed disk write leaves the record pending in memory
        try:
            self.edits.record(file_id, ping.time_d, beam, action_for_flag(new), ping.multiplicity)
        except OSError as e:
            logger.error(f"Edit of {file_id}/{ping_index}/{beam} kept in memory, save failed: {e}")
            raise

        self.listener.on_sounding_changed(file_id, ping_index, beam, new)
        if flush_policy is FlushPolicy.FLUSH:
            self.flush()
        return True

    def save_edits(self) -> int:
        """
        Write every pending edit to the edit save files.

        Returns:
            Number of records written
        """
        n = self.edits.flush_all()
        for swath in self.store.loaded():
            swath.esf_changed = False
        if n:
            logger.info(f"Saved {n} edits")
        return n

    def flag_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for swath in self.store.loaded():
            for name, n in swath.flag_counts().items():
                counts[name] = counts.get(name, 0) + n
        return counts

    # ------------------------------------------------------------------
    # Bias
    # ------------------------------------------------------------------

    def on_bias_changed(self, roll: float, pitch: float, heading: float, timelag: float, snell: float):
        """Front-end entry point for a calibration change."""
        self.apply_bias(BiasParameters(roll, pitch, heading, timelag, snell))

    def apply_bias(self, bias: BiasParameters):
        """
        Make ``bias`` current for every loaded beam.

        Positions are recomputed and, since beams move, an existing grid is
        rebuilt from scratch.
        """
        self.bias = bias
        self.project_soundings()
        if self.grid is not None:
            self._rebuild_grid()
        if self.selection is not None:
            self._selector().apply_bias(self.selection, bias)
        logger.info(
            f"Applied bias: roll {bias.roll} pitch {bias.pitch} heading {bias.heading} "
            f"timelag {bias.timelag} snell {bias.snell}"
        )
        self.listener.on_bias_applied(bias)

    def preview_bias(self, bias: BiasParameters) -> SelectionBuffer:
        """Recompute only the selection's positions under ``bias``."""
        if self.selection is None:
            raise ValueError("No active selection")
        self._selector().apply_bias(self.selection, bias)
        return self.selection

    def optimize_bias(self, mode: BiasMode) -> BiasParameters:
        """
        Search for the bias minimizing depth variance of the selection.

        The best values are previewed on the selection, not applied to
        the grid.
        """
        if self.selection is None:
            raise ValueError("No active selection")
        optimizer = BiasOptimizer(
            self._selector(),
            self._cell_size(),
            progress_callback=self.listener.on_progress,
        )
        best = optimizer.optimize(self.selection, BiasMode(mode))
        self.preview_bias(best)
        return best

    def _cell_size(self) -> float:
        if self.grid is not None:
            return self.grid.spec.dx
        if self.config.grid.cell_size is not None:
            return self.config.grid.cell_size
        depth = max((swath.depth_max() for swath in self.store.loaded()), default=0.0)
        return 0.02 * depth if depth > 0 else 1.0

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _selector(self) -> SoundingSelector:
        self._ensure_projection()
        return SoundingSelector(self.store, self.projection, self.config.selection)

    def select(self, region: Region) -> SelectionBuffer:
        """Gather the soundings in ``region`` with the current bias."""
        self.selection = self._selector().select(region, self.bias)
        return self.selection

    def dismiss_selection(self):
        self.selection = None
        self.listener.on_selection_dismissed()

    def sounding_info(self, file_id: int, ping_index: int, beam: int) -> str:
        """One-line description of a sounding."""
        swath = self.store.get(file_id)
        ping = swath.pings[ping_index]
        flag = BeamFlag(int(ping.flags[beam]))
        return (
            f"{swath.name} ping {ping_index} beam {beam}: "
            f"time {ping.time_d:.3f} "
            f"lon {ping.bathlon[beam]:.8f} lat {ping.bathlat[beam]:.8f} "
            f"depth {ping.bathcorr[beam]:.3f} m "
            f"x {ping.bathx[beam]:.3f} y {ping.bathy[beam]:.3f} "
            f"flag {flag.name.lower()}"
        )
