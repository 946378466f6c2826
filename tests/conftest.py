import numpy as np
import pytest

from config import EditorConfig
from data.flags import BeamFlag
from data.projection import LocalProjection, coor_scale
from data.swath import Ping, SwathFile
from editing.session import EditorListener, EditorSession
from gridding.geometry import rotate_beams

LON0 = -70.5
LAT0 = 42.0


def make_ping(time_d, depths, acrosstrack=None, alongtrack=None, flags=None,
              navlon=LON0, navlat=LAT0, heading=0.0, sonardepth=0.0, altitude=None, **nav):
    """Ping with beams at the given depths below a sonar at ``sonardepth``."""
    depths = np.asarray(depths, dtype=float)
    n = len(depths)
    return Ping(
        time_d=time_d,
        navlon=navlon,
        navlat=navlat,
        heading=heading,
        sonardepth=sonardepth,
        altitude=float(np.max(depths) - sonardepth) if altitude is None else altitude,
        bath=depths,
        acrosstrack=np.zeros(n) if acrosstrack is None else acrosstrack,
        alongtrack=np.zeros(n) if alongtrack is None else alongtrack,
        flags=np.full(n, BeamFlag.OK) if flags is None else flags,
        **nav,
    )


def make_line(n_pings=20, n_beams=21, depth=100.0, swath_width=100.0, spacing=2.0,
              roll_error=0.0, time0=1.7e9, path=None):
    """
    Survey line heading north over a flat seafloor.

    With ``roll_error`` the raw beams are recorded as if the sonar were
    mounted rolled by ``-roll_error`` degrees; a roll bias of
    ``roll_error`` recovers the flat seafloor.
    """
    _, mtodeglat = coor_scale(LAT0)
    across_true = np.linspace(-0.5 * swath_width, 0.5 * swath_width, n_beams)
    raw = rotate_beams(np.full(n_beams, depth), across_true, np.zeros(n_beams), 0.0, rolldelta=-roll_error)
    pings = [
        make_ping(
            time0 + k,
            raw.bathcorr.copy(),
            acrosstrack=raw.acrosstrack.copy(),
            alongtrack=raw.alongtrack.copy(),
            navlat=LAT0 + k * spacing * mtodeglat,
            altitude=depth,
        )
        for k in range(n_pings)
    ]
    return SwathFile(path=path, pings=pings, beamwidth_xtrack=2.0, beamwidth_ltrack=2.0)


class RecordingListener(EditorListener):
    """Listener that records every notification."""

    def __init__(self):
        self.cells = []
        self.replaced = 0
        self.flushes = 0
        self.soundings = []
        self.biases = []
        self.dismissed = 0

    def on_grid_cell_updated(self, ix, jy, value):
        self.cells.append((ix, jy, value))

    def on_grid_replaced(self, n_columns, n_rows, values):
        self.replaced += 1

    def on_sounding_changed(self, file_id, ping, beam, flag):
        self.soundings.append((file_id, ping, beam, flag))

    def on_bias_applied(self, bias):
        self.biases.append(bias)

    def on_flush(self):
        self.flushes += 1

    def on_selection_dismissed(self):
        self.dismissed += 1


@pytest.fixture
def projection():
    return LocalProjection(LON0, LAT0)


@pytest.fixture
def stacked_swath():
    """Two pings of three beams, all 10 m deep directly below one point."""
    return SwathFile(
        path=None,
        pings=[make_ping(1000.0 + k, [10.0, 10.0, 10.0]) for k in range(2)],
        beamwidth_xtrack=2.0,
        beamwidth_ltrack=2.0,
    )


@pytest.fixture
def line_swath():
    return make_line()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def session(projection, listener):
    config = EditorConfig()
    config.grid.cell_size = 5.0
    return EditorSession(config, listener=listener, projection=projection)
