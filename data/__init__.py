from .errors import (
    SwathEditError,
    SwathAllocationError,
    EditLogError,
    ProjectionError,
    GridNotReadyError,
    UnknownFileError,
)
from .flags import BeamFlag, EditAction, action_for_flag, flag_for_action, canonical_flag
from .swath import Ping, SwathFile, FileSwathStore, ScalarSeries, AttitudeSeries
from .loaders import SwathLoader, SwathWriter
from .edit_log import (
    EditRecord,
    EditLog,
    EditStateStore,
    ReplayReport,
    read_edit_log,
    write_edit_log,
    replay_flags,
)
from .projection import Projection, UTMProjection, LocalProjection, coor_scale

__all__ = [
    # Errors
    "SwathEditError",
    "SwathAllocationError",
    "EditLogError",
    "ProjectionError",
    "GridNotReadyError",
    "UnknownFileError",
    # Flags
    "BeamFlag",
    "EditAction",
    "action_for_flag",
    "flag_for_action",
    "canonical_flag",
    # Swath storage
    "Ping",
    "SwathFile",
    "FileSwathStore",
    "ScalarSeries",
    "AttitudeSeries",
    # Loaders
    "SwathLoader",
    "SwathWriter",
    # Edit logs
    "EditRecord",
    "EditLog",
    "EditStateStore",
    "ReplayReport",
    "read_edit_log",
    "write_edit_log",
    "replay_flags",
    # Projection
    "Projection",
    "UTMProjection",
    "LocalProjection",
    "coor_scale",
]
