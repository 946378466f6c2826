"""
Exceptions raised by the swath editing engine.

Per-beam and per-cell problems are never raised; they are counted by the
operation that encountered them. Only structural failures reach the caller.
"""


class SwathEditError(Exception):
    """Base class for all swath editing errors."""


class SwathAllocationError(SwathEditError):
    """Growing ping, beam or selection storage failed. Prior state is intact."""


class EditLogError(SwathEditError):
    """An edit save file is structurally malformed (bad header, truncated record)."""


class ProjectionError(SwathEditError):
    """A point lies outside the domain of the working projection."""


class GridNotReadyError(SwathEditError):
    """A grid operation was requested before a grid was built."""


class UnknownFileError(SwathEditError, KeyError):
    """A file id does not refer to a loaded swath file."""
