"""
Sounding flag states and edit actions.

A sounding carries exactly one ``BeamFlag``. Edit save files record
``EditAction`` codes rather than flags; the two mappings below convert
between them and define what replaying a record does to a sounding.
"""

from enum import IntEnum

import numpy as np


class BeamFlag(IntEnum):
    """State of a single sounding."""
    OK = 0
    MANUAL = 1
    SONAR = 2
    FILTER = 3
    FILTER2 = 4
    SECONDARY = 5
    NULL = 6

    @property
    def is_ok(self) -> bool:
        return self is BeamFlag.OK

    @property
    def is_null(self) -> bool:
        return self is BeamFlag.NULL

    @property
    def is_flagged(self) -> bool:
        """Flagged but still carrying a measurement."""
        return self not in (BeamFlag.OK, BeamFlag.NULL)


class EditAction(IntEnum):
    """Edit save file action codes."""
    FLAG = 1
    UNFLAG = 2
    ZERO = 3
    FILTER = 4


FLAG_DTYPE = np.int8


def action_for_flag(flag: BeamFlag) -> EditAction:
    """Edit action that records a transition into ``flag``."""
    flag = BeamFlag(flag)
    if flag is BeamFlag.OK:
        return EditAction.UNFLAG
    if flag in (BeamFlag.FILTER, BeamFlag.FILTER2):
        return EditAction.FILTER
    if flag in (BeamFlag.MANUAL, BeamFlag.SONAR, BeamFlag.SECONDARY):
        return EditAction.FLAG
    return EditAction.ZERO


def flag_for_action(action: EditAction) -> BeamFlag:
    """Flag a sounding holds after ``action`` is replayed onto it."""
    action = EditAction(action)
    if action is EditAction.UNFLAG:
        return BeamFlag.OK
    if action is EditAction.FLAG:
        return BeamFlag.MANUAL
    if action is EditAction.FILTER:
        return BeamFlag.FILTER
    return BeamFlag.NULL


def canonical_flag(flag: BeamFlag) -> BeamFlag:
    """
    The flag a replay of the edit recorded for ``flag`` reproduces.

    Interactive edits store this value so the live flag array always matches
    a from-scratch replay of the edit log.
    """
    return flag_for_action(action_for_flag(flag))


def ok_mask(flags: np.ndarray) -> np.ndarray:
    """Boolean mask of unflagged soundings."""
    return np.asarray(flags) == BeamFlag.OK


def usable_mask(flags: np.ndarray, include_secondary: bool = True) -> np.ndarray:
    """Boolean mask of soundings that carry a measurement."""
    flags = np.asarray(flags)
    mask = flags != BeamFlag.NULL
    if not include_secondary:
        mask &= flags != BeamFlag.SECONDARY
    return mask
