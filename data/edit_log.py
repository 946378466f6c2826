"""
Edit save files (ESF) and the per-file edit state store.

An edit log is an ordered, append-only sequence of ``EditRecord`` entries.
Replaying every record, in order, over a file's load-time flags reproduces
the file's current flags. On disk the log is a 24-byte ASCII header
followed by big-endian ``(time_d: f8, beam: i4, action: i4)`` records; the
beam field also carries the ping multiplicity as
``beam + multiplicity * MULTIPLICITY_FACTOR``.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
from tqdm import tqdm

from config import EditLogConfig
from .errors import EditLogError
from .flags import BeamFlag, EditAction, FLAG_DTYPE, flag_for_action
from .swath import SwathFile

logger = logging.getLogger(__name__)


ESF_HEADER = b"ESFVERSION03"
ESF_HEADER_SIZE = 24
MULTIPLICITY_FACTOR = 1000000
RECORD_DTYPE = np.dtype([("time_d", ">f8"), ("beam", ">i4"), ("action", ">i4")])


@dataclass(frozen=True)
class EditRecord:
    """One flag transition, keyed by ping time and encoded beam number."""
    time_d: float
    beam: int
    action: EditAction

    @classmethod
    def create(cls, time_d: float, beam_index: int, action: EditAction, multiplicity: int = 0) -> "EditRecord":
        return cls(float(time_d), int(beam_index) + int(multiplicity) * MULTIPLICITY_FACTOR, EditAction(action))

    @property
    def beam_index(self) -> int:
        return self.beam % MULTIPLICITY_FACTOR

    @property
    def multiplicity(self) -> int:
        return self.beam // MULTIPLICITY_FACTOR


@dataclass
class ReplayReport:
    """Outcome of replaying an edit log."""
    flags: List[np.ndarray]
    applied: int = 0
    skipped: int = 0                         # Beam index outside the ping
    unmatched: int = 0                       # No ping within the time tolerance
    ignored: int = 0                         # Target beam was null at load time

    @property
    def total(self) -> int:
        return self.applied + self.skipped + self.unmatched + self.ignored


def _header_bytes() -> bytes:
    return ESF_HEADER.ljust(ESF_HEADER_SIZE, b"\0")


def records_to_array(records: Sequence[EditRecord]) -> np.ndarray:
    array = np.empty(len(records), dtype=RECORD_DTYPE)
    array["time_d"] = [record.time_d for record in records]
    array["beam"] = [record.beam for record in records]
    array["action"] = [int(record.action) for record in records]
    return array


def read_edit_log(path: Union[str, Path]) -> List[EditRecord]:
    """
    Read every record of an edit save file.

    Raises:
        EditLogError: On a bad header, a truncated record or an unknown action code
    """
    path = Path(path)
    data = path.read_bytes()
    if len(data) < ESF_HEADER_SIZE or not data.startswith(ESF_HEADER[:10]):
        raise EditLogError(f"Not an edit save file (bad header): {path}")

    body = data[ESF_HEADER_SIZE:]
    if len(body) % RECORD_DTYPE.itemsize:
        raise EditLogError(
            f"Truncated edit save file {path}: {len(body) % RECORD_DTYPE.itemsize} trailing bytes"
        )

    array = np.frombuffer(body, dtype=RECORD_DTYPE)
    valid_actions = {int(action) for action in EditAction}
    records = []
    for k in range(len(array)):
        action = int(array["action"][k])
        if action not in valid_actions:
            raise EditLogError(f"Unknown edit action {action} in record {k} of {path}")
        records.append(EditRecord(float(array["time_d"][k]), int(array["beam"][k]), EditAction(action)))

    logger.debug(f"Read {len(records)} edits from {path}")
    return records


def write_edit_log(path: Union[str, Path], records: Sequence[EditRecord]):
    """Write a complete edit save file, replacing any existing one."""
    path = Path(path)
    with open(path, "wb") as f:
        f.write(_header_bytes())
        f.write(records_to_array(records).tobytes())
    logger.debug(f"Wrote {len(records)} edits to {path}")


def append_edit_log(path: Union[str, Path], records: Sequence[EditRecord]):
    """Append records, creating the file with its header if needed."""
    path = Path(path)
    if not path.exists() or path.stat().st_size == 0:
        write_edit_log(path, records)
        return
    with open(path, "ab") as f:
        f.write(records_to_array(records).tobytes())
    logger.debug(f"Appended {len(records)} edits to {path}")


def apply_record(flags: np.ndarray, flags_original: np.ndarray, beam_index: int, action: EditAction) -> bool:
    """
    Apply one edit to a live flag array.

    Beams that were null at load time carry no measurement and are never
    changed.

    Returns:
        True if the edit was applied
    """
    if flags_original[beam_index] == BeamFlag.NULL:
        return False
    flags[beam_index] = flag_for_action(action)
    return True


def replay_flags(
    original_flags: Sequence[np.ndarray],
    ping_times: np.ndarray,
    records: Sequence[EditRecord],
    tolerance: float = 0.00011,
    multiplicities: Optional[np.ndarray] = None,
) -> ReplayReport:
    """
    Replay an edit log over load-time flags.

    Records are applied strictly in log order. A record matches the ping
    closest in time within ``tolerance`` whose multiplicity equals the
    record's. Records whose beam index is outside the ping are skipped and
    counted; replay continues with the next record.

    Args:
        original_flags: Load-time flag array of every ping
        ping_times: Ping timestamps (epoch seconds)
        records: Edit records in application order
        tolerance: Maximum ping time difference for a match (s)
        multiplicities: Ping multiplicity of every ping (default 0)

    Returns:
        ReplayReport with the replayed flags and per-outcome counts
    """
    ping_times = np.asarray(ping_times, dtype=np.float64)
    if multiplicities is None:
        multiplicities = np.zeros(len(ping_times), dtype=np.int64)
    flags = [np.array(f, dtype=FLAG_DTYPE, copy=True) for f in original_flags]
    report = ReplayReport(flags=flags)
    if not records:
        return report

    order = np.argsort(ping_times, kind="stable")
    sorted_times = ping_times[order]

    for record in records:
        lo = np.searchsorted(sorted_times, record.time_d - tolerance, side="left")
        hi = np.searchsorted(sorted_times, record.time_d + tolerance, side="right")
        match = -1
        best = tolerance
        for candidate in order[lo:hi]:
            dt = abs(ping_times[candidate] - record.time_d)
            if dt < best and multiplicities[candidate] == record.multiplicity:
                match = int(candidate)
                best = dt
        if match < 0:
            report.unmatched += 1
            continue

        beam_index = record.beam_index
        if beam_index >= len(flags[match]):
            report.skipped += 1
            logger.debug(
                f"Skipping edit for beam {beam_index} of ping {match}: "
                f"ping has {len(flags[match])} beams"
            )
            continue

        if apply_record(flags[match], original_flags[match], beam_index, record.action):
            report.applied += 1
        else:
            report.ignored += 1

    if report.skipped:
        logger.warning(f"Skipped {report.skipped} edit records with out-of-range beam indices")
    if report.unmatched:
        logger.warning(f"{report.unmatched} edit records matched no ping")
    return report


class EditLog:
    """
    Append-only edit log of one swath file.

    ``records`` holds the whole log in application order; records after
    the last flush are pending and reach disk on the next ``flush``.
    """

    def __init__(self, path: Optional[Path] = None, records: Optional[Sequence[EditRecord]] = None):
        self.path = Path(path) if path is not None else None
        self.records: List[EditRecord] = list(records or [])
        self._n_flushed = len(self.records)
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: Optional[Path]) -> "EditLog":
        """Open the log at ``path``, reading existing records if the file exists."""
        if path is not None and Path(path).exists():
            return cls(path, read_edit_log(path))
        return cls(path)

    def record(self, time_d: float, beam_index: int, action: EditAction, multiplicity: int = 0) -> EditRecord:
        record = EditRecord.create(time_d, beam_index, action, multiplicity)
        with self._lock:
            self.records.append(record)
        return record

    @property
    def pending(self) -> List[EditRecord]:
        return self.records[self._n_flushed:]

    def flush(self) -> int:
        """
        Write pending records to disk.

        Returns:
            Number of records written
        """
        with self._lock:
            pending = self.records[self._n_flushed:]
            if not pending:
                return 0
            if self.path is None:
                self._n_flushed = len(self.records)
                return 0
            append_edit_log(self.path, pending)
            self._n_flushed = len(self.records)
        logger.debug(f"Flushed {len(pending)} edits to {self.path}")
        return len(pending)

    def apply(
        self,
        original_flags: Sequence[np.ndarray],
        ping_times: np.ndarray,
        tolerance: float = 0.00011,
        multiplicities: Optional[np.ndarray] = None,
    ) -> ReplayReport:
        with self._lock:
            records = list(self.records)
        return replay_flags(original_flags, ping_times, records, tolerance, multiplicities)

    def __len__(self) -> int:
        return len(self.records)


class EditStateStore:
    """Edit logs of every loaded swath file, keyed by file id."""

    def __init__(self, config: Optional[EditLogConfig] = None):
        self.config = config or EditLogConfig()
        self._logs: Dict[int, EditLog] = {}

    def open(self, swath: SwathFile) -> EditLog:
        """Open (or create) the edit log of a loaded file."""
        log = EditLog.open(swath.esf_path(self.config.suffix))
        self._logs[swath.file_id] = log
        return log

    def load(self, swath: SwathFile, show_progress: bool = False) -> ReplayReport:
        """
        Open a file's log and replay it onto the file's pings.

        Every ping's current flags are replaced by the replayed flags.
        """
        log = self.open(swath)
        report = self.apply(swath.file_id, [ping.flags_original for ping in swath.pings],
                            swath.ping_times, swath.multiplicities)
        pings = tqdm(swath.pings, desc=f"Replaying {swath.name}", disable=not show_progress)
        for ping, flags in zip(pings, report.flags):
            ping.flags[:] = flags
        if len(log):
            logger.info(
                f"Replayed {report.applied} of {len(log)} edits onto {swath.name}"
                f" ({report.skipped} skipped, {report.unmatched} unmatched)"
            )
        return report

    def log(self, file_id: int) -> EditLog:
        try:
            return self._logs[file_id]
        except KeyError:
            raise KeyError(f"No edit log open for file {file_id}") from None

    def record(
        self,
        file_id: int,
        time_d: float,
        beam_index: int,
        action: EditAction,
        multiplicity: int = 0,
    ) -> EditRecord:
        record = self.log(file_id).record(time_d, beam_index, action, multiplicity)
        if self.config.flush_each_edit:
            self.flush(file_id)
        return record

    def apply(
        self,
        file_id: int,
        original_flags: Sequence[np.ndarray],
        ping_times: np.ndarray,
        multiplicities: Optional[np.ndarray] = None,
    ) -> ReplayReport:
        """Replay the whole log of ``file_id`` over ``original_flags``."""
        return self.log(file_id).apply(
            original_flags, ping_times, self.config.time_tolerance, multiplicities
        )

    def flush(self, file_id: int) -> int:
        return self.log(file_id).flush()

    def flush_all(self) -> int:
        return sum(log.flush() for log in self._logs.values())

    def close(self, file_id: int) -> int:
        """Flush and forget a file's log."""
        n = self.flush(file_id)
        del self._logs[file_id]
        return n

    def __contains__(self, file_id: int) -> bool:
        return file_id in self._logs
