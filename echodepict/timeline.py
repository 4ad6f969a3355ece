from __future__ import annotations

import math
import numbers

import numpy as np
from numpy.typing import NDArray

from .config import Composition, NarrationLine, Note

FloatArray = NDArray[np.float64]


def _valid_time(time: float) -> bool:
    return isinstance(time, numbers.Real) and not isinstance(time, bool) and math.isfinite(time)


class TimelineIndex:
    """Read-only lookups of the note and narration line active at a time.

    Built once per composition and queried on every playback tick.
    """

    __slots__ = ("_composition", "_note_starts", "_note_ends", "_line_stamps")

    def __init__(self, composition: Composition) -> None:
        self._composition = composition
        notes = composition.audio_mapping.data_mapping
        self._note_starts: FloatArray = np.fromiter(
            (note.time for note in notes), dtype=np.float64, count=len(notes)
        )
        self._note_ends: FloatArray = np.fromiter(
            (note.end for note in notes), dtype=np.float64, count=len(notes)
        )
        lines = composition.narration_script
        self._line_stamps: FloatArray = np.fromiter(
            (line.timestamp for line in lines), dtype=np.float64, count=len(lines)
        )

    @property
    def composition(self) -> Composition:
        return self._composition

    @property
    def notes(self) -> tuple[Note, ...]:
        return self._composition.audio_mapping.data_mapping

    @property
    def narration(self) -> tuple[NarrationLine, ...]:
        return self._composition.narration_script

    @property
    def duration(self) -> float:
        return self._composition.audio_mapping.duration

    def active_note_index(self, time: float) -> int | None:
        if not _valid_time(time) or self._note_starts.size == 0:
            return None
        # Last note started at or before `time`; equal starts resolve to the later one.
        index = int(np.searchsorted(self._note_starts, time, side="right")) - 1
        if index < 0:
            return None
        if time >= self._note_ends[index]:
            return None
        return index

    def active_note(self, time: float) -> Note | None:
        """The most recently started note, if it is still sounding at ``time``."""

        index = self.active_note_index(time)
        if index is None:
            return None
        return self.notes[index]

    def active_narration_index(self, time: float) -> int | None:
        if not _valid_time(time) or self._line_stamps.size == 0:
            return None
        # Script order is kept as generated, so scan instead of bisecting.
        started = np.flatnonzero(self._line_stamps <= time)
        if started.size == 0:
            return None
        return int(started[-1])

    def active_narration_line(self, time: float) -> NarrationLine | None:
        """The last line in script order whose timestamp is at or before ``time``."""

        index = self.active_narration_index(time)
        if index is None:
            return None
        return self.narration[index]


def active_note(composition: Composition, time: float) -> Note | None:
    return TimelineIndex(composition).active_note(time)


def active_narration_line(composition: Composition, time: float) -> NarrationLine | None:
    return TimelineIndex(composition).active_narration_line(time)


def progress(time: float, duration: float) -> float:
    """Playback position as a percentage of ``duration`` (0-100)."""

    if duration <= 0 or not _valid_time(time):
        return 0.0
    return min(100.0, max(0.0, time / duration * 100.0))


def time_from_progress(percent: float, duration: float) -> float:
    """Inverse of :func:`progress`, used when scrubbing."""

    if duration <= 0 or not _valid_time(percent):
        return 0.0
    return min(duration, max(0.0, percent / 100.0 * duration))


def format_time(seconds: float) -> str:
    if not _valid_time(seconds) or seconds < 0:
        seconds = 0.0
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"
