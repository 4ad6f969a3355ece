"""Turn an untrusted composer ``dataMapping`` into sorted, validated notes.

Generated mappings are noisy: entries may be missing fields or carry numbers
as strings. Individual bad records are dropped; only a mapping that is not a
collection at all is an error.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any, NamedTuple

from .config import DEFAULT_VELOCITY, InputType, Note
from .errors import InvalidMusicalStructureError

_LOGGER = logging.getLogger("echodepict.normalize")


class NormalizedNotes(NamedTuple):
    notes: tuple[Note, ...]
    duration: float


def _coerce_number(value: Any) -> float | None:
    """Finite float for ints, floats and numeric strings; None otherwise."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    elif not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _coerce_velocity(value: Any) -> float:
    number = _coerce_number(value)
    if number is None:
        return DEFAULT_VELOCITY
    return min(1.0, max(0.0, number))


def _coerce_pitch(value: Any) -> str | None:
    if not value or isinstance(value, (bool, Mapping, list, tuple)):
        return None
    pitch = str(value).strip()
    return pitch or None


def _iter_records(data_mapping: Any) -> list[Any]:
    if isinstance(data_mapping, Mapping):
        return list(data_mapping.values())
    if isinstance(data_mapping, Sequence) and not isinstance(data_mapping, (str, bytes, bytearray)):
        return list(data_mapping)
    raise InvalidMusicalStructureError(
        "Composer failed to generate a valid musical structure "
        f"(expected a list or mapping of notes, got {type(data_mapping).__name__})."
    )


def split_csv_rows(input_data: str) -> list[list[str]]:
    """Rows split on newlines, cells split on commas; no quoting rules."""

    text = input_data.rstrip("\r\n")
    if not text:
        return []
    return [row.rstrip("\r").split(",") for row in text.split("\n")]


class _ProvenanceLabeler:
    def __init__(self, input_type: InputType, input_data: str | None) -> None:
        self._input_type = input_type
        self._rows = (
            split_csv_rows(input_data) if input_type == "csv" and input_data else None
        )

    def label(self, index: int) -> str:
        # Row 0 is the header.
        if self._rows is not None and len(self._rows) > index + 1:
            return ", ".join(self._rows[index + 1])
        prefix = "Text segment" if self._input_type == "text" else "Data point"
        return f"{prefix} {index + 1}"


def _note_from_record(record: Any, data_point: str) -> Note | None:
    if not isinstance(record, Mapping):
        return None
    pitch = _coerce_pitch(record.get("note"))
    time = _coerce_number(record.get("time"))
    duration = _coerce_number(record.get("duration"))
    if pitch is None or time is None or duration is None:
        return None
    if time < 0.0 or duration <= 0.0:
        return None
    return Note(
        time=time,
        note=pitch,
        duration=duration,
        velocity=_coerce_velocity(record.get("velocity")),
        data_point=data_point,
    )


def normalize_data_mapping(
    data_mapping: Any,
    input_type: InputType,
    input_data: str | None = None,
) -> NormalizedNotes:
    """Validate composer note records.

    Accepts a list of note-like records or a mapping whose values are such
    records (flattened in enumeration order). Records without a pitch or
    with non-numeric ``time``/``duration`` are skipped. Returns the notes
    stably sorted by start time and the composition length, i.e. the latest
    note end (0.0 when nothing survives).

    Raises:
        InvalidMusicalStructureError: ``data_mapping`` is not a collection.
    """

    records = _iter_records(data_mapping)
    labeler = _ProvenanceLabeler(input_type, input_data)

    notes: list[Note] = []
    duration = 0.0
    for index, record in enumerate(records):
        note = _note_from_record(record, labeler.label(index))
        if note is None:
            _LOGGER.debug("Dropping malformed note record %d: %r", index, record)
            continue
        notes.append(note)
        duration = max(duration, note.end)

    notes.sort(key=lambda note: note.time)
    dropped = len(records) - len(notes)
    _LOGGER.info(
        "Normalized %d note(s), dropped %d, duration %.3fs", len(notes), dropped, duration
    )
    return NormalizedNotes(notes=tuple(notes), duration=duration)
