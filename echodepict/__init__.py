from __future__ import annotations

from .config import (
    Analysis,
    AudioMapping,
    Composition,
    NarrationLine,
    Note,
    PipelineFailure,
    PipelineInput,
    PipelineResult,
    PipelineSettings,
    PipelineSuccess,
    RawAudioMapping,
)
from .errors import (
    EchoDepictError,
    EmptyCompositionError,
    GenerationError,
    InvalidInputError,
    InvalidMusicalStructureError,
    SchemaViolationError,
)
from .logging_utils import configure_logging as _configure_logging
from .models import ExternalModelSpec, GenerativeInvoker, resolve_invoker
from .normalize import NormalizedNotes, normalize_data_mapping
from .pipeline import PipelineEvent, PipelineHooks, PipelineOrchestrator, acompose, compose
from .playback import PlaybackClock, PlaybackFrame, PlaybackSession, TransportClock
from .stages import ANALYZER, COMPOSER, NARRATOR, StageContract
from .timeline import TimelineIndex, active_narration_line, active_note, format_time

__all__ = [
    "ANALYZER",
    "COMPOSER",
    "NARRATOR",
    "Analysis",
    "AudioMapping",
    "Composition",
    "EchoDepictError",
    "EmptyCompositionError",
    "ExternalModelSpec",
    "GenerationError",
    "GenerativeInvoker",
    "InvalidInputError",
    "InvalidMusicalStructureError",
    "NarrationLine",
    "NormalizedNotes",
    "Note",
    "PipelineEvent",
    "PipelineFailure",
    "PipelineHooks",
    "PipelineInput",
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineSettings",
    "PipelineSuccess",
    "PlaybackClock",
    "PlaybackFrame",
    "PlaybackSession",
    "RawAudioMapping",
    "SchemaViolationError",
    "StageContract",
    "TimelineIndex",
    "TransportClock",
    "acompose",
    "active_narration_line",
    "active_note",
    "compose",
    "format_time",
    "normalize_data_mapping",
    "resolve_invoker",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
