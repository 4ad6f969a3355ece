from __future__ import annotations

import logging
import os
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidConfigError, InvalidInputError

_LOGGER = logging.getLogger("echodepict.config")

InputType = Literal["csv", "text"]
StageName = Literal["analyzer", "composer", "narrator"]
STAGE_NAMES: tuple[StageName, ...] = ("analyzer", "composer", "narrator")

DEFAULT_MODEL = "gemini/gemini-1.5-flash"
DEFAULT_VELOCITY = 0.8

# Wire names are camelCase; attributes stay snake_case.
_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="forbid",
)
# Generated payloads may carry keys the schema does not name; drop them.
_LENIENT_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="ignore",
)


# -----------------------------------------------------------------------------
# Stage payloads
# -----------------------------------------------------------------------------


class Analysis(BaseModel):
    """Analyzer findings, threaded to later stages as a JSON string."""

    summary: str = Field(description="A summary of the analysis.")
    trends: str = Field(description="Identified trends in the data.")
    patterns: str = Field(description="Identified patterns in the data.")
    sentiment: str = Field(description="Sentiment analysis of the data.")

    model_config = _LENIENT_CONFIG

    def to_payload(self) -> str:
        return self.model_dump_json(by_alias=True)


class RawAudioMapping(BaseModel):
    """Composer output as generated; `data_mapping` is deliberately untyped."""

    key: str = Field(description="The key of the composition (e.g., C minor).")
    tempo: float = Field(gt=0.0, description="The tempo of the composition in BPM.")
    instrumentation: list[str] = Field(description="The instruments used in the composition.")
    data_mapping: Any = Field(
        description=(
            "The mapping of data values to musical notes. Each entry has time (seconds), "
            "note (pitch name such as C4), duration (seconds) and velocity (0-1)."
        ),
    )

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_payload(self) -> str:
        return self.model_dump_json(by_alias=True)


# -----------------------------------------------------------------------------
# Composition
# -----------------------------------------------------------------------------


class Note(BaseModel):
    time: float = Field(ge=0.0)
    note: str = Field(min_length=1)
    duration: float = Field(gt=0.0)
    velocity: float = Field(default=DEFAULT_VELOCITY, ge=0.0, le=1.0)
    data_point: str

    model_config = _WIRE_CONFIG

    @property
    def end(self) -> float:
        return self.time + self.duration


class AudioMapping(BaseModel):
    key: str
    tempo: float = Field(gt=0.0)
    instrumentation: tuple[str, ...]
    data_mapping: tuple[Note, ...]
    duration: float = Field(ge=0.0)

    model_config = _WIRE_CONFIG

    @model_validator(mode="after")
    def _check_note_order(self) -> AudioMapping:
        times = [note.time for note in self.data_mapping]
        if any(later < earlier for earlier, later in zip(times, times[1:])):
            raise ValueError("dataMapping notes must be sorted by time")
        return self


class NarrationLine(BaseModel):
    timestamp: float = Field(ge=0.0, description="Seconds from the start of playback.")
    text: str = Field(description="The text spoken at that time.")

    model_config = _LENIENT_CONFIG


class Composition(BaseModel):
    """Terminal artifact of one pipeline run."""

    audio_mapping: AudioMapping
    narration_script: tuple[NarrationLine, ...]

    model_config = _WIRE_CONFIG

    @property
    def notes(self) -> tuple[Note, ...]:
        return self.audio_mapping.data_mapping

    @property
    def duration(self) -> float:
        return self.audio_mapping.duration

    def to_json(self, *, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)

    @classmethod
    def from_json(cls, payload: str | bytes) -> Composition:
        try:
            return cls.model_validate_json(payload)
        except ValidationError as exc:
            _LOGGER.warning("Failed to parse composition: %s", exc, exc_info=True)
            raise InvalidInputError(f"Invalid composition: {exc}") from exc


# -----------------------------------------------------------------------------
# Pipeline boundary
# -----------------------------------------------------------------------------


class PipelineInput(BaseModel):
    type: InputType
    data: str

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("data")
    @classmethod
    def _validate_data(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("data must not be empty")
        return value


def parse_pipeline_input(payload: PipelineInput | Any) -> PipelineInput:
    """Validate a raw request, raising InvalidInputError on failure."""

    if isinstance(payload, PipelineInput):
        return payload
    try:
        return PipelineInput.model_validate(payload)
    except ValidationError as exc:
        _LOGGER.warning("Rejected pipeline input: %s", exc)
        raise InvalidInputError(_input_error_message(exc)) from exc


def _input_error_message(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "input"
        problems.append(f"{location}: {error['msg']}")
    return "Invalid input: " + "; ".join(problems)


class PipelineSuccess(BaseModel):
    success: Literal[True] = True
    data: Composition

    model_config = ConfigDict(frozen=True, extra="forbid")


class PipelineFailure(BaseModel):
    success: Literal[False] = False
    error: str
    stage: StageName | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


PipelineResult = PipelineSuccess | PipelineFailure


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------


def _env_str(name: str) -> str | None:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_float(name: str, default: float | None) -> float | None:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        _LOGGER.warning("Ignoring non-numeric %s=%r", name, value)
        return default


class PipelineSettings(BaseModel):
    """Model selection and request options for the three stages."""

    default_model: str = DEFAULT_MODEL
    analyzer_model: str | None = None
    composer_model: str | None = None
    narrator_model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0)
    api_key: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    def model_for(self, stage: StageName) -> str:
        match stage:
            case "analyzer":
                override = self.analyzer_model
            case "composer":
                override = self.composer_model
            case "narrator":
                override = self.narrator_model
            case _:
                raise InvalidConfigError(f"Unknown stage: {stage!r}")
        return override or self.default_model

    @classmethod
    def from_env(cls) -> PipelineSettings:
        try:
            return cls(
                default_model=_env_str("ECHODEPICT_MODEL") or DEFAULT_MODEL,
                analyzer_model=_env_str("ECHODEPICT_ANALYZER_MODEL"),
                composer_model=_env_str("ECHODEPICT_COMPOSER_MODEL"),
                narrator_model=_env_str("ECHODEPICT_NARRATOR_MODEL"),
                temperature=_env_float("ECHODEPICT_TEMPERATURE", None),
                api_key=_env_str("ECHODEPICT_API_KEY"),
            )
        except ValidationError as exc:
            _LOGGER.warning("Invalid pipeline settings: %s", exc, exc_info=True)
            raise InvalidConfigError(str(exc)) from exc
