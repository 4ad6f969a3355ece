from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, RootModel, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .config import Analysis, InputType, NarrationLine, RawAudioMapping, StageName
from .errors import SchemaViolationError
from .prompts import PromptVersion, get_prompt

_LOGGER = logging.getLogger("echodepict.stages")

InT = TypeVar("InT", bound=BaseModel)
OutT = TypeVar("OutT", bound=BaseModel)

_STAGE_INPUT_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="forbid",
)


# -----------------------------------------------------------------------------
# Stage inputs and outputs
# -----------------------------------------------------------------------------


class AnalyzerInput(BaseModel):
    input_type: InputType
    input_data: str

    model_config = _STAGE_INPUT_CONFIG


class AnalyzerOutput(BaseModel):
    analysis: Analysis

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_analysis(cls, value: Any) -> Any:
        if isinstance(value, Mapping) and "analysis" not in value and "summary" in value:
            return {"analysis": value}
        return value


class ComposerInput(BaseModel):
    analysis: str

    model_config = _STAGE_INPUT_CONFIG


class ComposerOutput(BaseModel):
    audio_mapping: RawAudioMapping

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_mapping(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        if "audioMapping" in value or "audio_mapping" in value:
            return value
        if "dataMapping" in value or "data_mapping" in value:
            return {"audioMapping": value}
        return value


class NarratorInput(BaseModel):
    analysis: str
    audio_mapping: str

    model_config = _STAGE_INPUT_CONFIG


class NarratorOutput(RootModel[list[NarrationLine]]):
    @model_validator(mode="before")
    @classmethod
    def _unwrap_single_list(cls, value: Any) -> Any:
        if isinstance(value, Mapping) and len(value) == 1:
            (inner,) = value.values()
            if isinstance(inner, list):
                return inner
        return value

    @property
    def lines(self) -> tuple[NarrationLine, ...]:
        return tuple(self.root)


# -----------------------------------------------------------------------------
# Contracts
# -----------------------------------------------------------------------------


def validate_payload(schema: type[OutT], payload: str | bytes | Mapping[str, Any] | list[Any]) -> OutT:
    """Validate a JSON document or decoded value against a stage schema."""

    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise SchemaViolationError(f"{schema.__name__} payload is not valid JSON: {exc}") from exc
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        _LOGGER.debug("%s validation failed: %s", schema.__name__, exc)
        raise SchemaViolationError(
            f"{schema.__name__} payload does not match schema: {exc.error_count()} error(s)"
        ) from exc


@dataclass(frozen=True)
class StageContract(Generic[InT, OutT]):
    """Typed input/output schema pair plus the prompt for one pipeline stage."""

    name: StageName
    input_model: type[InT]
    output_model: type[OutT]
    prompt_name: str
    model: str | None = None

    @property
    def prompt(self) -> PromptVersion:
        return get_prompt(self.prompt_name)

    def build_prompt(self, stage_input: InT) -> str:
        if not isinstance(stage_input, self.input_model):
            raise TypeError(
                f"{self.name} stage expects {self.input_model.__name__}, "
                f"got {type(stage_input).__name__}"
            )
        return self.prompt.render(stage_input.model_dump(by_alias=True))

    def parse_output(self, payload: str | bytes | Mapping[str, Any] | list[Any]) -> OutT:
        return validate_payload(self.output_model, payload)

    def with_model(self, model: str | None) -> StageContract[InT, OutT]:
        return dataclasses.replace(self, model=model)

    def with_prompt(self, prompt_name: str) -> StageContract[InT, OutT]:
        get_prompt(prompt_name)
        return dataclasses.replace(self, prompt_name=prompt_name)


ANALYZER: StageContract[AnalyzerInput, AnalyzerOutput] = StageContract(
    name="analyzer",
    input_model=AnalyzerInput,
    output_model=AnalyzerOutput,
    prompt_name="analyzer_v1",
)
COMPOSER: StageContract[ComposerInput, ComposerOutput] = StageContract(
    name="composer",
    input_model=ComposerInput,
    output_model=ComposerOutput,
    prompt_name="composer_v1",
)
NARRATOR: StageContract[NarratorInput, NarratorOutput] = StageContract(
    name="narrator",
    input_model=NarratorInput,
    output_model=NarratorOutput,
    prompt_name="narrator_v1",
)
