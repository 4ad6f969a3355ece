from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from echodepict.config import (
    DEFAULT_MODEL,
    AudioMapping,
    Composition,
    NarrationLine,
    Note,
    PipelineInput,
    PipelineSettings,
    parse_pipeline_input,
)
from echodepict.errors import InvalidConfigError, InvalidInputError

_ENV_KEYS = (
    "ECHODEPICT_MODEL",
    "ECHODEPICT_ANALYZER_MODEL",
    "ECHODEPICT_COMPOSER_MODEL",
    "ECHODEPICT_NARRATOR_MODEL",
    "ECHODEPICT_TEMPERATURE",
    "ECHODEPICT_API_KEY",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def _composition() -> Composition:
    return Composition(
        audio_mapping=AudioMapping(
            key="D minor",
            tempo=72,
            instrumentation=("strings", "harp"),
            data_mapping=(
                Note(time=0.0, note="D4", duration=1.0, velocity=0.5, data_point="Q1, 10"),
                Note(time=1.0, note="F4", duration=2.0, data_point="Q2, 14"),
            ),
            duration=3.0,
        ),
        narration_script=(NarrationLine(timestamp=0.0, text="It begins quietly."),),
    )


def test_settings_defaults(clean_env: pytest.MonkeyPatch) -> None:
    settings = PipelineSettings.from_env()
    assert settings.default_model == DEFAULT_MODEL
    assert settings.temperature is None
    assert settings.api_key is None
    assert settings.model_for("narrator") == DEFAULT_MODEL


def test_settings_per_stage_overrides(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ECHODEPICT_MODEL", "openai/gpt-4o-mini")
    clean_env.setenv("ECHODEPICT_COMPOSER_MODEL", "anthropic/claude-3-haiku")
    clean_env.setenv("ECHODEPICT_TEMPERATURE", "0.4")
    clean_env.setenv("ECHODEPICT_API_KEY", "  secret  ")

    settings = PipelineSettings.from_env()

    assert settings.model_for("analyzer") == "openai/gpt-4o-mini"
    assert settings.model_for("composer") == "anthropic/claude-3-haiku"
    assert settings.temperature == 0.4
    assert settings.api_key == "secret"


def test_settings_ignore_bad_temperature(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ECHODEPICT_TEMPERATURE", "warm")
    assert PipelineSettings.from_env().temperature is None


def test_settings_reject_negative_temperature(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ECHODEPICT_TEMPERATURE", "-1")
    with pytest.raises(InvalidConfigError):
        PipelineSettings.from_env()


def test_composition_uses_camel_case_on_the_wire() -> None:
    payload = json.loads(_composition().to_json())

    assert set(payload) == {"audioMapping", "narrationScript"}
    assert payload["audioMapping"]["dataMapping"][0] == {
        "time": 0.0,
        "note": "D4",
        "duration": 1.0,
        "velocity": 0.5,
        "dataPoint": "Q1, 10",
    }
    assert payload["audioMapping"]["duration"] == 3.0


def test_composition_from_json() -> None:
    restored = Composition.from_json(_composition().to_json(indent=None))
    assert restored == _composition()
    assert restored.notes[1].velocity == 0.8
    assert restored.notes[1].end == 3.0


def test_composition_from_json_rejects_garbage() -> None:
    with pytest.raises(InvalidInputError):
        Composition.from_json('{"audioMapping": {}}')


def test_audio_mapping_requires_sorted_notes() -> None:
    with pytest.raises(ValidationError):
        AudioMapping(
            key="C",
            tempo=100,
            instrumentation=(),
            data_mapping=(
                Note(time=2.0, note="C4", duration=1.0, data_point="b"),
                Note(time=1.0, note="D4", duration=1.0, data_point="a"),
            ),
            duration=3.0,
        )


@pytest.mark.parametrize(
    "kwargs",
    [
        {"time": -0.1, "note": "C4", "duration": 1.0, "data_point": "x"},
        {"time": 0.0, "note": "", "duration": 1.0, "data_point": "x"},
        {"time": 0.0, "note": "C4", "duration": 0.0, "data_point": "x"},
        {"time": 0.0, "note": "C4", "duration": 1.0, "velocity": 1.5, "data_point": "x"},
    ],
)
def test_note_invariants(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        Note(**kwargs)  # type: ignore[arg-type]


def test_parse_pipeline_input() -> None:
    parsed = parse_pipeline_input({"type": "csv", "data": "a,b\n1,2"})
    assert parsed == PipelineInput(type="csv", data="a,b\n1,2")
    assert parse_pipeline_input(parsed) is parsed


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "xml", "data": "<a/>"},
        {"type": "text", "data": "   "},
        {"type": "text"},
        "just a string",
    ],
)
def test_parse_pipeline_input_rejects(payload: object) -> None:
    with pytest.raises(InvalidInputError) as excinfo:
        parse_pipeline_input(payload)
    assert str(excinfo.value).startswith("Invalid input: ")
