from __future__ import annotations

import asyncio
import json
from typing import Any, TypeVar

import pytest
from pydantic import BaseModel

from echodepict.config import PipelineFailure, PipelineSettings, PipelineSuccess
from echodepict.errors import GenerationError, SchemaViolationError
from echodepict.pipeline import PipelineEvent, PipelineHooks, PipelineOrchestrator, compose
from echodepict.stages import COMPOSER, AnalyzerOutput, ComposerOutput, NarratorOutput, validate_payload

T = TypeVar("T", bound=BaseModel)

ANALYSIS = {"summary": "S", "trends": "T", "patterns": "P", "sentiment": "negative"}
AUDIO_MAPPING = {
    "key": "C minor",
    "tempo": 80,
    "instrumentation": ["strings", "piano"],
    "dataMapping": [
        {"time": 0, "note": "C4", "duration": 1, "velocity": 0.8},
        {"time": 0.5, "note": "E4", "duration": 0.5},
    ],
}
NARRATION = [
    {"timestamp": 0.0, "text": "The data begins low."},
    {"timestamp": 0.5, "text": "A second voice enters."},
]


class FakeInvoker:
    def __init__(self, payloads: dict[type[BaseModel], Any]) -> None:
        self._payloads = payloads
        self.calls: list[tuple[type[BaseModel], str]] = []
        self.closed = False

    async def invoke(self, prompt: str, schema: type[T]) -> T:
        self.calls.append((schema, prompt))
        payload = self._payloads[schema]
        if isinstance(payload, Exception):
            raise payload
        return validate_payload(schema, payload)

    async def aclose(self) -> None:
        self.closed = True


def _payloads(**overrides: Any) -> dict[type[BaseModel], Any]:
    payloads: dict[type[BaseModel], Any] = {
        AnalyzerOutput: {"analysis": ANALYSIS},
        ComposerOutput: {"audioMapping": AUDIO_MAPPING},
        NarratorOutput: NARRATION,
    }
    for name, value in overrides.items():
        schema = {"analyzer": AnalyzerOutput, "composer": ComposerOutput, "narrator": NarratorOutput}[name]
        payloads[schema] = value
    return payloads


def _orchestrator(invoker: FakeInvoker, hooks: PipelineHooks | None = None) -> PipelineOrchestrator:
    return PipelineOrchestrator(invoker, settings=PipelineSettings(), hooks=hooks)


@pytest.mark.asyncio
async def test_end_to_end_composition() -> None:
    invoker = FakeInvoker(_payloads())
    result = await _orchestrator(invoker).run({"type": "text", "data": "sales fell sharply"})

    assert isinstance(result, PipelineSuccess)
    composition = result.data
    notes = composition.audio_mapping.data_mapping
    assert [note.note for note in notes] == ["C4", "E4"]
    assert notes[1].velocity == 0.8
    assert composition.audio_mapping.duration == pytest.approx(1.0)
    assert composition.audio_mapping.key == "C minor"
    assert composition.audio_mapping.instrumentation == ("strings", "piano")
    assert [line.text for line in composition.narration_script] == [
        "The data begins low.",
        "A second voice enters.",
    ]


@pytest.mark.asyncio
async def test_stages_run_in_order_with_threaded_payloads() -> None:
    invoker = FakeInvoker(_payloads())
    await _orchestrator(invoker).run({"type": "text", "data": "sales fell sharply"})

    schemas = [schema for schema, _ in invoker.calls]
    assert schemas == [AnalyzerOutput, ComposerOutput, NarratorOutput]
    analyzer_prompt, composer_prompt, narrator_prompt = (prompt for _, prompt in invoker.calls)
    assert "sales fell sharply" in analyzer_prompt
    assert "text data" in analyzer_prompt
    analysis_payload = json.dumps(ANALYSIS, separators=(",", ":"))
    assert analysis_payload in composer_prompt
    assert analysis_payload in narrator_prompt


@pytest.mark.asyncio
async def test_narrator_receives_mapping_as_generated() -> None:
    raw = dict(AUDIO_MAPPING, dataMapping={"b": {"time": 2, "note": "G4", "duration": 1},
                                            "a": {"time": 0, "note": "C4", "duration": 1}},
               mood="brooding")
    invoker = FakeInvoker(_payloads(composer={"audioMapping": raw}))
    result = await _orchestrator(invoker).run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineSuccess)
    narrator_prompt = invoker.calls[2][1]
    assert '"mood":"brooding"' in narrator_prompt
    assert narrator_prompt.index('"b":') < narrator_prompt.index('"a":')
    assert "dataPoint" not in narrator_prompt
    assert [note.note for note in result.data.notes] == ["C4", "G4"]


@pytest.mark.asyncio
async def test_empty_mapping_fails_run() -> None:
    invoker = FakeInvoker(_payloads(composer={"audioMapping": dict(AUDIO_MAPPING, dataMapping=[])}))
    result = await _orchestrator(invoker).run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineFailure)
    assert result.success is False
    assert result.stage == "composer"
    assert "valid musical notes" in result.error
    assert len(invoker.calls) == 2


@pytest.mark.asyncio
async def test_non_collection_mapping_fails_run() -> None:
    invoker = FakeInvoker(_payloads(composer={"audioMapping": dict(AUDIO_MAPPING, dataMapping="C4 E4")}))
    result = await _orchestrator(invoker).run({"type": "csv", "data": "a,b\n1,2"})

    assert isinstance(result, PipelineFailure)
    assert "musical structure" in result.error


@pytest.mark.parametrize(
    "request_payload",
    [
        {"type": "text", "data": ""},
        {"type": "text", "data": "   "},
        {"type": "xml", "data": "<a/>"},
        {"data": "missing type"},
        None,
    ],
)
def test_invalid_input_fails_before_any_stage(request_payload: Any) -> None:
    invoker = FakeInvoker(_payloads())
    result = asyncio.run(_orchestrator(invoker).run(request_payload))

    assert isinstance(result, PipelineFailure)
    assert result.stage is None
    assert result.error.startswith("Invalid input")
    assert invoker.calls == []


@pytest.mark.asyncio
async def test_generation_error_short_circuits() -> None:
    invoker = FakeInvoker(_payloads(composer=GenerationError("backend unavailable")))
    result = await _orchestrator(invoker).run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineFailure)
    assert result.error == "backend unavailable"
    assert result.stage == "composer"
    assert [schema for schema, _ in invoker.calls] == [AnalyzerOutput, ComposerOutput]


@pytest.mark.asyncio
async def test_schema_violation_surfaces_from_narrator() -> None:
    invoker = FakeInvoker(_payloads(narrator=[{"text": "no timestamp"}]))
    result = await _orchestrator(invoker).run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineFailure)
    assert result.stage == "narrator"
    assert "NarratorOutput" in result.error


@pytest.mark.asyncio
async def test_blank_error_message_uses_fallback() -> None:
    invoker = FakeInvoker(_payloads(analyzer=RuntimeError()))
    result = await _orchestrator(invoker).run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineFailure)
    assert result.error == "An unknown error occurred during composition."
    assert result.stage == "analyzer"


@pytest.mark.asyncio
async def test_hooks_observe_stage_lifecycle() -> None:
    events: list[PipelineEvent] = []
    started: list[str] = []
    hooks = PipelineHooks(on_event=events.append, on_stage_start=started.append)
    await _orchestrator(FakeInvoker(_payloads()), hooks).run({"type": "text", "data": "x"})

    assert started == ["analyzer", "composer", "narrator"]
    kinds = [event.kind for event in events]
    assert kinds[0] == "run_start"
    assert kinds[-1] == "run_end"
    assert "normalized" in kinds
    assert events[-1].note_count == 2


@pytest.mark.asyncio
async def test_hook_failures_do_not_abort_run() -> None:
    def explode(_: object) -> None:
        raise RuntimeError("hook broke")

    hooks = PipelineHooks(on_event=explode)
    result = await _orchestrator(FakeInvoker(_payloads()), hooks).run({"type": "text", "data": "x"})
    assert isinstance(result, PipelineSuccess)


@pytest.mark.asyncio
async def test_error_hook_receives_exception() -> None:
    errors: list[Exception] = []
    hooks = PipelineHooks(on_error=errors.append)
    invoker = FakeInvoker(_payloads(analyzer=SchemaViolationError("bad analysis")))
    await _orchestrator(invoker, hooks).run({"type": "text", "data": "x"})

    assert len(errors) == 1
    assert isinstance(errors[0], SchemaViolationError)


@pytest.mark.asyncio
async def test_caller_invoker_is_not_closed() -> None:
    invoker = FakeInvoker(_payloads())
    await _orchestrator(invoker).run({"type": "text", "data": "x"})
    assert invoker.closed is False


def test_compose_sync_wrapper() -> None:
    result = compose({"type": "text", "data": "x"}, invoker=FakeInvoker(_payloads()), settings=PipelineSettings())
    assert result.success is True


@pytest.mark.asyncio
async def test_compose_inside_running_loop() -> None:
    result = compose({"type": "text", "data": "x"}, invoker=FakeInvoker(_payloads()), settings=PipelineSettings())
    assert isinstance(result, PipelineSuccess)


class ModelInvoker(FakeInvoker):
    def __init__(self, model: str, payloads: dict[type[BaseModel], Any]) -> None:
        super().__init__(payloads)
        self.model = model
        self.close_count = 0

    async def aclose(self) -> None:
        self.close_count += 1


def _patch_resolver(
    monkeypatch: pytest.MonkeyPatch, payloads: dict[type[BaseModel], Any]
) -> list[ModelInvoker]:
    resolved: list[ModelInvoker] = []

    def fake_resolve_invoker(spec: Any, **kwargs: Any) -> ModelInvoker:
        invoker = ModelInvoker(spec, payloads)
        resolved.append(invoker)
        return invoker

    monkeypatch.setattr("echodepict.pipeline.resolve_invoker", fake_resolve_invoker)
    return resolved


@pytest.mark.asyncio
async def test_settings_pick_per_stage_models_and_close_them(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    resolved = _patch_resolver(monkeypatch, _payloads())
    settings = PipelineSettings(default_model="m1", narrator_model="m2")

    result = await PipelineOrchestrator(settings=settings).run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineSuccess)
    assert sorted(invoker.model for invoker in resolved) == ["m1", "m2"]
    by_model = {invoker.model: invoker for invoker in resolved}
    assert [schema for schema, _ in by_model["m1"].calls] == [AnalyzerOutput, ComposerOutput]
    assert [schema for schema, _ in by_model["m2"].calls] == [NarratorOutput]
    assert all(invoker.close_count == 1 for invoker in resolved)


@pytest.mark.asyncio
async def test_resolved_invokers_closed_after_failed_run(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    resolved = _patch_resolver(monkeypatch, _payloads(narrator=GenerationError("narrator down")))
    settings = PipelineSettings(default_model="m1", narrator_model="m2")

    result = await PipelineOrchestrator(settings=settings).run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineFailure)
    assert result.stage == "narrator"
    assert sorted(invoker.model for invoker in resolved) == ["m1", "m2"]
    assert all(invoker.close_count == 1 for invoker in resolved)


def test_bad_env_settings_become_failure_result(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ECHODEPICT_TEMPERATURE", "-1")
    invoker = FakeInvoker(_payloads())

    result = compose({"type": "text", "data": "x"}, invoker=invoker)

    assert isinstance(result, PipelineFailure)
    assert result.stage is None
    assert "temperature" in result.error
    assert invoker.calls == []


@pytest.mark.asyncio
async def test_misordered_stages_become_failure_result() -> None:
    invoker = FakeInvoker(_payloads())
    orchestrator = PipelineOrchestrator(
        invoker, settings=PipelineSettings(), stages=(COMPOSER,)
    )

    result = await orchestrator.run({"type": "text", "data": "x"})

    assert isinstance(result, PipelineFailure)
    assert result.stage is None
    assert "stages must be" in result.error
    assert invoker.calls == []
