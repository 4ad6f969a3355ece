from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Coroutine, Literal, TypeVar

from pydantic import BaseModel, ConfigDict

from .config import (
    STAGE_NAMES,
    Analysis,
    AudioMapping,
    Composition,
    NarrationLine,
    PipelineFailure,
    PipelineInput,
    PipelineResult,
    PipelineSettings,
    PipelineSuccess,
    RawAudioMapping,
    StageName,
    parse_pipeline_input,
)
from .errors import EmptyCompositionError, InvalidConfigError
from .logging_utils import debug_enabled, stage_logger
from .models import GenerativeInvoker, InvokerSpec, close_invoker, owns_invoker, resolve_invoker
from .normalize import normalize_data_mapping
from .stages import (
    ANALYZER,
    COMPOSER,
    NARRATOR,
    AnalyzerInput,
    ComposerInput,
    NarratorInput,
    StageContract,
)

_LOGGER = logging.getLogger("echodepict.pipeline")
_EXECUTOR = ThreadPoolExecutor(max_workers=1)
_UNKNOWN_ERROR = "An unknown error occurred during composition."

InT = TypeVar("InT", bound=BaseModel)
OutT = TypeVar("OutT", bound=BaseModel)
T = TypeVar("T")


class PipelineEvent(BaseModel):
    kind: Literal[
        "run_start",
        "stage_start",
        "stage_end",
        "normalized",
        "run_end",
        "error",
    ]
    stage: StageName | None = None
    note_count: int | None = None
    duration: float | None = None
    error: Exception | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class PipelineHooks(BaseModel):
    on_event: Callable[[PipelineEvent], None] | None = None
    on_stage_start: Callable[[StageName], None] | None = None
    on_stage_end: Callable[[StageName], None] | None = None
    on_error: Callable[[Exception], None] | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


def _emit_event(hooks: PipelineHooks | None, event: PipelineEvent) -> None:
    if hooks is None:
        return
    callbacks: list[Callable[[], None]] = []
    if hooks.on_event is not None:
        on_event = hooks.on_event
        callbacks.append(lambda: on_event(event))
    match event.kind:
        case "stage_start" if hooks.on_stage_start is not None and event.stage is not None:
            on_stage_start, stage = hooks.on_stage_start, event.stage
            callbacks.append(lambda: on_stage_start(stage))
        case "stage_end" if hooks.on_stage_end is not None and event.stage is not None:
            on_stage_end, stage = hooks.on_stage_end, event.stage
            callbacks.append(lambda: on_stage_end(stage))
        case "error" if hooks.on_error is not None and event.error is not None:
            on_error, error = hooks.on_error, event.error
            callbacks.append(lambda: on_error(error))
        case _:
            pass
    for callback in callbacks:
        try:
            callback()
        except Exception as exc:
            _LOGGER.warning("Pipeline hook failed for %s: %s", event.kind, exc, exc_info=True)


def _error_message(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or _UNKNOWN_ERROR


class PipelineOrchestrator:
    """Runs Analyzer -> Composer -> Narrator and assembles a Composition.

    Stages run strictly in order; each waits for the previous stage's
    validated output. Any failure ends the run with a PipelineFailure and no
    partial composition. Failed generative calls are not retried.
    """

    def __init__(
        self,
        invoker: InvokerSpec | None = None,
        *,
        settings: PipelineSettings | None = None,
        hooks: PipelineHooks | None = None,
        stages: tuple[StageContract[Any, Any], ...] | None = None,
    ) -> None:
        self._invoker_spec = invoker
        # Resolved on first use inside run(), so bad env values become a failure result.
        self._settings = settings
        self._hooks = hooks
        self._stages = stages

    @property
    def settings(self) -> PipelineSettings:
        if self._settings is None:
            self._settings = PipelineSettings.from_env()
        return self._settings

    def _stage_contracts(
        self,
    ) -> tuple[
        StageContract[AnalyzerInput, Any],
        StageContract[ComposerInput, Any],
        StageContract[NarratorInput, Any],
    ]:
        if self._stages is None:
            return ANALYZER, COMPOSER, NARRATOR
        names = tuple(getattr(contract, "name", None) for contract in self._stages)
        if names != STAGE_NAMES:
            raise InvalidConfigError(
                f"stages must be analyzer, composer and narrator contracts in order, got {names}"
            )
        analyzer, composer, narrator = self._stages
        return analyzer, composer, narrator

    async def run(self, request: PipelineInput | Any) -> PipelineResult:
        """Run one composition; never raises."""

        stage: StageName | None = None
        opened: dict[str, GenerativeInvoker] = {}

        def _enter(name: StageName) -> None:
            nonlocal stage
            stage = name

        _emit_event(self._hooks, PipelineEvent(kind="run_start"))
        try:
            composition = await self._run_stages(request, opened, _enter)
        except Exception as exc:
            where = stage or "setup"
            _LOGGER.warning(
                "Composition pipeline failed at %s: %s", where, exc, exc_info=debug_enabled()
            )
            _emit_event(self._hooks, PipelineEvent(kind="error", stage=stage, error=exc))
            return PipelineFailure(error=_error_message(exc), stage=stage)
        finally:
            for invoker in opened.values():
                await close_invoker(invoker)

        _emit_event(
            self._hooks,
            PipelineEvent(
                kind="run_end",
                note_count=len(composition.notes),
                duration=composition.duration,
            ),
        )
        return PipelineSuccess(data=composition)

    async def _run_stages(
        self,
        request: PipelineInput | Any,
        opened: dict[str, GenerativeInvoker],
        enter: Callable[[StageName], None],
    ) -> Composition:
        analyzer, composer, narrator = self._stage_contracts()
        settings = self.settings
        _LOGGER.debug("Stage models: %s", [settings.model_for(name) for name in STAGE_NAMES])
        validated = parse_pipeline_input(request)
        _LOGGER.info("Starting composition for %s input (%d chars)", validated.type, len(validated.data))

        enter("analyzer")
        analyzer_out = await self._call_stage(
            analyzer,
            AnalyzerInput(input_type=validated.type, input_data=validated.data),
            opened,
        )
        analysis: Analysis = analyzer_out.analysis
        analysis_payload = analysis.to_payload()

        enter("composer")
        composer_out = await self._call_stage(
            composer,
            ComposerInput(analysis=analysis_payload),
            opened,
        )
        raw_mapping: RawAudioMapping = composer_out.audio_mapping
        normalized = normalize_data_mapping(raw_mapping.data_mapping, validated.type, validated.data)
        if not normalized.notes:
            raise EmptyCompositionError(
                "The composer failed to generate any valid musical notes. "
                "Please try a different input."
            )
        _emit_event(
            self._hooks,
            PipelineEvent(
                kind="normalized",
                stage="composer",
                note_count=len(normalized.notes),
                duration=normalized.duration,
            ),
        )
        audio_mapping = AudioMapping(
            key=raw_mapping.key,
            tempo=raw_mapping.tempo,
            instrumentation=tuple(raw_mapping.instrumentation),
            data_mapping=normalized.notes,
            duration=normalized.duration,
        )

        enter("narrator")
        narrator_out = await self._call_stage(
            narrator,
            # The narrator reads the mapping as generated, not the normalized notes.
            NarratorInput(analysis=analysis_payload, audio_mapping=raw_mapping.to_payload()),
            opened,
        )
        narration: tuple[NarrationLine, ...] = narrator_out.lines

        composition = Composition(audio_mapping=audio_mapping, narration_script=narration)
        _LOGGER.info(
            "Composition complete: %d note(s), %d narration line(s), %.2fs",
            len(composition.notes),
            len(narration),
            composition.duration,
        )
        return composition

    async def _call_stage(
        self,
        contract: StageContract[InT, OutT],
        stage_input: InT,
        opened: dict[str, GenerativeInvoker],
    ) -> OutT:
        log = stage_logger(_LOGGER, contract.name)
        _emit_event(self._hooks, PipelineEvent(kind="stage_start", stage=contract.name))
        prompt = contract.build_prompt(stage_input)
        invoker = self._invoker_for(contract, opened)
        log.info("%s stage started", contract.name)
        log.debug("Stage input: %s", stage_input.model_dump_json(by_alias=True))
        output = await invoker.invoke(prompt, contract.output_model)
        log.debug("Stage output: %s", output.model_dump_json(by_alias=True))
        _emit_event(self._hooks, PipelineEvent(kind="stage_end", stage=contract.name))
        return output

    def _invoker_for(
        self,
        contract: StageContract[Any, Any],
        opened: dict[str, GenerativeInvoker],
    ) -> GenerativeInvoker:
        spec: InvokerSpec
        if contract.model is not None:
            spec = contract.model
        elif self._invoker_spec is not None:
            spec = self._invoker_spec
        else:
            spec = self.settings.model_for(contract.name)

        if not owns_invoker(spec):
            return resolve_invoker(spec)
        key = spec if isinstance(spec, str) else spec.model_dump_json()
        if key not in opened:
            opened[key] = resolve_invoker(
                spec,
                api_key=self.settings.api_key,
                temperature=self.settings.temperature,
            )
        return opened[key]


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    return _EXECUTOR.submit(lambda: asyncio.run(coro)).result()


async def acompose(
    request: PipelineInput | Any,
    *,
    invoker: InvokerSpec | None = None,
    settings: PipelineSettings | None = None,
    hooks: PipelineHooks | None = None,
) -> PipelineResult:
    orchestrator = PipelineOrchestrator(invoker, settings=settings, hooks=hooks)
    return await orchestrator.run(request)


def compose(
    request: PipelineInput | Any,
    *,
    invoker: InvokerSpec | None = None,
    settings: PipelineSettings | None = None,
    hooks: PipelineHooks | None = None,
) -> PipelineResult:
    """Blocking wrapper around :func:`acompose`."""

    return _run_async(acompose(request, invoker=invoker, settings=settings, hooks=hooks))
