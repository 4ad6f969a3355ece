from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.status import Status
from rich.table import Table

from .config import Composition, InputType, PipelineFailure, PipelineSettings
from .errors import InvalidInputError
from .logging_utils import configure_logging, debug_enabled, get_log_path, log_exception
from .pipeline import PipelineHooks, compose
from .timeline import TimelineIndex, format_time

_LOGGER = logging.getLogger("echodepict.cli")
_CONSOLE = Console()
_STAGE_MESSAGES = {
    "analyzer": "Analyzer is reading the data...",
    "composer": "Composer is writing the score...",
    "narrator": "Narrator is writing...",
}


def _read_input(args: argparse.Namespace) -> tuple[InputType, str]:
    if args.text is not None:
        return "text", args.text
    if args.text_file is not None:
        return "text", Path(args.text_file).read_text(encoding="utf-8")
    if args.csv is not None:
        return "csv", Path(args.csv).read_text(encoding="utf-8")
    raise InvalidInputError("Provide --text, --text-file or --csv.")


def _stage_hooks(status: Status) -> PipelineHooks:
    return PipelineHooks(on_stage_start=lambda stage: status.update(_STAGE_MESSAGES[stage]))


def _compose_command(args: argparse.Namespace) -> int:
    input_type, data = _read_input(args)
    settings = PipelineSettings.from_env()
    if args.model:
        settings = settings.model_copy(update={"default_model": args.model})

    with _CONSOLE.status("Starting composition") as status:
        result = compose(
            {"type": input_type, "data": data},
            settings=settings,
            hooks=_stage_hooks(status),
        )

    if isinstance(result, PipelineFailure):
        stage = f" ({result.stage})" if result.stage else ""
        _CONSOLE.print(f"[red]Composition failed{stage}:[/red] {escape(result.error)}")
        return 1

    composition = result.data
    payload = composition.to_json()
    if args.output:
        Path(args.output).write_text(payload, encoding="utf-8")
        _CONSOLE.print(
            f"Wrote {len(composition.notes)} notes and "
            f"{len(composition.narration_script)} narration lines "
            f"({format_time(composition.duration)}) to {args.output}"
        )
    else:
        _CONSOLE.print_json(payload)
    return 0


def _inspect_command(args: argparse.Namespace) -> int:
    composition = Composition.from_json(Path(args.composition).read_text(encoding="utf-8"))
    index = TimelineIndex(composition)
    table = Table(title=f"{composition.audio_mapping.key} @ {composition.audio_mapping.tempo:g} BPM")
    table.add_column("Time")
    table.add_column("Note")
    table.add_column("Source")
    table.add_column("Narration")
    for moment in args.at or [0.0]:
        note = index.active_note(moment)
        line = index.active_narration_line(moment)
        table.add_row(
            f"{moment:.2f}s",
            "-" if note is None else f"{note.note} ({note.time:.2f}s +{note.duration:.2f}s)",
            "-" if note is None else escape(note.data_point),
            "-" if line is None else escape(line.text),
        )
    _CONSOLE.print(table)
    _CONSOLE.print(f"Duration: {format_time(index.duration)}")
    return 0


def _doctor_command() -> int:
    settings = PipelineSettings.from_env()
    for stage in ("analyzer", "composer", "narrator"):
        _CONSOLE.print(f"{stage} model: {settings.model_for(stage)}")
    _CONSOLE.print(f"API key configured: {settings.api_key is not None}")
    _CONSOLE.print(f"Log file: {get_log_path()}")
    _CONSOLE.print("Hints:")
    _CONSOLE.print("- Set ECHODEPICT_MODEL (or ECHODEPICT_<STAGE>_MODEL) to pick LiteLLM models.")
    _CONSOLE.print("- Provider keys (e.g. GEMINI_API_KEY) are read by LiteLLM from the environment.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="echodepict")
    sub = parser.add_subparsers(dest="command", required=True)

    compose_cmd = sub.add_parser("compose", help="Turn text or CSV data into a composition.")
    source = compose_cmd.add_mutually_exclusive_group(required=True)
    source.add_argument("--text", type=str)
    source.add_argument("--text-file", type=str)
    source.add_argument("--csv", type=str, help="Path to a CSV file.")
    compose_cmd.add_argument("--model", type=str, default=None)
    compose_cmd.add_argument("--output", type=str, default=None)

    inspect = sub.add_parser("inspect", help="Show what is active at given playback times.")
    inspect.add_argument("composition", type=str)
    inspect.add_argument("--at", type=float, action="append")

    sub.add_parser("doctor", help="Show model settings and log location.")
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        if args.command == "compose":
            return _compose_command(args)
        if args.command == "inspect":
            return _inspect_command(args)
        if args.command == "doctor":
            return _doctor_command()

        parser.print_help()
        return 1
    except Exception as exc:
        _LOGGER.warning("echodepict CLI failed: %s", exc, exc_info=debug_enabled())
        log_exception("echodepict CLI", exc)
        _CONSOLE.print(f"[red]echodepict failed:[/red] {escape(str(exc))}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
