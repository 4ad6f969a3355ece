"""Logging setup shared by the library and the CLI.

Everything logs under the ``echodepict`` logger. The console gets short,
emoji-prefixed lines; the log file gets timestamps, the pipeline stage that
emitted the record and full tracebacks.
"""

from __future__ import annotations

import logging
import os
import sys
import traceback
from collections.abc import MutableMapping
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

_LOGGER = logging.getLogger("echodepict.logging")
_ROOT_LOGGER_NAME = "echodepict"
_LOG_FILE_NAME = "echodepict.log"
_NO_STAGE = "-"

_CONSOLE_FORMAT = "%(emoji)s %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)-7s [%(stage)s] %(name)s: %(message)s"
_FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_EMOJI_BY_LEVEL = {
    logging.DEBUG: "🐛",
    logging.INFO: "🎼",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}

_configured = False


class LoggingSettings(BaseModel):
    log_dir: Path
    debug: bool = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def log_path(self) -> Path:
        return self.log_dir / _LOG_FILE_NAME

    @property
    def console_level(self) -> int:
        return logging.DEBUG if self.debug else logging.INFO

    @classmethod
    def from_env(cls) -> LoggingSettings:
        configured = os.environ.get("ECHODEPICT_LOG_DIR", "").strip()
        log_dir = (
            Path(configured).expanduser()
            if configured
            else Path.home() / ".cache" / "echodepict" / "logs"
        )
        return cls(log_dir=log_dir, debug=bool(os.environ.get("ECHODEPICT_DEBUG")))


def debug_enabled() -> bool:
    return LoggingSettings.from_env().debug


def get_log_dir() -> Path:
    return LoggingSettings.from_env().log_dir


def get_log_path() -> Path:
    return LoggingSettings.from_env().log_path


class _StageFilter(logging.Filter):
    """Gives every record a ``stage`` attribute so formatters can rely on it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "stage"):
            record.stage = _NO_STAGE
        return True


class _EmojiFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.emoji = _EMOJI_BY_LEVEL.get(record.levelno, "")
        return super().format(record)


class StageLoggerAdapter(logging.LoggerAdapter):
    """Tags records with the pipeline stage they belong to."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("stage", (self.extra or {}).get("stage", _NO_STAGE))
        kwargs["extra"] = extra
        return msg, kwargs


def stage_logger(logger: logging.Logger, stage: str) -> StageLoggerAdapter:
    return StageLoggerAdapter(logger, {"stage": stage})


def _console_handler(settings: LoggingSettings) -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.__stderr__)
    handler.setLevel(settings.console_level)
    handler.setFormatter(_EmojiFormatter(_CONSOLE_FORMAT))
    handler.addFilter(_StageFilter())
    return handler


def _file_handler(settings: LoggingSettings) -> logging.Handler | None:
    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(settings.log_path, encoding="utf-8")
    except OSError as exc:
        _LOGGER.warning("File logging disabled (%s): %s", settings.log_path, exc)
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATE_FORMAT))
    handler.addFilter(_StageFilter())
    return handler


def configure_logging(*, force: bool = False) -> None:
    """Attach console and file handlers to the ``echodepict`` logger once.

    The console handler is skipped when the host application already
    configured the root logger, unless ``force`` is set. ``force`` also
    replaces handlers from a previous call, picking up new env settings.
    """

    global _configured
    if _configured and not force:
        return

    settings = LoggingSettings.from_env()
    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    if force:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

    if force or not logging.getLogger().handlers:
        logger.addHandler(_console_handler(settings))
    file_handler = _file_handler(settings)
    if file_handler is not None:
        logger.addHandler(file_handler)

    # Test harnesses and host apps capture through the root logger.
    logger.propagate = True
    _configured = True


def log_exception(context: str, exc: BaseException) -> Path | None:
    """Append ``exc`` and its traceback to the log file; returns the file path."""

    path = get_log_path()
    lines = [f"[{datetime.now().isoformat()}] {context} failed: {type(exc).__name__}: {exc}\n"]
    lines.extend(traceback.format_exception(type(exc), exc, exc.__traceback__))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.writelines(lines)
            handle.write("\n")
    except OSError as log_exc:
        _LOGGER.warning("Failed to write log file: %s", log_exc, exc_info=True)
        return None
    return path
