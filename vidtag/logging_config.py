from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from vidtag.config import AppSettings
from vidtag.telemetry import TELEMETRY_LOGGER_NAME

ROOT_LOGGER_NAME = "vidtag"
LOG_FILE_NAME = "vidtag.log"
TELEMETRY_LOG_FILE_NAME = "vidtag-telemetry.log"

# Keys the app binds with `bind_contextvars`.
RUN_CONTEXT_KEYS: tuple[str, ...] = (
    "http_request_id",
    "http_method",
    "http_path",
    "run_id",
    "playlist_input",
    "sweep_tick_id",
    "unsorted_job_id",
)
_JOB_SCOPE_KEYS: tuple[tuple[str, str], ...] = (
    ("run_id", "run"),
    ("sweep_tick_id", "sweep"),
    ("unsorted_job_id", "unsorted"),
)
_SHORT_ID_LENGTH = 8


def configure_application_logging(settings: AppSettings) -> Path:
    """
    Route every `vidtag.*` logger through structlog formatters.

    Console output goes to stdout at the configured level and labels each line with the job
    it belongs to (`run:1a2b3c4d`, `sweep:...`). The JSON file log always captures DEBUG with
    the full run context. Telemetry gets its own file and does not propagate to the console.
    """
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME
    telemetry_log_file = log_dir / TELEMETRY_LOG_FILE_NAME

    _configure_structlog()

    app_logger = logging.getLogger(ROOT_LOGGER_NAME)
    app_logger.setLevel(logging.DEBUG)
    app_logger.propagate = False
    _reset_handlers(app_logger)

    console_stream = sys.stdout
    console_handler = logging.StreamHandler(stream=console_stream)
    console_handler.setLevel(resolve_log_level(settings.log_level))
    console_handler.setFormatter(
        _build_console_formatter(enable_colors=_stream_supports_color(console_stream))
    )
    app_logger.addHandler(console_handler)
    app_logger.addHandler(_json_file_handler(log_file, logging.DEBUG))

    telemetry_logger = logging.getLogger(TELEMETRY_LOGGER_NAME)
    telemetry_logger.setLevel(logging.INFO)
    telemetry_logger.propagate = False
    _reset_handlers(telemetry_logger)
    telemetry_logger.addHandler(_json_file_handler(telemetry_log_file, logging.INFO))

    app_logger.info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        settings.log_level.upper(),
        log_file,
        telemetry_log_file,
    )
    return log_file


def resolve_log_level(raw_level: str) -> int:
    resolved = getattr(logging, raw_level.strip().upper(), None)
    return resolved if isinstance(resolved, int) else logging.INFO


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(_build_file_formatter())
    return handler


def _build_console_formatter(*, enable_colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            _label_job_scope,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=enable_colors),
        ],
    )


def _build_file_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            _add_record_metadata,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


def _shared_pre_chain() -> list[Processor]:
    return [
        _bind_run_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _bind_run_context(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Copy the bound job identifiers onto stdlib records; blank values are left out."""
    bound = structlog.contextvars.get_contextvars()
    for key in RUN_CONTEXT_KEYS:
        value = event_dict.get(key, bound.get(key))
        if value is None or value == "":
            event_dict.pop(key, None)
        else:
            event_dict[key] = value
    return event_dict


def _label_job_scope(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    # Innermost job wins: a run started by a sweep tick is labelled with the run.
    for key, label in _JOB_SCOPE_KEYS:
        value = event_dict.pop(key, None)
        if value is not None and "job" not in event_dict:
            event_dict["job"] = f"{label}:{str(value)[:_SHORT_ID_LENGTH]}"
    event_dict.pop("playlist_input", None)
    return event_dict


def _add_record_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["module"] = record.module
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
        event_dict["thread_name"] = record.threadName
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False
