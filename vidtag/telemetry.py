from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

TELEMETRY_LOGGER_NAME = "vidtag.telemetry"

_SENSITIVE_ATTRIBUTE_TOKENS: frozenset[str] = frozenset(
    {
        "api_key",
        "authorization",
        "description",
        "password",
        "prompt",
        "secret",
        "token",
    }
)
# Query parameters that identify a playlist or video; share links add tracking ids (`si`, `pp`).
_KEPT_URL_PARAMS: frozenset[str] = frozenset({"list", "v"})
# Job identifiers copied from the bound logging context onto every event.
_JOB_CONTEXT_KEYS: tuple[str, ...] = ("run_id", "sweep_tick_id", "unsorted_job_id")
_MAX_STRING_LENGTH = 160
_MAX_LISTED_VALUES = 20

TelemetryValue = bool | int | float | str | None


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    """
    Emits named events such as `playlist.run.finish` or `resilience.circuit.transition`.

    Events raised inside a playlist run, sweep tick or unsorted job are stamped with that
    job's id even when the caller does not pass it, so a circuit transition can be traced back
    to the run that tripped it.
    """

    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        bound = structlog.contextvars.get_contextvars()
        for key in _JOB_CONTEXT_KEYS:
            if key not in attributes and bound.get(key) is not None:
                attributes[key] = bound[key]
        self.sink.emit(event_name=event_name, attributes=sanitize_attributes(attributes))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
        "unsupported telemetry sink requested; disabling telemetry sink=%s",
        sink,
    )
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(token in key for token in _SENSITIVE_ATTRIBUTE_TOKENS):
            sanitized[key] = "[redacted]"
            continue
        sanitized[key] = _sanitize_value(raw_value)
    return sanitized


def _sanitize_value(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        return _truncate(_scrub_url(" ".join(value.split())))
    if isinstance(value, list | tuple | frozenset | set) and all(
        isinstance(entry, str | int) for entry in value
    ):
        # Tag lists and playlist ids read better flattened than as a type name.
        entries = [str(entry) for entry in value]
        if isinstance(value, frozenset | set):
            entries.sort()
        listed = ",".join(entries[:_MAX_LISTED_VALUES])
        if len(entries) > _MAX_LISTED_VALUES:
            listed = f"{listed},+{len(entries) - _MAX_LISTED_VALUES}"
        return _truncate(listed)
    return type(value).__name__


def _scrub_url(value: str) -> str:
    if not value.startswith(("http://", "https://")):
        return value
    parts = urlsplit(value)
    if not parts.query:
        return value
    kept = [(name, param) for name, param in parse_qsl(parts.query) if name in _KEPT_URL_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), ""))


def _truncate(value: str) -> str:
    if len(value) <= _MAX_STRING_LENGTH:
        return value
    return f"{value[:_MAX_STRING_LENGTH]}..."
