from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".vidtag"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "unsorted_processor_enabled",
    "telemetry_enabled",
    "debug_mode",
)
_RESILIENCE_OVERRIDE_KEYS: frozenset[str] = frozenset(
    {
        "failure_rate_threshold",
        "sliding_window_size",
        "open_wait_seconds",
        "retry_attempts",
        "backoff_initial_seconds",
        "backoff_multiplier",
    }
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{VIDTAG_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


def split_comma_list(raw_value: str | None) -> list[str]:
    if raw_value is None:
        return []
    return [part.strip() for part in raw_value.split(",") if part.strip()]


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `VIDTAG_*` environment variable (or `.env`), and the
    defaults here are the production defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="VIDTAG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state, caches, and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite cache database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # External service credentials. Missing credentials select unconfigured stand-ins.
    youtube_api_key: str | None = Field(
        default=None,
        description="YouTube Data API v3 key used to read public playlists.",
    )
    raindrop_api_token: str | None = Field(
        default=None,
        description="Raindrop.io test token or OAuth access token.",
    )
    raindrop_base_url: str = Field(
        default="https://api.raindrop.io/rest/v1",
        description="Raindrop.io REST API base URL.",
    )
    anthropic_api_key: str | None = Field(
        default=None,
        description="Anthropic API key for the tagging and collection selection prompts.",
    )
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com",
        description="Anthropic API base URL.",
    )
    anthropic_model: str = Field(
        default="claude-sonnet-4-5",
        description="Model name passed to the Messages API.",
    )
    anthropic_max_tokens: int = Field(
        default=1024,
        ge=16,
        description="Maximum output tokens per LLM call.",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Per-request HTTP timeout for Raindrop and Anthropic calls.",
    )

    # Resilience defaults, shared by every call-site unless overridden.
    resilience_failure_rate_threshold: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Failure fraction over a full window that opens a circuit.",
    )
    resilience_sliding_window_size: int = Field(
        default=10,
        ge=1,
        description="Count-based sliding window size for circuit failure rate.",
    )
    resilience_open_wait_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Time an open circuit waits before permitting a half-open trial.",
    )
    resilience_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Total attempts per call, including the first.",
    )
    resilience_backoff_initial_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Backoff before the second attempt.",
    )
    resilience_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier applied to the backoff after each failed attempt.",
    )
    resilience_overrides: dict[str, dict[str, float]] = Field(
        default_factory=dict,
        description=(
            "Per call-site overrides as a JSON object, e.g. "
            '`{"youtube.fetch_items": {"retry_attempts": 5}}`.'
        ),
    )

    # Run execution.
    batch_size: int = Field(
        default=10,
        ge=1,
        description="Number of items per batch; a batchCompleted event follows each batch.",
    )
    run_worker_count: int = Field(
        default=4,
        ge=1,
        description="Worker threads available for concurrent playlist runs.",
    )
    event_buffer_size: int = Field(
        default=256,
        ge=1,
        description="Events buffered per stream before the producer starts waiting.",
    )
    event_emit_timeout_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="How long the producer waits on a full stream before dropping an event.",
    )

    # Tagging behaviour.
    blocked_tags: str = Field(
        default="",
        description="Comma-separated tags that are never applied (case-insensitive).",
    )
    fallback_collection: str = Field(
        default="Videos",
        description="Collection used when the collection choice is low confidence or fails.",
    )
    collection_choice_cache_ttl_seconds: int = Field(
        default=86_400,
        description="TTL for cached playlist to collection choices.",
    )
    collections_list_cache_ttl_seconds: int = Field(
        default=3_600,
        description="TTL for the cached list of collection titles.",
    )
    tag_vocabulary_cache_ttl_seconds: int = Field(
        default=3_600,
        description="TTL for the cached tag vocabulary.",
    )

    # Periodic sweep.
    scheduler_enabled: bool = Field(
        default=False,
        description="Enable the periodic playlist sweep.",
    )
    scheduler_fixed_delay_seconds: int = Field(
        default=3_600,
        ge=1,
        description="Delay between the end of one sweep and the start of the next.",
    )
    scheduler_initial_delay_seconds: int = Field(
        default=10,
        ge=0,
        description="Delay before the first sweep after startup.",
    )
    scheduler_playlist_ids: str = Field(
        default="",
        description="Comma-separated playlist ids processed by each sweep. Whitespace is trimmed.",
    )
    scheduler_playlist_name: str | None = Field(
        default=None,
        description=(
            "Deprecated. Finding playlists by name needs OAuth scopes the API key client "
            "does not have; the value is ignored."
        ),
    )

    # Unsorted bookmark processor.
    unsorted_processor_enabled: bool = Field(
        default=False,
        description="Enable the periodic processing of unsorted YouTube bookmarks.",
    )
    unsorted_processor_fixed_delay_seconds: int = Field(
        default=3_600,
        ge=1,
        description="Delay between unsorted processor runs.",
    )
    unsorted_processor_initial_delay_seconds: int = Field(
        default=30,
        ge=0,
        description="Delay before the first unsorted processor run.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry and diagnostics.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend. `log` emits structured telemetry locally.",
    )
    debug_mode: bool = Field(
        default=False,
        description=(
            "Include exception details in error responses and fail fast on event stream "
            "misuse."
        ),
    )
    error_max_stack_trace_length: int = Field(
        default=2_000,
        ge=0,
        description="Maximum stack trace characters included in debug error responses.",
    )

    @property
    def blocked_tags_set(self) -> frozenset[str]:
        return frozenset(tag.lower() for tag in split_comma_list(self.blocked_tags))

    @property
    def scheduler_playlist_id_list(self) -> list[str]:
        return split_comma_list(self.scheduler_playlist_ids)

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VIDTAG_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("VIDTAG_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("raindrop_base_url", "anthropic_base_url", mode="before")
    @classmethod
    def _normalize_base_urls(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"VIDTAG_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator("fallback_collection", mode="before")
    @classmethod
    def _normalize_fallback_collection(cls, value: Any) -> str:
        normalized = _normalize_optional_text(value)
        if normalized is None:
            raise ValueError("VIDTAG_FALLBACK_COLLECTION must not be empty.")
        return normalized

    @field_validator("resilience_overrides", mode="before")
    @classmethod
    def _parse_resilience_overrides(cls, value: Any) -> dict[str, dict[str, float]]:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("VIDTAG_RESILIENCE_OVERRIDES must be a JSON object.") from exc
        if not isinstance(value, dict):
            raise ValueError("VIDTAG_RESILIENCE_OVERRIDES must be a JSON object.")

        overrides: dict[str, dict[str, float]] = {}
        for call_site, raw_fields in value.items():
            if not isinstance(call_site, str) or not isinstance(raw_fields, dict):
                raise ValueError(
                    "VIDTAG_RESILIENCE_OVERRIDES entries must map a call-site to an object."
                )
            fields: dict[str, float] = {}
            for key, raw_number in raw_fields.items():
                if key not in _RESILIENCE_OVERRIDE_KEYS:
                    raise ValueError(
                        f"VIDTAG_RESILIENCE_OVERRIDES has unknown key '{key}' for '{call_site}'."
                    )
                if isinstance(raw_number, bool) or not isinstance(raw_number, int | float):
                    raise ValueError(
                        f"VIDTAG_RESILIENCE_OVERRIDES value '{key}' for '{call_site}' "
                        "must be a number."
                    )
                fields[key] = float(raw_number)
            overrides[call_site.strip()] = fields
        return overrides

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(
        "youtube_api_key",
        "raindrop_api_token",
        "anthropic_api_key",
        "scheduler_playlist_name",
        mode="before",
    )
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def _validate_scheduler_configuration(settings: AppSettings) -> None:
    if settings.scheduler_enabled and not settings.scheduler_playlist_id_list:
        raise ValueError(
            "Invalid scheduler configuration:\n"
            "- VIDTAG_SCHEDULER_PLAYLIST_IDS must list at least one playlist id "
            "when VIDTAG_SCHEDULER_ENABLED is on."
        )


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)
    _validate_scheduler_configuration(settings)
    return settings
