from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vidtag.models.run_models import normalize_tag_name

Verbosity = Literal["minimal", "standard", "detailed", "verbose"]
CircuitStateName = Literal["closed", "open", "half_open"]

DEFAULT_MAX_TAGS_PER_ITEM = 10
DEFAULT_CONFIDENCE_THRESHOLD = 0.0


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


def _default_blocklist() -> list[str]:
    return []


def _default_field_errors() -> list[FieldError]:
    return []


class VideoFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_duration_seconds: int | None = Field(default=None, ge=0)
    published_after: datetime | None = None
    title_contains: str | None = Field(default=None, max_length=200)

    @field_validator("title_contains", mode="before")
    @classmethod
    def _normalize_title_contains(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class TagRunOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_items: int | None = Field(default=None, ge=1, le=5000)
    filters: VideoFilters = Field(default_factory=VideoFilters)
    max_tags_per_item: int = Field(default=DEFAULT_MAX_TAGS_PER_ITEM, ge=1, le=50)
    confidence_threshold: float = Field(default=DEFAULT_CONFIDENCE_THRESHOLD, ge=0.0, le=1.0)
    blocklist: list[str] = Field(default_factory=_default_blocklist, max_length=200)
    verbosity: Verbosity = "standard"
    collection_title: str | None = Field(default=None, max_length=200)
    custom_instructions: str | None = Field(default=None, max_length=2000)

    @field_validator("blocklist", mode="before")
    @classmethod
    def _normalize_blocklist(cls, value: object) -> object:
        if not isinstance(value, list):
            return value
        normalized: list[str] = []
        for raw_tag in value:
            if not isinstance(raw_tag, str):
                raise ValueError("blocklist entries must be strings")
            tag = normalize_tag_name(raw_tag)
            if tag and tag not in normalized:
                normalized.append(tag)
        return normalized

    @field_validator("verbosity", mode="before")
    @classmethod
    def _normalize_verbosity(cls, value: object) -> object:
        if value is None:
            return "standard"
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("collection_title", "custom_instructions", mode="before")
    @classmethod
    def _normalize_optional_fields(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


SUGGEST_OPTIONS = TagRunOptions(max_tags_per_item=5, confidence_threshold=0.5)


class TagPlaylistRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    playlist_input: str = Field(min_length=1, max_length=2048)
    options: TagRunOptions = Field(default_factory=TagRunOptions)

    @field_validator("playlist_input")
    @classmethod
    def _validate_playlist_input(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("playlist_input is required")
        if any(ord(character) < 32 for character in normalized):
            raise ValueError("playlist_input contains control characters")
        return normalized


class FieldError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str
    message: str
    rejected_value: str | None = None


class DebugInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    exception_type: str
    stack_trace: str | None = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error_code: str
    message: str
    status: int
    timestamp: datetime
    request_id: str | None = None
    path: str
    field_errors: list[FieldError] = Field(default_factory=_default_field_errors)
    debug_info: DebugInfo | None = None


class CircuitSnapshotResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    call_site: str
    state: CircuitStateName
    window_size: int
    window_capacity: int
    failure_count: int
    failure_rate: float
    retry_after_seconds: int


class SweepSourceResultResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    playlist_id: str
    outcome: Literal["completed", "aborted", "failed"]
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None


class SweepReportResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tick_id: str
    started_at: datetime
    finished_at: datetime
    sources: list[SweepSourceResultResponse]


class UnsortedReportResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total: int
    youtube: int
    succeeded: int
    skipped: int
    failed: int
