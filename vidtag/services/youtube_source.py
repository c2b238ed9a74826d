from __future__ import annotations

import logging
import re
from datetime import datetime
from importlib import import_module
from typing import Any, cast

from vidtag.models.run_models import VideoItem
from vidtag.services.collaborators import (
    CollaboratorError,
    UnsupportedOperationError,
    is_retryable_status,
)
from vidtag.services.resilience import InvalidInputError

LOGGER = logging.getLogger("vidtag.youtube")

SERVICE_NAME = "youtube"
PLAYLIST_PAGE_SIZE = 50
VIDEO_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"

PLAYLIST_ID_PATTERN = re.compile(r"(?:list=)([a-zA-Z0-9_-]+)")
RAW_PLAYLIST_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
VIDEO_ID_WATCH_PATTERN = re.compile(r"(?:youtube\.com/watch\?.*v=)([a-zA-Z0-9_-]{11})")
VIDEO_ID_SHORT_PATTERN = re.compile(r"(?:youtu\.be/)([a-zA-Z0-9_-]{11})")
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
# Quota errors come back as 403 and do not clear within a retry window.
_NON_RETRYABLE_REASONS: tuple[str, ...] = ("quotaexceeded", "dailylimitexceeded")
_DELETED_VIDEO_TITLES: frozenset[str] = frozenset({"deleted video", "private video"})


def extract_playlist_id(playlist_input: str) -> str:
    """Accept a playlist URL (anything with `list=`) or a bare playlist id."""
    normalized = playlist_input.strip()
    if not normalized:
        raise InvalidInputError("playlist input must not be blank", call_site="youtube.fetch_items")
    matched = PLAYLIST_ID_PATTERN.search(normalized)
    if matched is not None:
        return matched.group(1)
    if RAW_PLAYLIST_ID_PATTERN.match(normalized) is None:
        raise InvalidInputError(
            f"'{normalized}' is neither a playlist URL nor a playlist id",
            call_site="youtube.fetch_items",
        )
    return normalized


def extract_video_id(url: str) -> str | None:
    for pattern in (VIDEO_ID_WATCH_PATTERN, VIDEO_ID_SHORT_PATTERN):
        matched = pattern.search(url)
        if matched is not None:
            return matched.group(1)
    return None


def is_youtube_url(url: str) -> bool:
    return extract_video_id(url) is not None


class YouTubeVideoSource:
    def __init__(self, *, api_key: str) -> None:
        if not api_key.strip():
            raise ValueError("YouTubeVideoSource requires an API key.")
        self._api_key = api_key

    def fetch_items(self, source_id: str) -> list[VideoItem]:
        playlist_id = extract_playlist_id(source_id)
        client = self._build_client()

        items: list[VideoItem] = []
        page_token: str | None = None
        pages = 0
        while True:
            page_items, page_token = self._call(
                lambda: _list_playlist_page(client, playlist_id=playlist_id, page_token=page_token)
            )
            pages += 1
            items.extend(page_items)
            if page_token is None:
                break

        LOGGER.info(
            "youtube playlist fetched playlist_id=%s items=%s pages=%s",
            playlist_id,
            len(items),
            pages,
        )
        return items

    def get_video(self, video_id: str) -> VideoItem | None:
        client = self._build_client()
        response = self._call(
            lambda: cast(
                dict[str, Any],
                client.videos()
                .list(part="snippet,contentDetails", id=video_id, maxResults=1)
                .execute(),
            )
        )
        entries = _as_list(response.get("items"))
        if not entries:
            return None
        return _video_from_videos_entry(_as_dict(entries[0]))

    def find_source_by_name(self, name: str) -> str:
        raise UnsupportedOperationError(
            f"finding playlist '{name}' by name needs OAuth access; pass a playlist id instead",
            service=SERVICE_NAME,
        )

    def _build_client(self) -> Any:
        try:
            discovery_module = import_module("googleapiclient.discovery")
        except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
            raise CollaboratorError(
                "YouTube access requires the google-api-python-client dependency",
                service=SERVICE_NAME,
                retryable=False,
            ) from exc
        build_fn: Any = discovery_module.build
        return build_fn("youtube", "v3", developerKey=self._api_key, cache_discovery=False)

    def _call(self, operation: Any) -> Any:
        try:
            return operation()
        except CollaboratorError:
            raise
        except Exception as exc:
            raise _classify_client_error(exc) from exc


def _list_playlist_page(
    client: Any,
    *,
    playlist_id: str,
    page_token: str | None,
) -> tuple[list[VideoItem], str | None]:
    query_kwargs: dict[str, object] = {
        "part": "snippet,contentDetails",
        "playlistId": playlist_id,
        "maxResults": PLAYLIST_PAGE_SIZE,
    }
    if page_token is not None:
        query_kwargs["pageToken"] = page_token

    response = cast(
        dict[str, Any],
        client.playlistItems().list(**query_kwargs).execute(),
    )

    items: list[VideoItem] = []
    for entry in _as_list(response.get("items")):
        item = _video_from_playlist_entry(_as_dict(entry))
        if item is not None:
            items.append(item)

    if items:
        durations = _fetch_durations(client, [item.video_id for item in items])
        items = [
            _with_duration(item, durations.get(item.video_id))
            for item in items
        ]

    raw_next = response.get("nextPageToken")
    next_page_token = raw_next if isinstance(raw_next, str) and raw_next.strip() else None
    return items, next_page_token


def _video_from_playlist_entry(entry: dict[str, Any]) -> VideoItem | None:
    snippet = _as_dict(entry.get("snippet"))
    content_details = _as_dict(entry.get("contentDetails"))
    resource = _as_dict(snippet.get("resourceId"))
    video_id = _coerce_nonempty_string(resource.get("videoId")) or _coerce_nonempty_string(
        content_details.get("videoId")
    )
    title = _coerce_nonempty_string(snippet.get("title"))
    if video_id is None or title is None:
        return None
    if title.strip().lower() in _DELETED_VIDEO_TITLES:
        LOGGER.debug("skipping unavailable playlist entry video_id=%s", video_id)
        return None

    published_raw = content_details.get("videoPublishedAt") or snippet.get("publishedAt")
    return VideoItem(
        video_id=video_id,
        url=VIDEO_URL_TEMPLATE.format(video_id=video_id),
        title=title.strip(),
        description=_coerce_optional_text(snippet.get("description")),
        published_at=_parse_timestamp(published_raw),
    )


def _video_from_videos_entry(entry: dict[str, Any]) -> VideoItem | None:
    video_id = _coerce_nonempty_string(entry.get("id"))
    snippet = _as_dict(entry.get("snippet"))
    title = _coerce_nonempty_string(snippet.get("title"))
    if video_id is None or title is None:
        return None
    content_details = _as_dict(entry.get("contentDetails"))
    return VideoItem(
        video_id=video_id,
        url=VIDEO_URL_TEMPLATE.format(video_id=video_id),
        title=title.strip(),
        description=_coerce_optional_text(snippet.get("description")),
        published_at=_parse_timestamp(snippet.get("publishedAt")),
        duration_seconds=_parse_iso8601_duration_seconds(content_details.get("duration")),
    )


def _fetch_durations(client: Any, video_ids: list[str]) -> dict[str, int]:
    response = cast(
        dict[str, Any],
        client.videos()
        .list(part="contentDetails", id=",".join(video_ids), maxResults=len(video_ids))
        .execute(),
    )
    durations: dict[str, int] = {}
    for entry in _as_list(response.get("items")):
        entry_dict = _as_dict(entry)
        video_id = entry_dict.get("id")
        duration = _parse_iso8601_duration_seconds(
            _as_dict(entry_dict.get("contentDetails")).get("duration")
        )
        if isinstance(video_id, str) and duration is not None:
            durations[video_id] = duration
    return durations


def _with_duration(item: VideoItem, duration_seconds: int | None) -> VideoItem:
    if duration_seconds is None:
        return item
    return VideoItem(
        video_id=item.video_id,
        url=item.url,
        title=item.title,
        description=item.description,
        published_at=item.published_at,
        duration_seconds=duration_seconds,
    )


def _classify_client_error(exc: Exception) -> CollaboratorError:
    status_code = _extract_status_code(exc)
    message = _summarize_exception_message(exc)
    if status_code is None:
        return CollaboratorError(message, service=SERVICE_NAME, retryable=True)
    lowered = message.lower().replace(" ", "")
    retryable = is_retryable_status(status_code) and not any(
        reason in lowered for reason in _NON_RETRYABLE_REASONS
    )
    if status_code == 403 and "ratelimitexceeded" in lowered:
        retryable = True
    return CollaboratorError(
        f"YouTube API request failed with HTTP {status_code}: {message}",
        service=SERVICE_NAME,
        status_code=status_code,
        retryable=retryable,
    )


def _extract_status_code(exc: Exception) -> int | None:
    response = getattr(exc, "resp", None)
    status = getattr(response, "status", None)
    if isinstance(status, int):
        return status
    if isinstance(status, str) and status.isdigit():
        return int(status)
    return None


def _parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _parse_timestamp(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    try:
        return datetime.fromisoformat(raw_value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_optional_text(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip()
    return None


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
