from __future__ import annotations

import types
from datetime import UTC, datetime
from typing import Any

import pytest

from vidtag.services.collaborators import CollaboratorError, UnsupportedOperationError
from vidtag.services.resilience import InvalidInputError
from vidtag.services.youtube_source import (
    YouTubeVideoSource,
    extract_playlist_id,
    extract_video_id,
    is_youtube_url,
)


class _FakeRequest:
    def __init__(self, response: dict[str, object] | Exception) -> None:
        self._response = response

    def execute(self) -> dict[str, object]:
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


class _FakePlaylistItems:
    def __init__(self, pages: dict[str | None, dict[str, object] | Exception]) -> None:
        self.pages = pages
        self.calls: list[dict[str, Any]] = []

    def list(self, **kwargs: Any) -> _FakeRequest:
        self.calls.append(kwargs)
        return _FakeRequest(self.pages[kwargs.get("pageToken")])


class _FakeVideos:
    def __init__(self, durations: dict[str, str]) -> None:
        self.durations = durations
        self.calls: list[dict[str, Any]] = []

    def list(self, **kwargs: Any) -> _FakeRequest:
        self.calls.append(kwargs)
        items: list[dict[str, object]] = []
        for video_id in str(kwargs["id"]).split(","):
            if video_id not in self.durations:
                continue
            items.append(
                {
                    "id": video_id,
                    "snippet": {"title": f"Video {video_id}", "description": " about "},
                    "contentDetails": {"duration": self.durations[video_id]},
                }
            )
        return _FakeRequest({"items": items})


class _FakeClient:
    def __init__(self, playlist_items: _FakePlaylistItems, videos: _FakeVideos) -> None:
        self._playlist_items = playlist_items
        self._videos = videos

    def playlistItems(self) -> _FakePlaylistItems:  # noqa: N802
        return self._playlist_items

    def videos(self) -> _FakeVideos:
        return self._videos


class _FakeHttpError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.resp = types.SimpleNamespace(status=status)


def _entry(video_id: str, title: str, published_at: str | None = None) -> dict[str, object]:
    return {
        "snippet": {
            "title": title,
            "description": "Talk description",
            "resourceId": {"videoId": video_id},
        },
        "contentDetails": {"videoId": video_id, "videoPublishedAt": published_at},
    }


def _install_client(monkeypatch: pytest.MonkeyPatch, client: _FakeClient) -> list[dict[str, Any]]:
    build_calls: list[dict[str, Any]] = []

    def _build(service: str, version: str, **kwargs: Any) -> _FakeClient:
        build_calls.append({"service": service, "version": version, **kwargs})
        return client

    def fake_import_module(name: str) -> object:
        if name == "googleapiclient.discovery":
            return types.SimpleNamespace(build=_build)
        raise ImportError(name)

    monkeypatch.setattr("vidtag.services.youtube_source.import_module", fake_import_module)
    return build_calls


@pytest.mark.parametrize(
    ("playlist_input", "expected"),
    [
        ("https://www.youtube.com/playlist?list=PLabc_123-x", "PLabc_123-x"),
        ("https://www.youtube.com/watch?v=abcdefghijk&list=PLmix", "PLmix"),
        ("  PLbare  ", "PLbare"),
    ],
)
def test_extract_playlist_id(playlist_input: str, expected: str) -> None:
    assert extract_playlist_id(playlist_input) == expected


@pytest.mark.parametrize("playlist_input", ["", "   ", "not a playlist", "https://example.com/x"])
def test_extract_playlist_id_rejects_malformed_input(playlist_input: str) -> None:
    with pytest.raises(InvalidInputError):
        extract_playlist_id(playlist_input)


def test_extract_video_id() -> None:
    assert extract_video_id("https://www.youtube.com/watch?v=abcdefghijk") == "abcdefghijk"
    assert extract_video_id("https://www.youtube.com/watch?t=10&v=abcdefghijk") == "abcdefghijk"
    assert extract_video_id("https://youtu.be/abcdefghijk?t=3") == "abcdefghijk"
    assert extract_video_id("https://vimeo.com/12345") is None
    assert is_youtube_url("https://youtu.be/abcdefghijk") is True
    assert is_youtube_url("https://example.com/watch?v=abcdefghijk") is False


def test_fetch_items_pages_through_playlist(monkeypatch: pytest.MonkeyPatch) -> None:
    playlist_items = _FakePlaylistItems(
        {
            None: {
                "items": [
                    _entry("video000001", "First talk", "2024-03-01T10:00:00Z"),
                    _entry("video000002", "Deleted video"),
                ],
                "nextPageToken": "page-2",
            },
            "page-2": {"items": [_entry("video000003", "Second talk")]},
        }
    )
    videos = _FakeVideos({"video000001": "PT1H2M3S", "video000003": "PT45S"})
    build_calls = _install_client(monkeypatch, _FakeClient(playlist_items, videos))
    source = YouTubeVideoSource(api_key="yt-key")

    items = source.fetch_items("https://www.youtube.com/playlist?list=PLtalks")

    assert [item.video_id for item in items] == ["video000001", "video000003"]
    first = items[0]
    assert first.url == "https://www.youtube.com/watch?v=video000001"
    assert first.title == "First talk"
    assert first.description == "Talk description"
    assert first.duration_seconds == 3_723
    assert first.published_at == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
    assert items[1].duration_seconds == 45
    assert [call.get("pageToken") for call in playlist_items.calls] == [None, "page-2"]
    assert all(call["playlistId"] == "PLtalks" for call in playlist_items.calls)
    assert build_calls[0]["developerKey"] == "yt-key"
    assert build_calls[0]["cache_discovery"] is False


def test_fetch_items_maps_not_found_to_non_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    playlist_items = _FakePlaylistItems({None: _FakeHttpError(404, "playlistNotFound")})
    _install_client(monkeypatch, _FakeClient(playlist_items, _FakeVideos({})))
    source = YouTubeVideoSource(api_key="yt-key")

    with pytest.raises(CollaboratorError) as exc_info:
        source.fetch_items("PLmissing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.retryable is False


@pytest.mark.parametrize(
    ("status", "message", "retryable"),
    [
        (503, "backendError", True),
        (403, "quotaExceeded", False),
        (403, "rateLimitExceeded", True),
        (429, "Too many requests", True),
    ],
)
def test_fetch_items_classifies_http_errors(
    monkeypatch: pytest.MonkeyPatch,
    status: int,
    message: str,
    retryable: bool,
) -> None:
    playlist_items = _FakePlaylistItems({None: _FakeHttpError(status, message)})
    _install_client(monkeypatch, _FakeClient(playlist_items, _FakeVideos({})))

    with pytest.raises(CollaboratorError) as exc_info:
        YouTubeVideoSource(api_key="yt-key").fetch_items("PLtalks")

    assert exc_info.value.retryable is retryable


def test_fetch_items_network_error_is_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    playlist_items = _FakePlaylistItems({None: ConnectionResetError("reset by peer")})
    _install_client(monkeypatch, _FakeClient(playlist_items, _FakeVideos({})))

    with pytest.raises(CollaboratorError) as exc_info:
        YouTubeVideoSource(api_key="yt-key").fetch_items("PLtalks")

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code is None


def test_get_video_returns_details(monkeypatch: pytest.MonkeyPatch) -> None:
    videos = _FakeVideos({"abcdefghijk": "PT10M"})
    _install_client(monkeypatch, _FakeClient(_FakePlaylistItems({}), videos))

    video = YouTubeVideoSource(api_key="yt-key").get_video("abcdefghijk")

    assert video is not None
    assert video.title == "Video abcdefghijk"
    assert video.description == "about"
    assert video.duration_seconds == 600
    assert YouTubeVideoSource(api_key="yt-key").get_video("missing0000") is None


def test_find_source_by_name_is_unsupported() -> None:
    with pytest.raises(UnsupportedOperationError) as exc_info:
        YouTubeVideoSource(api_key="yt-key").find_source_by_name("Watch later")

    assert exc_info.value.retryable is False
