from __future__ import annotations

from collections.abc import Sequence

from vidtag.models.run_models import VideoItem
from vidtag.services.collaborators import UnconfiguredCollaboratorError
from vidtag.services.raindrop_store import RaindropBookmark


class UnconfiguredVideoSource:
    def fetch_items(self, source_id: str) -> list[VideoItem]:
        raise UnconfiguredCollaboratorError(
            f"cannot fetch playlist {source_id}: VIDTAG_YOUTUBE_API_KEY is not set",
            service="youtube",
        )

    def get_video(self, video_id: str) -> VideoItem | None:
        raise UnconfiguredCollaboratorError(
            f"cannot fetch video {video_id}: VIDTAG_YOUTUBE_API_KEY is not set",
            service="youtube",
        )


class UnconfiguredLlmClient:
    def complete(self, prompt: str) -> str:
        _ = prompt
        raise UnconfiguredCollaboratorError(
            "cannot call the language model: VIDTAG_ANTHROPIC_API_KEY is not set",
            service="anthropic",
        )


class UnconfiguredBookmarkStore:
    """Bookmark store used when no Raindrop token is configured. Every call fails."""

    def _fail(self) -> UnconfiguredCollaboratorError:
        return UnconfiguredCollaboratorError(
            "Raindrop is not configured: VIDTAG_RAINDROP_API_TOKEN is not set",
            service="raindrop",
        )

    def exists(self, target_id: int | None, url: str) -> bool:
        raise self._fail()

    def write(self, target_id: int, url: str, title: str, tags: Sequence[str]) -> None:
        raise self._fail()

    def resolve_or_create_target(self, title: str) -> int:
        raise self._fail()

    def list_collection_titles(self) -> list[str]:
        raise self._fail()

    def list_tags(self) -> list[str]:
        raise self._fail()

    def list_unsorted(self) -> list[RaindropBookmark]:
        raise self._fail()

    def update_bookmark(self, bookmark_id: int, *, target_id: int, tags: Sequence[str]) -> None:
        raise self._fail()
