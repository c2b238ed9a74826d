from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from vidtag.models.run_models import TagSuggestion, VideoItem
from vidtag.models.tagging_contracts import TagRunOptions


class CollaboratorError(RuntimeError):
    """Failure raised by an external binding. `retryable=False` means retrying cannot help."""

    def __init__(
        self,
        message: str,
        *,
        service: str,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.retryable = retryable


class UnsupportedOperationError(CollaboratorError):
    def __init__(self, message: str, *, service: str) -> None:
        super().__init__(message, service=service, retryable=False)


class UnconfiguredCollaboratorError(CollaboratorError):
    def __init__(self, message: str, *, service: str) -> None:
        super().__init__(message, service=service, retryable=False)


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in {408, 429}


class VideoSource(Protocol):
    def fetch_items(self, source_id: str) -> list[VideoItem]:
        ...


class Classifier(Protocol):
    def suggest_tags(
        self,
        item: VideoItem,
        vocabulary: Sequence[str],
        options: TagRunOptions,
    ) -> list[TagSuggestion]:
        ...


class BookmarkStore(Protocol):
    def exists(self, target_id: int | None, url: str) -> bool:
        ...

    def write(self, target_id: int, url: str, title: str, tags: Sequence[str]) -> None:
        ...

    def resolve_or_create_target(self, title: str) -> int:
        ...


class TagVocabulary(Protocol):
    def existing_tags(self) -> list[str]:
        ...


class CollectionChooser(Protocol):
    def choose_collection(self, playlist_id: str, items: Sequence[VideoItem]) -> str:
        ...
