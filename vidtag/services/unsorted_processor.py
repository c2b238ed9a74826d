from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from vidtag.models.run_models import VideoItem, normalize_tag_name
from vidtag.models.tagging_contracts import SUGGEST_OPTIONS
from vidtag.services.collaborators import Classifier, TagVocabulary
from vidtag.services.collection_selection import CollectionSelector
from vidtag.services.orchestrator import (
    CALL_SITE_RESOLVE_TARGET,
    CALL_SITE_SUGGEST_TAGS,
    CALL_SITE_TAG_VOCABULARY,
    select_tags,
)
from vidtag.services.raindrop_store import RaindropBookmark
from vidtag.services.resilience import ResilienceError, ResilientCall
from vidtag.services.youtube_source import extract_video_id
from vidtag.telemetry import TelemetryClient

LOGGER = logging.getLogger("vidtag.unsorted")

CALL_SITE_LIST_UNSORTED = "raindrop.list_unsorted"
CALL_SITE_UPDATE_BOOKMARK = "raindrop.update"
CALL_SITE_GET_VIDEO = "youtube.get_video"


class UnsortedBookmarks(Protocol):
    def list_unsorted(self) -> list[RaindropBookmark]:
        ...

    def update_bookmark(self, bookmark_id: int, *, target_id: int, tags: Sequence[str]) -> None:
        ...

    def resolve_or_create_target(self, title: str) -> int:
        ...


class VideoLookup(Protocol):
    def get_video(self, video_id: str) -> VideoItem | None:
        ...


@dataclass(frozen=True)
class UnsortedReport:
    total: int
    youtube: int
    succeeded: int
    skipped: int
    failed: int


class UnsortedBookmarkProcessor:
    """Files YouTube bookmarks sitting in the Unsorted collection: tag them and move them."""

    def __init__(
        self,
        *,
        bookmarks: UnsortedBookmarks,
        videos: VideoLookup,
        classifier: Classifier,
        tag_vocabulary: TagVocabulary,
        resilient_call: ResilientCall,
        collection_selector: CollectionSelector | None = None,
        fallback_collection: str = "Videos",
        blocked_tags: Iterable[str] = (),
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._bookmarks = bookmarks
        self._videos = videos
        self._classifier = classifier
        self._tag_vocabulary = tag_vocabulary
        self._resilient_call = resilient_call
        self._collection_selector = collection_selector
        self._fallback_collection = fallback_collection
        self._blocked_tags = frozenset(normalize_tag_name(tag) for tag in blocked_tags)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def process(self) -> UnsortedReport:
        job_id = uuid4().hex
        context_tokens = bind_contextvars(unsorted_job_id=job_id)
        started_at = time.perf_counter()
        try:
            bookmarks = self._resilient_call.invoke(
                CALL_SITE_LIST_UNSORTED,
                self._bookmarks.list_unsorted,
            )
            youtube_bookmarks = [
                bookmark for bookmark in bookmarks if extract_video_id(bookmark.link) is not None
            ]
            LOGGER.info(
                "unsorted bookmarks fetched total=%s youtube=%s",
                len(bookmarks),
                len(youtube_bookmarks),
            )

            vocabulary = self._load_vocabulary()
            target_ids: dict[str, int] = {}
            succeeded = 0
            skipped = 0
            failed = 0
            for bookmark in youtube_bookmarks:
                try:
                    moved = self._process_bookmark(bookmark, vocabulary, target_ids)
                except ResilienceError as exc:
                    failed += 1
                    LOGGER.warning(
                        "unsorted bookmark failed bookmark_id=%s error=%s",
                        bookmark.bookmark_id,
                        exc,
                    )
                    continue
                if moved:
                    succeeded += 1
                else:
                    skipped += 1

            report = UnsortedReport(
                total=len(bookmarks),
                youtube=len(youtube_bookmarks),
                succeeded=succeeded,
                skipped=skipped,
                failed=failed,
            )
            self._telemetry.emit(
                "unsorted.run.finish",
                job_id=job_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                total=report.total,
                youtube=report.youtube,
                succeeded=report.succeeded,
                skipped=report.skipped,
                failed=report.failed,
            )
            LOGGER.info(
                "unsorted processing finished youtube=%s succeeded=%s skipped=%s failed=%s",
                report.youtube,
                report.succeeded,
                report.skipped,
                report.failed,
            )
            return report
        finally:
            reset_contextvars(**context_tokens)

    def _load_vocabulary(self) -> list[str]:
        try:
            return self._resilient_call.invoke(
                CALL_SITE_TAG_VOCABULARY,
                self._tag_vocabulary.existing_tags,
            )
        except ResilienceError as exc:
            LOGGER.warning("tag vocabulary unavailable; tagging without it error=%s", exc)
            return []

    def _process_bookmark(
        self,
        bookmark: RaindropBookmark,
        vocabulary: list[str],
        target_ids: dict[str, int],
    ) -> bool:
        video_id = extract_video_id(bookmark.link)
        if video_id is None:
            return False
        video = self._resilient_call.invoke(
            CALL_SITE_GET_VIDEO,
            lambda: self._videos.get_video(video_id),
        )
        if video is None:
            LOGGER.info(
                "video unavailable; leaving bookmark unsorted bookmark_id=%s video_id=%s",
                bookmark.bookmark_id,
                video_id,
            )
            return False

        suggestions = self._resilient_call.invoke(
            CALL_SITE_SUGGEST_TAGS,
            lambda: self._classifier.suggest_tags(video, vocabulary, SUGGEST_OPTIONS),
        )
        selected = select_tags(
            suggestions,
            confidence_threshold=SUGGEST_OPTIONS.confidence_threshold,
            blocked_tags=self._blocked_tags,
            max_tags=SUGGEST_OPTIONS.max_tags_per_item,
        )

        title = self._fallback_collection
        if self._collection_selector is not None:
            title = self._collection_selector.choose_for_video(video)
        target_id = target_ids.get(title)
        if target_id is None:
            target_id = self._resilient_call.invoke(
                CALL_SITE_RESOLVE_TARGET,
                lambda: self._bookmarks.resolve_or_create_target(title),
            )
            target_ids[title] = target_id

        tags = _merge_tags(bookmark.tags, [suggestion.tag for suggestion in selected])
        self._resilient_call.invoke(
            CALL_SITE_UPDATE_BOOKMARK,
            lambda: self._bookmarks.update_bookmark(
                bookmark.bookmark_id,
                target_id=target_id,
                tags=tags,
            ),
        )
        LOGGER.info(
            "unsorted bookmark filed bookmark_id=%s collection=%s tags=%s",
            bookmark.bookmark_id,
            title,
            len(tags),
        )
        return True


def _merge_tags(existing: Sequence[str], suggested: Sequence[str]) -> list[str]:
    merged: list[str] = []
    for tag in [*existing, *suggested]:
        if tag not in merged:
            merged.append(tag)
    return merged
