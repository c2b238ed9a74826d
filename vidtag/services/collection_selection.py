from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol, cast

from vidtag.models.run_models import VideoItem
from vidtag.repositories.cache_repository import CacheRepository
from vidtag.services.llm_client import LlmClient
from vidtag.services.resilience import ResilienceError, ResilientCall

LOGGER = logging.getLogger("vidtag.collections")

LOW_CONFIDENCE = "LOW_CONFIDENCE"
SAMPLE_VIDEO_COUNT = 10
COLLECTIONS_CACHE_KEY = "raindrop:collection_titles"
CALL_SITE_LIST_COLLECTIONS = "raindrop.list_collections"
CALL_SITE_SELECT_COLLECTION = "claude.select_collection"


class CollectionTitleSource(Protocol):
    def list_collection_titles(self) -> list[str]:
        ...


def _choice_cache_key(playlist_id: str) -> str:
    return f"collection_choice:{playlist_id}"


class CollectionSelector:
    """
    Picks the collection a playlist (or a single video) belongs in.

    The model may only answer with one of the user's existing collection titles or
    `LOW_CONFIDENCE`; anything else, and any failure, resolves to the fallback collection.
    Playlist choices are cached; single-video choices are not. Fallback answers caused by a
    failure are never cached.
    """

    def __init__(
        self,
        *,
        llm: LlmClient,
        collections: CollectionTitleSource,
        resilient_call: ResilientCall,
        fallback_collection: str = "Videos",
        cache: CacheRepository | None = None,
        choice_ttl_seconds: int = 86_400,
        collections_ttl_seconds: int = 3_600,
    ) -> None:
        self._llm = llm
        self._collections = collections
        self._resilient_call = resilient_call
        self._fallback_collection = fallback_collection
        self._cache = cache
        self._choice_ttl_seconds = choice_ttl_seconds
        self._collections_ttl_seconds = collections_ttl_seconds

    def choose_collection(self, playlist_id: str, items: Sequence[VideoItem]) -> str:
        cache_key = _choice_cache_key(playlist_id)
        if self._cache is not None:
            cached = self._cache.get_fresh(cache_key, max_age_seconds=self._choice_ttl_seconds)
            if isinstance(cached, str) and cached.strip():
                LOGGER.debug("collection choice cache hit playlist=%s title=%s", playlist_id, cached)
                return cached

        if not items:
            return self._fallback_collection

        try:
            titles = self._collection_titles()
            if not titles:
                LOGGER.warning(
                    "no collections available; using fallback %s",
                    self._fallback_collection,
                )
                return self._fallback_collection
            prompt = build_playlist_prompt(titles, items[:SAMPLE_VIDEO_COUNT])
            response = self._resilient_call.invoke(
                CALL_SITE_SELECT_COLLECTION,
                lambda: self._llm.complete(prompt),
            )
        except ResilienceError as exc:
            LOGGER.warning(
                "collection choice unavailable; using fallback playlist=%s error=%s",
                playlist_id,
                exc,
            )
            return self._fallback_collection

        selected = self._validate_choice(response, titles)
        if self._cache is not None:
            self._cache.put(cache_key, selected)
        LOGGER.info("collection chosen playlist=%s title=%s", playlist_id, selected)
        return selected

    def choose_for_video(self, item: VideoItem) -> str:
        try:
            titles = self._collection_titles()
            if not titles:
                return self._fallback_collection
            prompt = build_video_prompt(titles, item)
            response = self._resilient_call.invoke(
                CALL_SITE_SELECT_COLLECTION,
                lambda: self._llm.complete(prompt),
            )
        except ResilienceError as exc:
            LOGGER.warning(
                "collection choice unavailable; using fallback video_id=%s error=%s",
                item.video_id,
                exc,
            )
            return self._fallback_collection
        return self._validate_choice(response, titles)

    def _collection_titles(self) -> list[str]:
        if self._cache is not None:
            cached = self._cache.get_fresh(
                COLLECTIONS_CACHE_KEY,
                max_age_seconds=self._collections_ttl_seconds,
            )
            if isinstance(cached, list):
                return [title for title in cast(list[Any], cached) if isinstance(title, str)]

        titles = self._resilient_call.invoke(
            CALL_SITE_LIST_COLLECTIONS,
            self._collections.list_collection_titles,
        )
        if self._cache is not None:
            self._cache.put(COLLECTIONS_CACHE_KEY, titles)
        return titles

    def _validate_choice(self, response: str, titles: Sequence[str]) -> str:
        choice = parse_collection_choice(response, titles)
        if choice is None:
            LOGGER.info(
                "collection answer not usable; using fallback answer=%s fallback=%s",
                response.strip()[:80],
                self._fallback_collection,
            )
            return self._fallback_collection
        return choice


def parse_collection_choice(response: str, titles: Sequence[str]) -> str | None:
    """Map the model's answer onto an existing title, or None for low confidence or no match."""
    answer = response.strip().strip("\"'`").strip()
    if not answer or answer.upper() == LOW_CONFIDENCE:
        return None
    for title in titles:
        if title == answer:
            return title
    lowered = answer.lower()
    for title in titles:
        if title.lower() == lowered:
            return title
    return None


def build_playlist_prompt(titles: Sequence[str], sample: Sequence[VideoItem]) -> str:
    lines = ["You are helping categorize YouTube videos into Raindrop.io collections.", ""]
    lines.append("Available collections:")
    lines.extend(f"- {title}" for title in titles)
    lines.append("")
    lines.append("Sample video titles from the playlist:")
    lines.extend(f"{index}. {item.title}" for index, item in enumerate(sample, start=1))
    lines.append("")
    lines.append(
        "Choose the most appropriate collection from the available collections above "
        "for the videos in this playlist."
    )
    lines.extend(_answer_rules())
    return "\n".join(lines)


def build_video_prompt(titles: Sequence[str], item: VideoItem) -> str:
    lines = ["You are helping categorize a YouTube video into a Raindrop.io collection.", ""]
    lines.append("Available collections:")
    lines.extend(f"- {title}" for title in titles)
    lines.append("")
    lines.append("Video information:")
    lines.append(f"Title: {item.title}")
    if item.description:
        lines.append(f"Description: {item.description[:2_000]}")
    lines.append("")
    lines.append(
        "Choose the most appropriate collection from the available collections above for this video."
    )
    lines.extend(_answer_rules())
    return "\n".join(lines)


def _answer_rules() -> list[str]:
    return [
        "",
        "Rules:",
        "- Respond with ONLY the exact collection name from the list",
        f'- If none of the collections are a good fit, respond with exactly "{LOW_CONFIDENCE}"',
        "- Do not create new collection names",
        "- Do not explain your reasoning",
        "",
        "Response:",
    ]
