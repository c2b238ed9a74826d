from __future__ import annotations

from pathlib import Path

import pytest

from vidtag.models.run_models import VideoItem
from vidtag.repositories.cache_repository import CacheRepository
from vidtag.repositories.database import Database
from vidtag.services.collaborators import CollaboratorError
from vidtag.services.collection_selection import (
    CollectionSelector,
    build_playlist_prompt,
    parse_collection_choice,
)
from vidtag.services.resilience import CircuitBreakerRegistry, ResiliencePolicy, ResilientCall


class _FakeLlm:
    def __init__(self, response: str | Exception) -> None:
        self.response = response
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class _FakeCollections:
    def __init__(self, titles: list[str]) -> None:
        self.titles = titles
        self.calls = 0

    def list_collection_titles(self) -> list[str]:
        self.calls += 1
        return list(self.titles)


def _items(count: int = 12) -> list[VideoItem]:
    return [
        VideoItem(
            video_id=f"video{index:06d}",
            url=f"https://www.youtube.com/watch?v=video{index:06d}",
            title=f"Conference talk {index}",
        )
        for index in range(1, count + 1)
    ]


def _resilient_call() -> ResilientCall:
    return ResilientCall(
        CircuitBreakerRegistry(default_policy=ResiliencePolicy(retry_attempts=1)),
        sleep=lambda _: None,
    )


def _cache(tmp_path: Path) -> CacheRepository:
    database = Database(tmp_path / "state.db")
    database.initialize()
    return CacheRepository(database)


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        ("Conference Talks", "Conference Talks"),
        ('  "conference talks"\n', "Conference Talks"),
        ("LOW_CONFIDENCE", None),
        ("low_confidence", None),
        ("Brand New Collection", None),
        ("", None),
    ],
)
def test_parse_collection_choice(response: str, expected: str | None) -> None:
    assert parse_collection_choice(response, ["Videos", "Conference Talks"]) == expected


def test_playlist_prompt_lists_titles_and_sample() -> None:
    prompt = build_playlist_prompt(["Videos", "Music"], _items(2))

    assert "- Videos\n- Music" in prompt
    assert "1. Conference talk 1\n2. Conference talk 2" in prompt
    assert 'respond with exactly "LOW_CONFIDENCE"' in prompt


def test_choose_collection_samples_ten_items_and_caches(tmp_path: Path) -> None:
    llm = _FakeLlm("Conference Talks")
    collections = _FakeCollections(["Videos", "Conference Talks"])
    selector = CollectionSelector(
        llm=llm,
        collections=collections,
        resilient_call=_resilient_call(),
        cache=_cache(tmp_path),
    )

    first = selector.choose_collection("PLtalks", _items())
    second = selector.choose_collection("PLtalks", _items())

    assert first == second == "Conference Talks"
    assert len(llm.prompts) == 1
    assert "10. Conference talk 10" in llm.prompts[0]
    assert "11. Conference talk 11" not in llm.prompts[0]
    assert collections.calls == 1


def test_low_confidence_answer_uses_fallback(tmp_path: Path) -> None:
    selector = CollectionSelector(
        llm=_FakeLlm("LOW_CONFIDENCE"),
        collections=_FakeCollections(["Music"]),
        resilient_call=_resilient_call(),
        fallback_collection="Watch Later",
        cache=_cache(tmp_path),
    )

    assert selector.choose_collection("PLmixed", _items(3)) == "Watch Later"


def test_llm_failure_uses_fallback_and_is_not_cached(tmp_path: Path) -> None:
    llm = _FakeLlm(CollaboratorError("overloaded", service="anthropic", retryable=True))
    selector = CollectionSelector(
        llm=llm,
        collections=_FakeCollections(["Conference Talks"]),
        resilient_call=_resilient_call(),
        cache=_cache(tmp_path),
    )

    assert selector.choose_collection("PLtalks", _items(2)) == "Videos"
    llm.response = "Conference Talks"
    assert selector.choose_collection("PLtalks", _items(2)) == "Conference Talks"


def test_empty_playlist_and_missing_collections_use_fallback() -> None:
    llm = _FakeLlm("Videos")
    selector = CollectionSelector(
        llm=llm,
        collections=_FakeCollections([]),
        resilient_call=_resilient_call(),
    )

    assert selector.choose_collection("PLempty", []) == "Videos"
    assert selector.choose_collection("PLtalks", _items(2)) == "Videos"
    assert llm.prompts == []


def test_choose_for_video_is_not_cached(tmp_path: Path) -> None:
    llm = _FakeLlm("Conference Talks")
    selector = CollectionSelector(
        llm=llm,
        collections=_FakeCollections(["Conference Talks"]),
        resilient_call=_resilient_call(),
        cache=_cache(tmp_path),
    )
    item = VideoItem(
        video_id="abcdefghijk",
        url="https://www.youtube.com/watch?v=abcdefghijk",
        title="Keynote",
        description="Opening keynote",
    )

    assert selector.choose_for_video(item) == "Conference Talks"
    assert selector.choose_for_video(item) == "Conference Talks"
    assert len(llm.prompts) == 2
    assert "Description: Opening keynote" in llm.prompts[0]
