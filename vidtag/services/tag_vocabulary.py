from __future__ import annotations

import logging
from typing import Any, Protocol, cast

from vidtag.repositories.cache_repository import CacheRepository

LOGGER = logging.getLogger("vidtag.vocabulary")

TAGS_CACHE_KEY = "raindrop:tags"


class TagListSource(Protocol):
    def list_tags(self) -> list[str]:
        ...


class CachedTagVocabulary:
    """Read-through cache in front of the bookmark store's tag list."""

    def __init__(
        self,
        source: TagListSource,
        *,
        cache: CacheRepository | None = None,
        ttl_seconds: int = 3_600,
    ) -> None:
        self._source = source
        self._cache = cache
        self._ttl_seconds = ttl_seconds

    def existing_tags(self) -> list[str]:
        if self._cache is not None:
            cached = self._cache.get_fresh(TAGS_CACHE_KEY, max_age_seconds=self._ttl_seconds)
            if isinstance(cached, list):
                LOGGER.debug("tag vocabulary cache hit count=%s", len(cast(list[Any], cached)))
                return [tag for tag in cast(list[Any], cached) if isinstance(tag, str)]

        tags = self._source.list_tags()
        if self._cache is not None:
            self._cache.put(TAGS_CACHE_KEY, tags)
        LOGGER.info("tag vocabulary refreshed count=%s", len(tags))
        return tags
