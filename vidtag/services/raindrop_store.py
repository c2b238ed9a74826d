from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from threading import Lock
from urllib.parse import urlsplit, urlunsplit

from vidtag.services.collaborators import CollaboratorError
from vidtag.services.http_json import (
    as_object_list,
    request_json,
    to_optional_int,
    to_optional_text,
)

LOGGER = logging.getLogger("vidtag.raindrop")

SERVICE_NAME = "raindrop"
ALL_COLLECTIONS_ID = 0
UNSORTED_COLLECTION_ID = -1
UNSORTED_PAGE_SIZE = 50
UNSORTED_MAX_PAGES = 20
EXISTS_SEARCH_PAGE_SIZE = 10


@dataclass(frozen=True)
class RaindropCollection:
    collection_id: int
    title: str


@dataclass(frozen=True)
class RaindropBookmark:
    bookmark_id: int
    link: str
    title: str
    tags: tuple[str, ...] = ()


class RaindropBookmarkStore:
    def __init__(
        self,
        *,
        api_token: str,
        base_url: str = "https://api.raindrop.io/rest/v1",
        http_timeout_seconds: float = 30.0,
    ) -> None:
        if not api_token.strip():
            raise ValueError("RaindropBookmarkStore requires an API token.")
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))
        self._resolve_lock = Lock()

    def exists(self, target_id: int | None, url: str) -> bool:
        collection_id = ALL_COLLECTIONS_ID if target_id is None else target_id
        response = self._request(
            "GET",
            f"/raindrops/{collection_id}",
            query={"search": url, "perpage": EXISTS_SEARCH_PAGE_SIZE},
        )
        items = as_object_list(response.get("items"))
        if not items:
            return False

        links = [to_optional_text(item.get("link")) for item in items]
        known_links = [link for link in links if link is not None]
        if not known_links:
            return True
        normalized_url = _normalize_link(url)
        return any(_normalize_link(link) == normalized_url for link in known_links)

    def write(self, target_id: int, url: str, title: str, tags: Sequence[str]) -> None:
        self._request(
            "POST",
            "/raindrop",
            payload={
                "link": url,
                "title": title,
                "collection": {"$id": target_id},
                "tags": list(tags),
            },
        )
        LOGGER.info(
            "raindrop bookmark created collection_id=%s tags=%s",
            target_id,
            len(tags),
        )

    def resolve_or_create_target(self, title: str) -> int:
        wanted = title.strip()
        if not wanted:
            raise CollaboratorError(
                "collection title must not be blank",
                service=SERVICE_NAME,
                retryable=False,
            )
        with self._resolve_lock:
            for collection in self.list_collections():
                if collection.title.strip().lower() == wanted.lower():
                    return collection.collection_id
            return self.create_collection(wanted)

    def create_collection(self, title: str) -> int:
        response = self._request("POST", "/collection", payload={"title": title})
        item = response.get("item")
        collection_id = to_optional_int(item.get("_id")) if isinstance(item, dict) else None
        if collection_id is None:
            raise CollaboratorError(
                f"Raindrop create collection response for '{title}' is missing an id",
                service=SERVICE_NAME,
            )
        LOGGER.info("raindrop collection created title=%s collection_id=%s", title, collection_id)
        return collection_id

    def list_collections(self) -> list[RaindropCollection]:
        collections: list[RaindropCollection] = []
        for path in ("/collections", "/collections/childrens"):
            response = self._request("GET", path)
            for item in as_object_list(response.get("items")):
                collection_id = to_optional_int(item.get("_id"))
                title = to_optional_text(item.get("title"))
                if collection_id is not None and title is not None:
                    collections.append(RaindropCollection(collection_id=collection_id, title=title))
        return collections

    def list_collection_titles(self) -> list[str]:
        titles: list[str] = []
        for collection in self.list_collections():
            if collection.title not in titles:
                titles.append(collection.title)
        return titles

    def list_tags(self) -> list[str]:
        response = self._request("GET", "/tags")
        tags: list[str] = []
        for item in as_object_list(response.get("items")):
            tag = to_optional_text(item.get("_id"))
            if tag is not None:
                tags.append(tag)
        LOGGER.debug("raindrop tags fetched count=%s", len(tags))
        return tags

    def list_unsorted(self) -> list[RaindropBookmark]:
        bookmarks: list[RaindropBookmark] = []
        for page in range(UNSORTED_MAX_PAGES):
            response = self._request(
                "GET",
                f"/raindrops/{UNSORTED_COLLECTION_ID}",
                query={"perpage": UNSORTED_PAGE_SIZE, "page": page},
            )
            items = as_object_list(response.get("items"))
            for item in items:
                bookmark = _bookmark_from_payload(item)
                if bookmark is not None:
                    bookmarks.append(bookmark)
            if len(items) < UNSORTED_PAGE_SIZE:
                break
        return bookmarks

    def update_bookmark(self, bookmark_id: int, *, target_id: int, tags: Sequence[str]) -> None:
        self._request(
            "PUT",
            f"/raindrop/{bookmark_id}",
            payload={"collection": {"$id": target_id}, "tags": list(tags)},
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, object] | None = None,
        query: dict[str, object] | None = None,
    ) -> dict[str, object]:
        return request_json(
            service=SERVICE_NAME,
            method=method,
            url=f"{self._base_url}{path}",
            headers={"Authorization": f"Bearer {self._api_token}"},
            timeout_seconds=self._http_timeout_seconds,
            payload=payload,
            query=query,
        )


def _bookmark_from_payload(item: dict[str, object]) -> RaindropBookmark | None:
    bookmark_id = to_optional_int(item.get("_id"))
    link = to_optional_text(item.get("link"))
    if bookmark_id is None or link is None:
        return None
    raw_tags = item.get("tags")
    tags: tuple[str, ...] = ()
    if isinstance(raw_tags, list):
        tags = tuple(tag for tag in raw_tags if isinstance(tag, str) and tag.strip())
    return RaindropBookmark(
        bookmark_id=bookmark_id,
        link=link,
        title=to_optional_text(item.get("title")) or link,
        tags=tags,
    )


def _normalize_link(link: str) -> str:
    # Only scheme and host are case-insensitive; video ids in the query are not.
    parts = urlsplit(link.strip())
    return urlunsplit(
        (
            parts.scheme.lower(),
            parts.netloc.lower(),
            parts.path.rstrip("/"),
            parts.query,
            parts.fragment,
        )
    )
