from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from vidtag.services.collaborators import CollaboratorError, is_retryable_status

LOGGER = logging.getLogger("vidtag.http")


def request_json(
    *,
    service: str,
    method: str,
    url: str,
    headers: Mapping[str, str],
    timeout_seconds: float,
    payload: Mapping[str, object] | None = None,
    query: Mapping[str, object] | None = None,
) -> dict[str, object]:
    """Send one JSON request and decode a JSON object response.

    HTTP 5xx, 408, 429 and network failures raise a retryable `CollaboratorError`; every
    other HTTP error is non-retryable.
    """
    full_url = url
    if query:
        full_url = f"{url}?{urlencode({key: str(value) for key, value in query.items()})}"

    body: bytes | None = None
    request_headers: dict[str, str] = {"Accept": "application/json", **dict(headers)}
    if payload is not None:
        body = json.dumps(payload, ensure_ascii=True).encode("utf-8")
        request_headers["Content-Type"] = "application/json"

    request = Request(
        url=full_url,
        data=body,
        headers=request_headers,
        method=method,
    )

    LOGGER.debug("%s request method=%s url=%s", service, method, url)
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        response_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        parsed = decode_json_object(response_body)
        message = _extract_error_message(parsed) or response_body.strip() or str(exc)
        raise CollaboratorError(
            f"{service} API request failed with HTTP {exc.code}: {message}",
            service=service,
            status_code=exc.code,
            retryable=is_retryable_status(exc.code),
        ) from exc
    except URLError as exc:
        raise CollaboratorError(
            f"{service} request failed: {exc.reason}",
            service=service,
            retryable=True,
        ) from exc
    except TimeoutError as exc:
        raise CollaboratorError(
            f"{service} request timed out after {timeout_seconds}s",
            service=service,
            retryable=True,
        ) from exc

    return decode_json_object(raw_body)


def decode_json_object(raw_body: str) -> dict[str, object]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        parsed_dict = cast(dict[object, object], parsed)
        output: dict[str, object] = {}
        for key, value in parsed_dict.items():
            if isinstance(key, str):
                output[key] = value
        return output
    return {}


def as_object_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    items: list[dict[str, object]] = []
    for raw_item in cast(list[object], value):
        if isinstance(raw_item, dict):
            raw_dict = cast(dict[object, object], raw_item)
            items.append({key: item for key, item in raw_dict.items() if isinstance(key, str)})
    return items


def to_optional_text(value: object) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped:
            return stripped
    return None


def to_optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _extract_error_message(payload: dict[str, object]) -> str | None:
    error_value = payload.get("error")
    if isinstance(error_value, dict):
        nested = cast(dict[object, object], error_value).get("message")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()
    for key in ("errorMessage", "error_description", "message", "error"):
        value = to_optional_text(payload.get(key))
        if value is not None:
            return value
    return None
