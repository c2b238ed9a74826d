from __future__ import annotations

import logging
from typing import Protocol

from vidtag.services.collaborators import CollaboratorError
from vidtag.services.http_json import as_object_list, request_json, to_optional_text

LOGGER = logging.getLogger("vidtag.llm")

SERVICE_NAME = "anthropic"
ANTHROPIC_VERSION = "2023-06-01"


class LlmClient(Protocol):
    def complete(self, prompt: str) -> str:
        ...


class AnthropicMessagesClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com",
        max_tokens: int = 1024,
        http_timeout_seconds: float = 30.0,
    ) -> None:
        if not api_key.strip():
            raise ValueError("AnthropicMessagesClient requires an API key.")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._max_tokens = max(16, int(max_tokens))
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))

    def complete(self, prompt: str) -> str:
        response = request_json(
            service=SERVICE_NAME,
            method="POST",
            url=f"{self._base_url}/v1/messages",
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            timeout_seconds=self._http_timeout_seconds,
            payload={
                "model": self._model,
                "max_tokens": self._max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            },
        )

        text_parts: list[str] = []
        for block in as_object_list(response.get("content")):
            if block.get("type") != "text":
                continue
            text = to_optional_text(block.get("text"))
            if text is not None:
                text_parts.append(text)
        if not text_parts:
            raise CollaboratorError(
                "Anthropic response contained no text content",
                service=SERVICE_NAME,
            )
        stop_reason = response.get("stop_reason")
        if stop_reason == "max_tokens":
            LOGGER.warning("llm response truncated at max_tokens model=%s", self._model)
        return "\n".join(text_parts)
