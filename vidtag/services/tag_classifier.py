from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any, cast

from vidtag.models.run_models import TagSuggestion, VideoItem, normalize_tag_name
from vidtag.models.tagging_contracts import TagRunOptions
from vidtag.services.llm_client import LlmClient

LOGGER = logging.getLogger("vidtag.tagging")

MARKDOWN_CODE_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n?(.+?)\n?```", re.DOTALL)
_MAX_DESCRIPTION_CHARS = 4_000


class LlmTagClassifier:
    def __init__(self, llm: LlmClient, *, blocked_tags: Iterable[str] = ()) -> None:
        self._llm = llm
        self._blocked_tags = frozenset(normalize_tag_name(tag) for tag in blocked_tags)

    def suggest_tags(
        self,
        item: VideoItem,
        vocabulary: Sequence[str],
        options: TagRunOptions,
    ) -> list[TagSuggestion]:
        blocked = sorted(self._blocked_tags | frozenset(options.blocklist))
        prompt = build_tagging_prompt(item, vocabulary, options, blocked_tags=blocked)
        LOGGER.debug("requesting tags video_id=%s vocabulary=%s", item.video_id, len(vocabulary))
        response = self._llm.complete(prompt)
        known = {normalize_tag_name(tag) for tag in vocabulary}
        suggestions = parse_tag_response(response, known_tags=known)
        LOGGER.debug(
            "tags suggested video_id=%s count=%s",
            item.video_id,
            len(suggestions),
        )
        return suggestions


def build_tagging_prompt(
    item: VideoItem,
    vocabulary: Sequence[str],
    options: TagRunOptions,
    *,
    blocked_tags: Sequence[str] = (),
) -> str:
    lines: list[str] = [
        "You are a video tagging assistant. Analyze the following video and generate relevant tags.",
        "",
        f"Video Title: {item.title}",
    ]
    if item.description:
        lines.append(f"Video Description: {item.description[:_MAX_DESCRIPTION_CHARS]}")
    lines.append("")

    if vocabulary:
        lines.append("Existing tags to prefer (use these when appropriate, mark isExisting=true):")
        lines.extend(f"- {tag}" for tag in vocabulary)
        lines.append("")

    lines.append("Tag Strategy Rules:")
    lines.append(f"- Maximum tags: {options.max_tags_per_item}")
    if options.confidence_threshold > 0:
        lines.append(f"- Minimum confidence threshold: {options.confidence_threshold}")
    if options.custom_instructions:
        lines.append(f"- Custom instructions: {options.custom_instructions}")
    lines.append("- Prefer existing tags when they are relevant")
    lines.append("- Generate lowercase, hyphenated tags (e.g., 'spring-boot', 'machine-learning')")
    lines.append("")

    if blocked_tags:
        lines.append(f"IMPORTANT: Do not suggest any of these tags: {', '.join(blocked_tags)}")
        lines.append("These tags are explicitly blocked and should be avoided.")
        lines.append("")

    lines.append("Respond with ONLY a JSON array (no markdown, no explanation) in this format:")
    lines.append('[{"tag":"tag-name","confidence":0.0-1.0,"isExisting":true/false}]')
    lines.append("")
    lines.append("Confidence should reflect how relevant the tag is to the video content.")
    return "\n".join(lines)


def parse_tag_response(response: str, *, known_tags: set[str] | None = None) -> list[TagSuggestion]:
    """Parse the model's JSON array. Anything unparseable yields no suggestions."""
    if not response or not response.strip():
        LOGGER.warning("received empty tagging response")
        return []

    content = extract_json_from_markdown(response)
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        LOGGER.warning("tagging response is not valid JSON error=%s", exc.msg)
        LOGGER.debug("raw tagging response=%s", response)
        return []
    if not isinstance(parsed, list):
        LOGGER.warning("tagging response is not a JSON array type=%s", type(parsed).__name__)
        return []

    known = known_tags or set()
    suggestions: list[TagSuggestion] = []
    for raw_entry in cast(list[Any], parsed):
        if not isinstance(raw_entry, dict):
            continue
        entry = cast(dict[str, Any], raw_entry)
        raw_tag = entry.get("tag")
        raw_confidence = entry.get("confidence")
        if not isinstance(raw_tag, str) or isinstance(raw_confidence, bool):
            continue
        if not isinstance(raw_confidence, int | float):
            continue
        tag = normalize_tag_name(raw_tag)
        if not tag:
            continue
        raw_existing = entry.get("isExisting")
        is_existing = raw_existing if isinstance(raw_existing, bool) else tag in known
        suggestions.append(
            TagSuggestion(
                tag=tag,
                confidence=min(1.0, max(0.0, float(raw_confidence))),
                is_existing=is_existing,
            )
        )
    return suggestions


def extract_json_from_markdown(response: str) -> str:
    matched = MARKDOWN_CODE_BLOCK_PATTERN.search(response)
    if matched is not None:
        return matched.group(1).strip()
    return response.strip()
