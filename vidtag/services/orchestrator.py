from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC
from enum import Enum
from typing import Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from vidtag.models.run_models import (
    EventKind,
    ItemResult,
    ProgressEvent,
    RunSummary,
    TagSuggestion,
    VideoItem,
    normalize_tag_name,
)
from vidtag.models.tagging_contracts import TagRunOptions, VideoFilters
from vidtag.services.collaborators import (
    BookmarkStore,
    Classifier,
    CollectionChooser,
    TagVocabulary,
    VideoSource,
)
from vidtag.services.event_stream import ProgressSink
from vidtag.services.resilience import CircuitOpenError, ResilienceError, ResilientCall
from vidtag.telemetry import TelemetryClient

LOGGER = logging.getLogger("vidtag.orchestrator")

DEFAULT_BATCH_SIZE = 10

CALL_SITE_FETCH_ITEMS = "youtube.fetch_items"
CALL_SITE_BOOKMARK_EXISTS = "raindrop.exists"
CALL_SITE_BOOKMARK_WRITE = "raindrop.write"
CALL_SITE_RESOLVE_TARGET = "raindrop.resolve_target"
CALL_SITE_TAG_VOCABULARY = "raindrop.list_tags"
CALL_SITE_SUGGEST_TAGS = "claude.suggest_tags"


class RunState(Enum):
    IDLE = "idle"
    FETCHING_SOURCE = "fetching_source"
    PROCESSING_BATCH = "processing_batch"
    SUMMARIZING = "summarizing"
    DONE = "done"
    ABORTED = "aborted"


class FatalSourceError(RuntimeError):
    def __init__(self, source_input: str, cause: BaseException) -> None:
        super().__init__(f"could not fetch playlist {source_input}: {cause}")
        self.source_input = source_input
        self.cause = cause


class ItemError(RuntimeError):
    def __init__(self, item: VideoItem, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage} failed for {item.video_id}: {cause}")
        self.item = item
        self.stage = stage
        self.cause = cause


def apply_filters(
    items: Iterable[VideoItem],
    filters: VideoFilters,
    *,
    max_items: int | None = None,
) -> list[VideoItem]:
    """Keep items that pass every filter, in source order, capped at `max_items`.

    Items with an unknown duration or publish time never satisfy a filter on that field.
    """
    published_after = filters.published_after
    if published_after is not None and published_after.tzinfo is None:
        published_after = published_after.replace(tzinfo=UTC)
    title_needle = filters.title_contains.lower() if filters.title_contains else None

    selected: list[VideoItem] = []
    for item in items:
        if filters.min_duration_seconds is not None and (
            item.duration_seconds is None or item.duration_seconds < filters.min_duration_seconds
        ):
            continue
        if published_after is not None and (
            item.published_at is None or item.published_at <= published_after
        ):
            continue
        if title_needle is not None and title_needle not in item.title.lower():
            continue
        selected.append(item)
        if max_items is not None and len(selected) >= max_items:
            break
    return selected


def select_tags(
    suggestions: Iterable[TagSuggestion],
    *,
    confidence_threshold: float,
    blocked_tags: frozenset[str],
    max_tags: int,
) -> list[TagSuggestion]:
    normalized: dict[str, TagSuggestion] = {}
    for suggestion in suggestions:
        tag = normalize_tag_name(suggestion.tag)
        if not tag or tag in blocked_tags:
            continue
        if suggestion.confidence < confidence_threshold:
            continue
        current = normalized.get(tag)
        if current is None or suggestion.confidence > current.confidence:
            normalized[tag] = TagSuggestion(
                tag=tag,
                confidence=suggestion.confidence,
                is_existing=suggestion.is_existing,
            )
    ranked = sorted(normalized.values(), key=lambda item: item.confidence, reverse=True)
    return ranked[: max(0, max_tags)]


def partition(items: Sequence[VideoItem], size: int) -> list[Sequence[VideoItem]]:
    step = max(1, size)
    return [items[index : index + step] for index in range(0, len(items), step)]


class _RunEmitter:
    def __init__(self, sink: ProgressSink, options: TagRunOptions) -> None:
        self._sink = sink
        self._verbosity = options.verbosity
        self._sequence = 0

    @property
    def detailed(self) -> bool:
        return self._verbosity in {"detailed", "verbose"}

    def emit(self, kind: EventKind, message: str, data: dict[str, Any] | None = None) -> None:
        if kind == "progress" and self._verbosity == "minimal":
            return
        self._sequence += 1
        self._sink.emit(ProgressEvent(kind=kind, message=message, data=data, sequence=self._sequence))

    def close(self) -> None:
        self._sink.close()

    def stage(self, item: VideoItem, stage: str) -> None:
        if self._verbosity != "verbose":
            return
        self.emit(
            "progress",
            f"{stage} '{item.title}'",
            {"item_id": item.video_id, "stage": stage},
        )


@dataclass
class _RunContext:
    source_input: str
    options: TagRunOptions
    emitter: _RunEmitter
    summary: RunSummary
    blocked_tags: frozenset[str]
    state: RunState = RunState.IDLE
    vocabulary: list[str] = field(default_factory=list)
    collection_title: str = ""
    target_id: int | None = None

    def transition(self, state: RunState) -> None:
        LOGGER.debug(
            "run state change run_id=%s from=%s to=%s",
            self.summary.run_id,
            self.state.value,
            state.value,
        )
        self.state = state


class BatchOrchestrator:
    """
    Runs one playlist end to end: fetch, filter, then dedupe, classify, resolve and write
    each item in order.

    Only the source fetch can abort a run. Every per-item failure becomes a `failed`
    `ItemResult` and the run moves on.
    """

    def __init__(
        self,
        *,
        video_source: VideoSource,
        classifier: Classifier,
        bookmark_store: BookmarkStore,
        tag_vocabulary: TagVocabulary,
        resilient_call: ResilientCall,
        collection_chooser: CollectionChooser | None = None,
        fallback_collection: str = "Videos",
        blocked_tags: Iterable[str] = (),
        batch_size: int = DEFAULT_BATCH_SIZE,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._video_source = video_source
        self._classifier = classifier
        self._bookmark_store = bookmark_store
        self._tag_vocabulary = tag_vocabulary
        self._resilient_call = resilient_call
        self._collection_chooser = collection_chooser
        self._fallback_collection = fallback_collection
        self._blocked_tags = frozenset(normalize_tag_name(tag) for tag in blocked_tags)
        self._batch_size = max(1, batch_size)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def run(
        self,
        source_input: str,
        options: TagRunOptions,
        sink: ProgressSink,
        *,
        run_id: str | None = None,
    ) -> RunSummary:
        resolved_run_id = run_id or uuid4().hex
        context = _RunContext(
            source_input=source_input,
            options=options,
            emitter=_RunEmitter(sink, options),
            summary=RunSummary(run_id=resolved_run_id),
            blocked_tags=self._blocked_tags | frozenset(options.blocklist),
        )
        context_tokens = bind_contextvars(run_id=resolved_run_id, playlist_input=source_input)
        started_at = time.perf_counter()
        try:
            self._telemetry.emit(
                "playlist.run.start",
                run_id=resolved_run_id,
                playlist_input=source_input,
                verbosity=options.verbosity,
            )
            LOGGER.info("playlist run started run_id=%s playlist=%s", resolved_run_id, source_input)
            context.transition(RunState.FETCHING_SOURCE)
            context.emitter.emit(
                "started",
                f"Processing playlist: {source_input}",
                {"run_id": resolved_run_id, "playlist_input": source_input},
            )

            try:
                items = self._fetch_items(context)
            except FatalSourceError as exc:
                self._abort(context, exc)
                self._telemetry.emit(
                    "playlist.run.abort",
                    run_id=resolved_run_id,
                    duration_ms=int((time.perf_counter() - started_at) * 1000),
                    error_type=type(exc.cause).__name__,
                )
                return context.summary

            if items:
                self._prepare(context, items)
                self._process_batches(context, items)

            self._complete(context)
            self._telemetry.emit(
                "playlist.run.finish",
                run_id=resolved_run_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                total=context.summary.total,
                succeeded=context.summary.succeeded,
                skipped=context.summary.skipped,
                failed=context.summary.failed,
            )
            return context.summary
        finally:
            reset_contextvars(**context_tokens)

    def _fetch_items(self, context: _RunContext) -> list[VideoItem]:
        source_input = context.source_input
        try:
            fetched = self._resilient_call.invoke(
                CALL_SITE_FETCH_ITEMS,
                lambda: self._video_source.fetch_items(source_input),
            )
        except ResilienceError as exc:
            raise FatalSourceError(source_input, exc) from exc

        filters = context.options.filters
        items = apply_filters(fetched, filters, max_items=context.options.max_items)
        LOGGER.info(
            "playlist fetched run_id=%s fetched=%s selected=%s",
            context.summary.run_id,
            len(fetched),
            len(items),
        )
        context.emitter.emit(
            "progress",
            f"Found {len(items)} videos to process",
            {"fetched": len(fetched), "selected": len(items)},
        )
        return items

    def _prepare(self, context: _RunContext, items: Sequence[VideoItem]) -> None:
        try:
            vocabulary = self._resilient_call.invoke(
                CALL_SITE_TAG_VOCABULARY,
                self._tag_vocabulary.existing_tags,
            )
        except ResilienceError as exc:
            LOGGER.warning(
                "tag vocabulary unavailable; continuing without it run_id=%s error=%s",
                context.summary.run_id,
                exc,
            )
            context.emitter.emit(
                "progress",
                "Existing tags unavailable; tagging without them",
                {"warning": "tag_vocabulary_unavailable", "error_type": type(exc).__name__},
            )
            vocabulary = []
        context.vocabulary = list(vocabulary)

        context.collection_title = self._choose_collection(context, items)
        context.emitter.emit(
            "progress",
            f"Using collection: {context.collection_title}",
            {"collection_title": context.collection_title, "existing_tags": len(vocabulary)},
        )

    def _choose_collection(self, context: _RunContext, items: Sequence[VideoItem]) -> str:
        explicit_title = context.options.collection_title
        if explicit_title:
            return explicit_title
        if self._collection_chooser is None:
            return self._fallback_collection

        context.emitter.emit("progress", "Analyzing playlist to determine collection")
        try:
            return self._collection_chooser.choose_collection(context.source_input, items)
        except Exception:
            LOGGER.warning(
                "collection choice failed; using fallback run_id=%s fallback=%s",
                context.summary.run_id,
                self._fallback_collection,
                exc_info=True,
            )
            return self._fallback_collection

    def _process_batches(self, context: _RunContext, items: Sequence[VideoItem]) -> None:
        batches = partition(items, self._batch_size)
        for batch_number, batch in enumerate(batches, start=1):
            context.transition(RunState.PROCESSING_BATCH)
            counts = {"completed": 0, "skipped": 0, "failed": 0}
            for item in batch:
                result = self._run_item(context, item)
                context.summary.record(result)
                counts[result.outcome] += 1

            context.emitter.emit(
                "batchCompleted",
                (
                    f"Batch {batch_number}/{len(batches)} completed: {counts['completed']} "
                    f"succeeded, {counts['skipped']} skipped, {counts['failed']} failed"
                ),
                {
                    "batch_number": batch_number,
                    "total_batches": len(batches),
                    "succeeded": counts["completed"],
                    "skipped": counts["skipped"],
                    "failed": counts["failed"],
                },
            )

    def _run_item(self, context: _RunContext, item: VideoItem) -> ItemResult:
        try:
            return self._process_item(context, item)
        except ItemError as exc:
            reason = str(exc.cause)
            LOGGER.warning(
                "item failed run_id=%s video_id=%s stage=%s error=%s",
                context.summary.run_id,
                item.video_id,
                exc.stage,
                reason,
            )
            error_data: dict[str, Any] = {
                "scope": "item",
                "item_id": item.video_id,
                "title": item.title,
                "url": item.url,
                "stage": exc.stage,
                "error_type": type(exc.cause).__name__,
                "reason": reason,
            }
            if isinstance(exc.cause, CircuitOpenError):
                error_data["retry_after_seconds"] = exc.cause.retry_after_seconds
            context.emitter.emit(
                "error",
                f"Failed to process video '{item.title}': {reason}",
                error_data,
            )
            return ItemResult.failed(item.video_id, reason)

    def _process_item(self, context: _RunContext, item: VideoItem) -> ItemResult:
        stage = "dedupe"
        try:
            context.emitter.stage(item, "checking")
            # Deduplication is account-wide; the target is not resolved until after classification.
            exists = self._resilient_call.invoke(
                CALL_SITE_BOOKMARK_EXISTS,
                lambda: self._bookmark_store.exists(None, item.url),
            )
            if exists:
                context.emitter.emit(
                    "itemSkipped",
                    f"Skipped '{item.title}' - already bookmarked in some collection",
                    {
                        "item_id": item.video_id,
                        "title": item.title,
                        "url": item.url,
                        "match_scope": "account",
                    },
                )
                return ItemResult.skipped(item.video_id)

            stage = "classify"
            context.emitter.stage(item, "tagging")
            vocabulary = context.vocabulary
            options = context.options
            suggestions = self._resilient_call.invoke(
                CALL_SITE_SUGGEST_TAGS,
                lambda: self._classifier.suggest_tags(item, vocabulary, options),
            )
            selected = select_tags(
                suggestions,
                confidence_threshold=options.confidence_threshold,
                blocked_tags=context.blocked_tags,
                max_tags=options.max_tags_per_item,
            )
            tag_names = tuple(suggestion.tag for suggestion in selected)

            stage = "resolve_target"
            target_id = self._resolve_target(context)

            stage = "write"
            context.emitter.stage(item, "saving")
            self._resilient_call.invoke(
                CALL_SITE_BOOKMARK_WRITE,
                lambda: self._bookmark_store.write(target_id, item.url, item.title, list(tag_names)),
            )
        except Exception as exc:
            raise ItemError(item, stage, exc) from exc

        payload: dict[str, Any] = {
            "item_id": item.video_id,
            "title": item.title,
            "url": item.url,
            "tags": list(tag_names),
            "collection_title": context.collection_title,
        }
        if context.emitter.detailed:
            payload["tag_confidences"] = [suggestion.to_payload() for suggestion in selected]
        context.emitter.emit(
            "itemCompleted",
            f"Tagged '{item.title}' with {len(tag_names)} tags",
            payload,
        )
        LOGGER.info(
            "item tagged run_id=%s video_id=%s tags=%s",
            context.summary.run_id,
            item.video_id,
            len(tag_names),
        )
        return ItemResult.completed(item.video_id, tag_names)

    def _resolve_target(self, context: _RunContext) -> int:
        if context.target_id is not None:
            return context.target_id
        title = context.collection_title or self._fallback_collection
        target_id = self._resilient_call.invoke(
            CALL_SITE_RESOLVE_TARGET,
            lambda: self._bookmark_store.resolve_or_create_target(title),
        )
        context.target_id = target_id
        return target_id

    def _abort(self, context: _RunContext, exc: FatalSourceError) -> None:
        context.transition(RunState.ABORTED)
        context.summary.finalize(aborted=True)
        LOGGER.error(
            "playlist run aborted run_id=%s playlist=%s error=%s",
            context.summary.run_id,
            context.source_input,
            exc.cause,
        )
        error_data: dict[str, Any] = {
            "scope": "run",
            "stage": "fetch_source",
            "error_type": type(exc.cause).__name__,
            "reason": str(exc.cause),
            "summary": context.summary.to_payload(),
        }
        if isinstance(exc.cause, CircuitOpenError):
            error_data["retry_after_seconds"] = exc.cause.retry_after_seconds
        context.emitter.emit("error", f"Fatal error: {exc}", error_data)
        context.emitter.close()

    def _complete(self, context: _RunContext) -> None:
        context.transition(RunState.SUMMARIZING)
        summary = context.summary
        summary.finalize()
        context.emitter.emit(
            "completed",
            (
                f"Processing complete: {summary.succeeded} succeeded, "
                f"{summary.skipped} skipped, {summary.failed} failed"
            ),
            summary.to_payload(),
        )
        context.emitter.close()
        context.transition(RunState.DONE)
        LOGGER.info(
            "playlist run finished run_id=%s total=%s succeeded=%s skipped=%s failed=%s",
            summary.run_id,
            summary.total,
            summary.succeeded,
            summary.skipped,
            summary.failed,
        )
