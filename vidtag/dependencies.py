from __future__ import annotations

import logging
from functools import lru_cache

from vidtag.config import AppSettings, load_settings
from vidtag.repositories.cache_repository import CacheRepository
from vidtag.repositories.database import Database
from vidtag.services.collection_selection import CollectionSelector
from vidtag.services.llm_client import AnthropicMessagesClient, LlmClient
from vidtag.services.orchestrator import BatchOrchestrator
from vidtag.services.raindrop_store import RaindropBookmarkStore
from vidtag.services.resilience import CircuitBreakerRegistry, ResiliencePolicy, ResilientCall
from vidtag.services.run_dispatcher import RunDispatcher
from vidtag.services.stand_ins import (
    UnconfiguredBookmarkStore,
    UnconfiguredLlmClient,
    UnconfiguredVideoSource,
)
from vidtag.services.sweep import PeriodicSweep, SweepScheduler
from vidtag.services.tag_classifier import LlmTagClassifier
from vidtag.services.tag_vocabulary import CachedTagVocabulary
from vidtag.services.unsorted_processor import UnsortedBookmarkProcessor
from vidtag.services.youtube_source import YouTubeVideoSource
from vidtag.telemetry import TelemetryClient, build_telemetry_client

LOGGER = logging.getLogger("vidtag.dependencies")


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_cache_repository() -> CacheRepository:
    settings = get_settings()
    database = Database(settings.db_path)
    database.initialize()
    return CacheRepository(database)


@lru_cache(maxsize=1)
def get_resilient_call() -> ResilientCall:
    settings = get_settings()
    registry = CircuitBreakerRegistry(
        default_policy=ResiliencePolicy(
            failure_rate_threshold=settings.resilience_failure_rate_threshold,
            sliding_window_size=settings.resilience_sliding_window_size,
            open_wait_seconds=settings.resilience_open_wait_seconds,
            retry_attempts=settings.resilience_retry_attempts,
            backoff_initial_seconds=settings.resilience_backoff_initial_seconds,
            backoff_multiplier=settings.resilience_backoff_multiplier,
        ),
        overrides=settings.resilience_overrides,
    )
    return ResilientCall(registry, telemetry=get_telemetry())


@lru_cache(maxsize=1)
def get_video_source() -> YouTubeVideoSource | UnconfiguredVideoSource:
    settings = get_settings()
    if settings.youtube_api_key is None:
        LOGGER.warning("VIDTAG_YOUTUBE_API_KEY is not set; playlist fetches will fail")
        return UnconfiguredVideoSource()
    return YouTubeVideoSource(api_key=settings.youtube_api_key)


@lru_cache(maxsize=1)
def get_bookmark_store() -> RaindropBookmarkStore | UnconfiguredBookmarkStore:
    settings = get_settings()
    if settings.raindrop_api_token is None:
        LOGGER.warning("VIDTAG_RAINDROP_API_TOKEN is not set; bookmark writes will fail")
        return UnconfiguredBookmarkStore()
    return RaindropBookmarkStore(
        api_token=settings.raindrop_api_token,
        base_url=settings.raindrop_base_url,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_llm_client() -> LlmClient:
    settings = get_settings()
    if settings.anthropic_api_key is None:
        LOGGER.warning("VIDTAG_ANTHROPIC_API_KEY is not set; tagging will fail")
        return UnconfiguredLlmClient()
    return AnthropicMessagesClient(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        base_url=settings.anthropic_base_url,
        max_tokens=settings.anthropic_max_tokens,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_tag_vocabulary() -> CachedTagVocabulary:
    settings = get_settings()
    return CachedTagVocabulary(
        get_bookmark_store(),
        cache=get_cache_repository(),
        ttl_seconds=settings.tag_vocabulary_cache_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_collection_selector() -> CollectionSelector:
    settings = get_settings()
    return CollectionSelector(
        llm=get_llm_client(),
        collections=get_bookmark_store(),
        resilient_call=get_resilient_call(),
        fallback_collection=settings.fallback_collection,
        cache=get_cache_repository(),
        choice_ttl_seconds=settings.collection_choice_cache_ttl_seconds,
        collections_ttl_seconds=settings.collections_list_cache_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> BatchOrchestrator:
    settings = get_settings()
    return BatchOrchestrator(
        video_source=get_video_source(),
        classifier=LlmTagClassifier(get_llm_client(), blocked_tags=settings.blocked_tags_set),
        bookmark_store=get_bookmark_store(),
        tag_vocabulary=get_tag_vocabulary(),
        resilient_call=get_resilient_call(),
        collection_chooser=get_collection_selector(),
        fallback_collection=settings.fallback_collection,
        blocked_tags=settings.blocked_tags_set,
        batch_size=settings.batch_size,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_run_dispatcher() -> RunDispatcher:
    settings = get_settings()
    return RunDispatcher(
        get_orchestrator(),
        worker_count=settings.run_worker_count,
        max_buffered_events=settings.event_buffer_size,
        emit_timeout_seconds=settings.event_emit_timeout_seconds,
        strict_streams=settings.debug_mode,
    )


@lru_cache(maxsize=1)
def get_sweep() -> PeriodicSweep:
    settings = get_settings()
    if settings.scheduler_playlist_name is not None:
        LOGGER.warning(
            "VIDTAG_SCHEDULER_PLAYLIST_NAME is no longer supported and is ignored; "
            "list playlist ids in VIDTAG_SCHEDULER_PLAYLIST_IDS instead"
        )
    return PeriodicSweep(
        orchestrator=get_orchestrator(),
        playlist_ids=settings.scheduler_playlist_id_list,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_unsorted_processor() -> UnsortedBookmarkProcessor:
    settings = get_settings()
    return UnsortedBookmarkProcessor(
        bookmarks=get_bookmark_store(),
        videos=get_video_source(),
        classifier=LlmTagClassifier(get_llm_client(), blocked_tags=settings.blocked_tags_set),
        tag_vocabulary=get_tag_vocabulary(),
        resilient_call=get_resilient_call(),
        collection_selector=get_collection_selector(),
        fallback_collection=settings.fallback_collection,
        blocked_tags=settings.blocked_tags_set,
        telemetry=get_telemetry(),
    )


def build_sweep_scheduler(settings: AppSettings) -> SweepScheduler | None:
    if not settings.scheduler_enabled and not settings.unsorted_processor_enabled:
        return None
    return SweepScheduler(
        sweep=get_sweep() if settings.scheduler_enabled else None,
        sweep_interval_seconds=settings.scheduler_fixed_delay_seconds,
        sweep_initial_delay_seconds=settings.scheduler_initial_delay_seconds,
        unsorted_processor=(
            get_unsorted_processor() if settings.unsorted_processor_enabled else None
        ),
        unsorted_interval_seconds=settings.unsorted_processor_fixed_delay_seconds,
        unsorted_initial_delay_seconds=settings.unsorted_processor_initial_delay_seconds,
        telemetry=get_telemetry(),
        lock_path=settings.data_dir / "scheduler.lock",
    )


def reset_cached_dependencies() -> None:
    if get_run_dispatcher.cache_info().currsize:
        get_run_dispatcher().shutdown()
    get_run_dispatcher.cache_clear()
    get_unsorted_processor.cache_clear()
    get_sweep.cache_clear()
    get_orchestrator.cache_clear()
    get_collection_selector.cache_clear()
    get_tag_vocabulary.cache_clear()
    get_llm_client.cache_clear()
    get_bookmark_store.cache_clear()
    get_video_source.cache_clear()
    get_resilient_call.cache_clear()
    get_cache_repository.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
