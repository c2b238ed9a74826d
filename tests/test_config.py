from __future__ import annotations

from pathlib import Path

import pytest

from vidtag.config import load_settings, split_comma_list
from vidtag.dependencies import (
    get_bookmark_store,
    get_llm_client,
    get_resilient_call,
    get_sweep,
    get_video_source,
    reset_cached_dependencies,
)
from vidtag.services.raindrop_store import RaindropBookmarkStore
from vidtag.services.stand_ins import (
    UnconfiguredBookmarkStore,
    UnconfiguredLlmClient,
    UnconfiguredVideoSource,
)


@pytest.fixture(autouse=True)
def _isolated_settings(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("VIDTAG_DATA_DIR", str(tmp_path / "data"))
    reset_cached_dependencies()


def test_defaults_derive_paths_from_data_dir(tmp_path: Path) -> None:
    settings = load_settings()

    data_dir = (tmp_path / "data").resolve()
    assert settings.data_dir == data_dir
    assert settings.db_path == data_dir / "state.db"
    assert settings.log_dir == data_dir / "logs"
    assert settings.resilience_failure_rate_threshold == 0.5
    assert settings.resilience_sliding_window_size == 10
    assert settings.resilience_open_wait_seconds == 30.0
    assert settings.resilience_retry_attempts == 3
    assert settings.fallback_collection == "Videos"
    assert settings.scheduler_enabled is False
    assert settings.scheduler_fixed_delay_seconds == 3_600


def test_explicit_db_path_is_kept(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_DB_PATH", str(tmp_path / "elsewhere.db"))

    settings = load_settings()

    assert settings.db_path == (tmp_path / "elsewhere.db").resolve()
    assert settings.log_dir == (tmp_path / "data" / "logs").resolve()


@pytest.mark.parametrize(
    ("raw_value", "expected"),
    [("1", True), ("yes", True), ("ON", True), ("0", False), ("off", False), ("maybe", False)],
)
def test_boolean_env_values(
    monkeypatch: pytest.MonkeyPatch,
    raw_value: str,
    expected: bool,
) -> None:
    monkeypatch.setenv("VIDTAG_DEBUG_MODE", raw_value)

    assert load_settings().debug_mode is expected


def test_invalid_boolean_falls_back_to_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_TELEMETRY_ENABLED", "perhaps")

    assert load_settings().telemetry_enabled is True


def test_scheduler_requires_playlist_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_SCHEDULER_ENABLED", "true")

    with pytest.raises(ValueError, match="VIDTAG_SCHEDULER_PLAYLIST_IDS"):
        load_settings()


def test_scheduler_playlist_ids_are_split(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_SCHEDULER_ENABLED", "true")
    monkeypatch.setenv("VIDTAG_SCHEDULER_PLAYLIST_IDS", " PLa, ,PLb ,")

    settings = load_settings()

    assert settings.scheduler_playlist_id_list == ["PLa", "PLb"]


def test_blocked_tags_are_lower_cased(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_BLOCKED_TAGS", "Shorts, ASMR ,")

    assert load_settings().blocked_tags_set == frozenset({"shorts", "asmr"})


def test_resilience_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "VIDTAG_RESILIENCE_OVERRIDES",
        '{"youtube.fetch_items": {"retry_attempts": 5, "open_wait_seconds": 60}}',
    )
    reset_cached_dependencies()

    settings = load_settings()
    policy = get_resilient_call().registry.policy_for("youtube.fetch_items")

    assert settings.resilience_overrides == {
        "youtube.fetch_items": {"retry_attempts": 5.0, "open_wait_seconds": 60.0}
    }
    assert policy.retry_attempts == 5
    assert policy.open_wait_seconds == 60.0
    assert get_resilient_call().registry.policy_for("raindrop.write").retry_attempts == 3


def test_resilience_overrides_reject_unknown_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_RESILIENCE_OVERRIDES", '{"raindrop.write": {"timeout": 3}}')

    with pytest.raises(ValueError, match="unknown key 'timeout'"):
        load_settings()


def test_base_urls_lose_trailing_slash(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_RAINDROP_BASE_URL", "https://raindrop.test/rest/v1/")

    assert load_settings().raindrop_base_url == "https://raindrop.test/rest/v1"


def test_blank_secrets_are_treated_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_YOUTUBE_API_KEY", "   ")

    assert load_settings().youtube_api_key is None


def test_missing_credentials_yield_stand_ins() -> None:
    assert isinstance(get_video_source(), UnconfiguredVideoSource)
    assert isinstance(get_bookmark_store(), UnconfiguredBookmarkStore)
    assert isinstance(get_llm_client(), UnconfiguredLlmClient)


def test_configured_credentials_yield_real_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_RAINDROP_API_TOKEN", "rd-token")
    reset_cached_dependencies()

    assert isinstance(get_bookmark_store(), RaindropBookmarkStore)


def test_sweep_ignores_legacy_playlist_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIDTAG_SCHEDULER_PLAYLIST_NAME", "Watch later")
    monkeypatch.setenv("VIDTAG_SCHEDULER_PLAYLIST_IDS", "PLa")
    reset_cached_dependencies()

    assert get_sweep().playlist_ids == ("PLa",)


def test_split_comma_list() -> None:
    assert split_comma_list(None) == []
    assert split_comma_list("a, b,,c ") == ["a", "b", "c"]
