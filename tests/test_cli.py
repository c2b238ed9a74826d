from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from vidtag.cli.main import main
from vidtag.config import AppSettings
from vidtag.models.run_models import ProgressEvent, RunSummary
from vidtag.models.tagging_contracts import TagRunOptions
from vidtag.services.event_stream import ProgressSink
from vidtag.services.resilience import ResilientCall
from vidtag.services.sweep import SweepReport, SweepSourceResult


class _FakeOrchestrator:
    def __init__(self, *, aborted: bool = False) -> None:
        self.aborted = aborted
        self.calls: list[tuple[str, TagRunOptions]] = []

    def run(self, source_input: str, options: TagRunOptions, sink: ProgressSink) -> RunSummary:
        self.calls.append((source_input, options))
        summary = RunSummary(run_id="run-1")
        sink.emit(ProgressEvent(kind="started", message="tagging [PLtalks]", sequence=1))
        if self.aborted:
            sink.emit(
                ProgressEvent(
                    kind="error",
                    message="playlist fetch failed",
                    data={"scope": "run", "reason": "playlist not found"},
                    sequence=2,
                )
            )
            summary.finalize(aborted=True)
            return summary
        sink.emit(
            ProgressEvent(
                kind="itemCompleted",
                message="tagged Typed Python",
                data={"tags": ["python", "typing"]},
                sequence=2,
            )
        )
        summary.total = 1
        summary.succeeded = 1
        summary.finalize()
        return summary


class _FakeSweep:
    def run_once(self) -> SweepReport:
        return SweepReport(
            tick_id="abcdef1234567890",
            started_at=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
            finished_at=datetime(2026, 3, 1, 12, 1, tzinfo=UTC),
            sources=(
                SweepSourceResult(playlist_id="PLa", outcome="completed", total=2, succeeded=2),
                SweepSourceResult(
                    playlist_id="PLb",
                    outcome="failed",
                    error="boom",
                ),
            ),
        )


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        data_dir=tmp_path,
        db_path=tmp_path / "state.db",
        log_dir=tmp_path / "logs",
        scheduler_playlist_ids="PLa,PLb",
    )


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setattr(
        "vidtag.cli.commands.tagging.configure_application_logging",
        lambda settings: settings.log_dir,
    )
    monkeypatch.setattr(
        "vidtag.cli.commands.sweep.configure_application_logging",
        lambda settings: settings.log_dir,
    )


def _install(
    monkeypatch: pytest.MonkeyPatch,
    settings: AppSettings,
    orchestrator: _FakeOrchestrator,
) -> None:
    monkeypatch.setattr("vidtag.cli.commands.tagging.get_settings", lambda: settings)
    monkeypatch.setattr("vidtag.cli.commands.tagging.get_orchestrator", lambda: orchestrator)


def test_tag_command_prints_events_and_totals(
    monkeypatch: pytest.MonkeyPatch,
    settings: AppSettings,
) -> None:
    orchestrator = _FakeOrchestrator()
    _install(monkeypatch, settings, orchestrator)

    result = CliRunner().invoke(
        main,
        ["tag", "PLtalks", "--max-tags", "3", "--block", "Shorts", "--verbosity", "DETAILED"],
    )

    assert result.exit_code == 0, result.output
    assert "tagging [PLtalks]" in result.output
    assert "tags: python, typing" in result.output
    assert "Total: 1" in result.output
    playlist, options = orchestrator.calls[0]
    assert playlist == "PLtalks"
    assert options.max_tags_per_item == 3
    assert options.blocklist == ["shorts"]
    assert options.verbosity == "detailed"


def test_tag_command_merges_options_file(
    monkeypatch: pytest.MonkeyPatch,
    settings: AppSettings,
    tmp_path: Path,
) -> None:
    orchestrator = _FakeOrchestrator()
    _install(monkeypatch, settings, orchestrator)
    options_file = tmp_path / "options.yaml"
    options_file.write_text(
        "max_items: 5\n"
        "blocklist: [asmr]\n"
        "filters:\n"
        "  title_contains: Python\n"
        "  min_duration_seconds: 60\n",
        encoding="utf-8",
    )

    result = CliRunner().invoke(
        main,
        [
            "tag",
            "PLtalks",
            "--options-file",
            str(options_file),
            "--min-duration",
            "300",
            "--block",
            "shorts",
        ],
    )

    assert result.exit_code == 0, result.output
    options = orchestrator.calls[0][1]
    assert options.max_items == 5
    assert options.filters.title_contains == "Python"
    assert options.filters.min_duration_seconds == 300
    assert options.blocklist == ["asmr", "shorts"]


def test_tag_command_rejects_invalid_options(
    monkeypatch: pytest.MonkeyPatch,
    settings: AppSettings,
) -> None:
    orchestrator = _FakeOrchestrator()
    _install(monkeypatch, settings, orchestrator)

    result = CliRunner().invoke(main, ["tag", "PLtalks", "--confidence", "1.5"])

    assert result.exit_code == 2
    assert "Invalid run options" in result.output
    assert orchestrator.calls == []


def test_tag_command_rejects_non_mapping_options_file(
    monkeypatch: pytest.MonkeyPatch,
    settings: AppSettings,
    tmp_path: Path,
) -> None:
    _install(monkeypatch, settings, _FakeOrchestrator())
    options_file = tmp_path / "options.yaml"
    options_file.write_text("- just\n- a list\n", encoding="utf-8")

    result = CliRunner().invoke(main, ["tag", "PLtalks", "--options-file", str(options_file)])

    assert result.exit_code == 2
    assert "options file must contain a mapping" in result.output


def test_tag_command_exits_non_zero_when_aborted(
    monkeypatch: pytest.MonkeyPatch,
    settings: AppSettings,
) -> None:
    _install(monkeypatch, settings, _FakeOrchestrator(aborted=True))

    result = CliRunner().invoke(main, ["tag", "PLmissing"])

    assert result.exit_code == 1
    assert "playlist not found" in result.output
    assert "Run aborted" in result.output


def test_sweep_command_prints_sources(
    monkeypatch: pytest.MonkeyPatch,
    settings: AppSettings,
) -> None:
    monkeypatch.setattr("vidtag.cli.commands.sweep.get_settings", lambda: settings)
    monkeypatch.setattr("vidtag.cli.commands.sweep.get_sweep", lambda: _FakeSweep())
    monkeypatch.setattr(
        "vidtag.cli.commands.sweep.get_resilient_call",
        lambda: ResilientCall(),
    )

    result = CliRunner().invoke(main, ["sweep"])

    assert result.exit_code == 0, result.output
    assert "PLa" in result.output
    assert "completed" in result.output
    assert "failed" in result.output


def test_sweep_command_without_playlists(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    empty_settings: Any = AppSettings(data_dir=tmp_path, scheduler_playlist_ids="")
    monkeypatch.setattr("vidtag.cli.commands.sweep.get_settings", lambda: empty_settings)

    result = CliRunner().invoke(main, ["sweep"])

    assert result.exit_code == 0
    assert "No playlists configured" in result.output
