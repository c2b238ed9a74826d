"""Sweep command for the vidtag CLI."""

import click
from rich.console import Console
from rich.table import Table

from vidtag.dependencies import get_resilient_call, get_settings, get_sweep
from vidtag.logging_config import configure_application_logging

console = Console()

_OUTCOME_STYLES = {"completed": "green", "aborted": "yellow", "failed": "red"}
_STATE_STYLES = {"closed": "green", "half_open": "yellow", "open": "red"}


@click.command()
def sweep():
    """Run one sweep over the configured playlists."""
    settings = get_settings()
    if not settings.scheduler_playlist_id_list:
        console.print("[yellow]No playlists configured (set VIDTAG_SCHEDULER_PLAYLIST_IDS)[/yellow]")
        return

    configure_application_logging(settings)
    report = get_sweep().run_once()

    table = Table(title=f"Sweep {report.tick_id[:8]}")
    table.add_column("Playlist")
    table.add_column("Outcome")
    table.add_column("Total", justify="right")
    table.add_column("Succeeded", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    for source in report.sources:
        style = _OUTCOME_STYLES[source.outcome]
        table.add_row(
            source.playlist_id,
            f"[{style}]{source.outcome}[/{style}]",
            str(source.total),
            str(source.succeeded),
            str(source.skipped),
            str(source.failed),
        )
    console.print(table)

    circuits = Table(title="Circuits")
    circuits.add_column("Call site")
    circuits.add_column("State")
    circuits.add_column("Failures", justify="right")
    circuits.add_column("Retry after", justify="right")
    for snapshot in get_resilient_call().registry.snapshot():
        style = _STATE_STYLES[snapshot.state]
        circuits.add_row(
            snapshot.call_site,
            f"[{style}]{snapshot.state}[/{style}]",
            f"{snapshot.failure_count}/{snapshot.window_size}",
            f"{snapshot.retry_after_seconds}s",
        )
    console.print(circuits)
