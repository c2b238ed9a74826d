"""Playlist tagging command for the vidtag CLI."""

from pathlib import Path

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from vidtag.dependencies import get_orchestrator, get_settings
from vidtag.logging_config import configure_application_logging
from vidtag.models.run_models import ProgressEvent
from vidtag.models.tagging_contracts import TagRunOptions

console = Console()

_EVENT_STYLES = {
    "started": "bold cyan",
    "progress": "dim",
    "itemCompleted": "green",
    "itemSkipped": "yellow",
    "batchCompleted": "cyan",
    "error": "red",
    "completed": "bold green",
}


class ConsoleEventSink:
    """Prints run events as they arrive."""

    def __init__(self, output: Console):
        self._output = output
        self.last_event: ProgressEvent | None = None

    def emit(self, event: ProgressEvent) -> None:
        self.last_event = event
        style = _EVENT_STYLES.get(event.kind, "white")
        self._output.print(
            f"[{style}]{event.kind:>14}[/{style}] {escape(event.message)}",
            highlight=False,
        )

        data = event.data or {}
        if event.kind == "itemCompleted" and data.get("tags"):
            self._output.print(f"{'':>15}tags: {escape(', '.join(data['tags']))}", highlight=False)
        elif event.kind == "error" and data.get("reason"):
            self._output.print(f"{'':>15}[red]{escape(str(data['reason']))}[/red]", highlight=False)

    def close(self) -> None:
        pass


def load_options_file(path: Path) -> dict:
    """Read tagging options from a YAML mapping."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise click.BadParameter("options file must contain a mapping", param_hint="--options-file")
    return data


@click.command()
@click.argument("playlist")
@click.option("--max-items", type=int, help="Only process the first N matching videos")
@click.option("--min-duration", type=int, help="Skip videos shorter than this many seconds")
@click.option("--published-after", help="Skip videos published before this ISO timestamp")
@click.option("--title-contains", help="Only process videos whose title contains this text")
@click.option("--max-tags", type=int, help="Maximum tags applied per video")
@click.option("--confidence", type=float, help="Minimum tag confidence (0.0 - 1.0)")
@click.option("--block", "blocked", multiple=True, help="Tag that must never be applied")
@click.option("--collection", help="Collection title to file bookmarks into")
@click.option(
    "--verbosity",
    type=click.Choice(["minimal", "standard", "detailed", "verbose"], case_sensitive=False),
    help="How much progress to report",
)
@click.option(
    "--options-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with run options; flags override it",
)
def tag(
    playlist: str,
    max_items: int | None,
    min_duration: int | None,
    published_after: str | None,
    title_contains: str | None,
    max_tags: int | None,
    confidence: float | None,
    blocked: tuple[str, ...],
    collection: str | None,
    verbosity: str | None,
    options_file: Path | None,
):
    """Tag every video in PLAYLIST (a playlist URL or id) and bookmark it."""
    data = load_options_file(options_file) if options_file is not None else {}
    filters = dict(data.get("filters") or {})

    if min_duration is not None:
        filters["min_duration_seconds"] = min_duration
    if published_after is not None:
        filters["published_after"] = published_after
    if title_contains is not None:
        filters["title_contains"] = title_contains
    if filters:
        data["filters"] = filters

    overrides = {
        "max_items": max_items,
        "max_tags_per_item": max_tags,
        "confidence_threshold": confidence,
        "collection_title": collection,
        "verbosity": verbosity,
    }
    data.update({key: value for key, value in overrides.items() if value is not None})
    if blocked:
        data["blocklist"] = [*(data.get("blocklist") or []), *blocked]

    try:
        options = TagRunOptions.model_validate(data)
    except ValidationError as e:
        raise click.UsageError(f"Invalid run options:\n{e}")

    configure_application_logging(get_settings())
    sink = ConsoleEventSink(console)
    summary = get_orchestrator().run(playlist, options, sink)

    console.print(
        f"\n[bold]Total:[/bold] {summary.total}  "
        f"[green]succeeded {summary.succeeded}[/green]  "
        f"[yellow]skipped {summary.skipped}[/yellow]  "
        f"[red]failed {summary.failed}[/red]"
    )
    if summary.aborted:
        console.print("[red]Run aborted: the playlist could not be fetched[/red]")
        raise SystemExit(1)
