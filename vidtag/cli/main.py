"""Main CLI entry point for vidtag."""

import click

from .commands import sweep, tagging


@click.group()
@click.version_option(version="0.1.0")
def main():
    """vidtag - tag YouTube playlists into Raindrop.io bookmarks."""
    pass


main.add_command(tagging.tag)
main.add_command(sweep.sweep)


if __name__ == "__main__":
    main()
