"""Status command."""

import click
from rich.console import Console

from ..diff import DiffState, diff
from ..errors import BibSyncError
from . import cli
from .options import build_pipeline, config_option, data_dir_option, manifest_option

_STATE_CHARS: dict[DiffState, tuple[str, str]] = {
    DiffState.MISSING: ("F", "red"),
    DiffState.STALE: ("U", "yellow"),
    DiffState.UNLISTED: ("R", "green"),
    DiffState.FRESH: (" ", "dim"),
}


@cli.command()
@data_dir_option
@config_option
@manifest_option
@click.option("-a", "--all", "show_all", is_flag=True, help="Include up-to-date entries")
@click.option("--check", is_flag=True, help="Ask the remote whether cached items are stale")
def status(
    data_dir: str | None,
    config_file: str | None,
    manifest_file: str | None,
    show_all: bool,
    check: bool,
) -> None:
    """Show the cache status relative to the manifest.

    Each entry is prefixed with a status letter:

    \b
      'F'  to fetch (in manifest, not in cache)
      'R'  to remove (in cache, not in manifest)
      'U'  to update (remote change tag differs, with --check)

    Use `-a, --all` to see up-to-date entries as well, which are
    printed using the following status letter:

    \b
      ' '  up to date (in manifest, in cache)
    """
    pipe = build_pipeline(data_dir, config_file, manifest_file)
    try:
        manifest = pipe.load_manifest()
        entries = list(diff(manifest, pipe.store, adapter=pipe.adapter if check else None))
    except BibSyncError as exc:
        raise click.ClickException(str(exc)) from exc

    console = Console()
    for entry in entries:
        state = entry.state
        if state == DiffState.STALE and not check:
            state = DiffState.FRESH
        if state == DiffState.FRESH and not show_all:
            continue
        char, color = _STATE_CHARS[state]
        console.print(f"[{color}]{char}[/] {entry}", highlight=False)
