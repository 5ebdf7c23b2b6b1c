"""The run, import and export commands."""

from collections.abc import Callable

import click

from ..receipt import Receipt
from ..scripting import bib_exception, bib_logging
from . import cli
from .options import (
    build_pipeline,
    config_option,
    data_dir_option,
    manifest_option,
    verbose_option,
)

out_option = click.option(
    "-o", "--out", "out_dir", default=None, help="Export directory (default: <dir>/export)"
)
clean_option = click.option(
    "-c", "--clean", is_flag=True, help="Empty the export directory before exporting"
)
force_option = click.option(
    "-f", "--force", is_flag=True, help="Refetch items ignoring remote change tags"
)
jobs_option = click.option(
    "-j", "--jobs", default=None, type=click.IntRange(min=1), help="Number of parallel fetches"
)


def _summarize(receipt: Receipt) -> None:
    counters = receipt.counters
    if receipt.command in ("run", "import"):
        click.echo(
            f"Imported: {counters['fetched']} fetched, {counters['unchanged']} unchanged, "
            f"{counters['removed']} removed, {counters['failed']} failed."
        )
    if receipt.command in ("run", "export"):
        click.echo(
            f"Exported: {counters['collections_exported']} collection(s), "
            f"{counters['items_exported']} item(s), {counters['covers_exported']} cover(s)."
        )
    if receipt.errors:
        click.echo(f"{len(receipt.errors)} error(s):", err=True)
        for issue in receipt.errors:
            click.echo(f"  {issue.identifier}: {issue.message}", err=True)


def _execute(verbose: bool, operation: Callable[[], Receipt]) -> None:
    bib_logging.configure(verbose=verbose)
    interceptor = bib_exception.Interceptor()
    receipt: Receipt | None = None
    with interceptor:
        receipt = operation()
    if receipt is not None:
        _summarize(receipt)
        raise SystemExit(receipt.exitcode())
    raise SystemExit(interceptor.exitcode())


@cli.command()
@data_dir_option
@config_option
@manifest_option
@out_option
@verbose_option
@clean_option
@force_option
@jobs_option
def run(
    data_dir: str | None,
    config_file: str | None,
    manifest_file: str | None,
    out_dir: str | None,
    verbose: bool,
    clean: bool,
    force: bool,
    jobs: int | None,
) -> None:
    """Import from the remote repository, then export the package."""
    pipe = build_pipeline(
        data_dir, config_file, manifest_file, out_dir=out_dir, jobs=jobs, show_progress=True
    )
    _execute(verbose, lambda: pipe.run(force=force, clean=clean))


@cli.command("import")
@data_dir_option
@config_option
@manifest_option
@verbose_option
@force_option
@jobs_option
def import_cmd(
    data_dir: str | None,
    config_file: str | None,
    manifest_file: str | None,
    verbose: bool,
    force: bool,
    jobs: int | None,
) -> None:
    """Synchronize the local cache with the remote repository."""
    pipe = build_pipeline(data_dir, config_file, manifest_file, jobs=jobs, show_progress=True)
    _execute(verbose, lambda: pipe.import_(force=force))


@cli.command()
@data_dir_option
@config_option
@manifest_option
@out_option
@verbose_option
@clean_option
def export(
    data_dir: str | None,
    config_file: str | None,
    manifest_file: str | None,
    out_dir: str | None,
    verbose: bool,
    clean: bool,
) -> None:
    """Export the cached collections as a self-contained package."""
    pipe = build_pipeline(data_dir, config_file, manifest_file, out_dir=out_dir)
    _execute(verbose, lambda: pipe.export(clean=clean))
