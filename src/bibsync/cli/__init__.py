"""bibsync command-line interface."""

from importlib.metadata import version

import click

_PACKAGE_NAME = "bibsync"


def _get_version() -> str:
    """Return the installed package version string."""
    return version(_PACKAGE_NAME)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(message="%(version)s", package_name=_PACKAGE_NAME)
def cli() -> None:
    """Bibliographic collections sync tool.

    Mirrors the collections and items whitelisted in the manifest from a
    remote repository into a local cache, then exports the cache as a
    normalized package. Every command works inside a data directory
    (default: ./.bibsync) selected with -d.
    """


@cli.command(hidden=True)
def help() -> None:
    """Show usage information."""
    click.echo('Use "bibsync --help" for usage information.')
    click.echo('Use "bibsync <command> --help" for help on a specific command.')


@cli.command("version")
def version_cmd() -> None:
    """Print the version number."""
    click.echo(_get_version())


# Register subcommands (must be after cli is defined)
from . import search as _search  # noqa: E402, F401
from . import status as _status  # noqa: E402, F401
from . import sync as _sync  # noqa: E402, F401
