"""Search command."""

import click

from ..errors import BibSyncError
from ..manifest import Manifest, add_items, load_manifest, save_manifest
from . import cli
from .options import build_pipeline, config_option, data_dir_option, manifest_option


@cli.command()
@data_dir_option
@config_option
@manifest_option
@click.option(
    "--add",
    "collection_id",
    default=None,
    metavar="COLLECTION",
    help="Append the results to this collection of the manifest",
)
@click.argument("query")
def search(
    data_dir: str | None,
    config_file: str | None,
    manifest_file: str | None,
    collection_id: str | None,
    query: str,
) -> None:
    """Search the remote repository and print matching identifiers."""
    pipe = build_pipeline(data_dir, config_file, manifest_file)
    try:
        identifiers = pipe.adapter.search_items(query)
    except BibSyncError as exc:
        raise click.ClickException(f"search failed: {exc}") from exc

    for identifier in identifiers:
        click.echo(identifier)
    if collection_id is None:
        return

    try:
        if pipe.manifest_path.exists():
            manifest = load_manifest(pipe.manifest_path)
        else:
            manifest = Manifest(collections_index=[])
        manifest = add_items(manifest, collection_id, identifiers)
        save_manifest(manifest, pipe.manifest_path)
    except BibSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added {len(identifiers)} item(s) to {collection_id}.", err=True)
