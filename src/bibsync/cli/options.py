"""Options and helpers shared by the subcommands."""

from __future__ import annotations

from pathlib import Path

import click

from ..config import PipelineConfig, config_path_for_data_dir, load_config
from ..errors import ConfigError
from ..pipeline import BibSyncPipeline
from ..store import data_dir_or_default

data_dir_option = click.option(
    "-d", "--dir", "data_dir", default=None, help="Data directory (default: .bibsync)"
)
config_option = click.option(
    "--config",
    "config_file",
    default=None,
    metavar="FILE",
    help="Path to YAML config file (default: <dir>/bibsync.yaml)",
)
manifest_option = click.option(
    "--manifest",
    "manifest_file",
    default=None,
    metavar="FILE",
    help="Path to the sync manifest (default: <dir>/manifest.json)",
)
verbose_option = click.option("-v", "--verbose", is_flag=True, default=False, help="Verbose mode.")


def load_cli_config(data_dir: Path, config_file: str | None) -> PipelineConfig:
    """Load the config, converting errors into click exceptions."""
    try:
        if config_file is not None:
            return load_config(Path(config_file), missing_ok=False)
        return load_config(config_path_for_data_dir(data_dir))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def build_pipeline(
    data_dir: str | None,
    config_file: str | None,
    manifest_file: str | None,
    *,
    out_dir: str | None = None,
    jobs: int | None = None,
    show_progress: bool = False,
) -> BibSyncPipeline:
    resolved = data_dir_or_default(data_dir)
    config = load_cli_config(resolved, config_file)
    return BibSyncPipeline(
        resolved,
        config,
        manifest_path=Path(manifest_file) if manifest_file else None,
        out_dir=Path(out_dir) if out_dir else None,
        jobs=jobs,
        show_progress=show_progress,
    )
