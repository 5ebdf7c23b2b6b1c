"""Pipeline configuration loaded from `<data_dir>/bibsync.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import dacite
import yaml

from .errors import ConfigError
from .remote import DEFAULT_BASE_URL

CONFIG_FILENAME = "bibsync.yaml"


@dataclass(frozen=True, kw_only=True)
class RemoteConfig:
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30
    retries: int = 3
    backoff: float = 1.0
    search_rows: int = 100


@dataclass(frozen=True, kw_only=True)
class ImportConfig:
    jobs: int = 8


@dataclass(frozen=True, kw_only=True)
class ExportConfig:
    out_dir: str = "export"
    receipt_file_name: str | None = "receipt.json"


@dataclass(frozen=True, kw_only=True)
class PipelineConfig:
    """Top-level configuration. Relative paths are relative to the data dir."""

    version: int = 0
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    import_: ImportConfig = field(default_factory=ImportConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    manifest: str = "manifest.json"

    def manifest_path(self, data_dir: Path) -> Path:
        return data_dir / self.manifest

    def out_dir_path(self, data_dir: Path) -> Path:
        return data_dir / self.export.out_dir


def _convert_key(name: str) -> str:
    # `import` is a keyword, hence the trailing underscore on the field
    return name.rstrip("_")


def config_path_for_data_dir(data_dir: Path) -> Path:
    """Return the default configuration path under the given data directory."""
    return data_dir / CONFIG_FILENAME


def load_config(config_path: Path, *, missing_ok: bool = True) -> PipelineConfig:
    """
    Load the pipeline configuration from a YAML file.

    A missing file yields the defaults unless missing_ok is False.

    Raises:
        ConfigError: if the file is missing (and not missing_ok), is not
            valid YAML, is not a mapping, or does not match the schema.
    """
    try:
        content = config_path.read_text()
    except FileNotFoundError as exc:
        if missing_ok:
            return PipelineConfig()
        raise ConfigError(f"Config not found: {config_path}") from exc

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError("Config must be a mapping.")

    try:
        config = dacite.from_dict(
            PipelineConfig,
            data,
            config=dacite.Config(convert_key=_convert_key, cast=[float]),
        )
    except (dacite.DaciteError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config: {exc}") from exc

    if config.version != 0:
        raise ConfigError(f"Unsupported config version: {config.version}")
    if config.import_.jobs < 1:
        raise ConfigError("Config import.jobs must be positive.")
    return config
