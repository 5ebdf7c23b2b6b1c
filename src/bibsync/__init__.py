"""Bibliographic collections sync pipeline.

This library mirrors a curated whitelist of collections and items from a
remote bibliographic repository into a local cache, and exports the
cached data as a normalized, self-contained package.
"""

from ._version import __version__
from .config import PipelineConfig, load_config
from .exporter import Exporter
from .importer import Importer
from .manifest import Manifest, load_manifest
from .pipeline import BibSyncPipeline
from .receipt import Receipt
from .remote import ArchiveAdapter, RemoteAdapter, StaticAdapter
from .store import CacheStore

__all__ = [
    "ArchiveAdapter",
    "BibSyncPipeline",
    "CacheStore",
    "Exporter",
    "Importer",
    "Manifest",
    "PipelineConfig",
    "Receipt",
    "RemoteAdapter",
    "StaticAdapter",
    "load_config",
    "load_manifest",
    "__version__",
]
