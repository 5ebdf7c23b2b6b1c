"""Error taxonomy for the bibsync pipeline.

Per-item errors (remote, normalization) are recorded in the receipt and
the run continues. Manifest, store and lock errors are fatal, except a corrupt
per-entry file, which only fails that entry.
"""

from __future__ import annotations


class BibSyncError(Exception):
    """Base exception for all bibsync errors."""


class ManifestError(BibSyncError):
    """The sync manifest is missing or malformed."""


class ConfigError(BibSyncError):
    """The pipeline configuration is missing or malformed."""


class StoreError(BibSyncError):
    """Local I/O error while reading or writing the cache store."""


class CorruptEntryError(StoreError):
    """A cached or hand-authored file exists but its content is unusable.

    Unlike other store errors, this one concerns a single entry: the
    importer records it against that entry and keeps going.
    """


class CacheLockedError(BibSyncError):
    """Another run already owns the cache directory."""


class RemoteError(BibSyncError):
    """Error talking to the remote repository."""


class TransientRemoteError(RemoteError):
    """Timeout, rate limit or server error that survived all retries."""


class RemoteNotFoundError(RemoteError):
    """The remote repository does not know the requested identifier."""


class MalformedRecordError(BibSyncError):
    """The remote returned a record we cannot use."""


class NormalizationError(MalformedRecordError):
    """A field value does not fit the declared conversion rule."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        prefix = f"{field}: " if field else ""
        super().__init__(f"{prefix}{message}")
