"""Module to manage the on-disk bibsync cache store.

The store owns the on-disk layout. Engines never build cache paths
themselves: they ask the store for a `CollectionEntry` or an `ItemEntry`.

On-Disk Format
--------------

    $datadir/cache/v1/{collection}/collection.json
    $datadir/cache/v1/{collection}/sync.json
    $datadir/cache/v1/{collection}/items/{item}/item.json
    $datadir/cache/v1/{collection}/items/{item}/sync.json
    $datadir/cache/v1/{collection}/items/{item}/cover.jpg
    $datadir/cache/v1/{collection}/items/{item}/cover-custom.jpg
    $datadir/cache/v1/{collection}/items/{item}/item-custom.json

The `collection.json` and `item.json` files contain normalized records.
The `sync.json` files contain the cache-entry metadata (when we last
fetched the entry and the remote change tag). The `cover-custom.jpg` and
`item-custom.json` files are authored by hand and never written by us.

Every write goes through write-to-temp-then-rename, so an interrupted run
never leaves a half-written record behind.
"""

from __future__ import annotations

import hashlib
import json
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Final

import dacite
from filelock import BaseFileLock, FileLock, Timeout

from . import atomicfile
from .errors import CacheLockedError, CorruptEntryError, StoreError

STORE_COLLECTION_FILENAME: Final[str] = "collection.json"
STORE_ITEM_FILENAME: Final[str] = "item.json"
STORE_META_FILENAME: Final[str] = "sync.json"
STORE_COVER_FILENAME: Final[str] = "cover.jpg"
STORE_CUSTOM_COVER_FILENAME: Final[str] = "cover-custom.jpg"
STORE_OVERLAY_FILENAME: Final[str] = "item-custom.json"
STORE_ITEMS_DIRNAME: Final[str] = "items"
STORE_DOTLOCK_FILENAME: Final[str] = ".lock"
STORE_RUN_LOCK_FILENAME: Final[str] = "run.lock"


def utcnow() -> str:
    """Return the current time as an RFC3339 UTC string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True, kw_only=True)
class EntryMeta:
    """
    Cache-entry metadata recorded on every successful fetch.

    Attributes:
        fetched_at: RFC3339 UTC timestamp of the fetch.
        change_tag: opaque remote change tag (ETag-equivalent), if any.
        cover_tag: change tag the cover was downloaded for, if any.
        input_tag: digest of the hand-authored overlay and cover the
            record was built from, if any.
    """

    fetched_at: str
    change_tag: str | None = None
    cover_tag: str | None = None
    input_tag: str | None = None


def _read_json(path: Path) -> Any | None:
    """Read a JSON file, returning None when it does not exist."""
    try:
        with open(path, encoding="utf-8") as filep:
            return json.load(filep)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise CorruptEntryError(f"corrupt JSON file {path}: {exc}") from exc
    except OSError as exc:
        raise StoreError(f"cannot read {path}: {exc}") from exc


def _write_json(path: Path, data: Any) -> bool:
    """Atomically write JSON unless the file already has these bytes.

    Returns whether the file changed.
    """
    content = atomicfile.dumps_json(data)
    try:
        if path.exists() and path.read_bytes() == content:
            return False
        atomicfile.write_bytes(path, content)
    except OSError as exc:
        raise StoreError(f"cannot write {path}: {exc}") from exc
    return True


@dataclass(frozen=True, kw_only=True)
class CollectionEntry:
    """
    Reference to a cached collection.

    Attributes:
        root: the cache root (i.e., `$datadir/cache/v1`).
        collection_id: the collection identifier.
    """

    root: Path
    collection_id: str

    def dir_path(self) -> Path:
        return self.root / self.collection_id

    def record_path(self) -> Path:
        return self.dir_path() / STORE_COLLECTION_FILENAME

    def meta_path(self) -> Path:
        return self.dir_path() / STORE_META_FILENAME

    def items_dir_path(self) -> Path:
        return self.dir_path() / STORE_ITEMS_DIRNAME

    def lock(self) -> BaseFileLock:
        """Return a FileLock serializing writes to this collection."""
        lock_file_path = self.dir_path() / STORE_DOTLOCK_FILENAME
        lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(lock_file_path, thread_local=False)

    def exists(self) -> bool:
        return self.record_path().exists()


@dataclass(frozen=True, kw_only=True)
class ItemEntry:
    """
    Reference to a cached item. The entry is lazy and may not exist on disk.

    Attributes:
        root: the cache root (i.e., `$datadir/cache/v1`).
        collection_id: the owning collection identifier.
        item_id: the item identifier.
    """

    root: Path
    collection_id: str
    item_id: str

    def dir_path(self) -> Path:
        return self.root / self.collection_id / STORE_ITEMS_DIRNAME / self.item_id

    def record_path(self) -> Path:
        return self.dir_path() / STORE_ITEM_FILENAME

    def meta_path(self) -> Path:
        return self.dir_path() / STORE_META_FILENAME

    def cover_path(self) -> Path:
        return self.dir_path() / STORE_COVER_FILENAME

    def custom_cover_path(self) -> Path:
        return self.dir_path() / STORE_CUSTOM_COVER_FILENAME

    def overlay_path(self) -> Path:
        return self.dir_path() / STORE_OVERLAY_FILENAME

    def effective_cover_path(self) -> Path | None:
        """Return the cover to use, preferring the hand-supplied one."""
        for path in (self.custom_cover_path(), self.cover_path()):
            if path.exists():
                return path
        return None

    def exists(self) -> bool:
        return self.record_path().exists()

    def __str__(self) -> str:
        return f"{self.collection_id}/{self.item_id}"


class CacheStore:
    """Durable, file-addressed store of collections, items and covers."""

    def __init__(self, data_dir: str | Path | None = None):
        """
        Initialize the store.

        Parameters:
            data_dir: Path to the data directory. If None, defaults
                to .bibsync/ in the current working directory.
        """
        self.data_dir = data_dir_or_default(data_dir)
        self.root = self.data_dir / "cache" / "v1"

    # Entries

    def collection(self, collection_id: str) -> CollectionEntry:
        return CollectionEntry(root=self.root, collection_id=collection_id)

    def item(self, collection_id: str, item_id: str) -> ItemEntry:
        return ItemEntry(root=self.root, collection_id=collection_id, item_id=item_id)

    def list_collections(self) -> list[str]:
        """Return the sorted ids of the collections present on disk."""
        if not self.root.is_dir():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir())

    def list_items(self, collection_id: str) -> list[str]:
        """Return the sorted ids of the items of a collection present on disk."""
        items_dir = self.collection(collection_id).items_dir_path()
        if not items_dir.is_dir():
            return []
        return sorted(path.name for path in items_dir.iterdir() if path.is_dir())

    # Records

    def read_collection(self, collection_id: str) -> dict[str, Any] | None:
        return _read_json(self.collection(collection_id).record_path())

    def write_collection(self, collection_id: str, record: dict[str, Any]) -> bool:
        return _write_json(self.collection(collection_id).record_path(), record)

    def read_item(self, entry: ItemEntry) -> dict[str, Any] | None:
        return _read_json(entry.record_path())

    def write_item(self, entry: ItemEntry, record: dict[str, Any]) -> bool:
        return _write_json(entry.record_path(), record)

    def read_overlay(self, entry: ItemEntry) -> dict[str, Any] | None:
        overlay = _read_json(entry.overlay_path())
        if overlay is not None and not isinstance(overlay, dict):
            raise CorruptEntryError(f"overlay must be a JSON object: {entry.overlay_path()}")
        return overlay

    def input_tag(self, entry: ItemEntry) -> str | None:
        """
        Return a digest of the hand-authored files of an item.

        Covers `item-custom.json` and `cover-custom.jpg` as raw bytes, so
        editing, adding or removing either changes the digest. Returns None
        when the item has neither.
        """
        digest = hashlib.sha256()
        found = False
        for path in (entry.overlay_path(), entry.custom_cover_path()):
            try:
                content = path.read_bytes()
            except FileNotFoundError:
                digest.update(b"-\0")
                continue
            except OSError as exc:
                raise StoreError(f"cannot read {path}: {exc}") from exc
            found = True
            digest.update(f"{path.name}:{len(content)}\0".encode())
            digest.update(content)
        return "sha256:" + digest.hexdigest() if found else None

    def read_meta(self, entry: ItemEntry | CollectionEntry) -> EntryMeta | None:
        data = _read_json(entry.meta_path())
        if data is None:
            return None
        if not isinstance(data, dict):
            raise CorruptEntryError(f"corrupt metadata {entry.meta_path()}: not an object")
        try:
            return dacite.from_dict(EntryMeta, data)
        except dacite.DaciteError as exc:
            raise CorruptEntryError(f"corrupt metadata {entry.meta_path()}: {exc}") from exc

    def write_meta(self, entry: ItemEntry | CollectionEntry, meta: EntryMeta) -> bool:
        return _write_json(entry.meta_path(), asdict(meta))

    def write_cover(self, entry: ItemEntry, content: bytes) -> None:
        try:
            atomicfile.write_bytes(entry.cover_path(), content)
        except OSError as exc:
            raise StoreError(f"cannot write {entry.cover_path()}: {exc}") from exc

    # Removal

    def remove_item(self, entry: ItemEntry) -> None:
        _rmtree(entry.dir_path())

    def remove_collection(self, collection_id: str) -> None:
        _rmtree(self.collection(collection_id).dir_path())

    # Locking

    def collection_lock(self, collection_id: str) -> BaseFileLock:
        """Return the lock serializing writes inside a collection."""
        return self.collection(collection_id).lock()

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        """
        Hold the run-scoped lock granting exclusive ownership of the store.

        The lock is non-blocking: entering it while another run holds it
        raises CacheLockedError instead of waiting.
        """
        path = self.data_dir / "state" / STORE_RUN_LOCK_FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(path, timeout=0, thread_local=False)
        try:
            lock.acquire()
        except Timeout as exc:
            raise CacheLockedError(f"another run owns {path}") from exc
        try:
            yield
        finally:
            lock.release()


def _rmtree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        raise StoreError(f"cannot remove {path}: {exc}") from exc


def data_dir_or_default(data_dir: str | Path | None) -> Path:
    """
    Return data_dir as a Path if not empty. Otherwise return the
    default value for the data_dir (i.e., `./.bibsync` like git).
    """
    return Path.cwd() / ".bibsync" if data_dir is None else Path(data_dir)
