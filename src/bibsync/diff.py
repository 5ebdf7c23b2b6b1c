"""Diff between the sync manifest and the local cache store."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .errors import CorruptEntryError
from .manifest import Manifest
from .remote import RemoteAdapter, head_item
from .store import CacheStore, EntryMeta, ItemEntry

Key = tuple[str, str]
"""A (collection_id, item_id) pair."""


class DiffState(str, Enum):
    """State of a diff entry comparing manifest vs local cache."""

    MISSING = "missing"
    STALE = "stale"
    FRESH = "fresh"
    UNLISTED = "unlisted"


@dataclass(frozen=True, kw_only=True)
class DiffEntry:
    """
    Single entry in a manifest-vs-cache diff.

    An entry whose item_id is None refers to a whole collection.
    """

    collection_id: str
    item_id: str | None
    state: DiffState
    local_tag: str | None = None
    remote_tag: str | None = None

    @property
    def key(self) -> Key:
        assert self.item_id is not None
        return (self.collection_id, self.item_id)

    def __str__(self) -> str:
        if self.item_id is None:
            return f"{self.collection_id}/"
        return f"{self.collection_id}/{self.item_id}"


@dataclass(kw_only=True)
class Resolution:
    """Work plan produced by `resolve`. Every list is ordered."""

    to_fetch: list[Key] = field(default_factory=list)
    to_keep: list[Key] = field(default_factory=list)
    to_remove: list[Key] = field(default_factory=list)
    collections_to_fetch: list[str] = field(default_factory=list)
    collections_to_remove: list[str] = field(default_factory=list)


def diff(
    manifest: Manifest,
    store: CacheStore,
    *,
    adapter: RemoteAdapter | None = None,
    force: bool = False,
) -> Iterator[DiffEntry]:
    """
    Compare the manifest against the local cache state.

    Yields ``DiffEntry`` objects in two phases:

    1. Whitelisted items in manifest order: ``MISSING`` when absent from
       the cache or unreadable, ``FRESH`` when the cached change tag
       equals the remote one (or the item is a cached custom item),
       ``STALE`` otherwise.
       Freshness is unknown, hence ``STALE``, without an adapter, when
       the adapter cannot tell, or when ``force`` is set.
       An item whose hand-authored overlay or cover changed since the
       last fetch is ``STALE`` as well.
    2. Cached entries absent from the manifest (``UNLISTED``) in sorted
       order. When a whole collection is unlisted, its items come first
       and then an entry with ``item_id=None`` for the collection itself.

    Removal depends only on whitelist membership, never on change tags.
    """
    for cid in manifest.collections_index:
        spec = manifest.collections[cid]
        for iid in spec.items_index:
            entry = store.item(cid, iid)
            if not _has_record(store, entry):
                yield DiffEntry(collection_id=cid, item_id=iid, state=DiffState.MISSING)
                continue
            meta = _read_meta(store, entry)
            local_tag = meta.change_tag if meta is not None else None
            if spec.is_custom(iid) and not force:
                yield DiffEntry(
                    collection_id=cid,
                    item_id=iid,
                    state=DiffState.FRESH,
                    local_tag=local_tag,
                )
                continue
            remote_tag = None
            if adapter is not None and not force:
                remote_tag = head_item(adapter, iid)
            fresh = (
                remote_tag is not None
                and remote_tag == local_tag
                and meta is not None
                and meta.input_tag == store.input_tag(entry)
            )
            yield DiffEntry(
                collection_id=cid,
                item_id=iid,
                state=DiffState.FRESH if fresh else DiffState.STALE,
                local_tag=local_tag,
                remote_tag=remote_tag,
            )

    whitelisted = set(manifest.collections_index)
    for cid in store.list_collections():
        listed = set(manifest.collections[cid].items_index) if cid in whitelisted else set()
        for iid in store.list_items(cid):
            if iid in listed:
                continue
            meta = _read_meta(store, store.item(cid, iid))
            yield DiffEntry(
                collection_id=cid,
                item_id=iid,
                state=DiffState.UNLISTED,
                local_tag=meta.change_tag if meta is not None else None,
            )
        if cid not in whitelisted:
            yield DiffEntry(collection_id=cid, item_id=None, state=DiffState.UNLISTED)


def _has_record(store: CacheStore, entry: ItemEntry) -> bool:
    try:
        return store.read_item(entry) is not None
    except CorruptEntryError:
        return False


def _read_meta(store: CacheStore, entry: ItemEntry) -> EntryMeta | None:
    # unreadable metadata means the entry must be refetched
    try:
        return store.read_meta(entry)
    except CorruptEntryError:
        return None


def resolve(
    manifest: Manifest,
    store: CacheStore,
    *,
    adapter: RemoteAdapter | None = None,
    force: bool = False,
) -> Resolution:
    """Partition the manifest and the cache into fetch/keep/remove work."""
    result = Resolution()
    for entry in diff(manifest, store, adapter=adapter, force=force):
        if entry.item_id is None:
            result.collections_to_remove.append(entry.collection_id)
        elif entry.state in (DiffState.MISSING, DiffState.STALE):
            result.to_fetch.append(entry.key)
        elif entry.state == DiffState.FRESH:
            result.to_keep.append(entry.key)
        else:
            result.to_remove.append(entry.key)
    result.collections_to_fetch = [
        cid for cid in manifest.collections_index if not store.collection(cid).exists()
    ]
    return result
