"""Import engine: synchronize the cache store with the remote repository."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, TypeVar

from PIL import Image
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

from .diff import Resolution, resolve
from .errors import CorruptEntryError, MalformedRecordError, RemoteError, RemoteNotFoundError
from .manifest import CollectionSpec, Manifest
from .normalize import normalize_collection, normalize_item
from .receipt import Receipt
from .remote import RemoteAdapter, content_tag
from .store import STORE_OVERLAY_FILENAME, CacheStore, EntryMeta, ItemEntry, utcnow

log = logging.getLogger("bibsync/importer")

T = TypeVar("T")


def deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Return base updated with overlay, recursing into nested mappings."""
    result = dict(base)
    for key, value in overlay.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result


def measure_cover(path: Path) -> tuple[int, int]:
    """Return the pixel dimensions of an image file.

    Raises:
        OSError: if the file cannot be read or is not an image.
    """
    with Image.open(path) as img:
        width, height = img.size
    return width, height


class Importer:
    """
    Brings the cache store in line with the manifest.

    Arguments:
        store: the cache store to update.
        adapter: the remote repository adapter.
        receipt: receipt collecting counters and per-item errors.
        jobs: size of the item worker pool.
        force: ignore change tags and refetch every remote item.
        show_progress: render a rich progress bar while importing items.
    """

    def __init__(
        self,
        store: CacheStore,
        adapter: RemoteAdapter,
        receipt: Receipt,
        *,
        jobs: int = 8,
        force: bool = False,
        show_progress: bool = False,
    ):
        self.store = store
        self.adapter = adapter
        self.receipt = receipt
        self.jobs = max(1, jobs)
        self.force = force
        self.show_progress = show_progress

    def run(self, manifest: Manifest) -> Resolution:
        """Import every whitelisted collection and prune everything else.

        Raises:
            StoreError: on local I/O failures, which abort the import.
        """
        resolution = resolve(manifest, self.store, adapter=self.adapter, force=self.force)
        fetch = set(resolution.to_fetch)
        log.info(
            "resolved: %d to fetch, %d to keep, %d to remove",
            len(resolution.to_fetch),
            len(resolution.to_keep),
            len(resolution.to_remove),
        )

        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            disable=not self.show_progress,
        ) as progress:
            for cid in manifest.collections_index:
                spec = manifest.collections[cid]
                work = [
                    iid for iid in spec.items_index if (cid, iid) in fetch or spec.is_custom(iid)
                ]
                kept = len(spec.items_index) - len(work)
                if not self._import_collection(cid, spec):
                    self.receipt.increment("skipped", len(spec.items_index))
                    continue
                if kept:
                    self.receipt.increment("unchanged", kept)
                self._import_items(cid, spec, work, progress)

        self._prune(resolution)
        return resolution

    # Collections

    def _import_collection(self, cid: str, spec: CollectionSpec) -> bool:
        """Refresh collection.json. Returns False when the collection failed."""
        log.info("importing collection %s... start", cid)
        try:
            try:
                remote = self.adapter.get_collection_metadata(cid)
            except RemoteNotFoundError:
                log.debug("collection %s is not known remotely", cid)
                remote = {}
            raw: dict[str, Any] = {"id": cid, "name": cid}
            raw = deep_merge(raw, {k: v for k, v in remote.items() if v is not None})
            raw = deep_merge(raw, spec.collection)
            record = normalize_collection(raw)
        except (RemoteError, MalformedRecordError) as exc:
            log.debug("importing collection %s... failure: %s", cid, exc)
            self.receipt.error(cid, str(exc), field=getattr(exc, "field", None))
            self.receipt.increment("collections_failed")
            return False

        entry = self.store.collection(cid)
        with self.store.collection_lock(cid):
            if self.store.write_collection(cid, record):
                self.store.write_meta(entry, EntryMeta(fetched_at=utcnow()))
        self.receipt.increment("collections_processed")
        log.info("importing collection %s... ok", cid)
        return True

    # Items

    def _import_items(
        self,
        cid: str,
        spec: CollectionSpec,
        work: list[str],
        progress: Progress,
    ) -> None:
        if not work:
            return
        task_id = progress.add_task(cid, total=len(work))
        pool = ThreadPoolExecutor(max_workers=self.jobs)
        futures: dict[Future, str] = {
            pool.submit(self._import_item, cid, spec, iid): iid for iid in work
        }
        try:
            for future in as_completed(futures):
                iid = futures[future]
                try:
                    future.result()
                except (RemoteError, MalformedRecordError) as exc:
                    log.debug("importing %s/%s... failure: %s", cid, iid, exc)
                    self.receipt.error(f"{cid}/{iid}", str(exc), field=getattr(exc, "field", None))
                    self.receipt.increment("failed")
                progress.advance(task_id)
        finally:
            pool.shutdown(wait=True, cancel_futures=True)
            progress.remove_task(task_id)

    def _import_item(self, cid: str, spec: CollectionSpec, iid: str) -> None:
        entry = self.store.item(cid, iid)
        try:
            overlay = self.store.read_overlay(entry)
        except CorruptEntryError as exc:
            log.debug("importing %s... failure: %s", entry, exc)
            self.receipt.error(str(entry), str(exc), field=STORE_OVERLAY_FILENAME)
            self.receipt.increment("failed")
            return
        cached = self._read_cached(entry, self.store.read_item)
        if (
            spec.is_custom(iid)
            or (cached is not None and cached.get("custom") is True)
            or (overlay is not None and overlay.get("custom") is True)
        ):
            self._import_custom_item(entry, cached, overlay)
            return

        log.debug("importing %s... start", entry)
        record = self.adapter.get_item_metadata(iid)
        meta = self._read_cached(entry, self.store.read_meta)
        input_tag = self.store.input_tag(entry)
        has_cover = entry.effective_cover_path() is not None
        if (
            not self.force
            and cached is not None
            and meta is not None
            and record.change_tag is not None
            and meta.change_tag == record.change_tag
            and meta.input_tag == input_tag
            and has_cover
        ):
            log.debug("importing %s... unchanged", entry)
            self.receipt.increment("unchanged")
            return

        raw = dict(record.data)
        raw.setdefault("coverImage", self.adapter.cover_url(iid))
        item = normalize_item(raw)
        if overlay:
            item = normalize_item(deep_merge(item, overlay))

        cover_tag = self._sync_cover(entry, item, record.change_tag, meta)
        self._set_dimensions(entry, item)

        with self.store.collection_lock(cid):
            self.store.write_item(entry, item)
            self.store.write_meta(
                entry,
                EntryMeta(
                    fetched_at=utcnow(),
                    change_tag=record.change_tag,
                    cover_tag=cover_tag,
                    input_tag=input_tag,
                ),
            )
        self.receipt.increment("fetched")
        log.debug("importing %s... ok", entry)

    def _read_cached(self, entry: ItemEntry, reader: Callable[[ItemEntry], T]) -> T | None:
        """Read a cached file of the entry, discarding it when it is corrupt."""
        try:
            return reader(entry)
        except CorruptEntryError as exc:
            self.receipt.warning(str(entry), f"discarding corrupt cache file: {exc}")
            return None

    def _import_custom_item(
        self,
        entry: ItemEntry,
        cached: dict[str, Any] | None,
        overlay: dict[str, Any] | None,
    ) -> None:
        """Synthesize a custom item from the overlay without contacting the remote."""
        base = cached if cached is not None else {"id": entry.item_id}
        item = normalize_item(deep_merge(base, overlay or {}))
        item["custom"] = True
        if entry.custom_cover_path().exists():
            self.receipt.increment("covers_custom")
        self._set_dimensions(entry, item)
        with self.store.collection_lock(entry.collection_id):
            changed = self.store.write_item(entry, item)
            if changed:
                self.store.write_meta(
                    entry, EntryMeta(fetched_at=utcnow(), change_tag=content_tag(item))
                )
        self.receipt.increment("fetched" if changed else "unchanged")

    def _sync_cover(
        self,
        entry: ItemEntry,
        item: dict[str, Any],
        change_tag: str | None,
        meta: EntryMeta | None,
    ) -> str | None:
        """Download the cover when needed; return the tag it was downloaded for."""
        if entry.custom_cover_path().exists():
            self.receipt.increment("covers_custom")
            return meta.cover_tag if meta is not None else None
        if (
            not self.force
            and entry.cover_path().exists()
            and meta is not None
            and meta.cover_tag is not None
            and meta.cover_tag == change_tag
        ):
            return meta.cover_tag
        url = item.get("coverImage") or self.adapter.cover_url(entry.item_id)
        try:
            content = self.adapter.fetch_asset(url)
        except RemoteError as exc:
            self.receipt.warning(str(entry), f"cannot download cover: {exc}")
            return None
        self.store.write_cover(entry, content)
        self.receipt.increment("covers_downloaded")
        self.receipt.add_bytes(len(content))
        return change_tag

    def _set_dimensions(self, entry: ItemEntry, item: dict[str, Any]) -> None:
        cover = entry.effective_cover_path()
        if cover is None:
            item["coverWidth"], item["coverHeight"] = 0, 0
            return
        try:
            item["coverWidth"], item["coverHeight"] = measure_cover(cover)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            self.receipt.warning(str(entry), f"cannot measure cover: {exc}")
            item["coverWidth"], item["coverHeight"] = 0, 0

    # Pruning

    def _prune(self, resolution: Resolution) -> None:
        for cid, iid in resolution.to_remove:
            log.info("removing %s/%s", cid, iid)
            self.store.remove_item(self.store.item(cid, iid))
            self.receipt.increment("removed")
        for cid in resolution.collections_to_remove:
            log.info("removing collection %s", cid)
            self.store.remove_collection(cid)
