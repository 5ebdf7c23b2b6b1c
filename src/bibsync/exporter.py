"""Export engine: build the distributable package from the cache store.

Package layout:

    $out/collections-index.json
    $out/index-deep.json
    $out/collections/{collection}/items-index.json
    $out/collections/{collection}/items/{item}/cover.jpg

The export is a pure function of the manifest and the cache: no
timestamps are embedded, so exporting the same cache twice produces
byte-identical files. The cache is only ever read.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Final

from . import atomicfile
from .errors import StoreError
from .manifest import Manifest
from .normalize import normalize_collection, project_item
from .receipt import Receipt
from .store import STORE_COVER_FILENAME, CacheStore

log = logging.getLogger("bibsync/exporter")

EXPORT_FORMAT_VERSION: Final[str] = "1.0"
EXPORT_COLLECTIONS_INDEX_FILENAME: Final[str] = "collections-index.json"
EXPORT_DEEP_INDEX_FILENAME: Final[str] = "index-deep.json"
EXPORT_ITEMS_INDEX_FILENAME: Final[str] = "items-index.json"


class Exporter:
    """Writes the export package for a manifest.

    Arguments:
        store: the cache store to read from.
        receipt: receipt collecting counters and warnings.
        clean: empty the output directory before writing.
    """

    def __init__(self, store: CacheStore, receipt: Receipt, *, clean: bool = False):
        self.store = store
        self.receipt = receipt
        self.clean = clean

    def build_index(self, manifest: Manifest) -> dict[str, Any]:
        """Return the consolidated index, in manifest order."""
        collections: dict[str, Any] = {}
        for cid in manifest.collections_index:
            spec = manifest.collections[cid]
            record = self.store.read_collection(cid)
            if record is None:
                self.receipt.warning(cid, "collection missing from cache, exported empty")
                collections[cid] = {
                    "id": cid,
                    "collection": normalize_collection({"id": cid, **spec.collection}),
                    "itemsIndex": [],
                    "items": {},
                }
                continue
            items: dict[str, Any] = {}
            for iid in spec.items_index:
                if not spec.filter.accepts(iid):
                    log.debug("exporting %s/%s... filtered out", cid, iid)
                    continue
                item = self.store.read_item(self.store.item(cid, iid))
                if item is None:
                    self.receipt.warning(f"{cid}/{iid}", "item missing from cache, omitted")
                    continue
                items[iid] = {"item": project_item(item)}
            collections[cid] = {
                "id": cid,
                "collection": record,
                "itemsIndex": list(items),
                "items": items,
            }
        return {
            "version": EXPORT_FORMAT_VERSION,
            "collectionsIndex": list(manifest.collections_index),
            "collections": collections,
        }

    def run(self, manifest: Manifest, out_dir: Path) -> dict[str, Any]:
        """Export the package to out_dir and return the consolidated index.

        Raises:
            StoreError: on local I/O failures.
        """
        log.info("exporting to %s... start", out_dir)
        index = self.build_index(manifest)
        try:
            if self.clean:
                _empty_dir(out_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self._write_package(index, out_dir)
        except OSError as exc:
            raise StoreError(f"cannot export to {out_dir}: {exc}") from exc
        log.info("exporting to %s... ok", out_dir)
        return index

    def _write_package(self, index: dict[str, Any], out_dir: Path) -> None:
        collections_index = [
            {
                "id": cid,
                "collection": index["collections"][cid]["collection"],
                "itemsCount": len(index["collections"][cid]["itemsIndex"]),
            }
            for cid in index["collectionsIndex"]
        ]
        atomicfile.write_json(out_dir / EXPORT_COLLECTIONS_INDEX_FILENAME, collections_index)
        atomicfile.write_json(out_dir / EXPORT_DEEP_INDEX_FILENAME, index)

        for cid in index["collectionsIndex"]:
            collection = index["collections"][cid]
            coll_dir = out_dir / "collections" / cid
            atomicfile.write_json(
                coll_dir / EXPORT_ITEMS_INDEX_FILENAME,
                {
                    "id": cid,
                    "collection": collection["collection"],
                    "itemsIndex": collection["itemsIndex"],
                    "items": collection["items"],
                },
            )
            for iid in collection["itemsIndex"]:
                self.receipt.increment("items_exported")
                cover = self.store.item(cid, iid).effective_cover_path()
                if cover is None:
                    continue
                dest = coll_dir / "items" / iid / STORE_COVER_FILENAME
                atomicfile.write_bytes(dest, cover.read_bytes())
                self.receipt.increment("covers_exported")
            self.receipt.increment("collections_exported")


def _empty_dir(path: Path) -> None:
    """Remove every entry inside path, keeping path itself."""
    if not path.exists():
        return
    log.info("cleaning %s", path)
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
