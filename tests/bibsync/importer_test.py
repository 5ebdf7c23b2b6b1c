"""Tests for the bibsync.importer module."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from bibsync.errors import StoreError, TransientRemoteError
from bibsync.importer import Importer, deep_merge
from bibsync.manifest import parse_manifest
from bibsync.receipt import Receipt
from bibsync.remote import StaticAdapter
from bibsync.store import CacheStore


def _manifest(items: list[str], **extra):
    return parse_manifest(
        {"collectionsIndex": ["scifi"], "collections": {"scifi": {"itemsIndex": items, **extra}}}
    )


def _import(store: CacheStore, adapter: StaticAdapter, manifest, **kwargs) -> Receipt:
    receipt = Receipt("import")
    Importer(store, adapter, receipt, jobs=2, **kwargs).run(manifest)
    return receipt


class TestDeepMerge:
    """Tests for deep_merge."""

    def test_overlay_wins_recursively(self):
        base = {"a": 1, "nested": {"x": 1, "y": 2}, "list": [1]}
        overlay = {"nested": {"y": 3}, "list": [2], "b": 4}
        assert deep_merge(base, overlay) == {
            "a": 1,
            "nested": {"x": 1, "y": 3},
            "list": [2],
            "b": 4,
        }
        assert base["nested"] == {"x": 1, "y": 2}


class TestFirstImport:
    """A fresh cache is populated from the remote."""

    def test_fetches_everything(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)

        receipt = _import(store, adapter, _manifest(["A", "B", "C"]))

        assert receipt.counters["fetched"] == 3
        assert receipt.counters["covers_downloaded"] == 3
        assert receipt.counters["collections_processed"] == 1
        assert receipt.exitcode() == 0
        assert store.list_items("scifi") == ["A", "B", "C"]

    def test_items_are_normalized(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)

        _import(store, adapter, _manifest(["A", "B", "C"]))

        item_a = store.read_item(store.item("scifi", "A"))
        assert item_a["title"] == "Dune\nPart One"
        assert item_a["description"] == ""
        assert item_a["collection"] == ["scifi"]
        assert item_a["coverImage"] == "static://covers/A"
        assert (item_a["coverWidth"], item_a["coverHeight"]) == (4, 6)
        assert store.read_item(store.item("scifi", "B"))["subject"] == ["a", "b"]
        item_c = store.read_item(store.item("scifi", "C"))
        assert item_c["collection"] == ["scifi"]
        assert item_c["favoriteCount"] == 1

    def test_collection_record(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)

        _import(store, adapter, _manifest(["A"], collection={"description": "Curated"}))

        assert store.read_collection("scifi") == {
            "id": "scifi",
            "name": "Science Fiction",
            "description": "Curated",
            "tags": ["space", "robots"],
            "query": "",
        }

    def test_unknown_remote_collection_is_synthesized(self, tmp_path: Path):
        store = CacheStore(tmp_path)

        receipt = _import(store, StaticAdapter(), _manifest([]))

        assert store.read_collection("scifi")["name"] == "scifi"
        assert receipt.exitcode() == 0


class TestIdempotence:
    """Re-running without remote changes leaves the cache untouched."""

    def test_second_run_is_noop(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        manifest = _manifest(["A", "B", "C"])
        _import(store, adapter, manifest)
        before = {p: p.read_bytes() for p in tmp_path.rglob("*.json")}
        adapter.calls.clear()

        receipt = _import(store, adapter, manifest)

        assert receipt.counters["fetched"] == 0
        assert receipt.counters["unchanged"] == 3
        assert not any(call.startswith(("item:", "asset:")) for call in adapter.calls)
        after = {p: p.read_bytes() for p in tmp_path.rglob("*.json")}
        assert after == before

    def test_fetch_remove_keep(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        _import(store, adapter, _manifest(["A", "B"]))

        receipt = _import(store, adapter, _manifest(["B", "C"]))

        assert receipt.counters["fetched"] == 1
        assert receipt.counters["removed"] == 1
        assert receipt.counters["unchanged"] == 1
        assert store.list_items("scifi") == ["B", "C"]

    def test_changed_tag_refetches(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        manifest = _manifest(["A", "B"])
        _import(store, adapter, manifest)
        adapter.items["A"] = {"title": "Dune (revised)"}

        receipt = _import(store, adapter, manifest)

        assert receipt.counters["fetched"] == 1
        assert receipt.counters["unchanged"] == 1
        assert store.read_item(store.item("scifi", "A"))["title"] == "Dune (revised)"

    def test_force_refetches(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        manifest = _manifest(["A", "B"])
        _import(store, adapter, manifest)

        receipt = _import(store, adapter, manifest, force=True)

        assert receipt.counters["fetched"] == 2
        assert receipt.counters["covers_downloaded"] == 2


class TestWhitelist:
    """The cache holds exactly the whitelisted entries."""

    def test_unlisted_collection_removed(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        store.write_item(store.item("old", "X"), {"id": "X"})
        store.write_collection("old", {"id": "old"})

        receipt = _import(store, adapter, _manifest(["A"]))

        assert store.list_collections() == ["scifi"]
        assert store.list_items("scifi") == ["A"]
        assert receipt.counters["removed"] == 1


class TestOverlays:
    """Hand-authored overlays and covers take precedence."""

    def test_overlay_wins(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        entry = store.item("scifi", "A")
        entry.dir_path().mkdir(parents=True)
        entry.overlay_path().write_text(json.dumps({"title": "My Dune", "language": "eng"}))

        _import(store, adapter, _manifest(["A"]))

        item = store.read_item(entry)
        assert item["title"] == "My Dune"
        assert item["language"] == ["eng"]
        assert item["collection"] == ["scifi"]

    def test_custom_cover_wins(self, tmp_path: Path, adapter: StaticAdapter, make_png):
        store = CacheStore(tmp_path)
        entry = store.item("scifi", "A")
        entry.dir_path().mkdir(parents=True)
        entry.custom_cover_path().write_bytes(make_png(8, 2))

        receipt = _import(store, adapter, _manifest(["A"]))

        item = store.read_item(entry)
        assert (item["coverWidth"], item["coverHeight"]) == (8, 2)
        assert "asset:static://covers/A" not in adapter.calls
        assert receipt.counters["covers_custom"] == 1
        assert not entry.cover_path().exists()

    def test_overlay_added_after_import(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        manifest = _manifest(["A", "B"])
        _import(store, adapter, manifest)
        entry = store.item("scifi", "A")
        entry.overlay_path().write_text(json.dumps({"title": "My Dune"}))

        second = _import(store, adapter, manifest)
        third = _import(store, adapter, manifest)

        assert store.read_item(entry)["title"] == "My Dune"
        assert second.counters["fetched"] == 1
        assert second.counters["unchanged"] == 1
        assert third.counters["unchanged"] == 2

    def test_custom_cover_added_after_import(
        self, tmp_path: Path, adapter: StaticAdapter, make_png
    ):
        store = CacheStore(tmp_path)
        manifest = _manifest(["A"])
        _import(store, adapter, manifest)
        entry = store.item("scifi", "A")
        entry.custom_cover_path().write_bytes(make_png(8, 2))

        receipt = _import(store, adapter, manifest)

        item = store.read_item(entry)
        assert (item["coverWidth"], item["coverHeight"]) == (8, 2)
        assert receipt.counters["fetched"] == 1
        assert receipt.counters["covers_custom"] == 1
        assert receipt.counters["covers_downloaded"] == 0

    def test_custom_item(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        entry = store.item("scifi", "X")
        entry.dir_path().mkdir(parents=True)
        entry.overlay_path().write_text(json.dumps({"title": ["Home", "brew"]}))
        manifest = _manifest(["X"], custom=["X"])

        first = _import(store, adapter, manifest)
        second = _import(store, adapter, manifest)

        item = store.read_item(entry)
        assert item["custom"] is True
        assert item["title"] == "Home\nbrew"
        assert not any(call.endswith(":X") for call in adapter.calls)
        assert first.counters["fetched"] == 1
        assert second.counters["unchanged"] == 1


class TestFailures:
    """Per-item failures are recorded; local I/O failures abort."""

    def test_missing_remote_item(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)

        receipt = _import(store, adapter, _manifest(["A", "D"]))

        assert receipt.counters["fetched"] == 1
        assert receipt.counters["failed"] == 1
        assert receipt.errors[0].identifier == "scifi/D"
        assert receipt.exitcode() == 1
        assert store.list_items("scifi") == ["A"]

    def test_retry_after_partial_failure(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        manifest = _manifest(["A", "D"])
        _import(store, adapter, manifest)
        adapter.items["D"] = {"title": "Late"}
        adapter.assets["static://covers/D"] = adapter.assets["static://covers/A"]

        receipt = _import(store, adapter, manifest)

        assert receipt.counters["fetched"] == 1
        assert receipt.counters["unchanged"] == 1
        assert receipt.exitcode() == 0

    def test_malformed_field(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        adapter.items["A"] = {"title": {"nested": "object"}}

        receipt = _import(store, adapter, _manifest(["A"]))

        assert receipt.counters["failed"] == 1
        assert receipt.errors[0].field == "title"

    def test_unmeasurable_cover(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        adapter.assets["static://covers/A"] = b"not an image"

        receipt = _import(store, adapter, _manifest(["A"]))

        item = store.read_item(store.item("scifi", "A"))
        assert (item["coverWidth"], item["coverHeight"]) == (0, 0)
        assert receipt.warnings[0].identifier == "scifi/A"
        assert receipt.exitcode() == 0

    def test_collection_failure_skips_items(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        with patch.object(
            adapter, "get_collection_metadata", side_effect=TransientRemoteError("down")
        ):
            receipt = _import(store, adapter, _manifest(["A", "B"]))

        assert receipt.counters["collections_failed"] == 1
        assert receipt.counters["skipped"] == 2
        assert store.list_items("scifi") == []

    def test_corrupt_overlay_fails_only_its_item(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        entry = store.item("scifi", "A")
        entry.dir_path().mkdir(parents=True)
        entry.overlay_path().write_text("{not json")
        store.write_item(store.item("old", "X"), {"id": "X"})

        receipt = _import(store, adapter, _manifest(["A", "B", "C"]))

        assert receipt.counters["failed"] == 1
        assert receipt.counters["fetched"] == 2
        assert receipt.counters["removed"] == 1
        assert receipt.errors[0].identifier == "scifi/A"
        assert receipt.errors[0].field == "item-custom.json"
        assert receipt.exitcode() == 1
        assert not entry.exists()
        assert store.item("scifi", "B").exists()
        assert store.item("scifi", "C").exists()

    @pytest.mark.parametrize("name", ["item.json", "sync.json"])
    def test_corrupt_cache_file_is_refetched(
        self, tmp_path: Path, adapter: StaticAdapter, name: str
    ):
        store = CacheStore(tmp_path)
        manifest = _manifest(["A"])
        _import(store, adapter, manifest)
        entry = store.item("scifi", "A")
        (entry.dir_path() / name).write_text("{")

        receipt = _import(store, adapter, manifest)

        assert receipt.counters["fetched"] == 1
        assert receipt.exitcode() == 0
        assert receipt.warnings[0].identifier == "scifi/A"
        assert store.read_item(entry)["title"] == "Dune\nPart One"
        assert store.read_meta(entry) is not None

    def test_store_error_is_fatal(self, tmp_path: Path, adapter: StaticAdapter):
        store = CacheStore(tmp_path)
        with patch.object(store, "write_item", side_effect=StoreError("disk full")):
            with pytest.raises(StoreError):
                _import(store, adapter, _manifest(["A", "B"]))
