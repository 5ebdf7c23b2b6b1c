"""Tests for the bibsync.exporter module."""

import json
from pathlib import Path

from bibsync.exporter import Exporter
from bibsync.importer import Importer
from bibsync.manifest import parse_manifest
from bibsync.normalize import EXPORT_ITEM_FIELDS
from bibsync.receipt import Receipt
from bibsync.remote import StaticAdapter
from bibsync.store import CacheStore


def _manifest(items: list[str], **extra):
    return parse_manifest(
        {"collectionsIndex": ["scifi"], "collections": {"scifi": {"itemsIndex": items, **extra}}}
    )


def _populated_store(tmp_path: Path, adapter: StaticAdapter, items: list[str]) -> CacheStore:
    store = CacheStore(tmp_path / "data")
    Importer(store, adapter, Receipt("import")).run(_manifest(items))
    return store


def _snapshot(root: Path) -> dict[str, bytes]:
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class TestExportPackage:
    """Tests for the exported package layout and content."""

    def test_layout(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A", "B"])
        out = tmp_path / "out"
        receipt = Receipt("export")

        Exporter(store, receipt).run(_manifest(["A", "B"]), out)

        assert sorted(_snapshot(out)) == [
            "collections-index.json",
            "collections/scifi/items-index.json",
            "collections/scifi/items/A/cover.jpg",
            "collections/scifi/items/B/cover.jpg",
            "index-deep.json",
        ]
        assert receipt.counters["items_exported"] == 2
        assert receipt.counters["covers_exported"] == 2
        assert receipt.counters["collections_exported"] == 1

    def test_deep_index(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["B", "A"])
        out = tmp_path / "out"

        Exporter(store, Receipt("export")).run(_manifest(["B", "A"]), out)

        index = json.loads((out / "index-deep.json").read_text())
        assert index["version"] == "1.0"
        assert index["collectionsIndex"] == ["scifi"]
        scifi = index["collections"]["scifi"]
        assert scifi["collection"]["name"] == "Science Fiction"
        assert scifi["itemsIndex"] == ["B", "A"]
        assert sorted(scifi["items"]["A"]["item"]) == sorted(EXPORT_ITEM_FIELDS)
        assert scifi["items"]["A"]["item"]["description"] == ""

    def test_export_is_deterministic(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A", "B", "C"])
        manifest = _manifest(["A", "B", "C"])

        Exporter(store, Receipt("export")).run(manifest, tmp_path / "one")
        Exporter(store, Receipt("export")).run(manifest, tmp_path / "two")

        assert _snapshot(tmp_path / "one") == _snapshot(tmp_path / "two")

    def test_cache_not_modified(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A"])
        before = _snapshot(tmp_path / "data")

        Exporter(store, Receipt("export"), clean=True).run(_manifest(["A"]), tmp_path / "out")

        assert _snapshot(tmp_path / "data") == before


class TestExportSelection:
    """Filters and missing entries."""

    def test_filter_excludes(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A", "B"])
        manifest = _manifest(["A", "B"], filter={"exclude": ["B"]})

        index = Exporter(store, Receipt("export")).run(manifest, tmp_path / "out")

        assert index["collections"]["scifi"]["itemsIndex"] == ["A"]
        assert not (tmp_path / "out" / "collections" / "scifi" / "items" / "B").exists()

    def test_disabled_collection_is_empty(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A"])
        manifest = _manifest(["A"], filter={"enabled": False})

        index = Exporter(store, Receipt("export")).run(manifest, tmp_path / "out")

        assert index["collections"]["scifi"]["items"] == {}

    def test_missing_item_omitted_with_warning(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A"])
        receipt = Receipt("export")

        index = Exporter(store, receipt).run(_manifest(["A", "Z"]), tmp_path / "out")

        assert index["collections"]["scifi"]["itemsIndex"] == ["A"]
        assert receipt.warnings[0].identifier == "scifi/Z"
        assert receipt.exitcode() == 0

    def test_missing_collection_exported_empty(self, tmp_path: Path):
        store = CacheStore(tmp_path / "data")
        receipt = Receipt("export")

        index = Exporter(store, receipt).run(_manifest(["A"]), tmp_path / "out")

        assert index["collections"]["scifi"]["itemsIndex"] == []
        assert receipt.warnings[0].identifier == "scifi"
        assert (tmp_path / "out" / "collections" / "scifi" / "items-index.json").exists()

    def test_custom_cover_exported(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A"])
        store.item("scifi", "A").custom_cover_path().write_bytes(b"custom")

        Exporter(store, Receipt("export")).run(_manifest(["A"]), tmp_path / "out")

        cover = tmp_path / "out" / "collections" / "scifi" / "items" / "A" / "cover.jpg"
        assert cover.read_bytes() == b"custom"


class TestClean:
    """Destructive versus non-destructive export."""

    def test_non_destructive_keeps_unrelated_files(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A"])
        out = tmp_path / "out"
        out.mkdir()
        (out / "README.txt").write_text("keep me")

        Exporter(store, Receipt("export")).run(_manifest(["A"]), out)

        assert (out / "README.txt").read_text() == "keep me"

    def test_clean_empties_directory(self, tmp_path: Path, adapter: StaticAdapter):
        store = _populated_store(tmp_path, adapter, ["A"])
        out = tmp_path / "out"
        (out / "stale" / "dir").mkdir(parents=True)
        (out / "README.txt").write_text("remove me")

        Exporter(store, Receipt("export"), clean=True).run(_manifest(["A"]), out)

        assert not (out / "README.txt").exists()
        assert not (out / "stale").exists()
        assert (out / "index-deep.json").exists()
