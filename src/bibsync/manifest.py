"""
Sync manifest (the whitelist).

The manifest is the single authority for what we retain. Collections and
items absent from it are removed from the cache on the next import and
are never exported.

Manifest format:

{
  "collectionsIndex": ["scifi"],
  "collections": {
    "scifi": {
      "itemsIndex": ["A", "B"],
      "collection": {"name": "Science Fiction", "query": "subject:scifi"},
      "filter": {"enabled": true, "include": ["*"], "exclude": []},
      "custom": ["B"]
    }
  }
}

Only `collectionsIndex` and each collection's `itemsIndex` are required.
The optional `filter` restricts what is exported, and `custom` lists items
that do not come from the remote repository.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any

import dacite

from . import atomicfile
from .errors import ManifestError

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


_DACITE_CONFIG = dacite.Config(convert_key=_camel)


def validate_id(value: str, *, descr: str = "identifier") -> str:
    """Ensure an identifier is safe to use as a path component."""
    if not _ID_PATTERN.match(value):
        raise ManifestError(f"invalid {descr}: {value!r}")
    return value


@dataclass(frozen=True, kw_only=True)
class CollectionFilter:
    """Export filter for the items of a collection."""

    enabled: bool = True
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)

    def accepts(self, item_id: str) -> bool:
        """Return whether the given item passes this filter."""
        if not self.enabled:
            return False
        if self.include and not any(fnmatchcase(item_id, pat) for pat in self.include):
            return False
        return not any(fnmatchcase(item_id, pat) for pat in self.exclude)


@dataclass(frozen=True, kw_only=True)
class CollectionSpec:
    """Whitelist entry for a single collection."""

    items_index: list[str]
    collection: dict[str, Any] = field(default_factory=dict)
    filter: CollectionFilter = field(default_factory=CollectionFilter)
    custom: list[str] = field(default_factory=list)

    def is_custom(self, item_id: str) -> bool:
        return item_id in self.custom


@dataclass(frozen=True, kw_only=True)
class Manifest:
    """The sync manifest."""

    collections_index: list[str]
    collections: dict[str, CollectionSpec] = field(default_factory=dict)

    def __post_init__(self):
        _ensure_unique(self.collections_index, descr="collectionsIndex")
        for cid in self.collections_index:
            validate_id(cid, descr="collection id")
            if cid not in self.collections:
                raise ManifestError(f"collection {cid} is listed but has no entry")
            spec = self.collections[cid]
            _ensure_unique(spec.items_index, descr=f"{cid}.itemsIndex")
            for iid in spec.items_index:
                validate_id(iid, descr=f"item id in {cid}")
            for iid in spec.custom:
                if iid not in spec.items_index:
                    raise ManifestError(f"custom item {cid}/{iid} is not in itemsIndex")

    def spec(self, collection_id: str) -> CollectionSpec:
        """Return the whitelist entry for a whitelisted collection."""
        if collection_id not in self.collections_index:
            raise KeyError(f"collection not whitelisted: {collection_id}")
        return self.collections[collection_id]

    def whitelisted(self) -> set[tuple[str, str]]:
        """Return every whitelisted (collection_id, item_id) pair."""
        return {
            (cid, iid)
            for cid in self.collections_index
            for iid in self.collections[cid].items_index
        }

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-serializable manifest."""
        collections: dict[str, Any] = {}
        for cid, spec in self.collections.items():
            entry: dict[str, Any] = {"itemsIndex": list(spec.items_index)}
            if spec.collection:
                entry["collection"] = dict(spec.collection)
            if spec.filter != CollectionFilter():
                entry["filter"] = {
                    "enabled": spec.filter.enabled,
                    "include": list(spec.filter.include),
                    "exclude": list(spec.filter.exclude),
                }
            if spec.custom:
                entry["custom"] = list(spec.custom)
            collections[cid] = entry
        return {
            "collectionsIndex": list(self.collections_index),
            "collections": collections,
        }


def _ensure_unique(values: list[str], *, descr: str) -> None:
    seen: set[str] = set()
    for value in values:
        if value in seen:
            raise ManifestError(f"duplicate entry in {descr}: {value}")
        seen.add(value)


def parse_manifest(data: Any) -> Manifest:
    """Build a Manifest from already-decoded JSON data."""
    if not isinstance(data, dict):
        raise ManifestError("manifest must be a JSON object")
    try:
        return dacite.from_dict(Manifest, data, config=_DACITE_CONFIG)
    except dacite.DaciteError as exc:
        raise ManifestError(f"invalid manifest: {exc}") from exc


def load_manifest(manifest_file: Path) -> Manifest:
    """
    Load the manifest from the given file.

    Raises:
        ManifestError: if the file is missing or malformed.
    """
    try:
        with open(manifest_file, encoding="utf-8") as filep:
            data = json.load(filep)
    except FileNotFoundError as exc:
        raise ManifestError(f"manifest not found: {manifest_file}") from exc
    except json.JSONDecodeError as exc:
        raise ManifestError(f"invalid JSON in {manifest_file}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ManifestError(f"manifest is not valid UTF-8: {manifest_file}: {exc}") from exc
    except OSError as exc:
        raise ManifestError(f"cannot read manifest {manifest_file}: {exc}") from exc
    return parse_manifest(data)


def save_manifest(manifest: Manifest, manifest_file: Path) -> None:
    """Atomically write the manifest to the given file."""
    atomicfile.write_json(manifest_file, manifest.to_dict())


def add_items(manifest: Manifest, collection_id: str, item_ids: list[str]) -> Manifest:
    """Return a new manifest with the given items appended to a collection."""
    validate_id(collection_id, descr="collection id")
    collections = dict(manifest.collections)
    index = list(manifest.collections_index)
    spec = collections.get(collection_id) or CollectionSpec(items_index=[])
    items = list(spec.items_index)
    for iid in item_ids:
        if iid not in items:
            items.append(iid)
    collections[collection_id] = CollectionSpec(
        items_index=items,
        collection=spec.collection,
        filter=spec.filter,
        custom=spec.custom,
    )
    if collection_id not in index:
        index.append(collection_id)
    return Manifest(collections_index=index, collections=collections)
