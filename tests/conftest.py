"""Shared pytest fixtures for bibsync tests."""

import io
import json
from collections.abc import Callable
from pathlib import Path

import pytest
from PIL import Image

from bibsync.remote import StaticAdapter


def _make_png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


def _write_manifest(data_dir: Path, collections: dict[str, dict]) -> Path:
    path = data_dir / "manifest.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"collectionsIndex": list(collections), "collections": collections})
    )
    return path


@pytest.fixture
def make_png() -> Callable[[int, int], bytes]:
    """Return a function creating solid PNG images of a given size."""
    return _make_png


@pytest.fixture
def write_manifest() -> Callable[[Path, dict[str, dict]], Path]:
    """Return a function writing <data_dir>/manifest.json in insertion order."""
    return _write_manifest


@pytest.fixture
def png_bytes() -> bytes:
    """A 4x6 PNG image."""
    return _make_png(4, 6)


@pytest.fixture
def adapter(png_bytes: bytes) -> StaticAdapter:
    """Offline adapter serving one collection with three items and their covers."""
    return StaticAdapter(
        collections={"scifi": {"id": "scifi", "name": "Science Fiction", "tags": "space; robots"}},
        items={
            "A": {"title": ["Dune", "Part One"], "description": None, "collection": "scifi"},
            "B": {"title": "Foundation", "description": "Psychohistory", "subject": "a;b"},
            "C": {"title": "Hyperion", "collection": ["scifi", "fav-alice"]},
        },
        assets={
            "static://covers/A": png_bytes,
            "static://covers/B": png_bytes,
            "static://covers/C": png_bytes,
        },
    )
