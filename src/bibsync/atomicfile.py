"""Atomic file writes used by every on-disk artifact we produce."""

from __future__ import annotations

import json
import os
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any


def dumps_json(data: Any) -> bytes:
    """Serialize to canonical JSON so equal content yields equal bytes."""
    return (json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")


def write_bytes(dest: Path, content: bytes) -> None:
    """Write content to dest using write-to-temp-then-rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    # Operate inside a temporary directory in the destination directory so
    # `os.replace()` is atomic and we avoid cross-filesystem moves.
    with TemporaryDirectory(dir=dest.parent) as tmp_dir:
        tmp_file = Path(tmp_dir) / dest.name
        with open(tmp_file, "wb") as filep:
            filep.write(content)
            filep.flush()
            os.fsync(filep.fileno())
        os.replace(tmp_file, dest)


def write_json(dest: Path, data: Any) -> None:
    """Atomically write data as canonical JSON."""
    write_bytes(dest, dumps_json(data))
