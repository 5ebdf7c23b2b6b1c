"""Run receipt: counters, errors and timings of a single pipeline run."""

from __future__ import annotations

import logging
import platform
import socket
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Final

from . import atomicfile
from .store import utcnow

log = logging.getLogger("bibsync/receipt")

COUNTERS: Final[tuple[str, ...]] = (
    "fetched",
    "unchanged",
    "skipped",
    "failed",
    "removed",
    "collections_processed",
    "collections_failed",
    "covers_downloaded",
    "covers_custom",
    "items_exported",
    "collections_exported",
    "covers_exported",
)
"""Counters every receipt carries, zero-initialized."""


@dataclass(frozen=True, kw_only=True)
class Issue:
    """An error or warning attached to an identifier."""

    identifier: str
    message: str
    field: str | None = None


class Receipt:
    """
    Thread-safe accumulator for the outcome of a run.

    Worker threads share a single receipt. Once `finalize()` has been
    called the receipt is frozen and further mutation raises RuntimeError.
    """

    def __init__(self, command: str):
        self.command = command
        self.started_at = utcnow()
        self.ended_at: str | None = None
        self.hostname = socket.gethostname()
        self.platform = platform.platform()
        self.counters: dict[str, int] = dict.fromkeys(COUNTERS, 0)
        self.bytes_downloaded = 0
        self.errors: list[Issue] = []
        self.warnings: list[Issue] = []
        self.phases: dict[str, float] = {}
        self._t0 = time.monotonic()
        self._elapsed: float | None = None
        self._lock = threading.Lock()

    def _check_mutable(self) -> None:
        if self._elapsed is not None:
            raise RuntimeError("receipt already finalized")

    def increment(self, counter: str, amount: int = 1) -> None:
        if counter not in self.counters:
            raise KeyError(f"unknown receipt counter: {counter}")
        with self._lock:
            self._check_mutable()
            self.counters[counter] += amount

    def add_bytes(self, amount: int) -> None:
        with self._lock:
            self._check_mutable()
            self.bytes_downloaded += amount

    def error(self, identifier: str, message: str, *, field: str | None = None) -> None:
        """Record an error; the run continues but the exit code becomes 1."""
        log.error("%s: %s", identifier, message)
        with self._lock:
            self._check_mutable()
            self.errors.append(Issue(identifier=identifier, message=message, field=field))

    def warning(self, identifier: str, message: str) -> None:
        log.warning("%s: %s", identifier, message)
        with self._lock:
            self._check_mutable()
            self.warnings.append(Issue(identifier=identifier, message=message))

    @contextmanager
    def phase(self, name: str) -> Iterator[None]:
        """Time the enclosed block and store the duration under `name`."""
        t0 = time.monotonic()
        log.info("%s... start", name)
        try:
            yield
        finally:
            elapsed = time.monotonic() - t0
            with self._lock:
                self._check_mutable()
                self.phases[name] = round(elapsed, 3)
            log.info("%s... done in %.1fs", name, elapsed)

    def finalize(self) -> None:
        """Stamp the end time and freeze the receipt. Idempotent."""
        with self._lock:
            if self._elapsed is not None:
                return
            self._elapsed = time.monotonic() - self._t0
            self.ended_at = utcnow()

    @property
    def finalized(self) -> bool:
        return self._elapsed is not None

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            elapsed = self._elapsed
            if elapsed is None:
                elapsed = time.monotonic() - self._t0
            items = self.counters["fetched"] + self.counters["items_exported"]
            return {
                "command": self.command,
                "started_at": self.started_at,
                "ended_at": self.ended_at,
                "hostname": self.hostname,
                "platform": self.platform,
                "counters": dict(self.counters),
                "bytes_downloaded": self.bytes_downloaded,
                "elapsed_seconds": round(elapsed, 3),
                "items_per_second": round(items / elapsed, 3) if elapsed > 0 else 0.0,
                "bytes_per_second": (
                    round(self.bytes_downloaded / elapsed, 3) if elapsed > 0 else 0.0
                ),
                "phases": dict(self.phases),
                "errors": [asdict(issue) for issue in self.errors],
                "warnings": [asdict(issue) for issue in self.warnings],
            }

    def save(self, path: Path) -> None:
        """Finalize and atomically write the receipt as JSON."""
        self.finalize()
        atomicfile.write_json(path, self.to_dict())
        log.info("receipt saved to %s", path)

    def exitcode(self) -> int:
        """Return 0 when no errors were recorded, 1 otherwise."""
        return int(bool(self.errors))
