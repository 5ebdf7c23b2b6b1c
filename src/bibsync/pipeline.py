"""Pipeline orchestration: import, export, or both, under the run lock."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from . import atomicfile
from .config import PipelineConfig
from .exporter import Exporter
from .importer import Importer
from .manifest import Manifest, load_manifest
from .receipt import Receipt
from .remote import ArchiveAdapter, RemoteAdapter
from .store import CacheStore, data_dir_or_default

log = logging.getLogger("bibsync/pipeline")


class BibSyncPipeline:
    """
    Runs the sync pipeline against a data directory.

    Each operation holds the run lock, creates one receipt, and saves it
    exactly once under `state/receipts/`, also when a fatal error aborts
    the run. Fatal errors are re-raised after the receipt is saved.

    Arguments:
        data_dir: the data directory (default: ./.bibsync).
        config: the pipeline configuration.
        adapter: remote adapter, defaults to an ArchiveAdapter built
            from the configuration.
        manifest_path: overrides the configured manifest location.
        out_dir: overrides the configured export directory.
        jobs: overrides the configured worker pool size.
        show_progress: render progress bars while importing.
    """

    def __init__(
        self,
        data_dir: str | Path | None,
        config: PipelineConfig,
        adapter: RemoteAdapter | None = None,
        *,
        manifest_path: Path | None = None,
        out_dir: Path | None = None,
        jobs: int | None = None,
        show_progress: bool = False,
    ):
        self.data_dir = data_dir_or_default(data_dir)
        self.config = config
        self.store = CacheStore(self.data_dir)
        self.manifest_path = manifest_path or config.manifest_path(self.data_dir)
        self.out_dir = out_dir or config.out_dir_path(self.data_dir)
        self.jobs = jobs or config.import_.jobs
        self.show_progress = show_progress
        self._adapter = adapter

    @property
    def adapter(self) -> RemoteAdapter:
        if self._adapter is None:
            remote = self.config.remote
            self._adapter = ArchiveAdapter(
                base_url=remote.base_url,
                timeout=remote.timeout,
                retries=remote.retries,
                backoff=remote.backoff,
                search_rows=remote.search_rows,
            )
        return self._adapter

    def receipts_dir(self) -> Path:
        return self.data_dir / "state" / "receipts"

    def load_manifest(self) -> Manifest:
        return load_manifest(self.manifest_path)

    def import_(self, *, force: bool = False) -> Receipt:
        """Synchronize the cache with the remote repository."""
        return self._execute("import", lambda receipt: self._import(receipt, force=force))

    def export(self, *, clean: bool = False, out_dir: Path | None = None) -> Receipt:
        """Write the export package from the cache."""
        target = out_dir or self.out_dir
        return self._execute(
            "export",
            lambda receipt: self._export(receipt, clean=clean, out_dir=target),
            export_dir=target,
        )

    def run(self, *, force: bool = False, clean: bool = False) -> Receipt:
        """Import, then export."""

        def both(receipt: Receipt) -> None:
            manifest = self._import(receipt, force=force)
            self._export(receipt, clean=clean, out_dir=self.out_dir, manifest=manifest)

        return self._execute("run", both, export_dir=self.out_dir)

    def _import(self, receipt: Receipt, *, force: bool) -> Manifest:
        manifest = self.load_manifest()
        importer = Importer(
            self.store,
            self.adapter,
            receipt,
            jobs=self.jobs,
            force=force,
            show_progress=self.show_progress,
        )
        with receipt.phase("import"):
            importer.run(manifest)
        return manifest

    def _export(
        self,
        receipt: Receipt,
        *,
        clean: bool,
        out_dir: Path,
        manifest: Manifest | None = None,
    ) -> None:
        if manifest is None:
            manifest = self.load_manifest()
        with receipt.phase("export"):
            Exporter(self.store, receipt, clean=clean).run(manifest, out_dir)

    def _execute(
        self,
        command: str,
        body: Callable[[Receipt], object],
        *,
        export_dir: Path | None = None,
    ) -> Receipt:
        receipt = Receipt(command)
        with self.store.run_lock():
            try:
                body(receipt)
            except Exception as exc:
                receipt.error(command, f"fatal: {exc}")
                raise
            finally:
                self._save_receipt(receipt, export_dir)
        return receipt

    def _save_receipt(self, receipt: Receipt, export_dir: Path | None) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.receipts_dir() / f"{stamp}_{receipt.command}.json"
        try:
            receipt.save(path)
        except OSError as exc:
            # the error that aborted the run, if any, stays the one raised
            log.error("cannot save receipt to %s: %s", path, exc)
        name = self.config.export.receipt_file_name
        if export_dir is None or not name or not export_dir.is_dir():
            return
        try:
            atomicfile.write_json(export_dir / name, receipt.to_dict())
        except OSError as exc:
            log.warning("cannot copy receipt to %s: %s", export_dir, exc)
