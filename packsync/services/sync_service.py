"""Sync orchestrator: selects metadata or archive mode and sequences a run."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from packsync.exceptions import ConfigurationError
from packsync.filesystem.files import require_inside
from packsync.network.download_dispatcher import DownloadDispatcher, DownloadTask
from packsync.network.pack_output import PackOutputFile
from packsync.network.remote_metadata import RemoteMetadata
from packsync.progress import LoggingProgressReceiver
from packsync.services import archive_service
from packsync.services.crypto_service import derive_key
from packsync.services.diff_service import SyncPlan, compute_sync_plan
from packsync.services.inventory_service import ARCHIVE_STATE_FILE, LocalInventory

if TYPE_CHECKING:
    from collections.abc import Callable

    from packsync.config import Settings
    from packsync.progress import ProgressReceiver

logger = logging.getLogger(__name__)

USER_AGENT = "packsync/0.1"


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    ok: bool
    mode: str
    up_to_date: bool = False
    downloaded_files: list[str] = field(default_factory=list)
    failed_files: list[str] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
    downloaded_bytes: int = 0
    error: Exception | None = None


def _finish(cb: ProgressReceiver) -> None:
    cb.set_info("", "")
    cb.set_progress(1, 1)
    cb.print_log("")
    cb.print_log("Done! Thank you.")


class SyncOrchestrator:
    """Runs one sync of ``settings.target_dir`` against the configured source."""

    def __init__(
        self,
        settings: Settings,
        cb: ProgressReceiver,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.cb = cb
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=settings.request_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        """Close the HTTP client if this orchestrator created it."""
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> SyncOrchestrator:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def mode(self) -> str:
        return "archive" if self.settings.archive_mode else "metadata"

    def run(self) -> SyncResult:
        """Run a sync. ``HostStoppingError`` propagates; other errors fail the result."""
        try:
            self.settings.validate_source()
            target = Path(self.settings.target_dir)
            self.cb.print_log(f"Server: {self.settings.base_url}")
            self.cb.print_log(f"Target: {target}")
            self.cb.print_log("")
            if self.settings.archive_mode:
                return self._run_archive_sync(target)
            return self._run_metadata_sync(target)
        except Exception as exc:
            logger.warning("Sync of %s failed: %s", self.settings.target_dir, exc)
            self.cb.set_exception(exc)
            return SyncResult(ok=False, mode=self.mode, error=exc)

    def _run_metadata_sync(self, target: Path) -> SyncResult:
        cb = self.cb
        remote = RemoteMetadata(self.settings.base_url, self.client, self.settings)
        remote_checksum: bytes | None = None

        if self.settings.has_dir_checksum:
            cb.print_log("Downloading remote directory checksum ...")
            remote_checksum = remote.fetch_dir_checksum()
            cb.amend_last_log("Done")
            cb.print_log(f"Remote directory checksum is {remote_checksum.hex()}")
        else:
            cb.print_log("This server does not have a directory checksum.")
            cb.print_log("Downloading remote metadata ...")
            remote.fetch()
            cb.amend_last_log("Done")
            cb.set_progress(0, 0)

        key = self.encryption_key_for(remote.encrypt)
        cb.print_log("Scanning local files ...")
        local = LocalInventory.scan(target, encrypt=remote.encrypt, key=key)
        cb.amend_last_log("Done")
        for skipped in local.skipped:
            cb.print_log(f"Could not read {skipped}, skipping it.")
        local_checksum = local.dir_checksum()
        cb.print_log(f"Local directory checksum is {local_checksum.hex()}")

        if not local.files:
            cb.print_log("The resource pack for the server is being downloaded.")
            cb.print_log("This is going to take a while. Sit back and relax!")

        if remote_checksum is not None:
            if local_checksum == remote_checksum:
                local.save_hash_cache()
                cb.print_log("All files are up to date.")
                _finish(cb)
                return SyncResult(ok=True, mode=self.mode, up_to_date=True)
            cb.print_log("Downloading remote metadata ...")
            remote.fetch()
            cb.amend_last_log("Done")
            cb.set_progress(0, 0)
            if remote.encrypt and key is None:
                # The checksum endpoint did not announce encryption; rescan in the right mode.
                key = self.encryption_key_for(remote.encrypt)
                local = LocalInventory.scan(target, encrypt=True, key=key)

        plan = compute_sync_plan(local.files, remote.files)
        cb.print_log(
            f"Found {len(plan.dirs_to_create):<3d} new directories, "
            f"{len(plan.dirs_to_delete):<3d} to delete."
        )
        cb.print_log(
            f"Found {len(plan.files_to_create):<3d} new files, "
            f"{len(plan.files_to_update):<3d} to update, "
            f"{len(plan.files_to_delete):<3d} to delete."
        )

        cb.print_log("Creating & deleting directories and files ...")
        self._apply_structure(target, plan)
        cb.amend_last_log("Done")

        remote.begin_downloads(cb)
        cb.print_log("Downloading files ...")
        dispatcher = DownloadDispatcher(
            self.client, cb, max_workers=self.settings.max_concurrent_downloads
        )
        try:
            for file_path in plan.download_paths:
                entry = remote.files[file_path]
                task = DownloadTask(
                    url=remote.file_url(file_path),
                    file_path=file_path,
                    expected_size=entry.file_size,
                )
                factory = self._sink_factory(target, task, entry.content_hash, key, local)
                dispatcher.dispatch(task, factory)
            while not dispatcher.tasks_finished():
                dispatcher.update_summary()
                time.sleep(self.settings.poll_interval_seconds)
            dispatcher.update_summary()
        finally:
            dispatcher.close()
        remote.downloaded_bytes += dispatcher.downloaded_bytes
        local.save_hash_cache()

        failed = sorted(f.task.file_path for f in dispatcher.failures)
        if failed:
            cb.print_log(f"{len(failed)} file(s) failed and will be retried next run:")
            for file_path in failed:
                cb.print_log(f"  {file_path}")
        elif not plan.has_changes:
            cb.print_log("All files are up to date.")

        cb.set_info("", "")
        cb.set_progress(1, 1)
        cb.print_log("")
        remote.end_downloads(cb)
        cb.print_log("Done! Thank you.")
        return SyncResult(
            ok=True,
            mode=self.mode,
            up_to_date=not plan.has_changes,
            downloaded_files=sorted(t.file_path for t in dispatcher.completed),
            failed_files=failed,
            deleted_files=list(plan.files_to_delete),
            downloaded_bytes=remote.downloaded_bytes,
        )

    def encryption_key_for(self, encrypt: bool) -> bytes | None:
        if not encrypt:
            return None
        if not self.settings.encryption_key:
            raise ConfigurationError(
                "The server requires encrypted storage but no encryption key is configured"
            )
        return derive_key(self.settings.encryption_key)

    @staticmethod
    def _apply_structure(target: Path, plan: SyncPlan) -> None:
        """Delete files, then directories, then create directories."""
        target.mkdir(parents=True, exist_ok=True)
        for file_path in plan.files_to_delete:
            require_inside(target, file_path).unlink(missing_ok=True)
        for dir_path in sorted(plan.dirs_to_delete, key=lambda d: d.count("/"), reverse=True):
            path = require_inside(target, dir_path)
            if path.is_dir():
                shutil.rmtree(path)
        for dir_path in plan.dirs_to_create:
            path = require_inside(target, dir_path)
            if path.exists() and not path.is_dir():
                path.unlink()
            path.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _sink_factory(
        target: Path,
        task: DownloadTask,
        expected_hash: str,
        key: bytes | None,
        local: LocalInventory,
    ) -> Callable[[], PackOutputFile]:
        dest = require_inside(target, task.file_path)

        def factory() -> PackOutputFile:
            return PackOutputFile(
                dest,
                expected_hash,
                expected_size=task.expected_size,
                encrypt_key=key,
                hash_cache=local.hash_cache,
                cache_key=task.file_path,
            )

        return factory

    def _run_archive_sync(self, target: Path) -> SyncResult:
        cb = self.cb
        marker = self.settings.pack_marker
        cb.print_log("Using archive-manifest source mode.")
        cb.print_log("Loading latest pack manifest ...")
        manifest = archive_service.fetch_archive_manifest(self.client, self.settings.base_url)
        cb.amend_last_log("Done")
        cb.print_log(f"Latest version: {manifest.version} ({manifest.updated_at})")

        if archive_service.is_archive_up_to_date(target, manifest, marker=marker):
            cb.print_log("All files are up to date.")
            _finish(cb)
            return SyncResult(ok=True, mode=self.mode, up_to_date=True)

        cb.print_log("Downloading pack archive ...")
        fd, zip_name = tempfile.mkstemp(prefix="packsync-pack-", suffix=".zip")
        os.close(fd)
        temp_zip = Path(zip_name)
        extract_dir: Path | None = None
        try:
            size = archive_service.download_archive(self.client, manifest, temp_zip, cb)
            cb.amend_last_log("Done")
            cb.print_log("Verifying archive checksum ...")
            archive_service.verify_archive_checksum(temp_zip, manifest.sha1)
            cb.amend_last_log("Done")

            cb.print_log("Extracting archive ...")
            extract_dir = Path(tempfile.mkdtemp(prefix="packsync-unzip-"))
            archive_service.extract_zip(temp_zip, extract_dir)
            pack_root = archive_service.find_pack_root(extract_dir, marker)
            cb.amend_last_log("Done")

            cb.print_log("Applying resource pack files ...")
            archive_service.replace_directory(pack_root, target)
            archive_service.write_archive_state(target / ARCHIVE_STATE_FILE, manifest)
            cb.amend_last_log("Done")
        finally:
            temp_zip.unlink(missing_ok=True)
            if extract_dir is not None and extract_dir.is_dir():
                shutil.rmtree(extract_dir)

        _finish(cb)
        return SyncResult(ok=True, mode=self.mode, downloaded_bytes=size)


def run_sync(settings: Settings, cb: ProgressReceiver | None = None) -> SyncResult:
    """Run one sync with a fresh HTTP client.

    Without a receiver, progress lines go to this module's logger.
    """
    if cb is None:
        cb = LoggingProgressReceiver(logger)
    with SyncOrchestrator(settings, cb) as orchestrator:
        return orchestrator.run()
