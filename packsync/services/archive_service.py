"""Archive mode: whole-pack download, verification, safe extraction and directory swap."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from packsync.exceptions import (
    ChecksumMismatchError,
    NetworkError,
    PathSafetyError,
    StateCorruptionError,
)
from packsync.filesystem.files import atomic_write_text, resolve_inside
from packsync.schemas.archive import ArchiveManifest, ArchiveState
from packsync.services.inventory_service import ARCHIVE_STATE_FILE

if TYPE_CHECKING:
    from packsync.progress import ProgressReceiver

logger = logging.getLogger(__name__)

PACK_MARKER = "pack.mcmeta"
_CHUNK_SIZE = 65_536


def fetch_archive_manifest(client: httpx.Client, manifest_url: str) -> ArchiveManifest:
    """Fetch and validate the JSON pack manifest."""
    try:
        resp = client.get(manifest_url)
    except httpx.HTTPError as exc:
        raise NetworkError(f"Request to {manifest_url} failed: {exc}") from exc
    if resp.status_code >= 400:
        raise NetworkError(
            f"Server returned HTTP {resp.status_code} for manifest URL: {manifest_url}"
        )
    try:
        return ArchiveManifest.model_validate_json(resp.content)
    except ValidationError as exc:
        raise NetworkError(f"Malformed pack manifest from {manifest_url}: {exc}") from exc


def read_archive_state(state_path: Path) -> ArchiveState | None:
    """Read the persisted state. Returns None when absent, raises when unparseable."""
    if not state_path.is_file():
        return None
    try:
        return ArchiveState.model_validate_json(state_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise StateCorruptionError(f"Cannot read archive state {state_path}: {exc}") from exc


def write_archive_state(state_path: Path, manifest: ArchiveManifest) -> None:
    state = ArchiveState.from_manifest(manifest)
    atomic_write_text(state_path, json.dumps(state.model_dump(by_alias=True), indent=2))


def is_archive_up_to_date(
    target_dir: Path,
    manifest: ArchiveManifest,
    *,
    state_file: str = ARCHIVE_STATE_FILE,
    marker: str = PACK_MARKER,
) -> bool:
    """Decide whether the applied pack already matches the manifest.

    The sha1 is authoritative whenever the manifest carries one; otherwise
    versions are compared. Missing marker, missing state and corrupt state all mean
    "not up to date".
    """
    if not (target_dir / marker).is_file():
        return False
    try:
        state = read_archive_state(target_dir / state_file)
    except StateCorruptionError as exc:
        logger.warning("%s; treating pack as stale", exc)
        return False
    if state is None:
        return False
    if manifest.sha1.strip():
        return manifest.sha1.strip().lower() == state.sha1.strip().lower()
    return bool(state.version) and state.version == manifest.version


def download_archive(
    client: httpx.Client,
    manifest: ArchiveManifest,
    dest: Path,
    cb: ProgressReceiver,
) -> int:
    """Stream the archive to dest with progress. Returns the byte count."""
    downloaded = 0
    try:
        with client.stream("GET", manifest.url) as resp:
            if resp.status_code >= 400:
                raise NetworkError(
                    f"Server returned HTTP {resp.status_code} while downloading archive: "
                    f"{manifest.url}"
                )
            total = int(resp.headers.get("Content-Length", manifest.size_bytes) or 0)
            with open(dest, "wb") as f:
                for chunk in resp.iter_bytes(_CHUNK_SIZE):
                    f.write(chunk)
                    downloaded += len(chunk)
                    if total > 0:
                        cb.set_progress(min(downloaded / total, 1.0), 0)
                        cb.set_info(
                            f"{downloaded * 100 / total:.2f}%",
                            f": {downloaded // 1024:5d} KiB / {total // 1024:5d} KiB",
                        )
                    else:
                        cb.set_info("", f": {downloaded // 1024:5d} KiB downloaded")
    except httpx.HTTPError as exc:
        raise NetworkError(f"Downloading {manifest.url} failed: {exc}") from exc
    return downloaded


def verify_archive_checksum(archive_path: Path, expected_sha1: str) -> None:
    """Compare the archive's SHA-1 with the declared one (case-insensitive)."""
    if not expected_sha1.strip():
        logger.info("Manifest declares no sha1; skipping archive verification")
        return
    sha = hashlib.sha1()
    with open(archive_path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            sha.update(chunk)
    actual = sha.hexdigest()
    if actual.lower() != expected_sha1.strip().lower():
        raise ChecksumMismatchError(
            f"Archive checksum mismatch. Expected {expected_sha1} but got {actual}"
        )


def extract_zip(zip_path: Path, extract_dir: Path) -> None:
    """Extract a zip into extract_dir, refusing any entry that escapes it.

    Every entry is validated before the first byte is written.
    """
    try:
        with zipfile.ZipFile(zip_path) as zf:
            infos = zf.infolist()
            targets: list[tuple[zipfile.ZipInfo, Path]] = []
            for info in infos:
                output = resolve_inside(extract_dir, info.filename)
                if output is None or Path(info.filename).is_absolute():
                    raise PathSafetyError(f"Invalid ZIP entry path: {info.filename}")
                targets.append((info, output))

            for info, output in targets:
                if info.is_dir():
                    output.mkdir(parents=True, exist_ok=True)
                    continue
                output.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(output, "wb") as dst:
                    shutil.copyfileobj(src, dst, _CHUNK_SIZE)
    except zipfile.BadZipFile as exc:
        raise NetworkError(f"Downloaded archive is not a valid zip: {exc}") from exc


def find_pack_root(extract_dir: Path, marker: str = PACK_MARKER) -> Path:
    """Locate the directory holding the pack content inside an extraction root."""
    if (extract_dir / marker).is_file():
        return extract_dir
    entries = list(extract_dir.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and (entries[0] / marker).is_file():
        return entries[0]
    return extract_dir


def replace_directory(source_root: Path, target_root: Path) -> None:
    """Replace target_root with a copy of source_root.

    The copy is staged next to the target and swapped in with renames, so the
    target is either the old tree or the complete new one.
    """
    target_root = target_root.resolve()
    staging = target_root.with_name(f".{target_root.name}.packsync-staging")
    backup = target_root.with_name(f".{target_root.name}.packsync-old")
    for leftover in (staging, backup):
        if leftover.exists():
            shutil.rmtree(leftover)

    target_root.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source_root, staging)
    if target_root.exists():
        os.replace(target_root, backup)
    try:
        os.replace(staging, target_root)
    except OSError:
        if backup.exists():
            os.replace(backup, target_root)
        raise
    if backup.exists():
        shutil.rmtree(backup)
