"""Tests for local scanning and the persisted hash cache."""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
from typing import TYPE_CHECKING

import pytest

from packsync.services import inventory_service
from packsync.services.crypto_service import EncryptingWriter, derive_key
from packsync.services.inventory_service import (
    ARCHIVE_STATE_FILE,
    HASH_CACHE_FILE,
    HashCache,
    LocalInventory,
    directories_of,
)

if TYPE_CHECKING:
    from pathlib import Path


def _sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def _write(root: Path, rel: str, data: bytes) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


class TestDirectoriesOf:
    def test_all_ancestor_prefixes(self) -> None:
        assert directories_of(["a/b/c.txt", "a/d.txt", "top.txt"]) == {"a", "a/b"}

    def test_empty(self) -> None:
        assert directories_of([]) == set()


class TestScan:
    def test_scan_finds_nested_files(self, tmp_path: Path) -> None:
        _write(tmp_path, "pack.mcmeta", b"{}")
        _write(tmp_path, "assets/tex/stone.png", b"png")
        inventory = LocalInventory.scan(tmp_path)
        assert set(inventory.files) == {"pack.mcmeta", "assets/tex/stone.png"}
        entry = inventory.files["assets/tex/stone.png"]
        assert entry.file_size == 3
        assert entry.content_hash == _sha1(b"png")
        assert inventory.directories == {"assets", "assets/tex"}

    def test_missing_root_is_empty(self, tmp_path: Path) -> None:
        inventory = LocalInventory.scan(tmp_path / "nope")
        assert inventory.files == {}
        assert inventory.dir_checksum() == hashlib.sha1(b"").digest()

    def test_reserved_files_are_not_inventoried(self, tmp_path: Path) -> None:
        _write(tmp_path, "a.txt", b"a")
        _write(tmp_path, ARCHIVE_STATE_FILE, b"{}")
        inventory = LocalInventory.scan(tmp_path)
        inventory.save_hash_cache()
        rescanned = LocalInventory.scan(tmp_path)
        assert set(rescanned.files) == {"a.txt"}
        assert (tmp_path / HASH_CACHE_FILE).is_file()

    def test_reserved_name_in_subdirectory_is_a_regular_file(self, tmp_path: Path) -> None:
        _write(tmp_path, f"sub/{HASH_CACHE_FILE}", b"user data")
        inventory = LocalInventory.scan(tmp_path)
        assert f"sub/{HASH_CACHE_FILE}" in inventory.files

    def test_stale_partial_downloads_are_removed(self, tmp_path: Path) -> None:
        stale = _write(tmp_path, "dir/.x.png.abc123.packsync-part", b"partial")
        inventory = LocalInventory.scan(tmp_path)
        assert not stale.exists()
        assert inventory.files == {}

    def test_unreadable_file_is_skipped(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        _write(tmp_path, "good.txt", b"good")
        _write(tmp_path, "locked.txt", b"locked")
        real_hash_file = inventory_service.hash_file

        def flaky_hash_file(path: Path) -> str:
            if path.name == "locked.txt":
                raise PermissionError("locked")
            return real_hash_file(path)

        monkeypatch.setattr(inventory_service, "hash_file", flaky_hash_file)
        with caplog.at_level(logging.WARNING):
            inventory = LocalInventory.scan(tmp_path)
        assert set(inventory.files) == {"good.txt"}
        assert inventory.skipped == ["locked.txt"]
        assert "locked.txt" in caplog.text

    def test_encrypted_scan_without_key_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="encryption key"):
            LocalInventory.scan(tmp_path, encrypt=True)

    def test_encrypted_file_hashed_over_plaintext(self, tmp_path: Path) -> None:
        key = derive_key("pack-secret")
        raw = io.BytesIO()
        writer = EncryptingWriter(raw, key)
        writer.write(b"plain texture")
        writer.finalize()
        _write(tmp_path, "enc.png", raw.getvalue())

        inventory = LocalInventory.scan(tmp_path, encrypt=True, key=key)
        entry = inventory.files["enc.png"]
        assert entry.content_hash == _sha1(b"plain texture")
        assert entry.file_size == len(b"plain texture")

    def test_plain_file_in_encrypted_mode_hashes_raw_bytes(self, tmp_path: Path) -> None:
        _write(tmp_path, "plain.txt", b"not encrypted")
        inventory = LocalInventory.scan(tmp_path, encrypt=True, key=derive_key("k"))
        assert inventory.files["plain.txt"].content_hash == _sha1(b"not encrypted")

    def test_want_hash_false_leaves_misses_unhashed(self, tmp_path: Path) -> None:
        _write(tmp_path, "a.txt", b"abc")
        inventory = LocalInventory.scan(tmp_path, want_hash=False)
        assert inventory.files["a.txt"].content_hash == ""
        assert inventory.files["a.txt"].file_size == 3


class TestHashCacheReuse:
    def test_unchanged_files_are_not_rehashed(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _write(tmp_path, "a.txt", b"alpha")
        _write(tmp_path, "b/c.txt", b"gamma")
        LocalInventory.scan(tmp_path).save_hash_cache()

        calls: list[str] = []
        real_hash_file = inventory_service.hash_file

        def counting_hash_file(path: Path) -> str:
            calls.append(path.name)
            return real_hash_file(path)

        monkeypatch.setattr(inventory_service, "hash_file", counting_hash_file)
        inventory = LocalInventory.scan(tmp_path)
        assert calls == []
        assert inventory.files["a.txt"].content_hash == _sha1(b"alpha")

    def test_modified_file_is_rehashed(self, tmp_path: Path) -> None:
        target = _write(tmp_path, "a.txt", b"alpha")
        LocalInventory.scan(tmp_path).save_hash_cache()
        target.write_bytes(b"changed!")
        stat = target.stat()
        os.utime(target, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
        inventory = LocalInventory.scan(tmp_path)
        assert inventory.files["a.txt"].content_hash == _sha1(b"changed!")

    def test_deleted_files_are_pruned(self, tmp_path: Path) -> None:
        target = _write(tmp_path, "gone.txt", b"bye")
        LocalInventory.scan(tmp_path).save_hash_cache()
        target.unlink()
        inventory = LocalInventory.scan(tmp_path)
        assert len(inventory.hash_cache) == 0

    def test_corrupt_cache_is_ignored(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        _write(tmp_path, "a.txt", b"alpha")
        (tmp_path / HASH_CACHE_FILE).write_text("{not json", encoding="utf-8")
        with caplog.at_level(logging.WARNING):
            inventory = LocalInventory.scan(tmp_path)
        assert inventory.files["a.txt"].content_hash == _sha1(b"alpha")
        assert "Ignoring unreadable hash cache" in caplog.text

    def test_cache_file_roundtrip(self, tmp_path: Path) -> None:
        target = _write(tmp_path, "a.txt", b"alpha")
        cache = HashCache(tmp_path / HASH_CACHE_FILE)
        stat = target.stat()
        cache.record("a.txt", stat, _sha1(b"alpha"), decrypted=False)
        cache.save()

        data = json.loads((tmp_path / HASH_CACHE_FILE).read_text(encoding="utf-8"))
        assert data["a.txt"]["content_hash"] == _sha1(b"alpha")

        loaded = HashCache.load(tmp_path / HASH_CACHE_FILE)
        assert loaded.lookup("a.txt", stat.st_mtime_ns, stat.st_size, False) == _sha1(b"alpha")
        assert loaded.lookup("a.txt", stat.st_mtime_ns, stat.st_size, True) is None
        assert loaded.lookup("a.txt", stat.st_mtime_ns + 1, stat.st_size, False) is None
