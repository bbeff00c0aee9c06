"""Local inventory: scans the target tree and caches per-file hashes between runs."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

from packsync.filesystem.files import atomic_write_text
from packsync.services.crypto_service import HEADER_SIZE, is_encrypted_file, iter_decrypted
from packsync.services.fingerprint_service import (
    FileEntry,
    compute_dir_checksum,
    hash_chunks,
    hash_file,
)

logger = logging.getLogger(__name__)

HASH_CACHE_FILE = ".packsync-hashcache.json"
ARCHIVE_STATE_FILE = "updater_manifest_state.json"
PARTIAL_SUFFIX = ".packsync-part"
RESERVED_FILES = frozenset({HASH_CACHE_FILE, ARCHIVE_STATE_FILE})


@dataclass(frozen=True)
class CacheEntry:
    """Last known on-disk state of a file and the plaintext hash computed for it."""

    mtime_ns: int
    size: int
    content_hash: str
    decrypted: bool = False


class HashCache:
    """Persisted ``path -> CacheEntry`` mapping scoped to one target root.

    Download workers record freshly written files concurrently, so every
    access goes through a lock.
    """

    def __init__(self, cache_path: Path) -> None:
        self.cache_path = cache_path
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @classmethod
    def load(cls, cache_path: Path) -> HashCache:
        """Load a cache file; a missing or corrupt file yields an empty cache."""
        cache = cls(cache_path)
        if not cache_path.is_file():
            return cache
        try:
            data = json.loads(cache_path.read_text(encoding="utf-8"))
            cache._entries = {path: CacheEntry(**raw) for path, raw in data.items()}
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable hash cache %s: %s", cache_path, exc)
            cache._entries = {}
        return cache

    def save(self) -> None:
        with self._lock:
            data = {path: asdict(entry) for path, entry in sorted(self._entries.items())}
        atomic_write_text(self.cache_path, json.dumps(data, indent=2))

    def lookup(self, file_path: str, mtime_ns: int, size: int, decrypted: bool) -> str | None:
        """Return the cached hash when the on-disk state is unchanged."""
        with self._lock:
            entry = self._entries.get(file_path)
        if entry is None:
            return None
        if entry.mtime_ns != mtime_ns or entry.size != size or entry.decrypted != decrypted:
            return None
        return entry.content_hash

    def record(
        self, file_path: str, stat: os.stat_result, content_hash: str, decrypted: bool
    ) -> None:
        with self._lock:
            self._entries[file_path] = CacheEntry(
                mtime_ns=stat.st_mtime_ns,
                size=stat.st_size,
                content_hash=content_hash,
                decrypted=decrypted,
            )

    def prune(self, keep: set[str]) -> None:
        """Drop entries for paths that are no longer present."""
        with self._lock:
            self._entries = {p: e for p, e in self._entries.items() if p in keep}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _ancestors(file_path: str) -> list[str]:
    parts = file_path.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


def directories_of(file_paths: set[str] | list[str] | dict[str, FileEntry]) -> set[str]:
    """Return every distinct ancestor directory implied by the given file paths."""
    dirs: set[str] = set()
    for file_path in file_paths:
        dirs.update(_ancestors(file_path))
    return dirs


class LocalInventory:
    """Fingerprints of every regular file under a target root."""

    def __init__(self, root: Path, hash_cache: HashCache | None = None) -> None:
        self.root = root
        if hash_cache is None:
            hash_cache = HashCache(root / HASH_CACHE_FILE)
        self.hash_cache = hash_cache
        self.files: dict[str, FileEntry] = {}
        self.skipped: list[str] = []

    @classmethod
    def scan(
        cls,
        root: Path,
        *,
        encrypt: bool = False,
        key: bytes | None = None,
        want_hash: bool = True,
    ) -> LocalInventory:
        """Scan root, reusing cached hashes for files whose mtime and size are unchanged.

        With ``encrypt`` set, files stored encrypted are hashed over their
        decrypted content. With ``want_hash`` unset, cache misses are not
        hashed and carry an empty ``content_hash``.
        """
        inventory = cls(root, HashCache.load(root / HASH_CACHE_FILE))
        if encrypt and key is None:
            raise ValueError("An encryption key is required to scan an encrypted pack")
        if root.is_dir():
            inventory._walk(encrypt=encrypt, key=key, want_hash=want_hash)
        inventory.hash_cache.prune(set(inventory.files))
        return inventory

    def _walk(self, *, encrypt: bool, key: bytes | None, want_hash: bool) -> None:
        for dirpath, _dirs, filenames in os.walk(self.root):
            for filename in filenames:
                full = Path(dirpath) / filename
                rel = full.relative_to(self.root).as_posix()
                if rel in RESERVED_FILES:
                    continue
                if filename.endswith(PARTIAL_SUFFIX):
                    logger.info("Removing stale partial download %s", rel)
                    full.unlink(missing_ok=True)
                    continue
                if not full.is_file():
                    continue
                try:
                    entry = self._fingerprint(
                        full, rel, encrypt=encrypt, key=key, want_hash=want_hash
                    )
                except (OSError, ValueError) as exc:
                    logger.warning("Skipping unreadable file %s: %s", rel, exc)
                    self.skipped.append(rel)
                    continue
                self.files[rel] = entry

    def _fingerprint(
        self, full: Path, rel: str, *, encrypt: bool, key: bytes | None, want_hash: bool
    ) -> FileEntry:
        stat = full.stat()
        decrypt_key = key if encrypt and is_encrypted_file(full) else None
        decrypted = decrypt_key is not None
        plain_size = stat.st_size - HEADER_SIZE if decrypted else stat.st_size

        cached = self.hash_cache.lookup(rel, stat.st_mtime_ns, stat.st_size, decrypted)
        if cached is not None:
            return FileEntry(file_path=rel, file_size=plain_size, content_hash=cached)
        if not want_hash:
            return FileEntry(file_path=rel, file_size=plain_size, content_hash="")

        if decrypt_key is not None:
            with open(full, "rb") as f:
                content_hash, plain_size = hash_chunks(iter_decrypted(f, decrypt_key))
        else:
            content_hash = hash_file(full)
        self.hash_cache.record(rel, stat, content_hash, decrypted)
        return FileEntry(file_path=rel, file_size=plain_size, content_hash=content_hash)

    @property
    def directories(self) -> set[str]:
        return directories_of(self.files)

    def dir_checksum(self) -> bytes:
        return compute_dir_checksum(self.files)

    def save_hash_cache(self) -> None:
        self.hash_cache.save()
