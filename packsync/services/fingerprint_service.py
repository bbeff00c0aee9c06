"""Content fingerprints: per-file SHA-1 hashes and the aggregate directory checksum."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, BinaryIO

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from pathlib import Path

HASH_ALGORITHM = "sha1"
_CHUNK_SIZE = 65_536


@dataclass(frozen=True)
class FileEntry:
    """Represents a file's fingerprint."""

    file_path: str
    file_size: int
    content_hash: str


def new_hasher() -> Any:
    return hashlib.new(HASH_ALGORITHM)


def hash_chunks(chunks: Iterable[bytes]) -> tuple[str, int]:
    """Hash an iterable of byte chunks. Returns (hex digest, byte count)."""
    sha = new_hasher()
    size = 0
    for chunk in chunks:
        sha.update(chunk)
        size += len(chunk)
    return sha.hexdigest(), size


def hash_stream(f: BinaryIO) -> tuple[str, int]:
    """Hash an open binary stream from its current position to EOF."""
    return hash_chunks(iter(lambda: f.read(_CHUNK_SIZE), b""))


def hash_file(path: Path) -> str:
    """Compute the SHA-1 hash of a file."""
    with open(path, "rb") as f:
        digest, _size = hash_stream(f)
    return digest


def compute_dir_checksum(entries: Mapping[str, FileEntry] | Iterable[FileEntry]) -> bytes:
    """Digest a file set: SHA-1 over (path, raw hash) pairs in path order.

    Only paths and content hashes contribute, so two inventories holding the
    same bytes at the same paths agree regardless of scan order.
    """
    values = entries.values() if hasattr(entries, "values") else entries
    sha = new_hasher()
    for entry in sorted(values, key=lambda e: e.file_path):
        if not entry.content_hash:
            raise ValueError(f"Missing content hash for {entry.file_path}")
        sha.update(entry.file_path.encode("utf-8"))
        sha.update(bytes.fromhex(entry.content_hash))
    return sha.digest()
