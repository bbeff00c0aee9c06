"""Verified output sink: temp file, optional encryption, hash check, atomic promote."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from packsync.exceptions import ChecksumMismatchError
from packsync.services.crypto_service import EncryptingWriter
from packsync.services.fingerprint_service import new_hasher
from packsync.services.inventory_service import PARTIAL_SUFFIX

if TYPE_CHECKING:
    from packsync.services.inventory_service import HashCache

logger = logging.getLogger(__name__)


class PackOutputFile:
    """Writes one downloaded file and promotes it only if its digest matches.

    The destination path is never opened for writing: bytes go to a temporary
    sibling which replaces the destination on a successful ``commit()``.
    """

    def __init__(
        self,
        dest: Path,
        expected_hash: str,
        *,
        expected_size: int | None = None,
        encrypt_key: bytes | None = None,
        hash_cache: HashCache | None = None,
        cache_key: str | None = None,
    ) -> None:
        self.dest = dest
        self.expected_hash = expected_hash.lower()
        self.expected_size = expected_size
        self.hash_cache = hash_cache
        self.cache_key = cache_key
        self.bytes_written = 0
        self._encrypted = encrypt_key is not None
        self._sha = new_hasher()
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{dest.name}.", suffix=PARTIAL_SUFFIX, dir=dest.parent
        )
        self.temp_path = Path(tmp_name)
        self._raw = os.fdopen(fd, "wb")
        self._writer = EncryptingWriter(self._raw, encrypt_key) if encrypt_key is not None else None
        self._closed = False

    def __enter__(self) -> PackOutputFile:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        if not self._closed:
            self.discard()

    def write(self, data: bytes) -> None:
        self._sha.update(data)
        self.bytes_written += len(data)
        if self._writer is not None:
            self._writer.write(data)
        else:
            self._raw.write(data)

    def commit(self) -> str:
        """Verify and promote the temporary file. Returns the plaintext hash."""
        if self._writer is not None:
            self._writer.finalize()
        self._raw.close()
        self._closed = True

        actual_hash = self._sha.hexdigest()
        if self.expected_size is not None and self.bytes_written != self.expected_size:
            self.temp_path.unlink(missing_ok=True)
            raise ChecksumMismatchError(
                f"Size mismatch for {self.dest.name}: expected {self.expected_size}, "
                f"got {self.bytes_written}"
            )
        if actual_hash != self.expected_hash:
            self.temp_path.unlink(missing_ok=True)
            raise ChecksumMismatchError(
                f"Checksum mismatch for {self.dest.name}: expected {self.expected_hash}, "
                f"got {actual_hash}"
            )

        os.replace(self.temp_path, self.dest)
        if self.hash_cache is not None and self.cache_key is not None:
            self.hash_cache.record(self.cache_key, self.dest.stat(), actual_hash, self._encrypted)
        return actual_hash

    def discard(self) -> None:
        """Drop the temporary file, leaving the destination untouched."""
        if not self._raw.closed:
            self._raw.close()
        self._closed = True
        self.temp_path.unlink(missing_ok=True)
