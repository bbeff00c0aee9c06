"""Symmetric encryption for pack files stored at rest.

Stored layout: ``MAGIC`` + 16-byte nonce + AES-256-CTR ciphertext. CTR keeps
ciphertext and plaintext the same length, so the plaintext size of a stored
file is its on-disk size minus ``HEADER_SIZE``.
"""

from __future__ import annotations

import hashlib
import os
from typing import TYPE_CHECKING, BinaryIO

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

MAGIC = b"PSE1"
NONCE_SIZE = 16
HEADER_SIZE = len(MAGIC) + NONCE_SIZE
CHUNK_SIZE = 65_536


def derive_key(secret_key: str) -> bytes:
    """Derive a 256-bit AES key from the configured secret using SHA-256."""
    return hashlib.sha256(secret_key.encode()).digest()


class EncryptingWriter:
    """Encrypts bytes as they are written to an underlying binary file."""

    def __init__(self, raw: BinaryIO, key: bytes) -> None:
        nonce = os.urandom(NONCE_SIZE)
        self._raw = raw
        self._encryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).encryptor()
        raw.write(MAGIC + nonce)

    def write(self, data: bytes) -> int:
        self._raw.write(self._encryptor.update(data))
        return len(data)

    def finalize(self) -> None:
        tail = self._encryptor.finalize()
        if tail:
            self._raw.write(tail)


def iter_decrypted(f: BinaryIO, key: bytes, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield plaintext chunks from an encrypted stream. Raises ValueError on bad header."""
    header = f.read(HEADER_SIZE)
    if len(header) != HEADER_SIZE or not header.startswith(MAGIC):
        raise ValueError("Not an encrypted pack file")
    decryptor = Cipher(algorithms.AES(key), modes.CTR(header[len(MAGIC) :])).decryptor()
    for chunk in iter(lambda: f.read(chunk_size), b""):
        yield decryptor.update(chunk)
    tail = decryptor.finalize()
    if tail:
        yield tail


def is_encrypted_file(path: Path) -> bool:
    """Return True when the file carries the encrypted-storage header."""
    with open(path, "rb") as f:
        header = f.read(HEADER_SIZE)
    return len(header) == HEADER_SIZE and header.startswith(MAGIC)
