"""Shared test fixtures for packsync."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

import httpx
import pytest

from packsync.config import Settings
from packsync.services.fingerprint_service import FileEntry, compute_dir_checksum

if TYPE_CHECKING:
    from pathlib import Path

BASE_URL = "http://pack.test"


def sha1_hex(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def entries_for(files: dict[str, bytes]) -> dict[str, FileEntry]:
    return {
        path: FileEntry(file_path=path, file_size=len(data), content_hash=sha1_hex(data))
        for path, data in files.items()
    }


class RecordingProgress:
    """Progress receiver double that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.lines: list[str] = []
        self.errors: list[BaseException] = []

    def print_log(self, line: str) -> None:
        self.calls.append(("print_log", line))
        self.lines.append(line)

    def amend_last_log(self, text: str) -> None:
        self.calls.append(("amend_last_log", text))
        if self.lines:
            self.lines[-1] += text

    def set_progress(self, primary: float, secondary: float) -> None:
        self.calls.append(("set_progress", (primary, secondary)))

    def set_info(self, label: str, detail: str) -> None:
        self.calls.append(("set_info", (label, detail)))

    def set_exception(self, error: BaseException) -> None:
        self.calls.append(("set_exception", error))
        self.errors.append(error)


@dataclass
class FakePackServer:
    """In-memory pack server for ``httpx.MockTransport``."""

    files: dict[str, bytes] = field(default_factory=dict)
    encrypt: bool = False
    corrupt: set[str] = field(default_factory=set)
    extra_routes: dict[str, tuple[int, bytes]] = field(default_factory=dict)
    requests: list[str] = field(default_factory=list)
    downloads: list[str] = field(default_factory=list)

    def manifest(self) -> dict[str, Any]:
        return {
            "version": 1,
            "encrypt": self.encrypt,
            "files": {
                path: {"size": len(data), "hash": sha1_hex(data)}
                for path, data in self.files.items()
            },
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(f"{request.method} {path}")
        if path in self.extra_routes:
            status, body = self.extra_routes[path]
            return httpx.Response(status, content=body)
        if path == "/metadata.sha1":
            headers = {"X-Pack-Encrypt": "true"} if self.encrypt else {}
            digest = compute_dir_checksum(entries_for(self.files))
            return httpx.Response(200, content=digest, headers=headers)
        if path == "/metadata.json":
            return httpx.Response(200, content=json.dumps(self.manifest()).encode())
        if path.startswith("/dist/"):
            rel = unquote(path.removeprefix("/dist/"))
            if rel not in self.files:
                return httpx.Response(404)
            self.downloads.append(rel)
            data = self.files[rel]
            if rel in self.corrupt:
                data = b"X" * len(data)
            return httpx.Response(200, content=data)
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def progress() -> RecordingProgress:
    return RecordingProgress()


@pytest.fixture
def pack_server() -> FakePackServer:
    return FakePackServer()


@pytest.fixture
def target_dir(tmp_path: Path) -> Path:
    target = tmp_path / "pack"
    target.mkdir()
    return target


@pytest.fixture
def make_settings(target_dir: Path):
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "base_url": BASE_URL,
            "target_dir": target_dir,
            "poll_interval_seconds": 0.005,
            "max_concurrent_downloads": 3,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def make_progress() -> type[RecordingProgress]:
    return RecordingProgress
