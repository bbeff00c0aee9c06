"""Remote manifest: aggregate checksum and per-file metadata served under a base URL."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from packsync.exceptions import NetworkError
from packsync.schemas.remote import RemoteMetadataDocument
from packsync.services.fingerprint_service import FileEntry

if TYPE_CHECKING:
    from packsync.config import Settings
    from packsync.progress import ProgressReceiver

logger = logging.getLogger(__name__)

ENCRYPT_HEADER = "X-Pack-Encrypt"
_DIGEST_SIZE = 20


def http_get(client: httpx.Client, url: str) -> httpx.Response:
    """GET a URL, converting HTTP and transport failures into ``NetworkError``."""
    try:
        resp = client.get(url)
    except httpx.HTTPError as exc:
        raise NetworkError(f"Request to {url} failed: {exc}") from exc
    if resp.status_code >= 400:
        raise NetworkError(f"Server returned HTTP {resp.status_code} for {url}")
    return resp


def parse_digest(body: bytes) -> bytes:
    """Accept either a raw 20-byte SHA-1 digest or its 40-char hex form."""
    text = body.strip()
    if len(text) == _DIGEST_SIZE * 2:
        try:
            return bytes.fromhex(text.decode("ascii"))
        except (UnicodeDecodeError, ValueError):
            pass
    if len(body) == _DIGEST_SIZE:
        return body
    raise NetworkError(f"Malformed directory checksum ({len(body)} bytes)")


class RemoteMetadata:
    """Per-run view of the remote pack."""

    def __init__(self, base_url: str, client: httpx.Client, settings: Settings) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.settings = settings
        self.files: dict[str, FileEntry] = {}
        self.dir_checksum: bytes | None = None
        self.encrypt = False
        self.fetched = False
        self.downloaded_bytes = 0

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def file_url(self, file_path: str) -> str:
        return self._url(f"{self.settings.dist_path.strip('/')}/{quote(file_path)}")

    def fetch_dir_checksum(self) -> bytes:
        """Fetch the cheap aggregate checksum."""
        resp = http_get(self.client, self._url(self.settings.dir_checksum_path))
        self.dir_checksum = parse_digest(resp.content)
        if resp.headers.get(ENCRYPT_HEADER, "").strip().lower() in ("1", "true", "yes"):
            self.encrypt = True
        logger.debug("Remote directory checksum %s", self.dir_checksum.hex())
        return self.dir_checksum

    def fetch(self) -> dict[str, FileEntry]:
        """Fetch the full per-file manifest."""
        resp = http_get(self.client, self._url(self.settings.manifest_path))
        try:
            document = RemoteMetadataDocument.model_validate_json(resp.content)
        except ValidationError as exc:
            raise NetworkError(f"Malformed remote metadata: {exc}") from exc

        self.encrypt = document.encrypt
        self.files = {
            file_path: FileEntry(
                file_path=file_path,
                file_size=info.size,
                content_hash=info.hash.lower(),
            )
            for file_path, info in document.files.items()
        }
        self.fetched = True
        logger.info("Fetched remote metadata: %d files, encrypt=%s", len(self.files), self.encrypt)
        return self.files

    def begin_downloads(self, cb: ProgressReceiver) -> None:
        """Signal the start of a bulk-download session."""
        self.downloaded_bytes = 0
        cb.set_progress(0, 0)
        self._notify_session("begin")
        logger.debug("Download session started for %s", self.base_url)

    def end_downloads(self, cb: ProgressReceiver) -> None:
        """Signal the end of a bulk-download session."""
        cb.print_log(f"Downloaded {self.downloaded_bytes / 1024:.0f} KiB in this session.")
        self._notify_session("end")

    def _notify_session(self, event: str) -> None:
        hook = self.settings.session_hook_path
        if not hook:
            return
        url = self._url(hook)
        try:
            resp = self.client.post(
                url, json={"event": event, "downloadedBytes": self.downloaded_bytes}
            )
        except httpx.HTTPError as exc:
            logger.warning("Session hook %s failed for %s: %s", event, url, exc)
            return
        if resp.status_code >= 400:
            logger.warning("Session hook %s returned HTTP %d", event, resp.status_code)
