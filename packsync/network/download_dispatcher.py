"""Bounded-concurrency download dispatcher polled by the orchestrator thread."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from packsync.exceptions import NetworkError, SyncError

if TYPE_CHECKING:
    from collections.abc import Callable

    from packsync.network.pack_output import PackOutputFile
    from packsync.progress import ProgressReceiver

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 65_536


@dataclass(frozen=True)
class DownloadTask:
    """One file to fetch: source URL, destination relative path, expected size."""

    url: str
    file_path: str
    expected_size: int


@dataclass(frozen=True)
class DownloadFailure:
    """A task that did not produce a verified file."""

    task: DownloadTask
    error: str


class _Stopped(Exception):
    pass


class DownloadDispatcher:
    """Runs download tasks on a worker pool and exposes pollable progress."""

    def __init__(
        self,
        client: httpx.Client,
        cb: ProgressReceiver,
        max_workers: int = 4,
        chunk_size: int = _CHUNK_SIZE,
    ) -> None:
        self._client = client
        self._cb = cb
        self._chunk_size = chunk_size
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="packsync-download"
        )
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._futures: dict[str, Future[None]] = {}
        self._downloaded_bytes = 0
        self.total_bytes = 0
        self.completed: list[DownloadTask] = []
        self.failures: list[DownloadFailure] = []

    def __enter__(self) -> DownloadDispatcher:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def downloaded_bytes(self) -> int:
        with self._lock:
            return self._downloaded_bytes

    def dispatch(self, task: DownloadTask, sink_factory: Callable[[], PackOutputFile]) -> None:
        """Queue a task. ``sink_factory`` runs only once the response is accepted."""
        if task.file_path in self._futures:
            raise ValueError(f"Duplicate download task for {task.file_path}")
        self.total_bytes += task.expected_size
        self._futures[task.file_path] = self._executor.submit(self._run, task, sink_factory)

    def tasks_finished(self) -> bool:
        return all(future.done() for future in self._futures.values())

    def _run(self, task: DownloadTask, sink_factory: Callable[[], PackOutputFile]) -> None:
        try:
            self._transfer(task, sink_factory)
        except _Stopped:
            logger.debug("Download of %s stopped", task.file_path)
            return
        except Exception as exc:
            if not isinstance(exc, (SyncError, httpx.HTTPError, OSError)):
                logger.exception("Unexpected failure downloading %s", task.file_path)
            else:
                logger.warning("Download of %s failed: %s", task.file_path, exc)
            with self._lock:
                self.failures.append(DownloadFailure(task=task, error=str(exc)))
            return
        with self._lock:
            self.completed.append(task)

    def _transfer(self, task: DownloadTask, sink_factory: Callable[[], PackOutputFile]) -> None:
        if self._stopping.is_set():
            raise _Stopped
        with self._client.stream("GET", task.url) as resp:
            if resp.status_code >= 400:
                raise NetworkError(f"Server returned HTTP {resp.status_code} for {task.url}")
            with sink_factory() as sink:
                for chunk in resp.iter_bytes(self._chunk_size):
                    if self._stopping.is_set():
                        raise _Stopped
                    sink.write(chunk)
                    with self._lock:
                        self._downloaded_bytes += len(chunk)
                sink.commit()

    def update_summary(self) -> None:
        """Push byte and file progress to the callback."""
        with self._lock:
            downloaded = self._downloaded_bytes
            finished = len(self.completed) + len(self.failures)
        total_files = len(self._futures)
        byte_fraction = downloaded / self.total_bytes if self.total_bytes else 1.0
        file_fraction = finished / total_files if total_files else 1.0
        self._cb.set_progress(min(byte_fraction, 1.0), file_fraction)
        self._cb.set_info(
            f"{min(byte_fraction, 1.0) * 100:.2f}%",
            f": {downloaded // 1024:5d} KiB / {self.total_bytes // 1024:5d} KiB,"
            f" {finished} / {total_files} files",
        )

    def close(self) -> None:
        """Stop in-flight transfers at the next chunk and drop queued tasks."""
        self._stopping.set()
        self._executor.shutdown(wait=True, cancel_futures=True)
