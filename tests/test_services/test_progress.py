"""Tests for the progress callback contract."""

from __future__ import annotations

import logging

import pytest

from cli.sync_client import ConsoleProgressReceiver
from packsync.progress import LoggingProgressReceiver, ProgressReceiver


class TestLoggingProgressReceiver:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(LoggingProgressReceiver(), ProgressReceiver)
        assert isinstance(ConsoleProgressReceiver(), ProgressReceiver)

    def test_amend_extends_last_line(self, caplog: pytest.LogCaptureFixture) -> None:
        receiver = LoggingProgressReceiver()
        with caplog.at_level(logging.INFO, logger="packsync.progress"):
            receiver.print_log("Downloading remote metadata ...")
            receiver.amend_last_log("Done")
        assert receiver.lines == ["Downloading remote metadata ...Done"]
        assert "Downloading remote metadata ...Done" in caplog.text

    def test_amend_without_lines_starts_one(self) -> None:
        receiver = LoggingProgressReceiver()
        receiver.amend_last_log("Done")
        assert receiver.lines == ["Done"]

    def test_records_progress_info_and_error(self, caplog: pytest.LogCaptureFixture) -> None:
        receiver = LoggingProgressReceiver()
        receiver.set_progress(0.5, 0.25)
        receiver.set_info("50.00%", ": 1 KiB / 2 KiB")
        error = RuntimeError("boom")
        with caplog.at_level(logging.ERROR, logger="packsync.progress"):
            receiver.set_exception(error)
        assert receiver.progress == (0.5, 0.25)
        assert receiver.info == ("50.00%", ": 1 KiB / 2 KiB")
        assert receiver.error is error
        assert "Sync failed: boom" in caplog.text
