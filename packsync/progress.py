"""Progress and log callback contract between the sync core and its host."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ProgressReceiver(Protocol):
    """Host-side sink for sync progress. Calls must not block for long."""

    def print_log(self, line: str) -> None:
        """Append a log line."""

    def amend_last_log(self, text: str) -> None:
        """Append ``text`` to the most recent log line (e.g. "Done")."""

    def set_progress(self, primary: float, secondary: float) -> None:
        """Report overall progress fractions in ``[0, 1]``."""

    def set_info(self, label: str, detail: str) -> None:
        """Report a short label and a detail string for the current activity."""

    def set_exception(self, error: BaseException) -> None:
        """Report the error that terminated the run."""


class LoggingProgressReceiver:
    """Receiver that forwards log lines to ``logging`` and keeps their history."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger
        self.lines: list[str] = []
        self.progress: tuple[float, float] = (0.0, 0.0)
        self.info: tuple[str, str] = ("", "")
        self.error: BaseException | None = None

    def print_log(self, line: str) -> None:
        self.lines.append(line)
        if line:
            self._log.info("%s", line)

    def amend_last_log(self, text: str) -> None:
        if not self.lines:
            self.lines.append("")
        self.lines[-1] += text
        self._log.info("%s", self.lines[-1])

    def set_progress(self, primary: float, secondary: float) -> None:
        self.progress = (primary, secondary)

    def set_info(self, label: str, detail: str) -> None:
        self.info = (label, detail)
        if label or detail:
            self._log.debug("%s%s", label, detail)

    def set_exception(self, error: BaseException) -> None:
        self.error = error
        self._log.error("Sync failed: %s", error)
