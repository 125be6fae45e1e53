"""Run log for sync operations.

Every entry goes to the persistent log file. Entries flagged as console
visible are echoed to the terminal through Rich; warnings and errors are
flagged by default. Both sinks are standard ``logging`` handlers, which
serialize ``emit`` with a per-handler lock, so entries written from
concurrent workers never interleave within a line.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(threadName)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger_ids = itertools.count()


class Severity(IntEnum):
    """Severity of a log entry (values match the ``logging`` levels)."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


@dataclass(frozen=True)
class LogEntry:
    """A single log line."""

    timestamp: datetime
    severity: Severity
    message: str
    console: bool


class _ConsoleFilter(logging.Filter):
    """Pass entries flagged as console visible."""

    def filter(self, record: logging.LogRecord) -> bool:
        return bool(getattr(record, "console", False))


class SyncLogger:
    """Append-only, thread-safe log shared by all sync components.

    Examples:
        >>> log = SyncLogger(log_file=Path("spmirror.log"))
        >>> log.info("Downloaded Proj_A/report.docx", console=True)
        >>> log.debug("Skipped Proj_A/notes.txt: timestamps match")
    """

    def __init__(
        self,
        log_file: Optional[Path] = None,
        console: Optional[Console] = None,
        echo: bool = True,
        keep_entries: bool = False,
    ):
        """Initialize the run log.

        Args:
            log_file: Persistent log file (appended to). None disables it.
            console: Rich console used for echoed entries (defaults to stderr)
            echo: Whether console-visible entries are echoed at all
            keep_entries: Keep every LogEntry in memory (see ``entries``)
        """
        self.log_file = log_file
        self._entries: Optional[list[LogEntry]] = [] if keep_entries else None
        self._entries_lock = threading.Lock()

        # A private logger per instance; never propagates to the root logger
        self._logger = logging.getLogger(f"spmirror.run.{next(_logger_ids)}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        self._handlers: list[logging.Handler] = []

        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
            file_handler.setFormatter(
                logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
            )
            file_handler.setLevel(logging.DEBUG)
            self._add_handler(file_handler)

        if echo:
            console_handler = RichHandler(
                console=console or Console(stderr=True),
                show_path=False,
                markup=False,
                rich_tracebacks=False,
                log_time_format="[%X]",
            )
            console_handler.setLevel(logging.DEBUG)
            console_handler.addFilter(_ConsoleFilter())
            self._add_handler(console_handler)

        if not self._handlers:
            # Keeps logging's last-resort stderr handler out of silent logs
            self._add_handler(logging.NullHandler())

    def _add_handler(self, handler: logging.Handler) -> None:
        self._logger.addHandler(handler)
        self._handlers.append(handler)

    @property
    def entries(self) -> list[LogEntry]:
        """Snapshot of the entries logged so far (requires keep_entries)."""
        if self._entries is None:
            return []
        with self._entries_lock:
            return list(self._entries)

    def log(
        self,
        message: str,
        severity: Severity = Severity.INFO,
        console: bool = False,
    ) -> None:
        """Append an entry to the log.

        Args:
            message: Log message (one line)
            severity: Entry severity
            console: Echo the entry to the terminal
        """
        # One entry is one line in the file
        message = " ".join(message.splitlines())

        if self._entries is not None:
            entry = LogEntry(
                timestamp=datetime.now(),
                severity=severity,
                message=message,
                console=console,
            )
            with self._entries_lock:
                self._entries.append(entry)

        self._logger.log(int(severity), message, extra={"console": console})

    def debug(self, message: str, console: bool = False) -> None:
        self.log(message, Severity.DEBUG, console)

    def info(self, message: str, console: bool = False) -> None:
        self.log(message, Severity.INFO, console)

    def warning(self, message: str, console: bool = True) -> None:
        self.log(message, Severity.WARNING, console)

    def error(self, message: str, console: bool = True) -> None:
        self.log(message, Severity.ERROR, console)

    def close(self) -> None:
        """Flush and detach the handlers."""
        for handler in self._handlers:
            self._logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def __enter__(self) -> "SyncLogger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
