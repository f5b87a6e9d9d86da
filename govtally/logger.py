"""
govtally logging

Root-logger setup shared by the library and the CLI: a rich console handler
with governance-aware highlighting, an optional rotating log file, and a
formatter that keeps user-supplied text (voter ids, titles, indexer payloads)
from forging log lines.

The library configures itself from ``.env`` on first use. The CLI calls
``LogManager().configure(..., force=True)`` again once config.toml has been
read; only the handlers installed here are replaced.

Usage:
    >>> from govtally.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Store opened")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_FILE_OUTPUT,
)


DEFAULT_LOG_FILE = Path("logs") / "govtally.log"

# Chatty at INFO about every query or request
QUIET_LIBRARIES = ("aiosqlite", "httpx", "httpcore")

GOVTALLY_THEME = Theme(
    {
        "govtally.level_critical":  "bold red reverse",
        "govtally.level_debug":     "bold dim",
        "govtally.level_error":     "bold red",
        "govtally.level_info":      "bold green",
        "govtally.level_warning":   "bold yellow",
        "govtally.logger_name":     "magenta",
        "govtally.arrow":           "bold yellow",
        "govtally.status_open":     "bold cyan",
        "govtally.status_passed":   "bold green",
        "govtally.status_rejected": "bold red",
        "govtally.status_executed": "bold magenta",
        "govtally.proposal_ref":    "bold white",
        "govtally.degraded":        "bold red",
        "govtally.timestamp":       "bold cyan",
        "govtally.url":             "cyan",
    }
)


class TerminalSafeFormatter(logging.Formatter):
    """
    Strips ANSI escape sequences and control characters from the formatted
    record, so a crafted voter id cannot start a fake log line (CWE-117) or
    drive the terminal.
    """

    # CSI sequences (colors, cursor moves) and two-byte ESC sequences
    _ansi_escape_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
    )
    # Tab and newline survive
    _control_chars_re = re.compile(r"[\x00-\x08\x0B-\x1F\x7F]")

    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        return cls._control_chars_re.sub("", cls._ansi_escape_re.sub("", text))

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class GovtallyLogHighlighter(RegexHighlighter):
    """Colours levels, proposal statuses, proposal ids and degraded-source warnings."""

    base_style = "govtally."
    highlights = [
        r"(?P<arrow>(\-\->)|(<--)|(→))",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<level_warning>\bWARNING\b)",
        r"(?P<status_open>\bOPEN\b)",
        r"(?P<status_passed>\bPASSED\b)",
        r"(?P<status_rejected>\bREJECTED\b)",
        r"(?P<status_executed>\bEXECUTED\b)",
        r"(?P<proposal_ref>Proposal [0-9a-f]{8,})",
        r"(?P<degraded>\bdegraded\b)",
        r"(?P<timestamp>^(.*?)UTC)",
        r"(?P<url>https?://\S+)",
    ]


def build_formatter(log_format: str, date_format: str) -> TerminalSafeFormatter:
    """
    Formatter for every govtally handler. Times are UTC.

    Raises:
        ValueError: *log_format* contains no usable ``%(field)s`` placeholder
    """
    formatter = TerminalSafeFormatter(
        fmt=log_format, datefmt=f"{date_format} UTC", validate=True
    )
    formatter.converter = time.gmtime
    return formatter


class LogManager:
    """
    Process-wide owner of the root logger configuration (singleton).

    Remembers the handlers it installed so a forced reconfiguration swaps
    exactly those, leaving handlers added by the host application or the
    test runner in place.
    """

    _instance: Optional["LogManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "LogManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._configured = False
                instance._handlers = []
                cls._instance = instance
        return cls._instance

    @property
    def handlers(self) -> List[logging.Handler]:
        return list(self._handlers)

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
        force: bool = False,
    ) -> None:
        """
        Install govtally's handlers on the root logger.

        Args:
            log_level: DEBUG, INFO, ... (default: LOG_LEVEL from .env)
            log_file: rotating log file (default: logs/govtally.log)
            console_output: log to stderr through rich
            file_output: also log to *log_file* (default: LOG_FILE_OUTPUT from .env)
            force: replace an earlier configuration instead of keeping it
        """
        with self._lock:
            if self._configured and not force:
                return

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            if file_output is None:
                file_output = bool(LOG_FILE_OUTPUT)

            format_problem = None
            try:
                formatter = build_formatter(str(LOG_FORMAT), str(LOG_DATE_FORMAT))
            except ValueError as e:
                format_problem = f"LOG_FORMAT {str(LOG_FORMAT)!r} rejected ({e}), using the default"
                formatter = build_formatter(LOG_FORMAT.default(), LOG_DATE_FORMAT.default())

            handlers: List[logging.Handler] = []
            if console_output:
                handlers.append(self._console_handler())
            if file_output:
                handlers.append(self._file_handler(Path(log_file or DEFAULT_LOG_FILE)))

            root = logging.getLogger()
            self._release_handlers(root)
            for handler in handlers:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                root.addHandler(handler)
            root.setLevel(level)
            self._handlers = handlers

            for name in QUIET_LIBRARIES:
                logging.getLogger(name).setLevel(logging.WARNING)

            self._configured = True

        if format_problem:
            logging.getLogger(__name__).warning(format_problem)

    @staticmethod
    def _console_handler() -> logging.Handler:
        if not LOG_CONSOLE_HIGHLIGHTING:
            return logging.StreamHandler(sys.stderr)
        return RichHandler(
            console=Console(theme=GOVTALLY_THEME, highlight=False, stderr=True),
            highlighter=GovtallyLogHighlighter(),
            keywords=[],
            rich_tracebacks=True,
            show_path=False,
            show_time=False,
            show_level=False,
            markup=False,
        )

    @staticmethod
    def _file_handler(path: Path) -> logging.Handler:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            filename=str(path),
            maxBytes=LOG_MAX_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )

    def _release_handlers(self, root: logging.Logger) -> None:
        for handler in self._handlers:
            root.removeHandler(handler)
            handler.close()
        self._handlers = []

    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """Logger for *name*, configuring logging from .env on first use."""
    return _manager.get_logger(name)
