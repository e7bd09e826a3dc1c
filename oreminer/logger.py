"""
ORE Miner Logging
=================

Root logger setup for the miner: a `rich` console handler with highlighting
of keys, lamport amounts and durations, and an optional rotating log file.
Settings come from `.env` (see `constants.py`) and may be overridden from
the command line through `configure_logging`.

Usage:
    >>> from oreminer.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Miner started")
"""

import logging
import logging.handlers
import re
import threading
import time
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    DEFAULT_LOG_FORMAT,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_DATE_FORMAT,
    LOG_FILE,
    LOG_FILE_OUTPUT,
    LOG_FORMAT,
    LOG_LEVEL,
    LOG_MAX_FILE_SIZE,
)

# Libraries that log every HTTP request at INFO/DEBUG
QUIET_LOGGERS = ("urllib3", "urllib3.connectionpool", "requests")

MINER_THEME = Theme({
    "ore.level_critical": "bold red reverse",
    "ore.level_debug": "bold dim",
    "ore.level_error": "bold red",
    "ore.level_info": "bold green",
    "ore.level_warning": "bold yellow",
    "ore.logger_name": "magenta",
    "ore.pubkey": "cyan",
    "ore.lamports": "bold yellow",
    "ore.duration": "bold blue",
    "ore.state": "bold magenta",
    "ore.timestamp": "bold cyan",
    "ore.url": "cyan",
})


class MinerLogHighlighter(RegexHighlighter):
    """Colors levels, base58 keys, lamport amounts, durations and cycle states."""

    base_style = "ore."
    highlights = [
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<pubkey>\b[1-9A-HJ-NP-Za-km-z]{32,44}\b)",
        r"(?P<lamports>\b\d+ lamports\b)",
        r"(?P<duration>\b\d+(?:\.\d+)?s\b)",
        r"(?P<state>\b(?:confirmed|failed|expired)\b)",
        r"(?P<timestamp>^(.*?)UTC)",
        r"(?P<url>https?://\S+)",
    ]


class SanitizingFormatter(logging.Formatter):
    """
    Formatter that drops ANSI escapes and control characters.

    Relay rejection reasons and RPC error messages are logged as received.
    """

    _escapes = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]")
    # everything below 0x20 except tab and newline, plus DEL
    _controls = re.compile(r"[\x00-\x08\x0B-\x1F\x7F]")

    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        return cls._controls.sub("", cls._escapes.sub("", text))

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


def build_formatter(log_format: str = LOG_FORMAT, date_format: str = LOG_DATE_FORMAT) -> SanitizingFormatter:
    """
    Formatter with UTC timestamps; an unusable *log_format* falls back to the default.
    """
    try:
        logging.Formatter(fmt=log_format).format(
            logging.LogRecord("check", logging.INFO, "", 0, "check", (), None)
        )
    except (ValueError, KeyError, TypeError):
        log_format = DEFAULT_LOG_FORMAT
    formatter = SanitizingFormatter(fmt=log_format, datefmt=f"{date_format} UTC")
    formatter.converter = time.gmtime
    return formatter


def console_handler(highlight: bool = LOG_CONSOLE_HIGHLIGHTING) -> logging.Handler:
    if not highlight:
        return logging.StreamHandler()
    return RichHandler(
        console=Console(theme=MINER_THEME, highlight=False),
        highlighter=MinerLogHighlighter(),
        keywords=[],
        rich_tracebacks=True,
        show_path=False,
        show_time=False,
        show_level=False,
        markup=False,
    )


def file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=str(path),
        maxBytes=LOG_MAX_FILE_SIZE,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )


class LogManager:
    """
    Owns the handlers installed on the root logger.

    The first `get_logger` call configures logging from `.env`; the CLI
    reconfigures it once its options are parsed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: List[logging.Handler] = []
        self._configured = False

    @property
    def is_configured(self) -> bool:
        return self._configured

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
        force: bool = False,
    ) -> None:
        """
        Install console and file handlers on the root logger.

        Args:
            log_level: DEBUG, INFO, ... (defaults to LOG_LEVEL from `.env`)
            log_file: rotating log file (defaults to LOG_FILE)
            console_output: log to the terminal
            file_output: log to *log_file* (defaults to LOG_FILE_OUTPUT)
            force: replace an existing configuration
        """
        with self._lock:
            if self._configured and not force:
                return

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            root = logging.getLogger()
            for handler in self._handlers:
                root.removeHandler(handler)
                handler.close()
            self._handlers = []

            formatter = build_formatter()
            if console_output:
                self._handlers.append(console_handler())
            if LOG_FILE_OUTPUT if file_output is None else file_output:
                self._handlers.append(file_handler(Path(log_file or LOG_FILE)))

            for handler in self._handlers:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                root.addHandler(handler)
            root.setLevel(level)

            for name in QUIET_LOGGERS:
                logging.getLogger(name).setLevel(logging.WARNING)

            self._configured = True

    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


_manager = LogManager()


def configure_logging(
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    file_output: Optional[bool] = None,
) -> None:
    """Reconfigure logging from CLI or config values."""
    _manager.configure(log_level=log_level, log_file=log_file, file_output=file_output, force=True)


def get_logger(name: str) -> logging.Logger:
    """Logger for *name*, configuring logging on first use."""
    return _manager.get_logger(name)
