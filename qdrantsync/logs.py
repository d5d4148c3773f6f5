"""Console and file logging for the sync CLI.

Console records are colour-coded by level; records flagged ``dry_run``
(``logger.info(..., extra={"dry_run": True})``) get a yellow ``[DRY RUN]``
prefix and records flagged ``success`` are shown in green.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    GRAY = "\033[90m"


_LEVEL_COLORS = {
    logging.DEBUG: _Colors.GRAY,
    logging.WARNING: _Colors.YELLOW,
    logging.ERROR: _Colors.RED,
    logging.CRITICAL: _Colors.RED + _Colors.BOLD,
}

# Loggers that are chatty at INFO (one line per HTTP request)
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "qdrant_client")


class ConsoleFormatter(logging.Formatter):
    """Plain message formatter with optional ANSI colouring."""

    def __init__(self, use_color: bool = True):
        super().__init__("%(message)s")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        dry_run = getattr(record, "dry_run", False)
        if dry_run:
            prefix = "[DRY RUN] "
            if self.use_color:
                prefix = f"{_Colors.YELLOW}[DRY RUN]{_Colors.RESET} "
            message = prefix + message
        if not self.use_color:
            return message
        if getattr(record, "success", False):
            return f"{_Colors.GREEN}{message}{_Colors.RESET}"
        color = _LEVEL_COLORS.get(record.levelno)
        if color:
            return f"{color}{message}{_Colors.RESET}"
        return message


def _stream_supports_color(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def setup_logging(
    verbose: bool = False,
    log_to_file: bool = False,
    log_dir: str | Path = "log",
    stream: TextIO | None = None,
) -> str | None:
    """Configure the root logger.  Returns the log file path, if any."""
    stream = stream or sys.stderr
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler(stream)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(ConsoleFormatter(use_color=_stream_supports_color(stream)))
    root.addHandler(console)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not log_to_file:
        return None

    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = directory / f"qdrantsync-{timestamp}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s")
    )
    root.addHandler(file_handler)
    return str(log_file)
