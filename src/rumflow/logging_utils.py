"""Logging utilities for colorized terminal output and per-job log files.

This module provides a ColoredFormatter and setup functions for consistent
logging with visual emphasis on warnings and errors in terminal output, and
for keeping a copy of every message in the job's output directory.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Union

LOG_SUBDIR = "log"
LOG_FILE = "rumflow.log"
ERROR_LOG_FILE = "rumflow-errors.log"

FILE_FORMAT = "%(asctime)s %(levelname)-8s %(threadName)s %(name)s: %(message)s"


class ColoredFormatter(logging.Formatter):
    """Formatter that adds ANSI color codes for WARNING and ERROR levels.

    Colors are only applied when output is to an interactive terminal (TTY).
    When redirecting to a file or pipe, plain text is used.

    Attributes
    ----------
    COLORS : dict
        Mapping of log levels to ANSI color codes.
    RESET : str
        ANSI code to reset text formatting.
    """

    COLORS = {
        logging.WARNING: "\033[93m",  # Yellow
        logging.ERROR: "\033[91m",  # Red
        logging.CRITICAL: "\033[91m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno)
        if color and sys.stderr.isatty():
            return f"{color}{message}{self.RESET}"
        return message


def setup_logging(quiet: bool = False, debug: bool = False) -> None:
    """Set up terminal logging with colored output for warnings and errors.

    Parameters
    ----------
    quiet : bool, optional
        Only show warnings and errors.
    debug : bool, optional
        Show debug messages too. Takes precedence over ``quiet``.

    Examples
    --------
    >>> from rumflow.logging_utils import setup_logging
    >>> setup_logging(debug=True)
    """
    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColoredFormatter("%(message)s"))
    handler.setLevel(level)

    logging.root.handlers = []
    logging.root.addHandler(handler)
    logging.root.setLevel(logging.DEBUG if debug else logging.INFO)


def add_job_log_file(output_dir: Union[str, Path]) -> Path:
    """Also write log messages to files in the job's output directory.

    Every logged message goes to ``log/rumflow.log``; warnings and
    errors are repeated in ``log/rumflow-errors.log``. Calling this twice
    for the same directory does not add duplicate handlers.

    Parameters
    ----------
    output_dir : str or Path
        The job's output directory.

    Returns
    -------
    Path
        The log directory.
    """
    log_dir = Path(output_dir) / LOG_SUBDIR
    log_dir.mkdir(parents=True, exist_ok=True)

    wanted = {
        (log_dir / LOG_FILE).resolve(): logging.DEBUG,
        (log_dir / ERROR_LOG_FILE).resolve(): logging.WARNING,
    }
    existing = {
        Path(h.baseFilename) for h in logging.root.handlers if isinstance(h, logging.FileHandler)
    }

    for path, level in wanted.items():
        if path in existing:
            continue
        handler = logging.FileHandler(path)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logging.root.addHandler(handler)

    return log_dir
