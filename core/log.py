"""Console and per-book file logging for the downloader."""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")

LOG = logging.getLogger("web2book")

_JAVA_LEVELS = {
    "SEVERE": logging.ERROR,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "CONFIG": VERBOSE,
    "FINE": VERBOSE,
    "VERBOSE": VERBOSE,
    "FINER": logging.DEBUG,
    "FINEST": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "ALL": logging.NOTSET,
    "OFF": logging.CRITICAL + 10,
}

_console_handler: Optional[logging.Handler] = None


def log_info(msg, *args):
    LOG.info(msg, *args)


def log_verbose(msg, *args):
    """Shown on the console with --verbose or --debug."""
    LOG.log(VERBOSE, msg, *args)


def log_debug(msg, *args):
    """Shown on the console only with --debug."""
    LOG.debug(msg, *args)


def log_warning(msg, *args):
    LOG.warning(msg, *args)


def log_error(msg, *args, exc_info=False):
    LOG.error(msg, *args, exc_info=exc_info)


def parse_log_level(value: Optional[str], default: int = logging.INFO) -> int:
    """Maps a level name (java.util.logging names included) to a logging level."""
    if not value or not value.strip():
        return default
    return _JAVA_LEVELS.get(value.strip().upper(), default)


def setup_console(verbose: bool = False, debug: bool = False) -> logging.Handler:
    global _console_handler
    level = logging.DEBUG if debug else VERBOSE if verbose else logging.INFO
    LOG.setLevel(logging.DEBUG)
    if _console_handler is None:
        _console_handler = logging.StreamHandler(sys.stdout)
        _console_handler.setFormatter(logging.Formatter("%(message)s"))
        LOG.addHandler(_console_handler)
    _console_handler.setLevel(level)
    return _console_handler


def attach_book_log(log_dir: str, name: str, level: int = logging.INFO) -> logging.Handler:
    """Appends every record of one book job to <log_dir>/<name>.log."""
    os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(
        os.path.join(log_dir, f"{name}.log"), mode="a", encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "[%(asctime)s] %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    if LOG.level == logging.NOTSET or LOG.level > level:
        LOG.setLevel(max(level, logging.DEBUG))
    LOG.addHandler(handler)
    return handler


def detach_book_log(handler: Optional[logging.Handler]) -> None:
    if handler is None:
        return
    LOG.removeHandler(handler)
    handler.close()


def format_duration(duration_ms: float) -> str:
    """Formats milliseconds as e.g. '1h 23m 45s 123ms', omitting zero units."""
    total = int(duration_ms)
    if total < 0:
        return "0ms"
    hours, rest = divmod(total, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    seconds, millis = divmod(rest, 1_000)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds:
        parts.append(f"{seconds}s")
    if millis or not parts:
        parts.append(f"{millis}ms")
    return " ".join(parts)
