"""
Logging configuration — one setup call for the CLI.

Every module logs through ``logging.getLogger(__name__)``; setup_logging()
decides where that goes. Levels are resolved in precedence order:

    CLI flag  >  RTI_LOG_LEVEL env var  >  WARNING (default)

RTI_LOG_FILE / RTI_LOG_FILE_LEVEL add a file handler. Restores are
chatty at INFO (one line per corrective operation) and very chatty at
DEBUG (every live listing), so the file usually gets DEBUG while the
console stays at WARNING.
"""

from __future__ import annotations

import logging
import os
import sys

# (threshold, format, datefmt): the first threshold the level is at or below wins
_CONSOLE_FORMATS = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
)
_CONSOLE_DEFAULT = ("%(message)s", None)

_FILE_FORMAT = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers kept quiet unless debugging
_NOISY_LOGGERS = ("urllib3", "asyncio")


def setup_logging(
    level: str | None = None,
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure Python logging for the process.

    Args:
        level: Log level name; falls back to RTI_LOG_LEVEL, then WARNING.
        log_file: Optional log file; falls back to RTI_LOG_FILE.
        log_file_level: Level for the file; falls back to RTI_LOG_FILE_LEVEL,
            then ``level``.
        quiet_third_party: Keep noisy libraries at WARNING unless at DEBUG.
    """
    console_level = _parse_level(level or os.environ.get("RTI_LOG_LEVEL"))
    handlers: list[logging.Handler] = [_console_handler(console_level)]

    log_file = log_file or os.environ.get("RTI_LOG_FILE")
    if log_file:
        file_level_name = log_file_level or os.environ.get("RTI_LOG_FILE_LEVEL")
        file_level = _parse_level(file_level_name) if file_level_name else console_level
        handlers.append(_file_handler(log_file, file_level))

    root = logging.getLogger()
    root.handlers[:] = handlers
    # the root passes everything any handler wants; handlers filter further
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = next(
        ((f, d) for threshold, f, d in _CONSOLE_FORMATS if level <= threshold),
        _CONSOLE_DEFAULT,
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
    return handler


def _parse_level(level: str | None) -> int:
    """Level name to numeric constant; unknown names mean WARNING."""
    numeric = logging.getLevelName(level.upper()) if level else None
    return numeric if isinstance(numeric, int) else logging.WARNING
