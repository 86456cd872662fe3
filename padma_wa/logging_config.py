"""Logging setup for the gateway process.

Console: human-readable, session-tagged, level colors on a TTY.
File: ``<logs_dir>/padma.log`` in ``key=value`` form with the full session id
on every line, written by a queue listener thread so the event loop never
blocks on disk I/O.
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path

from padma_wa.log_context import ContextFilter

LOG_FILE_NAME = "padma.log"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

CONSOLE_FMT = "%(asctime)s %(levelname)s %(ctx)s%(message)s  (%(name)s)"
FILE_FMT = (
    "ts=%(asctime)s level=%(levelname)s op=%(op)s session=%(session)s "
    "logger=%(name)s msg=%(message)s"
)

# Third-party loggers that flood the console at INFO: one line per HTTP
# request, per Redis reconnect, per PNG chunk.
_QUIET_LOGGERS = {
    "aiohttp.access": logging.WARNING,
    "aiohttp.server": logging.WARNING,
    "redis": logging.WARNING,
    "PIL": logging.WARNING,
}

_LEVEL_COLORS = {
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[1;31m",
}

logger = logging.getLogger(__name__)

_listener: QueueListener | None = None


class _ConsoleFormatter(logging.Formatter):
    """Colors the whole line for WARNING and above when writing to a terminal."""

    def __init__(self, *, color: bool) -> None:
        super().__init__(CONSOLE_FMT, datefmt="%H:%M:%S")
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        prefix = _LEVEL_COLORS.get(record.levelno) if self._color else None
        return f"{prefix}{line}\x1b[0m" if prefix else line


def stop_file_logging() -> None:
    """Flush and stop the file writer thread. Safe to call twice."""
    global _listener  # noqa: PLW0603
    if _listener is not None:
        _listener.stop()
        _listener = None


atexit.register(stop_file_logging)


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    level: int | str = logging.INFO,
    verbose: bool = False,
    log_dir: Path | None = None,
) -> None:
    """(Re)configure the root logger. ``verbose`` forces DEBUG on the console."""
    console_level = logging.DEBUG if verbose else _resolve_level(level)
    stop_file_logging()

    root = logging.getLogger()
    root.handlers.clear()
    context = ContextFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.addFilter(context)
    console.setFormatter(_ConsoleFormatter(color=sys.stderr.isatty()))
    root.addHandler(console)
    root.setLevel(console_level)

    if log_dir is not None:
        _attach_file_log(root, log_dir, context)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logger.info("Logging initialized (console=%s)", logging.getLevelName(console_level))


def _attach_file_log(root: logging.Logger, log_dir: Path, context: ContextFilter) -> None:
    """The file always records DEBUG so reconnect history survives a quiet console."""
    global _listener  # noqa: PLW0603
    log_dir.mkdir(parents=True, exist_ok=True)
    writer = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    writer.setFormatter(logging.Formatter(FILE_FMT, datefmt="%Y-%m-%dT%H:%M:%S"))

    records: queue.Queue[logging.LogRecord] = queue.Queue()
    feeder = QueueHandler(records)
    feeder.addFilter(context)
    root.addHandler(feeder)
    root.setLevel(logging.DEBUG)

    _listener = QueueListener(records, writer)
    _listener.start()
