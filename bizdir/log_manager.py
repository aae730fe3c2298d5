"""
Logging for the business directory backend.

Console records go through Rich on stderr so CLI reports on stdout stay
clean. Files are rotating single-line JSON. While a background job runs,
warnings that library code logs on the job's thread are also copied into
the job's plain-text progress log, which is what ``/jobs/{id}/log`` streams.
"""

import json
import logging
import threading
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler

# Third-party loggers that flood the console at INFO/DEBUG.
NOISY_LOGGERS = (
    "urllib3", "botocore", "boto3", "s3transfer", "asyncio",
    "httpcore", "httpx", "uvicorn.access", "multipart",
)

LIBRARY_LOGGER = "bizdir"


class _JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def log_file_path(config: Dict[str, Any]) -> Path:
    """Where ``setup_logging_from_config`` writes the JSON log."""
    return Path(config.get("log_dir", "logs")) / config.get("log_file", "bizdir.log")


def setup_logging(
    level: str = "INFO",
    log_dir: str = "logs",
    log_file: str = "bizdir.log",
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
    console: Optional[Console] = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir: Directory for log files (created if missing).
        log_file: Log file name inside log_dir.
        max_bytes: Max size per log file before rotation.
        backup_count: Number of rotated log files to keep.
        console: Optional Rich Console instance (created if None).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Re-init (tests, uvicorn reload) must not stack handlers.
    root.handlers.clear()

    if console is None:
        console = Console(stderr=True)
    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(numeric_level)
    root.addHandler(rich_handler)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        str(log_path / log_file),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(_JsonFormatter())
    root.addHandler(file_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def setup_logging_from_config(config: Dict[str, Any],
                              console: Optional[Console] = None) -> None:
    """``setup_logging`` driven by the ``log_level``/``log_dir``/``log_file`` keys."""
    setup_logging(
        level=config.get("log_level", "INFO"),
        log_dir=config.get("log_dir", "logs"),
        log_file=config.get("log_file", "bizdir.log"),
        console=console,
    )


class TrackerLogHandler(logging.Handler):
    """
    Copies records into a ProgressTracker's text log.

    Only records emitted on ``thread_id`` are taken, so jobs running side by
    side on the pool keep separate logs.
    """

    def __init__(self, tracker, thread_id: int, level: int = logging.WARNING):
        super().__init__(level)
        self.tracker = tracker
        self.thread_id = thread_id
        self.setFormatter(logging.Formatter("%(levelname)s %(message)s"))

    def filter(self, record: logging.LogRecord) -> bool:
        return record.thread == self.thread_id and super().filter(record)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.tracker.log(self.format(record))
        except Exception:
            self.handleError(record)


@contextmanager
def capture_to_tracker(tracker, level: int = logging.WARNING,
                       logger_name: str = LIBRARY_LOGGER) -> Iterator[TrackerLogHandler]:
    """Mirror ``logger_name`` records from the current thread into ``tracker``."""
    handler = TrackerLogHandler(tracker, threading.get_ident(), level)
    logger = logging.getLogger(logger_name)
    logger.addHandler(handler)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)
