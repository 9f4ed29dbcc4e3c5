"""
Panelforge Logging Configuration

All loggers hang off the ``panelforge`` logger. Every record carries the
session it was emitted for (``-`` outside a session), so interleaved runs of
several API sessions can be told apart in one log stream.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union

from .constants import ERROR_LOG_LIMIT

ROOT_LOGGER_NAME = "panelforge"

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(session)s | %(name)s | %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(session)s | %(name)s:%(lineno)d | %(funcName)s | %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_current_session: ContextVar[str] = ContextVar("panelforge_session", default="-")
_configured = False


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


class SessionFilter(logging.Filter):
    """Stamp records with the session bound in the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session = _current_session.get()
        return True


def bind_session(session_id: str) -> None:
    """Attribute subsequent records in this context (and tasks it spawns) to a session."""
    _current_session.set(session_id)


@contextmanager
def session_scope(session_id: str) -> Iterator[None]:
    token = _current_session.set(session_id)
    try:
        yield
    finally:
        _current_session.reset(token)


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(SessionFilter())
    return handler


def setup_logging(
    level: Union[LogLevel, str] = LogLevel.INFO,
    log_file: Optional[Path] = None,
    verbose: bool = False,
    console_output: bool = True,
) -> None:
    """
    Configure the ``panelforge`` logger tree.

    Calling again replaces the previous handlers.

    Args:
        level: Minimum level, as a LogLevel or its name ("debug", "INFO", ...)
        log_file: Also write to this file
        verbose: Include line numbers and function names
        console_output: Write to stderr (stdout is left to CLI output)
    """
    global _configured

    if isinstance(level, str):
        level = LogLevel[level.upper()]

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level.value)
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()

    formatter = logging.Formatter(VERBOSE_FORMAT if verbose else DEFAULT_FORMAT, datefmt=DATE_FORMAT)
    if console_output:
        root.addHandler(_handler(logging.StreamHandler(sys.stderr), level.value, formatter))
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_handler(logging.FileHandler(log_file, encoding='utf-8'), level.value, formatter))

    _configured = True
    root.debug(f"Logging configured: level={level.name}, verbose={verbose}, file={log_file}")


def get_logger(name: str) -> logging.Logger:
    """Logger for a component, e.g. ``get_logger("storage.persistence")``."""
    if not _configured:
        setup_logging(LogLevel.WARNING)
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def truncate_error(error: BaseException, limit: int = ERROR_LOG_LIMIT) -> str:
    """Render an exception as a single log-safe line of at most ``limit`` characters."""
    text = f"{type(error).__name__}: {error}".replace("\n", " ")
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."


def create_session_log(base_dir: Path, prefix: str = "panelforge") -> Path:
    """Timestamped log file path under ``base_dir`` (the directory is created)."""
    base_dir = Path(base_dir)
    base_dir.mkdir(parents=True, exist_ok=True)
    return base_dir / f"{prefix}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
