"""Logging for board-sync.

Every component logs under the ``boardsync`` namespace. Structured fields go
in ``extra={"metadata": {...}}``; warnings and errors carry a stable
``reason`` code there, and board writes name the ``item`` they touched. The
console shows both next to the message; the optional JSON file sink lifts
them to top-level keys so they can be filtered without parsing messages.
"""

from __future__ import annotations

import functools
import json
import logging
import os
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Union

ROOT_LOGGER = "boardsync"
LOG_FILE_NAME = "boardsync.log"
LEVEL_ENV = "BOARDSYNC_LOG_LEVEL"
DIR_ENV = "BOARDSYNC_LOG_DIR"

# Fields promoted out of ``metadata`` in JSON lines.
PROMOTED_FIELDS = ("board", "item", "reason")

_ROTATE_BYTES = 10 * 1024 * 1024
_ROTATE_KEEP = 5
_SEVERITY_COLOURS = {
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}

_lock = threading.RLock()
_console: Optional[logging.Handler] = None
_file_sink: Optional[RotatingFileHandler] = None


def _metadata(record: logging.LogRecord) -> dict[str, Any]:
    metadata = getattr(record, "metadata", None)
    return dict(metadata) if isinstance(metadata, Mapping) else {}


class BoardSyncJsonFormatter(logging.Formatter):
    """One JSON object per line for the rotating file sink."""

    def format(self, record: logging.LogRecord) -> str:
        metadata = _metadata(record)
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        for key in PROMOTED_FIELDS:
            if key in metadata:
                payload[key] = metadata.pop(key)
        if metadata:
            payload["metadata"] = metadata
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class BoardSyncConsoleFormatter(logging.Formatter):
    """Plain text with the reason code appended; warnings and errors coloured on a TTY."""

    def format(self, record: logging.LogRecord) -> str:
        record.component = record.name
        line = super().format(record)
        reason = _metadata(record).get("reason")
        if reason:
            line = f"{line} [{reason}]"
        colour = _SEVERITY_COLOURS.get(record.levelno)
        if colour and sys.stderr.isatty():
            line = f"{colour}{line}\033[0m"
        return line


def _level(value: Union[str, int, None]) -> int:
    if isinstance(value, int):
        return value
    text = (value or "").strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper()) if text else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def _sink_path(log_file: Union[Path, str, None]) -> Optional[Path]:
    if log_file:
        return Path(log_file)
    directory = os.getenv(DIR_ENV)
    return Path(directory) / LOG_FILE_NAME if directory else None


def _file_handler(path: Path, enable_json: bool) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=_ROTATE_BYTES, backupCount=_ROTATE_KEEP, encoding="utf-8"
    )
    if enable_json:
        handler.setFormatter(BoardSyncJsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s", "%Y-%m-%d %H:%M:%S")
        )
    return handler


def configure_logging(
    level: Union[str, int, None] = None,
    *,
    log_file: Union[Path, str, None] = None,
    enable_json: bool = True,
) -> None:
    """Set the level and install handlers on the ``boardsync`` logger.

    The level comes from ``level``, then ``BOARDSYNC_LOG_LEVEL``, then INFO;
    later calls without ``level`` keep whatever was set before. A file sink
    is attached when ``log_file`` or ``BOARDSYNC_LOG_DIR`` names one; calling
    again with the same file keeps the existing handler.
    """

    global _console, _file_sink

    root = logging.getLogger(ROOT_LOGGER)
    with _lock:
        if level is not None:
            root.setLevel(_level(level))
        elif _console is None:
            root.setLevel(_level(os.getenv(LEVEL_ENV)))
        if _console is None:
            root.handlers.clear()
            root.propagate = False
            _console = logging.StreamHandler()
            _console.setFormatter(
                BoardSyncConsoleFormatter("%(asctime)s %(levelname)s %(component)s %(message)s", "%H:%M:%S")
            )
            root.addHandler(_console)

        path = _sink_path(log_file)
        if path is None:
            return
        if _file_sink is not None:
            if _file_sink.baseFilename == str(path.resolve()):
                return
            root.removeHandler(_file_sink)
            _file_sink.close()
        _file_sink = _file_handler(path, enable_json)
        root.addHandler(_file_sink)


class BoardSyncLoggerAdapter(logging.LoggerAdapter):
    """Adds bound metadata, such as the board id, to every record.

    Metadata passed on a single call wins over the bound values.
    """

    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        extra = dict(kwargs.get("extra") or {})
        extra["metadata"] = {**self.extra, **(extra.get("metadata") or {})}
        return msg, {**kwargs, "extra": extra}

    def bind(self, **metadata: Any) -> "BoardSyncLoggerAdapter":
        return BoardSyncLoggerAdapter(self.logger, {**self.extra, **metadata})


def get_logger(
    name: str, *, metadata: Optional[Mapping[str, Any]] = None
) -> Union[logging.Logger, BoardSyncLoggerAdapter]:
    """Return ``boardsync.<name>``; with ``metadata``, an adapter that binds it."""

    configure_logging()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    logger = logging.getLogger(name)
    if metadata:
        return BoardSyncLoggerAdapter(logger, dict(metadata))
    return logger


@contextmanager
def log_exceptions(logger: Any, *, message: str = "Unhandled error") -> Iterator[None]:
    """Log an escaping ``Exception`` with its traceback, then let it propagate.

    ``SystemExit`` and ``KeyboardInterrupt`` pass through unlogged.
    """

    try:
        yield
    except Exception:
        logger.error(message, exc_info=True)
        raise


def log_action(
    action: str,
    *,
    start_level: int = logging.DEBUG,
    success_level: int = logging.INFO,
    failure_level: int = logging.ERROR,
    logger_factory: Optional[Callable[[], Any]] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Log when a pass stage starts, how long it took, and whether it failed."""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        stage_logger = logger_factory() if logger_factory else get_logger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            stage_logger.log(start_level, "%s started", action, extra={"metadata": {"stage": action}})
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                stage_logger.log(
                    failure_level,
                    "%s failed",
                    action,
                    exc_info=True,
                    extra={"metadata": {"stage": action}},
                )
                raise
            elapsed = time.perf_counter() - started
            stage_logger.log(
                success_level,
                "%s finished in %.2fs",
                action,
                elapsed,
                extra={"metadata": {"stage": action, "duration": elapsed}},
            )
            return result

        return wrapper

    return decorator


__all__ = [
    "BoardSyncConsoleFormatter",
    "BoardSyncJsonFormatter",
    "BoardSyncLoggerAdapter",
    "configure_logging",
    "get_logger",
    "log_action",
    "log_exceptions",
]
