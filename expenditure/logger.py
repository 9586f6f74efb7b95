"""
Structured JSON Logging.

Every record is written as one JSON object per line to the console and,
unless disabled, to a size-rotated file.  ``StructuredLogger.bind()``
returns a child that stamps fixed context (collection name, subscription
id) onto each record, so call sites only pass what varies.
"""

import copy
import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, TextIO

from expenditure.config import get_config

# Attributes every LogRecord carries; anything else came in via ``extra``.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__
) | {"message", "asctime", "taskName"}


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON object.

    Keys: ``timestamp`` (ISO-8601, UTC), ``level``, ``logger_name`` and
    ``message``, plus ``extra`` for caller-supplied fields and
    ``exception`` when a traceback is attached.  Scalar extras keep their
    JSON type; anything else is stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _console_handler(
    stream: TextIO, level: int, formatter: logging.Formatter,
) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _rotating_file_handler(
    path: str,
    level: int,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> logging.Handler:
    """Raises ``OSError`` when the file cannot be opened."""
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(log_path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


class StructuredLogger:
    """Injectable JSON logger.

    Handlers are attached once per logger *name*; building another
    ``StructuredLogger`` with the same name reuses them.  Level, log file
    and rotation default to ``LOG_LEVEL``, ``LOG_FILE``, ``LOG_MAX_BYTES``
    and ``LOG_BACKUP_COUNT`` from ``AppConfig``.  Pass ``log_file=""`` to
    log to the stream only.

    Usage::

        log = StructuredLogger(name="expenditure.realtime")
        feed_log = log.bind(collection="expenses")
        feed_log.info("Feed started")   # extra: {"collection": "expenses"}
    """

    def __init__(
        self,
        name: str = "expenditure",
        level: Optional[int] = None,
        stream: Optional[TextIO] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        cfg = get_config()

        resolved_level = level if level is not None else _resolve_level(cfg.LOG_LEVEL)
        self._context: dict[str, Any] = {}
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(resolved_level)
        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        self._logger.addHandler(
            _console_handler(stream or sys.stdout, resolved_level, formatter)
        )

        path = cfg.LOG_FILE if log_file is None else log_file
        if not path:
            return
        try:
            file_handler = _rotating_file_handler(
                path,
                resolved_level,
                formatter,
                max_bytes if max_bytes is not None else cfg.LOG_MAX_BYTES,
                backup_count if backup_count is not None else cfg.LOG_BACKUP_COUNT,
            )
        except OSError as exc:
            self._logger.warning(
                "Could not open log file '%s': %s. Logging to the console only.",
                path,
                exc,
            )
        else:
            self._logger.addHandler(file_handler)

    @property
    def logger(self) -> logging.Logger:
        """The underlying ``logging.Logger``."""
        return self._logger

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a logger on the same handlers that adds *context* to every record.

        Per-call ``extra`` values win over bound ones.
        """
        child = copy.copy(self)
        child._context = {**self._context, **context}
        return child

    # -- Delegates --------------------------------------------------------

    def _log(self, level: int, msg: str, args: tuple[object, ...], kwargs: dict[str, Any]) -> None:
        if self._context:
            kwargs["extra"] = {**self._context, **(kwargs.get("extra") or {})}
        # Skip _log and the level method so funcName/lineno name the caller.
        kwargs.setdefault("stacklevel", 3)
        self._logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, args, kwargs)

    def critical(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._log(logging.CRITICAL, msg, args, kwargs)


def get_logger(name: str = "expenditure") -> StructuredLogger:
    """Shorthand for ``StructuredLogger(name=name)`` with config defaults."""
    return StructuredLogger(name=name)
