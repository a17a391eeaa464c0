"""
Structured JSON Logging.

One JSON object per line, written to stdout (or an injected stream) and to
a size-rotated log file.  Structured context goes in the ``extra`` kwarg;
keys that could carry credentials are masked before anything is written,
so a password digest or reset token passed by mistake never reaches disk.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO, Union

from account_directory.config import get_config

REDACTED: str = "[REDACTED]"

# Substrings of ``extra`` keys whose values are masked.
_SENSITIVE_KEY_PARTS: tuple[str, ...] = ("password", "token", "secret", "salt", "digest")

_LOG_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def is_sensitive_key(key: str) -> bool:
    """True when *key* names a value that must not be logged."""
    lowered = key.lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


class JSONFormatter(logging.Formatter):
    """Render a ``LogRecord`` as a single-line JSON object.

    Keys: ``timestamp`` (UTC ISO-8601), ``level``, ``logger_name``,
    ``message``, plus ``extra`` and ``exception`` when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        context = self._context(record)
        if context:
            entry["extra"] = context

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)

    @staticmethod
    def _context(record: logging.LogRecord) -> dict[str, str]:
        return {
            key: REDACTED if is_sensitive_key(key) else str(value)
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_ATTRS
        }


def _stream_handler(stream: Optional[TextIO], level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


def _file_handler(
    log_file: str, level: int, max_bytes: int, backup_count: int,
) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


class StructuredLogger:
    """Injectable JSON logger.

    Services and repositories take one of these in ``__init__`` instead of
    calling ``logging.getLogger`` themselves.  Unset file options fall back
    to ``LOG_FILE``, ``LOG_MAX_BYTES`` and ``LOG_BACKUP_COUNT`` from the
    application config.  Handlers are attached once per logger *name*.

    Usage::

        log = StructuredLogger(name="account_directory.accounts")
        log.info("Account %s created", 42, extra={"user_id": 42})
    """

    def __init__(
        self,
        name: str = "account_directory",
        level: int = logging.INFO,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(level)
        if self._logger.handlers:
            return

        cfg = get_config()

        self._logger.addHandler(_stream_handler(stream, level))

        target = log_file or cfg.LOG_FILE
        try:
            self._logger.addHandler(_file_handler(
                target,
                level,
                cfg.LOG_MAX_BYTES if max_bytes is None else max_bytes,
                cfg.LOG_BACKUP_COUNT if backup_count is None else backup_count,
            ))
        except OSError as exc:
            self._logger.warning(
                "Log file %s unavailable (%s); logging to console only.", target, exc,
            )

    @property
    def logger(self) -> logging.Logger:
        """The wrapped ``logging.Logger``."""
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "account_directory") -> StructuredLogger:
    """Return a :class:`StructuredLogger` for *name* with config defaults."""
    return StructuredLogger(name=name)
