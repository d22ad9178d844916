"""Logging configuration for the automation engine.

Records pass through ``ExecutionContextFilter`` so that every line written
while an execution runs carries its ``execution_id`` and ``workflow_id``.
With ``structured=True`` each record is one JSON object per line.
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "urllib3": logging.WARNING,
}

ENGINE_LOGGERS = ("automation_engine.core", "automation_engine.nodes")


class StructuredFormatter(logging.Formatter):
    """Render a record and its context fields as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class ExecutionContextFilter(logging.Filter):
    """Stamp execution, workflow and request ids onto log records.

    The context is thread-local: the scheduler runner thread and request
    handler threads each carry their own ids.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def _fields(self) -> Dict[str, Any]:
        fields = getattr(self._local, "fields", None)
        if fields is None:
            fields = self._local.fields = {}
        return fields

    def set_context(self, **kwargs):
        self._fields().update((k, v) for k, v in kwargs.items() if v is not None)

    def clear_context(self, *keys: str):
        fields = self._fields()
        for key in keys or list(fields):
            fields.pop(key, None)

    def get_context(self) -> Dict[str, Any]:
        return dict(self._fields())

    def filter(self, record: logging.LogRecord) -> bool:
        extra = getattr(record, "extra_fields", None)
        if extra is None:
            extra = record.extra_fields = {}
        for key, value in self._fields().items():
            extra.setdefault(key, value)
        return True


_context_filter = ExecutionContextFilter()


def _make_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Install console (and optionally rotating file) handlers on the root logger.

    Args:
        level: Root level name, e.g. ``"INFO"``
        log_file: Path of a rotating log file; its directory is created
        log_format: Format string for plain text output
        structured: Emit JSON lines instead of plain text
        max_size: Bytes before the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    formatter = StructuredFormatter() if structured else logging.Formatter(
        fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"
    )

    root = logging.getLogger()
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        root.removeHandler(existing)

    root.addHandler(_make_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_make_handler(
            RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count),
            formatter,
        ))

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    # Per-node detail is only wanted at DEBUG; otherwise follow the root level.
    engine_level = logging.DEBUG if level.upper() == "DEBUG" else logging.NOTSET
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(engine_level)

    return root


def setup_logging_from_config(config) -> logging.Logger:
    """``setup_logging`` driven by an ``AppConfig``."""
    return setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.structured_logging,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set context fields for subsequent log messages on this thread."""
    _context_filter.set_context(**kwargs)


def clear_logging_context(*keys: str):
    """Clear the named context fields, or all of them when none are named."""
    _context_filter.clear_context(*keys)


def get_logging_context() -> Dict[str, Any]:
    return _context_filter.get_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log ``message`` with ``context`` attached as structured fields."""
    logger.log(level, message, extra={"extra_fields": context})


class ErrorRecoveryLogger:
    """Reports retry progress for one retried operation."""

    def __init__(self, component_name: str):
        self.component_name = component_name
        self.logger = get_logger(f"automation_engine.recovery.{component_name}")

    def _log(self, level: int, message: str, operation: str, **fields):
        log_with_context(self.logger, level, message,
                         component=self.component_name, operation=operation, **fields)

    def log_recovery_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int):
        self._log(logging.WARNING, f"Retrying {operation} ({attempt}/{max_attempts}): {error}",
                  operation, error_type=type(error).__name__, attempt=attempt)

    def log_recovery_success(self, operation: str, attempts_used: int):
        self._log(logging.INFO, f"{operation} succeeded on attempt {attempts_used}",
                  operation, attempts_used=attempts_used)

    def log_recovery_failure(self, operation: str, final_error: Exception, attempts_used: int):
        self._log(logging.ERROR, f"Giving up on {operation} after {attempts_used} attempts: {final_error}",
                  operation, error_type=type(final_error).__name__, attempts_used=attempts_used)
