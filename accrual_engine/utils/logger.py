"""
Centralized logging configuration.

Everything under the ``accrual_engine`` logger hierarchy goes through
``StructuredLogger``: keyword context is attached to the record and the file
handler writes one JSON object per line. Two dedicated child loggers carry the
accrual audit trail (``accrual_engine.audit``) and timings
(``accrual_engine.performance``) so they can be routed or filtered separately.
"""
import logging
import logging.config
import json
import sys
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER = "accrual_engine"
AUDIT_LOGGER = f"{ROOT_LOGGER}.audit"
PERFORMANCE_LOGGER = f"{ROOT_LOGGER}.performance"

# Third-party loggers that share our handlers
_ROUTED_LOGGERS = {
    ROOT_LOGGER: None,
    "uvicorn": "INFO",
    "sqlalchemy.engine": "WARNING",
}


def _json_default(value: Any) -> str:
    # Money stays a fixed-point string in the log, never a float
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class JSONFormatter(logging.Formatter):
    """One JSON line per record; structured context merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            "thread": record.threadName,
        }
        context = getattr(record, "context", None)
        if context:
            entry.update(context)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=_json_default)


class StructuredLogger:
    """
    Wrapper around the standard logger taking keyword context.

    ``exc_info`` is forwarded to the underlying logger; every other kwarg
    with a non-None value lands in the record's ``context``. ``bind`` returns
    a logger that adds the given fields to every record, e.g. the operational
    date of an accrual pass or the id of an outbox event.
    """

    def __init__(self, name: str, bound: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._bound = dict(bound or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.logger.name, {**self._bound, **context})

    def _log(self, level: int, message: str, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)
        context = {**self._bound, **{k: v for k, v in kwargs.items() if v is not None}}
        self.logger.log(level, message, exc_info=exc_info, extra={"context": context})

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the console and rotating JSON file handlers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for JSON log output
        enable_console: Whether to log to stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    names = list(handlers)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level or log_level, "handlers": list(names), "propagate": False}
            for name, level in _ROUTED_LOGGERS.items()
        },
        "root": {"level": log_level, "handlers": list(names)},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the ``accrual_engine`` hierarchy (typically ``get_logger(__name__)``)."""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    user_id: Optional[int] = None,
    request_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> None:
    """
    Append an entry to the accrual audit trail.

    Args:
        event_type: e.g. 'purchase_confirmed', 'accrual_run_finished'
        details: Event-specific details
        user_id: Credited / acting user if applicable
        request_id: Admin request that caused it, if any
        transaction_id: Coordinator transaction that produced it, if any
    """
    StructuredLogger(AUDIT_LOGGER).info(
        f"Business event: {event_type}",
        event_type=event_type,
        user_id=user_id,
        request_id=request_id,
        transaction_id=transaction_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Record how long a batch, run or request took."""
    StructuredLogger(PERFORMANCE_LOGGER).info(
        f"Performance: {operation}",
        operation=operation,
        duration_ms=duration_ms,
        **(additional_data or {})
    )
