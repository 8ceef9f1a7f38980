"""Structured logging with correlation IDs.

Every record carries the correlation ID of the request that produced it, so a
single transform can be followed from cache lookup to persisted object.
Pipeline context (tenant, storage key, provider, stage) passed as ``extra`` is
lifted to the top level of the JSON document.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from mediacache.core.tracing import current_span_ids

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

PIPELINE_FIELDS = ("tenant", "storage_key", "provider", "stage", "source")

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation_id"}

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "botocore", "boto3", "PIL")


def get_correlation_id() -> str:
    """Correlation ID of the current context.

    Falls back to the active trace id, then to a fresh UUID which is kept for
    the rest of the context.
    """
    cid = correlation_id_var.get()
    if cid:
        return cid
    trace_id, _ = current_span_ids()
    if trace_id:
        return trace_id
    cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Renders records as one JSON document per line."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        trace_id, span_id = current_span_ids()
        document: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        if trace_id:
            document["trace_id"] = trace_id
            document["span_id"] = span_id

        extra = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        }
        for name in PIPELINE_FIELDS:
            if name in extra:
                document[name] = extra.pop(name)
        if extra:
            document["extra"] = extra

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            document["error"] = {
                "type": type(error).__name__,
                "code": getattr(error, "code", None),
                "message": str(error),
            }
            if self.include_stack_trace:
                document["error"]["stack_trace"] = traceback.format_exception(*record.exc_info)

        return json.dumps(document, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamps the correlation ID on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Configure the root logger with a single stdout handler.

    Args:
        level: Log level name
        json_format: Emit JSON documents instead of plain text lines
        include_stack_trace: Include stack traces for logged exceptions
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
        ))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _log(
    logger: logging.Logger,
    level: int,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    extra["correlation_id"] = get_correlation_id()
    logger.log(level, message, exc_info=exception, extra=extra)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log a server-side failure with its stack trace.

    Args:
        logger: Logger instance
        message: Error message
        exception: Exception whose traceback is attached
        **extra: Pipeline context fields
    """
    _log(logger, logging.ERROR, message, exception, **extra)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.WARNING, message, **extra)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.INFO, message, **extra)
