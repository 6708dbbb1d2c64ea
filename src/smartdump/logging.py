"""
Structured logging for smartdump.

SQL statements go to stdout (or the output file), so every log record goes to
stderr. Records carry a `context` dict of keyword fields (table names, row
counts, timings) which is rendered either as `key=value` pairs or as JSON.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from typing import Any

ROOT_LOGGER_NAME = "smartdump"

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

QUERY_PREVIEW_LENGTH = 200


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "context", None) or {}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter, one object per line.

    Fields: timestamp, level, logger, message, and when present context and
    exception.
    """

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = _record_context(record)
        if context:
            data["context"] = context
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Formats records as `[TIMESTAMP] LEVEL: message (key=value, ...)`."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"[{self.formatTime(record, self.datefmt)}] {record.levelname}: {record.getMessage()}"
        context = _record_context(record)
        if context:
            line += " (" + ", ".join(f"{key}={value}" for key, value in context.items()) + ")"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    verbose: bool = False,
    no_progress: bool = False,
    structured: bool = False,
) -> None:
    """
    Send `smartdump` log records to stderr, replacing any earlier handler.

    Args:
        verbose: Log at DEBUG level
        no_progress: Only log warnings and errors (ignored when verbose)
        structured: Use JSON lines instead of the human-readable format
    """
    if verbose:
        level = logging.DEBUG
    elif no_progress:
        level = logging.WARNING
    else:
        level = logging.INFO

    formatter_class = StructuredFormatter if structured else HumanReadableFormatter
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter_class(datefmt=DATE_FORMAT))

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)  # the handler filters
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False


def get_logger(name: str) -> "ContextLogger":
    """
    Get a ContextLogger under the `smartdump` namespace.

    Args:
        name: Usually the calling module's __name__
    """
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return ContextLogger(logging.getLogger(name))


class ContextLogger:
    """
    Logger wrapper that takes structured context as keyword arguments.

    Example:
        logger.info("Table dumped", table="public.orders", row_count=12)
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = context or {}

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, context: dict[str, Any], exc_info: Any = None) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._context, **context}
        extra = {"context": merged} if merged else None
        self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **context):
        self._log(logging.DEBUG, msg, context)

    def info(self, msg: str, **context):
        self._log(logging.INFO, msg, context)

    def warning(self, msg: str, **context):
        self._log(logging.WARNING, msg, context)

    def error(self, msg: str, exc_info: Any = None, **context):
        self._log(logging.ERROR, msg, context, exc_info=exc_info)

    def critical(self, msg: str, exc_info: Any = None, **context):
        self._log(logging.CRITICAL, msg, context, exc_info=exc_info)

    def with_context(self, **context) -> "ContextLogger":
        """
        Get a logger that adds `context` to every record.

        Example:
            table_logger = logger.with_context(table="public.orders")
            table_logger.debug("Reading rows")
        """
        return ContextLogger(self._logger, {**self._context, **context})

    @contextmanager
    def timed_operation(self, operation: str, **context):
        """Log the duration of the wrapped block; failures are logged and re-raised."""
        start = time.perf_counter()
        self.debug(f"Starting {operation}", **context)
        try:
            yield
        except Exception as e:
            self.error(
                f"Failed {operation}",
                exc_info=True,
                duration_ms=_elapsed_ms(start),
                error=str(e),
                **context,
            )
            raise
        self.info(f"Completed {operation}", duration_ms=_elapsed_ms(start), **context)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def log_dump_start(logger: ContextLogger, database_url: str, tables: list):
    """Log the start of a dump; the URL is logged with its password masked."""
    from smartdump.utils.connection import parse_database_url

    config = parse_database_url(database_url)
    logger.info(
        "Starting dump",
        database=config.database,
        db_type=config.db_type.value,
        table_count=len(tables),
        url=config.masked_url,
    )


def log_dump_complete(logger: ContextLogger, total_rows: int, table_count: int, duration_ms: int):
    logger.info(
        "Dump complete",
        total_rows=total_rows,
        table_count=table_count,
        duration_ms=duration_ms,
    )


def log_query_execution(
    logger: ContextLogger, query: str, params: tuple | list, row_count: int | None = None
):
    """Log a query at DEBUG level, truncated, with its parameter count but not its values."""
    if len(query) > QUERY_PREVIEW_LENGTH:
        query = query[:QUERY_PREVIEW_LENGTH] + "..."
    context: dict[str, Any] = {"query_preview": query, "param_count": len(params or ())}
    if row_count is not None:
        context["row_count"] = row_count
    logger.debug("Executing query", **context)
