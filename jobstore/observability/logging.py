"""
Structured logging setup using structlog.

Modules log through the standard library (``logging.getLogger(__name__)``
with ``extra={...}``); ``setup_logging`` routes those records through
structlog so they come out as JSON or console lines with the extras as
keys.
"""

import logging
import sys
from typing import Any, TextIO

import structlog
from opentelemetry import trace

from jobstore.config import get_settings

# Libraries that are too chatty at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncpg")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the current trace and span ids, if a span is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _pre_chain() -> list[Any]:
    # Applied to stdlib records before rendering
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.stdlib.ExtraAdder(),
    ]


def _renderer(log_format: str, stream: TextIO) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def setup_logging(
    level: str | None = None,
    log_format: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """
    Route stdlib logging through structlog for the whole process.

    Replaces the root logger's handlers with one that renders each record
    as a JSON object or a console line, with bound context, trace ids and
    ``extra`` fields as keys. Driver loggers are kept at WARNING.

    Args:
        level: Log level name. Defaults to the configured one.
        log_format: ``json`` or ``console``. Defaults to the configured one.
        stream: Output stream. Defaults to stdout.
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format
    stream = stream or sys.stdout

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format, stream),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """Bind key-value pairs to all subsequent log records of this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
