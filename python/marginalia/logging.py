"""Structured logging configuration using structlog.

Every entry is a snake_case or dotted event name plus keyword fields, rendered
as JSON outside local development. Fields bound to the current context are
added automatically:

- request_id, user_id, path, method: set by the request-id middleware
- resource_id: the document whose annotations are being touched
- run_id: processing log id of the active suggestion run

Document text never goes into a log entry; see services.redact.safe_kv.

Usage:
    from marginalia.logging import get_logger

    logger = get_logger(__name__)
    logger.info("suggestion_run.finished", created=3, failed=1)
"""

import logging
import sys
from contextvars import ContextVar

import structlog

CONTEXT_FIELDS = ("request_id", "user_id", "path", "method", "resource_id", "run_id")

_context: dict[str, ContextVar[str | None]] = {
    field: ContextVar(field, default=None) for field in CONTEXT_FIELDS
}

# Loggers that drown out the engine's own events at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


def add_request_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor adding bound context fields the call didn't set."""
    for field, var in _context.items():
        value = var.get()
        if value and field not in event_dict:
            event_dict[field] = value
    return event_dict


def configure_logging(json_format: bool = True) -> None:
    """Route structlog and stdlib logging through one formatter on stdout.

    Args:
        json_format: JSON lines if True, the colored console renderer if False.
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    renderer = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_context(
    request_id: str | None,
    user_id: str | None = None,
    path: str | None = None,
    method: str | None = None,
) -> None:
    """Bind request fields; the optional ones are left alone when None."""
    _context["request_id"].set(request_id)
    for field, value in (("user_id", user_id), ("path", path), ("method", method)):
        if value is not None:
            _context[field].set(value)


def set_resource_context(resource_id: str | None) -> None:
    """Bind the document being worked on to subsequent log entries."""
    _context["resource_id"].set(resource_id)


def set_run_id(run_id: str | None) -> None:
    """Bind the active suggestion run (its processing log id) to subsequent log entries."""
    _context["run_id"].set(run_id)


def clear_request_context() -> None:
    """Unbind every context field at the end of a request."""
    for var in _context.values():
        var.set(None)


def get_request_id() -> str | None:
    return _context["request_id"].get()
