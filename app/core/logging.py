"""Structured logging with structlog.

Every event emitted while serving a report carries the request id, the
forwarded caller and, once resolved, the tenant whose facts are read.
"""

import logging
from collections.abc import MutableMapping
from contextvars import ContextVar
from typing import Any

import structlog

from app.core.config import Settings, get_settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
tenant_ctx: ContextVar[str | None] = ContextVar("tenant", default=None)

_CONTEXT_FIELDS = (
    ("request_id", request_id_ctx),
    ("user_id", user_id_ctx),
    ("tenant", tenant_ctx),
)


def add_request_context(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Add request id, caller and tenant to log events.

    Values passed explicitly with the event are kept.
    """
    for key, var in _CONTEXT_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def _renderer(settings: Settings) -> list[structlog.types.Processor]:
    if settings.log_format == "json":
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=settings.is_development)]


def configure_logging() -> None:
    """Configure structlog once at startup."""
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            add_request_context,
            *_renderer(settings),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping()[settings.log_level]
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Get a logger bound to ``name``.

    Args:
        name: Logger name (typically __name__ of the calling module).

    Returns:
        Structlog logger; request context is added at render time.
    """
    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger
