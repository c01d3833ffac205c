"""
Structured logging for the accounts cache, using structlog.

Every event carries the service name so logs from this service can be told
apart from the upstreams it calls (whose name travels as ``service=``).
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

# Per-request chatter from the HTTP client; retries and failures are logged by us
NOISY_LOGGERS = ("httpx", "httpcore")


def add_app_name(app_name: str) -> Processor:
    """Processor stamping ``app`` on every event."""

    def processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app", app_name)
        return event_dict

    return processor


def setup_logging(log_level: str = "INFO", app_name: Optional[str] = None) -> None:
    """Configure structured logging for the application."""
    if app_name is None:
        from accounts.config import settings
        app_name = settings.service_name

    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_name(app_name),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    # TTY: colored console, otherwise one JSON object per line
    if sys.stderr.isatty():
        renderers: list[Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger, bound to the calling module when ``name`` is given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Context manager binding request context (tenant, user) to every event in scope."""
    return structlog.contextvars.bound_contextvars(**kwargs)
