import logging
import sys
from typing import Any

import structlog

from .settings import settings

# Processors shared by structlog loggers and stdlib records routed through structlog
_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _renderer() -> Any:
    # JSON for log aggregation in deployed environments, readable output locally
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging() -> None:
    """
    Configure structlog and route stdlib logging through it.

    The job store, worker and handlers log with `logging.getLogger(__name__)`
    and pass job fields (`job_id`, `worker_id`, `correlation_id`) via
    `extra=`; `ExtraAdder` lifts those into the structured event so every
    line of a worker invocation can be filtered by job or invocation.
    """
    level = getattr(logging, settings.log_level)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*_SHARED_PROCESSORS, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(),
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    # SQL echo stays off unless explicitly asked for with LOG_LEVEL=DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if level <= logging.DEBUG else logging.WARNING
    )

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Start a fresh log context for an HTTP request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def bind_log_context(**context: Any) -> None:
    """Add fields to every log line for the rest of the current task."""
    structlog.contextvars.bind_contextvars(**context)
