"""
Logging Configuration for the Checkout Inventory Core

Structured logging over stdlib handlers. Values bound through structlog
contextvars by the request middleware (request_id, user_id) land on every
line, including lines emitted by the storage and webhook layers.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter

from src.config.settings import get_settings

# Keys whose values must never reach a log sink
REDACTED_KEYS = frozenset({
    "stripe_signature",
    "razorpay_signature",
    "signature",
    "secret",
    "authorization",
    "password",
})

QUIET_LOGGERS = {
    "aiokafka": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "prefect": logging.INFO,
}


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in event_dict.keys() & REDACTED_KEYS:
        event_dict[key] = "***"
    return event_dict


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_format: Override renderer ("json" or "text")
    """
    settings = get_settings()
    level = (log_level or settings.monitoring.log_level).upper()
    fmt = log_format or settings.monitoring.log_format
    numeric_level = getattr(logging, level, logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    # Server loggers go through the same formatter so access lines carry request ids
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
        server_logger.setLevel(numeric_level)

    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(numeric_level, floor))

    structlog.get_logger(__name__).info(
        "logging_configured",
        level=level,
        format=fmt,
        environment=settings.app_env,
        storage_backend=settings.storage_backend,
    )
