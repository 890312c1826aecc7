# /shopchat/utils/logging.py

import logging
import sys
import structlog
from typing import Optional

from shopchat.config.settings import settings

# Structured logging (JSON in production, console in development) shared by
# structlog loggers and plain stdlib loggers alike. Conversation identity is
# carried in contextvars so every line logged during a turn is tagged with it.


def setup_logging(level: Optional[str] = None):
    """
    Configures structlog on top of the standard logging module so that
    `logging.getLogger(__name__)` and `structlog.get_logger(__name__)`
    produce the same output format under Uvicorn/Gunicorn.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "development":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    ))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel((level or settings.log_level).upper())

    # Per-request access lines and per-call HTTP client lines drown out turn logs.
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def bind_conversation(conversation_id: str, channel: str):
    """Tags subsequent log lines in this task with the conversation."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(conversation_id=conversation_id, channel=channel)
