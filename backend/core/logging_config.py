"""Structured logging configuration using structlog.

Human-readable console output in development, JSON lines otherwise.
Engine and worker code binds the execution being processed into
structlog's context variables, so every log line emitted while a
worker holds an execution carries its ``execution_id``.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from app.config import get_settings

# Third-party loggers and the level they are capped at
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "celery": logging.INFO,
}

_SHARED_PROCESSORS: list = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _renderer():
    settings = get_settings()
    if settings.is_development or settings.LOG_FORMAT == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure structlog and route stdlib logging through the same renderer.

    Modules using ``logging.getLogger`` (HTTP layer, engine) and
    ``structlog.get_logger`` (ledger, rules, event bus) end up in one stream.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(),
        ],
        foreign_pre_chain=_SHARED_PROCESSORS,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    for name, cap in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(cap)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )


@contextmanager
def execution_log_context(execution_id: str, **extra) -> Iterator[None]:
    """Bind an execution id (and extras) to every log line inside the block."""
    tokens = structlog.contextvars.bind_contextvars(execution_id=execution_id, **extra)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
