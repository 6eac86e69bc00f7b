import logging
import sys

import structlog

from passkey_server.core.config import settings


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.LOG_JSON
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def short_id(value: bytes | str, length: int = 12) -> str:
    """Truncated identifier for log lines; full credential ids are never logged."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).hex()
    return value[:length] + "..." if len(value) > length else value
