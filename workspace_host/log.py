"""Logging setup: structlog on top of the standard library root logger."""

import logging
import sys
from typing import Any

import structlog

from workspace_host.env import LOG_JSON, LOG_LEVEL


def configure_logging(
    level: str = LOG_LEVEL,
    json_format: bool = LOG_JSON,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog and the root logger. Safe to call more than once.

    Args:
        level: Minimum level name (``"DEBUG"``, ``"INFO"``, ...).
        json_format: Emit one JSON object per line instead of the
            colored console renderer.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    # Remove existing handlers to avoid duplicates on reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    # Every proxied asset would otherwise produce an access line
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger: structlog.stdlib.BoundLogger = structlog.get_logger("workspace_host")
    logger.debug("Logging configured", level=level, json=json_format)
    return logger
