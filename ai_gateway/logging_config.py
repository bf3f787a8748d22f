"""
Structured logging setup.

Events are key-value pairs rendered for the console or as JSON lines.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Configure structlog on top of the standard library logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        fmt: "console" for human-readable output, "json" for JSON lines
    """
    log_level = getattr(logging, (level or "INFO").upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")
    if fmt not in ("console", "json"):
        raise ValueError(f"LOG_FORMAT must be 'console' or 'json', got {fmt!r}")

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level, force=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if fmt == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
