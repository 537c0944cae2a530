"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

_VALID_MODES = ("production", "development")


def setup_logging(level: str = "INFO", mode: str = "production") -> None:
    """Configure structlog on top of stdlib logging.

    All records are written to stderr so the MCP stdio transport keeps stdout
    for protocol frames.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        mode: ``development`` for colored console output, ``production`` for JSON lines.

    Raises:
        ValueError: If mode is not one of the supported modes.
    """
    if mode not in _VALID_MODES:
        raise ValueError(f"invalid logging mode: {mode}, must be 'production' or 'development'")

    log_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.stdlib.add_logger_name,
    ]

    if mode == "development":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for the given module name.

    Args:
        name: Logger name, typically __name__.

    Returns:
        Bound structlog logger instance.
    """
    return structlog.get_logger(name)
