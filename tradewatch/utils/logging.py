"""Structured logging setup for Tradewatch.

Uses structlog for JSON-structured logging with order/position context
and timestamps in every log entry.
"""

import logging

import structlog

LOG_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog for the reconciliation engine.

    Args:
        json_output: If True (default), render logs as JSON.
                     If False, use console-friendly output for development.
        level: Minimum level name to emit (DEBUG, INFO, WARNING, ERROR,
               CRITICAL). Unknown names fall back to INFO.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            LOG_LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **context: str) -> structlog.BoundLogger:
    """Get a logger bound with a component name and extra context.

    Args:
        component: Name of the service requesting the logger.
        **context: Additional key/value pairs bound to every entry.

    Returns:
        A structlog BoundLogger with component and context bound.
    """
    logger = structlog.get_logger()
    logger = logger.bind(component=component)
    if context:
        logger = logger.bind(**context)
    return logger
