"""Structured logging for field-tracker.

All modules obtain their logger through get_logger(__name__) and log with
keyword context, e.g. ``logger.info("Drained pending changes", count=3)``.
configure_logging() is called once by the host application; until then
structlog's defaults apply.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Install the structlog processor chain on top of stdlib logging.

    Args:
        level: Root log level name (DEBUG, INFO, WARNING, ...).
        json_logs: Render events as JSON lines instead of the console renderer.
    """
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module.

    Args:
        name: Usually ``__name__``.

    Returns:
        A bound logger accepting keyword event context.
    """
    return structlog.get_logger(name)
