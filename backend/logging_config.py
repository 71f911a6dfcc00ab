import logging

import structlog

from config import settings


def configure_logging(level: str | None = None) -> None:
    """Configure structlog for JSON output on stdout."""
    level_name = (level or settings.LOG_LEVEL).upper()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
