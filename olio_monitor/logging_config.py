"""
Structured logging setup.

Call configure_logging() once at startup. Services then log domain events:

    log = structlog.get_logger(__name__)
    log.info("report_transitioned", report_id=1, to_status="CLOSED")
"""
import logging
import os
from typing import List, Optional

import structlog
from structlog.typing import Processor

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "json"


def _log_level(name: Optional[str] = None) -> int:
    name = (name or os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL)).upper()
    return getattr(logging, name, logging.INFO)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    LOG_FORMAT=json (default) for log aggregation, LOG_FORMAT=console for
    local development.
    """
    fmt = (fmt or os.getenv("LOG_FORMAT", DEFAULT_LOG_FORMAT)).lower()

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_log_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
