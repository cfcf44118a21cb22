"""
Structured Logging Setup

The library only emits structlog events; applications call
configure_logging() once at startup to choose how they are rendered.

    configure_logging(level="DEBUG")                  # console, colored if tty
    configure_logging(level="INFO", json_format=True) # one JSON object per line
"""

import logging
import sys
from typing import List, Optional

import structlog
from structlog.types import Processor


def configure_logging(level: str = "INFO", json_format: Optional[bool] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON lines, False for console output,
                     None to pick JSON when stderr is not a terminal
    """
    if json_format is None:
        json_format = not sys.stderr.isatty()

    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
