"""
Structured logging configuration for guardpipe.

Uses structlog for JSON-formatted, context-rich logging.
"""

from __future__ import annotations

import logging
import sys
import time
from typing import Any

import structlog
from structlog.types import Processor

from guardpipe.core.config import get_settings


def setup_logging(
    level: str | None = None,
    json_format: bool | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON output format
    """
    settings = get_settings()
    level = level or settings.log_level
    json_format = json_format if json_format is not None else (
        settings.log_format == "json"
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Optional logger name

    Returns:
        Bound structlog logger
    """
    return structlog.get_logger(name)


class StageLogger:
    """Context manager that logs one pipeline stage run with its duration."""

    def __init__(
        self,
        logger: structlog.BoundLogger,
        stage_name: str,
        **context: Any,
    ):
        self.logger = logger.bind(stage=stage_name, **context)
        self.stage_name = stage_name
        self._started = 0.0

    def __enter__(self) -> "StageLogger":
        self._started = time.perf_counter()
        self.logger.debug("Starting guardrail stage")
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        duration_ms = round((time.perf_counter() - self._started) * 1000, 2)
        if exc_type:
            self.logger.info(
                "Guardrail stage aborted",
                error=str(exc_val),
                error_type=exc_type.__name__,
                duration_ms=duration_ms,
            )
        else:
            self.logger.debug("Completed guardrail stage", duration_ms=duration_ms)
