"""Structured logging for pipeline workers.

Every log line is a JSON object with an ``event`` name plus context fields,
so stage activity can be filtered by ``job_id``, ``stage`` or ``attempt`` in
the log aggregator.

Usage:
    from framebrew.utils.logging import get_logger

    log = get_logger(__name__)
    stage_log = log.bind(job_id=job_id, stage="polling")
    stage_log.info("poll_iteration", iteration=3, state="running")
"""

import json
import logging
import sys
from typing import Any


class StructuredLogger:
    """Wrapper around a standard Logger that emits JSON events.

    Context bound with :meth:`bind` is merged into every entry; explicit
    keyword arguments win over bound values.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = context or {}

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger that adds ``kwargs`` to every entry."""
        return StructuredLogger(self._logger, {**self._context, **kwargs})

    def _format_json(self, event: str, **kwargs: Any) -> str:
        log_entry = {"event": event, **self._context, **kwargs}
        return json.dumps(log_entry, default=str)

    def _log(self, level: int, event: str, exc_info: bool, **kwargs: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self._format_json(event, **kwargs), exc_info=exc_info)

    def info(self, event: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Log info message with structured context as JSON."""
        self._log(logging.INFO, event, exc_info, **kwargs)

    def error(self, event: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Log error message with structured context as JSON."""
        self._log(logging.ERROR, event, exc_info, **kwargs)

    def warning(self, event: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Log warning message with structured context as JSON."""
        self._log(logging.WARNING, event, exc_info, **kwargs)

    def debug(self, event: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Log debug message with structured context as JSON."""
        self._log(logging.DEBUG, event, exc_info, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured StructuredLogger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return StructuredLogger(logger)
