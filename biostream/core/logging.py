"""
Structured logging configuration for the biostream pipeline.
"""

import logging
import sys
import threading
import time
from typing import Callable, Dict, Hashable

import structlog
from structlog.types import Processor

from biostream.core.config import settings


def configure_logging() -> None:
    """Configure structured logging for the application."""

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors = shared + [structlog.processors.JSONRenderer()]
    else:  # console format
        processors = shared + [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Configured logger instance

    Example:
        logger = get_logger(__name__)
        logger.info("flush_completed", samples=120)
    """
    return structlog.get_logger(name)


class RateLimiter:
    """
    Per-key rate limiter for high-frequency diagnostics.

    ``allow(key)`` returns True at most once per ``interval`` seconds for
    each key; calls in between are suppressed and counted so the next
    permitted log line can report how many were skipped.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._last: Dict[Hashable, float] = {}
        self._suppressed: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def allow(self, key: Hashable = None) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last.get(key)
            if last is None or now - last >= self.interval:
                self._last[key] = now
                return True
            self._suppressed[key] = self._suppressed.get(key, 0) + 1
            return False

    def pop_suppressed(self, key: Hashable = None) -> int:
        """Return and reset the number of suppressed calls for ``key``."""
        with self._lock:
            return self._suppressed.pop(key, 0)


# Initialize logging on module import
configure_logging()
