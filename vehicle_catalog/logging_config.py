"""
Structured logging setup and the bounded extraction-attempt log.
"""
import logging
import sys
from collections import deque
from typing import Iterable, Optional

import structlog

from vehicle_catalog.models.domain import ExtractionAttempt


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog once for the whole process"""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class AttemptLog:
    """
    Bounded ring buffer of the most recent extraction attempts.

    Owned by a pipeline instance and handed to whoever needs diagnostics;
    appending replaces the oldest entry once the buffer is full.
    """

    def __init__(self, max_entries: int = 50) -> None:
        self._entries: deque[ExtractionAttempt] = deque(maxlen=max_entries)

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or 0

    def record(self, attempt: ExtractionAttempt) -> None:
        self._entries.append(attempt)

    def extend(self, attempts: Iterable[ExtractionAttempt]) -> None:
        for attempt in attempts:
            self.record(attempt)

    def recent(self, limit: Optional[int] = None) -> list[ExtractionAttempt]:
        """Most recent attempts first"""
        entries = list(reversed(self._entries))
        return entries if limit is None else entries[:limit]

    def failures(self) -> list[ExtractionAttempt]:
        return [attempt for attempt in self.recent() if not attempt.succeeded]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
