"""Logging configuration for the summary engine."""

from __future__ import annotations

import logging
import sys
import traceback
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


@dataclass
class ErrorRecord:
    """A logged problem kept for the status display."""

    timestamp: datetime
    level: str
    logger_name: str
    message: str
    cause: Optional[str] = None


class ErrorLogBuffer(logging.Handler):
    """Keeps the most recent warnings and errors in memory."""

    def __init__(self, capacity: int = 50, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self._records: deque[ErrorRecord] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        cause = None
        if record.exc_info and record.exc_info[1] is not None:
            cause = "".join(traceback.format_exception(*record.exc_info)).strip()
        self._records.append(
            ErrorRecord(
                timestamp=datetime.fromtimestamp(record.created, timezone.utc),
                level=record.levelname,
                logger_name=record.name,
                message=record.getMessage(),
                cause=cause,
            )
        )

    def records(self) -> list[ErrorRecord]:
        return list(self._records)

    def clear(self) -> None:
        self._records.clear()


def setup_logging(verbose: bool = False) -> None:
    """Configure structured logging for the engine."""
    level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger("storyrecap")
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
