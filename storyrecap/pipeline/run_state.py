"""Run guard shared by summarization and compression."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from storyrecap.errors import AlreadyRunningError

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Outcome of a summarization or compression run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ALREADY_RUNNING = "already_running"


@dataclass
class FailedUnit:
    """A batch unit whose LLM call or parse failed."""

    start: int
    end: int
    error: str


@dataclass
class RunReport:
    """What a run did."""

    status: RunStatus
    written_keys: list[int] = field(default_factory=list)
    failures: list[FailedUnit] = field(default_factory=list)
    incomplete_keys: list[int] = field(default_factory=list)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCEEDED


class RunGuard:
    """Idle -> Running -> (Succeeded | Failed | Cancelled) -> Idle.

    Only one run may hold the guard; cancellation is cooperative through
    ``stop_requested``, polled by the run between batch units.
    """

    def __init__(self) -> None:
        self.is_running = False
        self.stop_requested = False
        self.active: Optional[str] = None
        self.last_status: Optional[RunStatus] = None

    def acquire(self, name: str) -> None:
        if self.is_running:
            raise AlreadyRunningError(f"{self.active} is already running")
        self.is_running = True
        self.stop_requested = False
        self.active = name
        logger.debug("Run %s started", name)

    def release(self, status: RunStatus) -> None:
        logger.debug("Run %s finished: %s", self.active, status.value)
        self.is_running = False
        self.stop_requested = False
        self.active = None
        self.last_status = status

    def request_stop(self) -> None:
        if self.is_running:
            logger.info("Stop requested for %s", self.active)
            self.stop_requested = True

    def reset(self) -> None:
        self.stop_requested = False
